"""
Configuration-apply collaborator.

After bootstrap the orchestrator writes the resolved inventory to disk and
runs ansible-playbook once per role group, limited to that group and the
role's tags. The playbooks themselves (K3s, Docker CE, Jellyfin, Nginx,
Certbot) live outside this package.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from .config import AnsibleSettings
from .errors import ApplyError
from .models import InventoryGroup, ResourceSpec
from .inventory import render_ini, to_ansible_inventory
from .topology import ApplyStep

logger = logging.getLogger(__name__)


def write_inventory(groups: Dict[str, InventoryGroup], specs: List[ResourceSpec],
                    path: Path, fmt: str = "yaml") -> Path:
    """Render the inventory in yaml, json or ini form"""
    inventory = to_ansible_inventory(groups, specs)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(format_inventory(inventory, fmt))
    logger.info(f"Inventory written to {path}")
    return path


def format_inventory(inventory: Dict, fmt: str = "yaml") -> str:
    if fmt == "json":
        return json.dumps(inventory, indent=2)
    if fmt == "ini":
        return render_ini(inventory)
    return yaml.safe_dump(inventory, sort_keys=False, default_flow_style=False)


class PlaybookRunner:
    """Runs the apply step for one role group"""

    def __init__(self, settings: AnsibleSettings, check_mode: bool = False):
        self.settings = settings
        self.check_mode = check_mode

    def build_command(self, step: ApplyStep, inventory_path: Path) -> List[str]:
        cmd = [
            self.settings.playbook_binary,
            "-i", str(inventory_path),
            step.playbook,
            "--limit", step.host_limit,
        ]
        if step.tags:
            cmd += ["--tags", ",".join(step.tags)]
        if step.extra_vars:
            cmd += ["--extra-vars", json.dumps(step.extra_vars, sort_keys=True)]
        if self.settings.vault_password_file:
            cmd += ["--vault-password-file", str(Path(self.settings.vault_password_file).expanduser())]
        if self.check_mode:
            cmd.append("--check")
        cmd += list(self.settings.extra_args)
        return cmd

    async def run_command(self, cmd: List[str], timeout: float) -> Tuple[int, str, str]:
        """Run command with timeout and logging"""
        logger.info(f"Running: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.settings.project_dir,
            )
        except FileNotFoundError:
            return 127, "", f"{cmd[0]} not found"

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return -1, "", f"Command timed out after {timeout:.0f}s"

        return (
            process.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def apply(self, step: ApplyStep, group: InventoryGroup, inventory_path: Path):
        """Apply step to one role group, raising ApplyError on failure"""
        if not group.members:
            logger.info(f"Role '{step.role}' has no hosts - skipping")
            return
        cmd = self.build_command(step, inventory_path)
        returncode, stdout, stderr = await self.run_command(cmd, self.settings.timeout)
        if stdout:
            logger.debug(f"STDOUT: {stdout}")
        if returncode != 0:
            tail = (stderr or stdout).strip().splitlines()[-5:]
            logger.error(f"Apply for role '{step.role}' failed with exit code {returncode}")
            raise ApplyError(step.role, returncode, " | ".join(tail))
        logger.info(f"✅ Role '{step.role}' configured on {len(group.members)} host(s)")


def ordered_groups(roles: Dict[str, ApplyStep],
                   groups: Dict[str, InventoryGroup]) -> List[Tuple[ApplyStep, InventoryGroup]]:
    """Role groups in topology declaration order (servers before agents)"""
    pairs: List[Tuple[ApplyStep, InventoryGroup]] = []
    for role, step in roles.items():
        group: Optional[InventoryGroup] = groups.get(role)
        if group is not None:
            pairs.append((step, group))
    return pairs
