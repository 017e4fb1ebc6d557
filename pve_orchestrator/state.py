"""
Run state cache and run-level lock.

The cache lets an operator resume at a later phase ("run only configure")
without repeating provisioning. It is a convenience, the topology file stays
authoritative.
"""

import json
import logging
import os
import socket
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import ConcurrentRunError
from .inventory import inventory_from_dict, inventory_to_dict
from .models import DiscoveredAddress, InventoryGroup, Phase, ProvisionedResource

logger = logging.getLogger(__name__)


class StateManager:
    """Per-topology JSON state file"""

    def __init__(self, state_dir: Path, topology: str):
        self.state_dir = Path(state_dir).expanduser()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.state_file = self.state_dir / f"{topology}.json"
        self.topology = topology
        self.state = self._load_state()

    def _load_state(self) -> Dict[str, Any]:
        if self.state_file.exists():
            try:
                with open(self.state_file, "r") as f:
                    return json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                logger.warning(f"Ignoring unreadable state file {self.state_file}: {e}")

        return {
            "topology": self.topology,
            "phases": {},
            "resources": {},
            "addresses": {},
            "inventory": {},
            "last_run": None,
            "last_update": None,
        }

    def save_state(self):
        """Write state atomically"""
        self.state["last_update"] = datetime.now().isoformat()
        tmp = self.state_file.with_suffix(".json.tmp")
        with open(tmp, "w") as f:
            json.dump(self.state, f, indent=2)
        os.replace(tmp, self.state_file)

    # === PHASES ===

    def is_phase_complete(self, phase: Phase) -> bool:
        return self.state["phases"].get(phase.value, {}).get("completed", False)

    def mark_phase_complete(self, phase: Phase, details: Optional[Dict[str, Any]] = None):
        entry = {"completed": True, "timestamp": datetime.now().isoformat()}
        if details:
            entry["details"] = details
        self.state["phases"][phase.value] = entry
        self.save_state()

    def invalidate_phase(self, phase: Phase):
        """Mark phase and every later phase incomplete"""
        for later in Phase:
            if later.index >= phase.index and later.value in self.state["phases"]:
                self.state["phases"][later.value]["completed"] = False
        self.save_state()

    # === RUNTIME ENTITIES ===

    def save_resources(self, resources: List[ProvisionedResource], drop: Iterable[int] = ()):
        for resource in resources:
            self.state["resources"][str(resource.spec_id)] = resource.to_dict()
        for spec_id in drop:
            self.state["resources"].pop(str(spec_id), None)
        self.save_state()

    def resources(self) -> Dict[int, ProvisionedResource]:
        return {
            int(spec_id): ProvisionedResource.from_dict(data)
            for spec_id, data in self.state["resources"].items()
        }

    def save_addresses(self, addresses: List[DiscoveredAddress]):
        for address in addresses:
            self.state["addresses"][str(address.spec_id)] = address.to_dict()
        self.save_state()

    def addresses(self) -> Dict[int, DiscoveredAddress]:
        return {
            int(spec_id): DiscoveredAddress.from_dict(data)
            for spec_id, data in self.state["addresses"].items()
        }

    def save_inventory(self, groups: Dict[str, InventoryGroup]):
        self.state["inventory"] = inventory_to_dict(groups)
        self.save_state()

    def inventory(self) -> Dict[str, InventoryGroup]:
        return inventory_from_dict(self.state.get("inventory") or {})

    def save_report(self, report: Dict[str, Any]):
        self.state["last_run"] = report
        self.save_state()


class RunLock:
    """Lease file preventing two runs against the same topology

    The lease is written to a private temp file and hard-linked into place,
    so the lock file never exists without its holder record.
    """

    # a lease nobody can parse counts as live for this long after its mtime
    UNREADABLE_GRACE = 60.0

    def __init__(self, state_dir: Path, topology: str, ttl: float = 6 * 3600.0):
        self.path = Path(state_dir).expanduser() / f"{topology}.lock"
        self.topology = topology
        self.ttl = ttl
        self.acquired = False

    def acquire(self) -> "RunLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lease = self.path.with_name(f".{self.path.name}.{os.getpid()}.{socket.gethostname()}")
        with open(lease, "w") as f:
            json.dump({
                "pid": os.getpid(),
                "host": socket.gethostname(),
                "started_at": time.time(),
            }, f)
        try:
            for _ in range(2):
                try:
                    os.link(str(lease), str(self.path))
                except FileExistsError:
                    holder = self._read_holder()
                    if self._is_stale(holder):
                        logger.warning(f"Reclaiming stale lock {self.path} held by {holder or 'nobody'}")
                        self.path.unlink(missing_ok=True)
                        continue
                    if not holder:
                        raise ConcurrentRunError(
                            f"Topology '{self.topology}' is locked by a run still writing {self.path}"
                        )
                    raise ConcurrentRunError(
                        f"Topology '{self.topology}' is locked by pid {holder.get('pid')} on "
                        f"{holder.get('host')} since {holder.get('started_at')}"
                    )
                self.acquired = True
                logger.debug(f"Acquired run lock {self.path}")
                return self
            raise ConcurrentRunError(f"Could not acquire lock {self.path}")
        finally:
            lease.unlink(missing_ok=True)

    def release(self):
        if self.acquired:
            self.path.unlink(missing_ok=True)
            self.acquired = False
            logger.debug(f"Released run lock {self.path}")

    def _read_holder(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r") as f:
                holder = json.load(f)
        except (json.JSONDecodeError, IOError):
            return {}
        return holder if isinstance(holder, dict) else {}

    def _is_stale(self, holder: Dict[str, Any]) -> bool:
        if not holder:
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return True
            return age > self.UNREADABLE_GRACE
        if time.time() - float(holder.get("started_at", 0)) > self.ttl:
            return True
        pid = int(holder.get("pid") or 0)
        if pid <= 0:
            return True
        if holder.get("host") == socket.gethostname():
            try:
                os.kill(pid, 0)
            except ProcessLookupError:
                return True
            except PermissionError:
                return False
        return False

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
