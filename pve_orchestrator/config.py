"""
Orchestrator configuration.

Settings are immutable once loaded and travel inside a RunContext instead of
living in module globals, so several runs (or tests) can coexist in one
process.
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATHS = [
    Path("config") / "orchestrator.yaml",
    Path.home() / ".config" / "pve-orchestrator" / "orchestrator.yaml",
]


@dataclass(frozen=True)
class ProxmoxSettings:
    """Virtualization platform endpoint"""
    host: str = "10.10.1.21"
    port: int = 8006
    token_id: str = "automation@pam!orchestrator"
    verify_ssl: bool = False
    request_timeout: float = 30.0
    task_timeout: float = 600.0
    task_poll_interval: float = 2.0

    @property
    def base_url(self) -> str:
        return f"https://{self.host}:{self.port}/api2/json"


@dataclass(frozen=True)
class RetrySettings:
    """Exponential backoff for transient platform failures"""
    base_delay: float = 2.0
    max_delay: float = 60.0
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based)"""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


@dataclass(frozen=True)
class ReadinessSettings:
    timeout: float = 600.0
    poll_interval: float = 5.0
    probe_port: Optional[int] = 22
    probe_timeout: float = 5.0


@dataclass(frozen=True)
class SecretSettings:
    """Where the API token secret comes from"""
    provider: str = "env"                 # env | file | vault
    path: Optional[str] = None
    password_file: Optional[str] = None   # ansible-vault password file
    token_secret_key: str = "proxmox_token_secret"


@dataclass(frozen=True)
class AnsibleSettings:
    playbook_binary: str = "ansible-playbook"
    project_dir: str = "."
    vault_password_file: Optional[str] = None
    extra_args: tuple = ()
    timeout: float = 3600.0


@dataclass(frozen=True)
class OrchestratorConfig:
    """Top level configuration"""
    proxmox: ProxmoxSettings = field(default_factory=ProxmoxSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    readiness: ReadinessSettings = field(default_factory=ReadinessSettings)
    secrets: SecretSettings = field(default_factory=SecretSettings)
    ansible: AnsibleSettings = field(default_factory=AnsibleSettings)
    state_dir: str = str(Path.home() / ".pve-orchestrator")
    max_workers: int = 4
    lock_ttl: float = 6 * 3600.0

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()


@dataclass(frozen=True)
class ApiCredentials:
    """Proxmox API token; the secret never appears in repr or logs"""
    token_id: str
    secret: str = field(repr=False)

    @property
    def header(self) -> str:
        return f"PVEAPIToken={self.token_id}={self.secret}"

    def __str__(self):
        return f"{self.token_id[:8]}..."


@dataclass(frozen=True)
class RunContext:
    """Immutable per-run context threaded through every component"""
    config: OrchestratorConfig
    credentials: ApiCredentials
    check_mode: bool = False


def _section(cls, data: Optional[Dict[str, Any]], name: str):
    if not data:
        return cls()
    if not isinstance(data, dict):
        raise ValidationError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValidationError(f"Unknown keys in config section '{name}': {sorted(unknown)}")
    values = dict(data)
    if "extra_args" in values:
        values["extra_args"] = tuple(values["extra_args"] or ())
    return cls(**values)


def config_from_dict(data: Dict[str, Any]) -> OrchestratorConfig:
    data = data or {}
    top_level = {
        key: data[key] for key in ("state_dir", "max_workers", "lock_ttl") if key in data
    }
    config = OrchestratorConfig(
        proxmox=_section(ProxmoxSettings, data.get("proxmox"), "proxmox"),
        retry=_section(RetrySettings, data.get("retry"), "retry"),
        readiness=_section(ReadinessSettings, data.get("readiness"), "readiness"),
        secrets=_section(SecretSettings, data.get("secrets"), "secrets"),
        ansible=_section(AnsibleSettings, data.get("ansible"), "ansible"),
        **top_level,
    )
    if config.max_workers < 1:
        raise ValidationError("max_workers must be at least 1")
    if config.retry.max_attempts < 1:
        raise ValidationError("retry.max_attempts must be at least 1")
    return config


def _env_int(env: Dict[str, str], name: str) -> int:
    try:
        return int(env[name])
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got '{env[name]}'") from None


def apply_env_overrides(config: OrchestratorConfig, environ: Optional[Dict[str, str]] = None) -> OrchestratorConfig:
    """Environment variables win over file settings"""
    env = os.environ if environ is None else environ
    proxmox = config.proxmox
    if env.get("PVE_HOST"):
        proxmox = replace(proxmox, host=env["PVE_HOST"])
    if env.get("PVE_PORT"):
        proxmox = replace(proxmox, port=_env_int(env, "PVE_PORT"))
    if env.get("PVE_TOKEN_ID"):
        proxmox = replace(proxmox, token_id=env["PVE_TOKEN_ID"])
    if env.get("PVE_VERIFY_SSL"):
        proxmox = replace(proxmox, verify_ssl=env["PVE_VERIFY_SSL"].lower() in ("1", "true", "yes", "on"))

    overrides: Dict[str, Any] = {"proxmox": proxmox}
    if env.get("PVE_ORCH_STATE_DIR"):
        overrides["state_dir"] = env["PVE_ORCH_STATE_DIR"]
    if env.get("PVE_ORCH_MAX_WORKERS"):
        overrides["max_workers"] = _env_int(env, "PVE_ORCH_MAX_WORKERS")
    return replace(config, **overrides)


def load_config(path: Optional[Union[str, Path]] = None,
                environ: Optional[Dict[str, str]] = None) -> OrchestratorConfig:
    """Load configuration from the first existing YAML file"""
    candidates: List[Path] = [Path(path).expanduser()] if path else list(DEFAULT_CONFIG_PATHS)
    if path and not candidates[0].exists():
        raise ValidationError(f"Config file not found: {candidates[0]}")

    data: Dict[str, Any] = {}
    for candidate in candidates:
        if candidate.exists():
            try:
                with open(candidate, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValidationError(f"Invalid YAML in {candidate}: {e}") from e
            logger.info(f"Loaded configuration from {candidate}")
            break
    else:
        logger.warning("No orchestrator config found, using defaults")

    return apply_env_overrides(config_from_dict(data), environ)
