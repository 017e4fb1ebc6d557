"""
Resource descriptor store.

A topology file declares the resources one deployment should have, the role
each of them plays and the apply step (playbook + tags) configuring that
role. Example::

    topology: homelab
    defaults:
      placement: pve
      storage: local-lvm
    roles:
      server: {playbook: playbooks/k3s.yml, tags: [k3s_server]}
      agent: {playbook: playbooks/k3s.yml, tags: [k3s_agent]}
    resources:
      - {id: 201, name: k3s-server-01, kind: vm, role: server, template: 9000}
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .errors import ValidationError
from .guests import resolve_guest
from .models import NetworkMode, NetworkSpec, ResourceKind, ResourceSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplyStep:
    """How one role group gets configured"""
    role: str
    playbook: str
    tags: Tuple[str, ...] = ()
    extra_vars: Dict[str, Any] = field(default_factory=dict)
    limit: Optional[str] = None

    @property
    def host_limit(self) -> str:
        return self.limit or self.role


@dataclass(frozen=True)
class VerifySettings:
    """Post-configure cluster health check"""
    kubeconfig: str
    roles: Tuple[str, ...] = ()
    context: Optional[str] = None


@dataclass
class Topology:
    name: str
    specs: List[ResourceSpec]
    roles: Dict[str, ApplyStep]
    verify: Optional[VerifySettings] = None
    source: Optional[Path] = None

    def spec(self, spec_id: int) -> Optional[ResourceSpec]:
        for spec in self.specs:
            if spec.id == spec_id:
                return spec
        return None


def list_specs(topology: Topology) -> List[ResourceSpec]:
    """Validated specs in ascending id order"""
    seen: Dict[int, ResourceSpec] = {}
    names: Dict[str, ResourceSpec] = {}
    for spec in topology.specs:
        if spec.id in seen:
            raise ValidationError(
                f"Duplicate resource id {spec.id}: '{seen[spec.id].name}' and '{spec.name}'"
            )
        if spec.name in names:
            raise ValidationError(
                f"Duplicate resource name '{spec.name}': ids {names[spec.name].id} and {spec.id}"
            )
        seen[spec.id] = spec
        names[spec.name] = spec
        _validate_spec(spec, topology.roles)
    return sorted(topology.specs, key=lambda s: s.id)


def _validate_spec(spec: ResourceSpec, roles: Dict[str, ApplyStep]):
    label = f"Resource {spec.id} ({spec.name})"
    if not isinstance(spec.id, int) or isinstance(spec.id, bool) or spec.id <= 0:
        raise ValidationError(f"{label}: id must be a positive integer")
    if spec.role not in roles:
        raise ValidationError(
            f"{label}: role '{spec.role}' has no apply step (known roles: {sorted(roles)})"
        )
    for attr in ("cpu", "memory", "disk"):
        if getattr(spec, attr) <= 0:
            raise ValidationError(f"{label}: {attr} must be positive")
    if spec.network.mode is NetworkMode.STATIC and not spec.network.address:
        raise ValidationError(f"{label}: static network requires an address")
    if spec.network.family not in ("ipv4", "ipv6"):
        raise ValidationError(f"{label}: unknown address family '{spec.network.family}'")
    resolve_guest(spec)
    if not spec.template:
        raise ValidationError(f"{label}: no template to create it from")
    if spec.kind is ResourceKind.VM and not spec.template.isdigit():
        raise ValidationError(f"{label}: VM template must be a VMID, got '{spec.template}'")


def load_topology(path: Union[str, Path]) -> Topology:
    """Load a topology YAML file"""
    path = Path(path).expanduser()
    if not path.exists():
        raise ValidationError(f"Topology file not found: {path}")
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {path}: {e}") from e

    topology = topology_from_dict(data, default_name=path.stem)
    topology.source = path
    logger.debug(f"Loaded topology '{topology.name}' with {len(topology.specs)} resources from {path}")
    return topology


def topology_from_dict(data: Dict[str, Any], default_name: str = "default") -> Topology:
    if not isinstance(data, dict):
        raise ValidationError("Topology document must be a mapping")

    roles: Dict[str, ApplyStep] = {}
    for role, step in (data.get("roles") or {}).items():
        if not isinstance(step, dict) or not step.get("playbook"):
            raise ValidationError(f"Role '{role}' needs a playbook")
        roles[role] = ApplyStep(
            role=role,
            playbook=step["playbook"],
            tags=tuple(step.get("tags") or ()),
            extra_vars=dict(step.get("extra_vars") or {}),
            limit=step.get("limit"),
        )

    defaults = data.get("defaults") or {}
    specs = [
        _spec_from_dict(entry, defaults, index)
        for index, entry in enumerate(data.get("resources") or [])
    ]

    verify = None
    verify_data = data.get("verify")
    if verify_data:
        if not verify_data.get("kubeconfig"):
            raise ValidationError("verify block needs a kubeconfig path")
        verify = VerifySettings(
            kubeconfig=verify_data["kubeconfig"],
            roles=tuple(verify_data.get("roles") or ()),
            context=verify_data.get("context"),
        )

    return Topology(
        name=data.get("topology") or data.get("name") or default_name,
        specs=specs,
        roles=roles,
        verify=verify,
    )


def _spec_from_dict(entry: Dict[str, Any], defaults: Dict[str, Any], index: int) -> ResourceSpec:
    if not isinstance(entry, dict):
        raise ValidationError(f"Resource #{index} must be a mapping")
    merged = {**defaults, **entry}
    merged_network = {**(defaults.get("network") or {}), **(entry.get("network") or {})}
    label = f"Resource #{index} ({merged.get('name', '?')})"

    for required in ("id", "name", "kind", "role"):
        if required not in merged:
            raise ValidationError(f"{label}: missing '{required}'")

    try:
        kind = ResourceKind(merged["kind"])
        network = NetworkSpec(
            mode=NetworkMode(merged_network.get("mode", "dhcp")),
            bridge=merged_network.get("bridge", merged.get("bridge", "vmbr0")),
            interface=merged_network.get(
                "interface", "eth" if kind is ResourceKind.CONTAINER else ""
            ),
            family=merged_network.get("family", "ipv4"),
            address=merged_network.get("address"),
            gateway=merged_network.get("gateway"),
        )
        template = merged.get("template")
        return ResourceSpec(
            id=merged["id"],
            name=str(merged["name"]),
            kind=kind,
            role=str(merged["role"]),
            cpu=int(merged.get("cpu", 2)),
            memory=int(merged.get("memory", 2048)),
            disk=int(merged.get("disk", 16)),
            placement=str(merged.get("placement", "pve")),
            network=network,
            os=str(merged.get("os", "ubuntu")),
            template=str(template) if template is not None else None,
            storage=str(merged.get("storage", "local-lvm")),
            tags=tuple(merged.get("tags") or ()),
            unprivileged=bool(merged.get("unprivileged", True)),
            features=tuple(merged.get("features") or ()),
            onboot=bool(merged.get("onboot", True)),
        )
    except (ValueError, TypeError) as e:
        raise ValidationError(f"{label}: {e}") from e
