"""
Data model for phased infrastructure bring-up.

Specs are frozen and come from the topology file; provisioned resources and
discovered addresses are runtime state owned by one orchestrator run.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidTransition


class ResourceKind(Enum):
    """Compute resource flavours the platform can create"""
    CONTAINER = "container"
    VM = "vm"

    @property
    def api_type(self) -> str:
        """Proxmox API path segment for this kind"""
        return "lxc" if self is ResourceKind.CONTAINER else "qemu"

    @classmethod
    def from_api_type(cls, api_type: str) -> "ResourceKind":
        return cls.CONTAINER if api_type == "lxc" else cls.VM


class NetworkMode(Enum):
    DHCP = "dhcp"
    STATIC = "static"


@dataclass(frozen=True)
class NetworkSpec:
    """Addressing declaration for a resource's primary interface"""
    mode: NetworkMode = NetworkMode.DHCP
    bridge: str = "vmbr0"
    interface: str = ""          # name prefix, empty matches any non-loopback
    family: str = "ipv4"
    address: Optional[str] = None   # CIDR, static mode only
    gateway: Optional[str] = None

    @property
    def static_ip(self) -> Optional[str]:
        """Declared static address without its prefix length"""
        if not self.address:
            return None
        return self.address.split("/")[0]

    def ipconfig(self) -> str:
        """Proxmox ipconfig/net value for this network"""
        key = "ip6" if self.family == "ipv6" else "ip"
        if self.mode is NetworkMode.DHCP:
            return f"{key}=dhcp"
        value = f"{key}={self.address}"
        if self.gateway:
            gw_key = "gw6" if self.family == "ipv6" else "gw"
            value += f",{gw_key}={self.gateway}"
        return value


@dataclass(frozen=True)
class ResourceSpec:
    """Declarative description of one compute resource"""
    id: int
    name: str
    kind: ResourceKind
    role: str
    cpu: int = 2
    memory: int = 2048   # MiB
    disk: int = 16       # GiB
    placement: str = "pve"
    network: NetworkSpec = field(default_factory=NetworkSpec)
    os: str = "ubuntu"
    template: Optional[str] = None
    storage: str = "local-lvm"
    tags: Tuple[str, ...] = ()
    unprivileged: bool = True
    features: Tuple[str, ...] = ()
    onboot: bool = True


class ResourceState(Enum):
    """Lifecycle of a provisioned resource"""
    CREATING = "creating"
    CREATED = "created"
    BOOTING = "booting"
    READY = "ready"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ResourceState.READY, ResourceState.FAILED)


_TRANSITIONS = {
    ResourceState.CREATING: {ResourceState.CREATED, ResourceState.FAILED},
    ResourceState.CREATED: {ResourceState.BOOTING, ResourceState.FAILED},
    ResourceState.BOOTING: {ResourceState.READY, ResourceState.FAILED},
    ResourceState.READY: set(),
    ResourceState.FAILED: set(),
}


@dataclass
class ProvisionedResource:
    """Runtime handle for a spec realized on the platform"""
    spec_id: int
    platform_handle: str
    kind: ResourceKind
    node: str
    state: ResourceState = ResourceState.CREATING
    error: Optional[str] = None

    @property
    def vmid(self) -> int:
        return int(self.platform_handle.rsplit("/", 1)[-1])

    def transition(self, new_state: ResourceState, error: Optional[str] = None):
        """Move to new_state, refusing anything the lifecycle does not allow"""
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Resource {self.spec_id}: {self.state.value} -> {new_state.value} not allowed"
            )
        self.state = new_state
        if error is not None:
            self.error = error

    def fail(self, error: str):
        if not self.state.terminal:
            self.transition(ResourceState.FAILED, error)

    @staticmethod
    def handle_for(node: str, kind: ResourceKind, vmid: int) -> str:
        return f"{node}/{kind.api_type}/{vmid}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "spec_id": self.spec_id,
            "platform_handle": self.platform_handle,
            "kind": self.kind.value,
            "node": self.node,
            "state": self.state.value,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvisionedResource":
        return cls(
            spec_id=int(data["spec_id"]),
            platform_handle=data["platform_handle"],
            kind=ResourceKind(data["kind"]),
            node=data["node"],
            state=ResourceState(data["state"]),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class DiscoveredAddress:
    """Network address resolved for a reachable resource"""
    spec_id: int
    address: str
    discovered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    interface: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "spec_id": self.spec_id,
            "address": self.address,
            "discovered_at": self.discovered_at.isoformat(),
            "interface": self.interface,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiscoveredAddress":
        return cls(
            spec_id=int(data["spec_id"]),
            address=data["address"],
            discovered_at=datetime.fromisoformat(data["discovered_at"]),
            interface=data.get("interface"),
        )


@dataclass
class InventoryGroup:
    """Resources sharing a role, keyed by spec id"""
    name: str
    members: Dict[int, str] = field(default_factory=dict)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, InventoryGroup):
            return NotImplemented
        return self.name == other.name and dict(self.members) == dict(other.members)

    @property
    def addresses(self) -> List[str]:
        return [self.members[spec_id] for spec_id in sorted(self.members)]


class Phase(Enum):
    """Fixed, ordered orchestration phases"""
    INFRA = "infra"
    BOOTSTRAP = "bootstrap"
    CONFIGURE = "configure"

    @property
    def index(self) -> int:
        return PHASE_ORDER.index(self)

    @property
    def done_state(self) -> "RunState":
        return {
            Phase.INFRA: RunState.INFRA_DONE,
            Phase.BOOTSTRAP: RunState.BOOTSTRAP_DONE,
            Phase.CONFIGURE: RunState.CONFIGURE_DONE,
        }[self]


PHASE_ORDER = [Phase.INFRA, Phase.BOOTSTRAP, Phase.CONFIGURE]


class RunState(Enum):
    NOT_STARTED = "not_started"
    INFRA_DONE = "infra_done"
    BOOTSTRAP_DONE = "bootstrap_done"
    CONFIGURE_DONE = "configure_done"
    FAILED = "failed"


class PhaseStatus(Enum):
    """Phase execution status"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class ResourceOutcome:
    """Final per-resource line of a run report"""
    spec_id: int
    name: str
    role: str
    state: str
    address: Optional[str] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None


@dataclass
class PhaseReport:
    phase: Phase
    status: PhaseStatus = PhaseStatus.PENDING
    duration: Optional[float] = None
    message: str = ""
    failures: Dict[str, str] = field(default_factory=dict)


@dataclass
class RunReport:
    """Structured result of one orchestrator invocation"""
    topology: str
    state: RunState = RunState.NOT_STARTED
    failed_phase: Optional[Phase] = None
    phases: List[PhaseReport] = field(default_factory=list)
    resources: List[ResourceOutcome] = field(default_factory=list)
    inventory: Dict[str, InventoryGroup] = field(default_factory=dict)
    elapsed: float = 0.0
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state is not RunState.FAILED and not self.cancelled

    @property
    def phase_reached(self) -> str:
        if self.state is RunState.FAILED and self.failed_phase:
            return f"failed({self.failed_phase.value})"
        return self.state.value

    def phase_report(self, phase: Phase) -> Optional[PhaseReport]:
        for report in self.phases:
            if report.phase is phase:
                return report
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topology": self.topology,
            "phase_reached": self.phase_reached,
            "success": self.success,
            "cancelled": self.cancelled,
            "elapsed": round(self.elapsed, 3),
            "error": self.error,
            "phases": [
                {
                    "phase": p.phase.value,
                    "status": p.status.value,
                    "duration": round(p.duration, 3) if p.duration is not None else None,
                    "message": p.message,
                    "failures": p.failures,
                }
                for p in self.phases
            ],
            "resources": [vars(outcome).copy() for outcome in self.resources],
            "inventory": {
                role: {str(k): v for k, v in sorted(group.members.items())}
                for role, group in self.inventory.items()
            },
        }
