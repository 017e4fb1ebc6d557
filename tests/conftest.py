import asyncio
import logging
import re
import threading
from typing import Any, Dict, List, Optional

import pytest

from pve_orchestrator.config import (
    ApiCredentials,
    OrchestratorConfig,
    ReadinessSettings,
    RunContext,
)
from pve_orchestrator.errors import ApplyError, PlatformError, ResourceConflict
from pve_orchestrator.models import NetworkSpec, ResourceKind, ResourceSpec
from pve_orchestrator.topology import ApplyStep, Topology

logging.getLogger("pve_orchestrator").setLevel(logging.DEBUG)


class FakeClock:
    """Monotonic clock whose sleep() advances time instead of waiting"""

    def __init__(self, now: float = 1000.0):
        self.now = now
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeProxmoxAPI:
    """In-memory cluster implementing the ProxmoxAPI calls the orchestrator uses"""

    def __init__(self, node: str = "pve"):
        self.node = node
        self.guests: Dict[int, Dict[str, Any]] = {}
        self.configs: Dict[int, Dict[str, Any]] = {}
        self.pending: Dict[int, Dict[str, Any]] = {}    # created but not yet listed
        self.interfaces: Dict[int, List[Any]] = {}
        self.calls: List[tuple] = []
        self.poll_times: List[float] = []
        self.clock: Optional[FakeClock] = None
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def calls_named(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    # setup helpers

    def add_template(self, vmid: int = 9000, node: Optional[str] = None):
        self.guests[vmid] = {
            "vmid": vmid, "name": f"ubuntu-template-{vmid}", "type": "qemu",
            "node": node or self.node, "status": "stopped", "template": 1,
        }
        self.configs[vmid] = {"scsi0": f"local-lvm:base-{vmid}-disk-0,size=3584M", "boot": "order=scsi0;net0"}

    def add_guest(self, vmid: int, name: str, api_type: str = "qemu", status: str = "running",
                  node: Optional[str] = None):
        self.guests[vmid] = {
            "vmid": vmid, "name": name, "type": api_type,
            "node": node or self.node, "status": status, "template": 0,
        }

    def set_interfaces(self, vmid: int, *responses):
        """Successive poll responses; the last one repeats"""
        self.interfaces[vmid] = list(responses)

    # ProxmoxAPI surface

    def list_resources(self):
        return [dict(entry) for entry in self.guests.values()]

    def find_resource(self, vmid: int):
        self._record("find_resource", vmid)
        entry = self.guests.get(vmid)
        return dict(entry) if entry else None

    def clone_vm(self, node, template_vmid, newid, name, target=None, storage=None):
        self._record("clone_vm", node, template_vmid, newid, name, target, storage)
        if newid in self.pending:
            self.guests[newid] = self.pending.pop(newid)
            raise ResourceConflict(f"unable to create VM {newid}: config file already exists", 500)
        if newid in self.guests:
            raise ResourceConflict(f"unable to create VM {newid}: config file already exists", 500)
        self.guests[newid] = {
            "vmid": newid, "name": name, "type": "qemu",
            "node": target or node, "status": "stopped", "template": 0,
        }
        self.configs[newid] = dict(self.configs.get(template_vmid, {}))
        return f"UPID:{node}:clone:{newid}"

    def configure_vm(self, node, vmid, **options):
        self._record("configure_vm", node, vmid, options)
        self.configs.setdefault(vmid, {}).update(options)
        return f"UPID:{node}:qmconfig:{vmid}"

    def vm_config(self, node, vmid):
        return dict(self.configs.get(vmid, {}))

    def resize_disk(self, node, vmid, disk, size):
        self._record("resize_disk", node, vmid, disk, size)
        config = self.configs.setdefault(vmid, {})
        if disk in config:
            config[disk] = re.sub(r"size=[^,]+", f"size={size}", config[disk])
        return f"UPID:{node}:resize:{vmid}"

    def create_container(self, node, vmid, **options):
        self._record("create_container", node, vmid, options)
        if vmid in self.guests:
            raise ResourceConflict(f"CT {vmid} already exists on node '{node}'", 500)
        self.guests[vmid] = {
            "vmid": vmid, "name": options.get("hostname"), "type": "lxc",
            "node": node, "status": "stopped", "template": 0,
        }
        return f"UPID:{node}:vzcreate:{vmid}"

    def start(self, node, kind, vmid):
        self._record("start", node, kind, vmid)
        self.guests[vmid]["status"] = "running"
        return f"UPID:{node}:start:{vmid}"

    def wait_for_task(self, node, upid, timeout=None, poll_interval=None):
        self._record("wait_for_task", node, upid)
        return {"status": "stopped", "exitstatus": "OK"}

    def _poll(self, vmid):
        self._record("poll", vmid)
        if self.clock is not None:
            with self._lock:
                self.poll_times.append(self.clock())
        responses = self.interfaces.get(vmid)
        if not responses:
            raise PlatformError("QEMU guest agent is not running", 500)
        value = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(value, Exception):
            raise value
        return value

    def agent_network_interfaces(self, node, vmid):
        return self._poll(vmid)

    def container_interfaces(self, node, vmid):
        return self._poll(vmid)


class FakeRunner:
    """Configuration-apply stand-in recording which groups were applied"""

    def __init__(self, fail_roles=()):
        self.fail_roles = set(fail_roles)
        self.applied: List[tuple] = []

    async def apply(self, step, group, inventory_path):
        self.applied.append((step.role, dict(group.members)))
        if step.role in self.fail_roles:
            raise ApplyError(step.role, 2, "fatal: [k3s] UNREACHABLE!")


def agent_payload(address: str, interface: str = "eth0") -> List[Dict[str, Any]]:
    """network-get-interfaces result as the QEMU guest agent reports it"""
    return [
        {"name": "lo", "ip-addresses": [
            {"ip-address": "127.0.0.1", "ip-address-type": "ipv4", "prefix": 8},
            {"ip-address": "::1", "ip-address-type": "ipv6", "prefix": 128},
        ]},
        {"name": interface, "hardware-address": "bc:24:11:00:00:01", "ip-addresses": [
            {"ip-address": "fe80::be24:11ff:fe00:1", "ip-address-type": "ipv6", "prefix": 64},
            {"ip-address": address, "ip-address-type": "ipv4", "prefix": 24},
        ]},
    ]


def lxc_payload(address: str, interface: str = "eth0") -> List[Dict[str, Any]]:
    return [
        {"name": "lo", "inet": "127.0.0.1/8", "inet6": "::1/128", "hwaddr": "00:00:00:00:00:00"},
        {"name": interface, "inet": f"{address}/24", "inet6": "fe80::be24:11ff:fe00:2/64",
         "hwaddr": "bc:24:11:00:00:02"},
    ]


def make_spec(spec_id: int, role: str = "agent", kind: ResourceKind = ResourceKind.VM,
              name: Optional[str] = None, **overrides) -> ResourceSpec:
    values = dict(
        id=spec_id,
        name=name or f"{role}-{spec_id}",
        kind=kind,
        role=role,
        template="9000" if kind is ResourceKind.VM else "local:vztmpl/debian-12-standard_12.7-1_amd64.tar.zst",
        network=NetworkSpec(interface="eth" if kind is ResourceKind.CONTAINER else ""),
    )
    values.update(overrides)
    return ResourceSpec(**values)


def k3s_topology(name: str = "homelab") -> Topology:
    """1 server, 2 and 3 agents"""
    return Topology(
        name=name,
        specs=[make_spec(3, "agent"), make_spec(1, "server"), make_spec(2, "agent")],
        roles={
            "server": ApplyStep(role="server", playbook="playbooks/k3s.yml", tags=("k3s_server",)),
            "agent": ApplyStep(role="agent", playbook="playbooks/k3s.yml", tags=("k3s_agent",)),
        },
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_api(clock):
    api = FakeProxmoxAPI()
    api.clock = clock
    api.add_template(9000)
    return api


@pytest.fixture
def readiness_settings():
    return ReadinessSettings(timeout=60.0, poll_interval=5.0, probe_port=None)


@pytest.fixture
def config(tmp_path, readiness_settings):
    return OrchestratorConfig(
        readiness=readiness_settings,
        state_dir=str(tmp_path / "state"),
        max_workers=4,
    )


@pytest.fixture
def context(config):
    return RunContext(config=config, credentials=ApiCredentials("automation@pam!test", "0d1e-secret-value"))
