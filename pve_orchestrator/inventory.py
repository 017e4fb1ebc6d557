"""
Dynamic group resolution and inventory rendering.

The resolved mapping (role -> InventoryGroup) is the hand-off between the
bootstrap phase and whatever configures the hosts afterwards.
"""

import threading
from typing import Any, Dict, Iterable, List, Optional

from .errors import UnresolvedRoleError
from .guests import resolve_guest
from .models import DiscoveredAddress, InventoryGroup, ResourceSpec


class AddressBook:
    """At most one active address per spec id; re-discovery overwrites"""

    def __init__(self, addresses: Iterable[DiscoveredAddress] = ()):
        self._lock = threading.Lock()
        self._addresses: Dict[int, DiscoveredAddress] = {}
        for address in addresses:
            self.record(address)

    def record(self, address: DiscoveredAddress):
        with self._lock:
            self._addresses[address.spec_id] = address

    def get(self, spec_id: int) -> Optional[DiscoveredAddress]:
        with self._lock:
            return self._addresses.get(spec_id)

    def all(self) -> List[DiscoveredAddress]:
        with self._lock:
            return [self._addresses[k] for k in sorted(self._addresses)]

    def __len__(self):
        return len(self._addresses)


def resolve(addresses: Iterable[DiscoveredAddress],
            specs: Iterable[ResourceSpec]) -> Dict[str, InventoryGroup]:
    """Group discovered addresses by the role their spec declares"""
    by_id = {spec.id: spec for spec in specs}
    groups: Dict[str, InventoryGroup] = {}
    for address in sorted(addresses, key=lambda a: a.spec_id):
        spec = by_id.get(address.spec_id)
        if spec is None:
            raise UnresolvedRoleError(address.spec_id)
        group = groups.setdefault(spec.role, InventoryGroup(name=spec.role))
        group.members[address.spec_id] = address.address
    return {role: groups[role] for role in sorted(groups)}


def inventory_to_dict(groups: Dict[str, InventoryGroup]) -> Dict[str, Dict[str, str]]:
    """JSON-safe form for the state cache"""
    return {
        role: {str(spec_id): address for spec_id, address in sorted(group.members.items())}
        for role, group in groups.items()
    }


def inventory_from_dict(data: Dict[str, Dict[str, str]]) -> Dict[str, InventoryGroup]:
    return {
        role: InventoryGroup(name=role, members={int(k): v for k, v in members.items()})
        for role, members in sorted((data or {}).items())
    }


def to_ansible_inventory(groups: Dict[str, InventoryGroup], specs: Iterable[ResourceSpec],
                         common_vars: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Ansible YAML inventory: one child group per role, host vars from the guest platform"""
    by_id = {spec.id: spec for spec in specs}
    children: Dict[str, Any] = {}
    for role, group in groups.items():
        hosts: Dict[str, Any] = {}
        for spec_id in sorted(group.members):
            spec = by_id.get(spec_id)
            if spec is None:
                raise UnresolvedRoleError(spec_id)
            hostvars: Dict[str, Any] = {"ansible_host": group.members[spec_id], "proxmox_vmid": spec_id}
            hostvars.update(resolve_guest(spec).host_vars())
            hosts[spec.name] = hostvars
        children[role] = {"hosts": hosts}

    inventory: Dict[str, Any] = {"all": {"children": children}}
    if common_vars:
        inventory["all"]["vars"] = dict(common_vars)
    return inventory


def render_ini(inventory: Dict[str, Any]) -> str:
    """INI rendering of an inventory produced by to_ansible_inventory"""
    lines: List[str] = []
    children = inventory["all"].get("children", {})
    for role, group in children.items():
        lines.append(f"[{role}]")
        for hostname, hostvars in group.get("hosts", {}).items():
            var_string = " ".join(f"{k}={_ini_value(v)}" for k, v in hostvars.items())
            lines.append(f"{hostname} {var_string}".strip())
        lines.append("")

    if inventory["all"].get("vars"):
        lines.append("[all:vars]")
        for name, value in inventory["all"]["vars"].items():
            lines.append(f"{name}={_ini_value(value)}")
        lines.append("")
    return "\n".join(lines)


def _ini_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
