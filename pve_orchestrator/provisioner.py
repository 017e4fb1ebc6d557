"""
Idempotent realization of resource specs on Proxmox.

ensure() may be re-run after a partial failure: an existing guest with the
same VMID and a compatible identity is adopted instead of re-created, and a
create that races an invisible earlier create is resolved by re-reading the
cluster resource list. Adopted VMs have their hardware settings compared
with the spec and re-applied where they drifted, so a clone whose
configuration step failed is finished on the next run.
"""

import logging
import re
from typing import Any, Dict, Optional

from .errors import PlatformError, ResourceConflict
from .models import ProvisionedResource, ResourceKind, ResourceSpec, ResourceState
from .proxmox import ProxmoxAPI

logger = logging.getLogger(__name__)

BOOT_DISK_CANDIDATES = ("scsi0", "virtio0", "sata0", "ide0")

SIZE_UNITS = {"K": 1 / (1024 * 1024), "M": 1 / 1024, "G": 1, "T": 1024}


def vm_options(spec: ResourceSpec) -> Dict[str, Any]:
    """Hardware and cloud-init settings a VM must carry"""
    options: Dict[str, Any] = {
        "cores": spec.cpu,
        "memory": spec.memory,
        "agent": "enabled=1",
        "ipconfig0": spec.network.ipconfig(),
        "net0": f"virtio,bridge={spec.network.bridge}",
        "onboot": int(spec.onboot),
    }
    if spec.tags:
        options["tags"] = ";".join(spec.tags)
    return options


def drifted_options(desired: Dict[str, Any], live: Dict[str, Any]) -> Dict[str, Any]:
    """Subset of desired settings the live config does not match"""
    drift: Dict[str, Any] = {}
    for key, value in desired.items():
        current = live.get(key)
        if key == "agent":
            # live value is "1" or "enabled=1[,...]"
            flags = str(current or "").split(",")
            matches = "1" in flags or "enabled=1" in flags
        elif key == "net0":
            # live net0 carries the generated MAC, only the bridge is ours
            matches = current is not None and value.split(",")[1] in str(current).split(",")
        else:
            matches = current is not None and str(current) == str(value)
        if not matches:
            drift[key] = value
    return drift


def disk_size_gib(disk_entry: str) -> Optional[float]:
    """Size of a disk config entry like 'local-lvm:vm-201-disk-0,size=3584M'"""
    match = re.search(r"(?:^|,)size=(\d+(?:\.\d+)?)([KMGT]?)", disk_entry or "")
    if not match:
        return None
    return float(match.group(1)) * SIZE_UNITS.get(match.group(2) or "G", 1)


class Provisioner:
    """Creates or finds the platform guest behind each ResourceSpec"""

    def __init__(self, api: ProxmoxAPI):
        self.api = api

    def ensure(self, spec: ResourceSpec) -> ProvisionedResource:
        """Return a booting handle for spec, creating the guest only if missing"""
        existing = self.api.find_resource(spec.id)
        if existing:
            return self._adopt(spec, existing)

        try:
            return self._create(spec)
        except ResourceConflict:
            # A previous create may have succeeded without being visible yet
            existing = self.api.find_resource(spec.id)
            if not existing:
                raise
            logger.info(f"VM {spec.id} appeared while creating {spec.name}, adopting it")
            return self._adopt(spec, existing)

    # === EXISTING GUESTS ===

    def _adopt(self, spec: ResourceSpec, entry: Dict[str, Any]) -> ProvisionedResource:
        self._check_identity(spec, entry)
        node = entry.get("node", spec.placement)
        if node != spec.placement:
            logger.info(f"{spec.name} ({spec.id}) runs on {node}, declared placement is {spec.placement}")

        resource = ProvisionedResource(
            spec_id=spec.id,
            platform_handle=ProvisionedResource.handle_for(node, spec.kind, spec.id),
            kind=spec.kind,
            node=node,
            state=ResourceState.CREATED,
        )
        logger.info(f"{spec.name} ({spec.id}) already exists on {node} - skipping creation")
        if spec.kind is ResourceKind.VM:
            self._reconcile_vm(spec, node)
        self._boot(resource, running=entry.get("status") == "running")
        return resource

    @staticmethod
    def _check_identity(spec: ResourceSpec, entry: Dict[str, Any]):
        actual_kind = ResourceKind.from_api_type(entry.get("type", "qemu"))
        if actual_kind is not spec.kind:
            raise ResourceConflict(
                f"VMID {spec.id} is a {actual_kind.value}, topology declares a {spec.kind.value} ({spec.name})"
            )
        if int(entry.get("template", 0) or 0) == 1:
            raise ResourceConflict(f"VMID {spec.id} is a template, refusing to use it for {spec.name}")
        actual_name = entry.get("name")
        if actual_name and actual_name != spec.name:
            raise ResourceConflict(
                f"VMID {spec.id} belongs to '{actual_name}', topology declares '{spec.name}'"
            )

    # === CREATION ===

    def _create(self, spec: ResourceSpec) -> ProvisionedResource:
        resource = ProvisionedResource(
            spec_id=spec.id,
            platform_handle=ProvisionedResource.handle_for(spec.placement, spec.kind, spec.id),
            kind=spec.kind,
            node=spec.placement,
        )
        logger.info(f"Creating {spec.kind.value} {spec.name} ({spec.id}) on {spec.placement}")
        if spec.kind is ResourceKind.VM:
            self._create_vm(spec)
        else:
            self._create_container(spec)
        resource.transition(ResourceState.CREATED)
        self._boot(resource, running=False)
        return resource

    def _create_vm(self, spec: ResourceSpec):
        template_id = int(spec.template)
        template = self.api.find_resource(template_id)
        if not template:
            raise PlatformError(f"Template {template_id} for {spec.name} not found on the cluster")
        template_node = template.get("node", spec.placement)

        upid = self.api.clone_vm(
            template_node, template_id, spec.id, spec.name,
            target=spec.placement, storage=spec.storage,
        )
        self.api.wait_for_task(template_node, upid)
        self._reconcile_vm(spec, spec.placement)

    def _reconcile_vm(self, spec: ResourceSpec, node: str):
        """Apply the settings and disk size the live VM is missing"""
        live = self.api.vm_config(node, spec.id)

        drift = drifted_options(vm_options(spec), live)
        if drift:
            logger.info(f"Applying {sorted(drift)} to {spec.name} ({spec.id})")
            self.api.wait_for_task(node, self.api.configure_vm(node, spec.id, **drift))

        disk = self._boot_disk(live)
        if not disk:
            logger.warning(f"No boot disk found on {spec.name} ({spec.id}), disk size left as cloned")
            return
        size = disk_size_gib(live.get(disk, ""))
        if size is None or size < spec.disk:
            self.api.wait_for_task(node, self.api.resize_disk(node, spec.id, disk, f"{spec.disk}G"))
        elif size > spec.disk:
            logger.warning(f"{spec.name} ({spec.id}) {disk} is {size:.1f}G, larger than the declared "
                           f"{spec.disk}G; disks are never shrunk")

    @staticmethod
    def _boot_disk(vm_config: Dict[str, Any]) -> Optional[str]:
        if vm_config.get("bootdisk"):
            return vm_config["bootdisk"]
        boot = vm_config.get("boot", "")
        if boot.startswith("order="):
            for device in boot[len("order="):].split(";"):
                if device in vm_config and not device.startswith("net"):
                    return device
        for device in BOOT_DISK_CANDIDATES:
            if device in vm_config:
                return device
        return None

    def _create_container(self, spec: ResourceSpec):
        options: Dict[str, Any] = {
            "ostemplate": spec.template,
            "hostname": spec.name,
            "cores": spec.cpu,
            "memory": spec.memory,
            "rootfs": f"{spec.storage}:{spec.disk}",
            "net0": f"name=eth0,bridge={spec.network.bridge},{spec.network.ipconfig()}",
            "unprivileged": int(spec.unprivileged),
            "onboot": int(spec.onboot),
        }
        if spec.features:
            options["features"] = ",".join(spec.features)
        if spec.tags:
            options["tags"] = ";".join(spec.tags)
        upid = self.api.create_container(spec.placement, spec.id, **options)
        self.api.wait_for_task(spec.placement, upid)

    # === BOOT ===

    def _boot(self, resource: ProvisionedResource, running: bool):
        if not running:
            logger.info(f"Starting {resource.platform_handle}")
            upid = self.api.start(resource.node, resource.kind, resource.vmid)
            self.api.wait_for_task(resource.node, upid)
        resource.transition(ResourceState.BOOTING)
