"""
Per-OS guest conventions.

Guests differ in how services are managed and how privileges are escalated
(cloud-init VMs log in as a sudo user, LXC templates only have root, Alpine
uses doas and OpenRC). Each convention is a small strategy object so the
orchestrator and inventory code never branch on OS names.
"""

from typing import Dict, Type

from .errors import ValidationError
from .models import ResourceKind, ResourceSpec


class GuestPlatform:
    """Base guest conventions (Debian family defaults)"""

    name = "generic"
    package_manager = "apt"
    service_manager = "systemd"
    become_method = "sudo"
    python_interpreter = "/usr/bin/python3"
    cloud_user = "ubuntu"

    def __init__(self, kind: ResourceKind):
        self.kind = kind

    @property
    def remote_user(self) -> str:
        # LXC templates ship without cloud-init users
        if self.kind is ResourceKind.CONTAINER:
            return "root"
        return self.cloud_user

    @property
    def needs_become(self) -> bool:
        return self.remote_user != "root"

    def host_vars(self) -> Dict[str, object]:
        """Ansible connection variables for a host of this platform"""
        hostvars: Dict[str, object] = {
            "ansible_user": self.remote_user,
            "ansible_python_interpreter": self.python_interpreter,
            "guest_package_manager": self.package_manager,
            "guest_service_manager": self.service_manager,
        }
        if self.needs_become:
            hostvars["ansible_become"] = True
            hostvars["ansible_become_method"] = self.become_method
        return hostvars

    def __repr__(self):
        return f"<{self.__class__.__name__} kind={self.kind.value}>"


class UbuntuGuest(GuestPlatform):
    name = "ubuntu"
    cloud_user = "ubuntu"


class DebianGuest(GuestPlatform):
    name = "debian"
    cloud_user = "debian"


class AlpineGuest(GuestPlatform):
    name = "alpine"
    package_manager = "apk"
    service_manager = "openrc"
    become_method = "doas"
    python_interpreter = "/usr/bin/python3"
    cloud_user = "alpine"


GUEST_PLATFORMS: Dict[str, Type[GuestPlatform]] = {
    "ubuntu": UbuntuGuest,
    "debian": DebianGuest,
    "alpine": AlpineGuest,
}


def resolve_guest(spec: ResourceSpec) -> GuestPlatform:
    """Pick the guest strategy declared by spec.os"""
    try:
        platform_cls = GUEST_PLATFORMS[spec.os.lower()]
    except KeyError:
        raise ValidationError(
            f"Resource {spec.id} ({spec.name}): unsupported os '{spec.os}', "
            f"expected one of {sorted(GUEST_PLATFORMS)}"
        ) from None
    return platform_cls(spec.kind)
