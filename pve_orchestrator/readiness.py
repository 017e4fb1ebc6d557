"""
Readiness polling: wait until a booting guest reports a usable address.

VMs report their interfaces through the QEMU guest agent, containers through
the LXC interface listing. Both are normalized to InterfaceAddress entries
before an address is picked, so the selection rules are shared.
"""

import asyncio
import ipaddress
import logging
import socket
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

import requests

from .config import ReadinessSettings
from .errors import PlatformAuthError, PlatformError, ReadinessTimeout
from .models import (
    DiscoveredAddress,
    NetworkMode,
    NetworkSpec,
    ProvisionedResource,
    ResourceKind,
    ResourceSpec,
    ResourceState,
)
from .proxmox import ProxmoxAPI
from .workers import CancellationToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InterfaceAddress:
    interface: str
    family: str
    address: str


def parse_agent_interfaces(payload: Any) -> List[InterfaceAddress]:
    """Flatten a guest agent network-get-interfaces response"""
    # Older agents wrap the list in 'return', the API wraps it in 'result'
    if isinstance(payload, dict):
        payload = payload.get("result", payload.get("return", []))
    candidates: List[InterfaceAddress] = []
    for interface in payload or []:
        name = interface.get("name", "")
        for addr in interface.get("ip-addresses", []) or []:
            ip = addr.get("ip-address")
            family = addr.get("ip-address-type", "")
            if ip and family in ("ipv4", "ipv6"):
                candidates.append(InterfaceAddress(name, family, ip))
    return candidates


def parse_container_interfaces(payload: Any) -> List[InterfaceAddress]:
    """Flatten an LXC /interfaces response (inet/inet6 carry a prefix length)"""
    candidates: List[InterfaceAddress] = []
    for interface in payload or []:
        name = interface.get("name", "")
        for key, family in (("inet", "ipv4"), ("inet6", "ipv6")):
            value = interface.get(key)
            if value:
                candidates.append(InterfaceAddress(name, family, value.split("/")[0]))
    return candidates


def _usable(ip: str) -> bool:
    try:
        parsed = ipaddress.ip_address(ip.split("%")[0])
    except ValueError:
        return False
    return not (parsed.is_loopback or parsed.is_link_local or parsed.is_unspecified)


def select_address(candidates: List[InterfaceAddress], network: NetworkSpec) -> Optional[InterfaceAddress]:
    """First candidate matching the declared family and interface convention"""
    for candidate in candidates:
        if candidate.interface == "lo" or candidate.family != network.family:
            continue
        if network.interface and not candidate.interface.startswith(network.interface):
            continue
        if not _usable(candidate.address):
            continue
        if network.mode is NetworkMode.STATIC and candidate.address != network.static_ip:
            continue
        return candidate
    return None


def tcp_probe(address: str, port: int, timeout: float) -> bool:
    """True when address accepts a TCP connection on port"""
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError:
        return False


class ReadinessPoller:
    """Polls a resource's status channel until it has a usable address"""

    def __init__(self, api: ProxmoxAPI, settings: ReadinessSettings, token: CancellationToken,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 probe: Callable[[str, int, float], bool] = tcp_probe):
        self.api = api
        self.settings = settings
        self.token = token
        self.clock = clock
        self.sleep = sleep
        self.probe = probe

    def poll_once(self, resource: ProvisionedResource) -> List[InterfaceAddress]:
        """One blocking read of the resource's status channel"""
        if resource.kind is ResourceKind.VM:
            return parse_agent_interfaces(self.api.agent_network_interfaces(resource.node, resource.vmid))
        return parse_container_interfaces(self.api.container_interfaces(resource.node, resource.vmid))

    async def wait_ready(self, resource: ProvisionedResource, spec: ResourceSpec,
                         timeout: Optional[float] = None,
                         poll_interval: Optional[float] = None) -> DiscoveredAddress:
        """Block until resource reports an address; ReadinessTimeout past the deadline"""
        timeout = self.settings.timeout if timeout is None else timeout
        poll_interval = self.settings.poll_interval if poll_interval is None else poll_interval
        try:
            return await self._wait(resource, spec, timeout, poll_interval)
        except Exception as e:
            resource.fail(str(e))
            raise

    async def _wait(self, resource: ProvisionedResource, spec: ResourceSpec,
                    timeout: float, poll_interval: float) -> DiscoveredAddress:
        deadline = self.clock() + timeout
        polls = 0
        logger.info(f"Waiting for {spec.name} ({spec.id}) to report an address (timeout {timeout:.0f}s)")

        while True:
            self.token.raise_if_cancelled()
            if self.clock() >= deadline:
                raise ReadinessTimeout(spec.id, spec.name, timeout, polls)

            polls += 1
            try:
                candidates = await asyncio.to_thread(self.poll_once, resource)
            except PlatformAuthError:
                raise
            except (PlatformError, requests.RequestException) as e:
                # Agent not running yet, container still starting, API hiccup
                logger.debug(f"Poll {polls} for {spec.name}: {e}")
                candidates = []

            match = select_address(candidates, spec.network)
            if match and await self._responsive(match.address):
                if resource.state is not ResourceState.BOOTING:
                    resource.transition(ResourceState.BOOTING)
                resource.transition(ResourceState.READY)
                logger.info(f"✅ {spec.name} ({spec.id}) ready at {match.address} after {polls} poll(s)")
                return DiscoveredAddress(spec_id=spec.id, address=match.address, interface=match.interface)

            if match is None:
                logger.debug(f"Poll {polls} for {spec.name}: no matching address yet")
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise ReadinessTimeout(spec.id, spec.name, timeout, polls)
            await self.sleep(min(poll_interval, remaining))

    async def _responsive(self, address: str) -> bool:
        port = self.settings.probe_port
        if not port:
            return True
        ok = await asyncio.to_thread(self.probe, address, port, self.settings.probe_timeout)
        if not ok:
            logger.debug(f"{address}:{port} not accepting connections yet")
        return ok
