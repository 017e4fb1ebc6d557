"""
Proxmox VE REST API client.

Thin wrapper over requests with API token authentication, error
classification and exponential backoff for transient failures (rate
limiting, 5xx, connection resets).
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests
import urllib3
from urllib3.exceptions import InsecureRequestWarning

from .config import ApiCredentials, ProxmoxSettings, RetrySettings
from .errors import (
    PlatformAuthError,
    PlatformError,
    PlatformUnavailable,
    QuotaExceeded,
    ResourceConflict,
)
from .models import ResourceKind

logger = logging.getLogger(__name__)

CONFLICT_MARKERS = ("already exists", "already in use")
QUOTA_MARKERS = (
    "quota", "no space left", "not enough space", "out of space", "insufficient storage", "insufficient space",
)
FATAL_MARKERS = ("parameter verification failed", "shrinking disks is not supported", "does not exist")


def classify_error(status_code: int, message: str) -> Optional[PlatformError]:
    """Map a failed response to a non-retryable error, None when it is transient"""
    lowered = message.lower()
    if status_code in (401, 403):
        return PlatformAuthError(message, status_code)
    if any(marker in lowered for marker in CONFLICT_MARKERS):
        return ResourceConflict(message, status_code)
    if any(marker in lowered for marker in QUOTA_MARKERS):
        return QuotaExceeded(message, status_code)
    if any(marker in lowered for marker in FATAL_MARKERS):
        return PlatformError(message, status_code)
    if status_code == 429 or status_code >= 500:
        return None
    return PlatformError(message, status_code)


class ProxmoxAPI:
    """Proxmox API session authenticated with a PVEAPIToken"""

    def __init__(self, settings: ProxmoxSettings, credentials: ApiCredentials,
                 retry: Optional[RetrySettings] = None,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.retry = retry or RetrySettings()
        self.sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": credentials.header,
            "Accept": "application/json",
        })
        self.session.verify = settings.verify_ssl
        self._token_label = str(credentials)
        if not settings.verify_ssl:
            # Homelab nodes usually run with the self-signed pve-ssl certificate
            urllib3.disable_warnings(category=InsecureRequestWarning)

    def __repr__(self):
        return f"<ProxmoxAPI {self.settings.base_url} token={self._token_label}>"

    # === TRANSPORT ===

    def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                data: Optional[Dict[str, Any]] = None, max_attempts: Optional[int] = None) -> Any:
        """Issue one API call, retrying transient failures with backoff"""
        url = f"{self.settings.base_url}{path}"
        attempts = max_attempts or self.retry.max_attempts
        last_error = "no attempt made"

        for attempt in range(1, attempts + 1):
            retry_after = 0.0
            try:
                response = self.session.request(
                    method, url, params=params, data=data,
                    timeout=self.settings.request_timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                if response.ok:
                    try:
                        return response.json().get("data")
                    except ValueError as e:
                        raise PlatformError(f"{method} {path}: invalid JSON response", response.status_code) from e

                message = self._error_message(method, path, response)
                error = classify_error(response.status_code, message)
                if error is not None:
                    raise error
                last_error = message
                retry_after = self._retry_after(response)

            if attempt < attempts:
                delay = max(self.retry.delay(attempt), min(retry_after, self.retry.max_delay))
                logger.warning(
                    f"{method} {path} failed (attempt {attempt}/{attempts}): {last_error} - retrying in {delay:.1f}s"
                )
                self.sleep(delay)

        raise PlatformUnavailable(f"{method} {path} failed after {attempts} attempt(s): {last_error}")

    @staticmethod
    def _error_message(method: str, path: str, response: requests.Response) -> str:
        detail = response.reason or ""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            if body.get("errors"):
                detail = f"{detail} {body['errors']}".strip()
            elif body.get("message"):
                detail = f"{detail} {body['message']}".strip()
        elif response.text:
            detail = f"{detail} {response.text[:200]}".strip()
        return f"{method} {path}: HTTP {response.status_code} {detail}".strip()

    @staticmethod
    def _retry_after(response: requests.Response) -> float:
        value = response.headers.get("Retry-After")
        try:
            return float(value) if value else 0.0
        except ValueError:
            return 0.0

    def get(self, path: str, **kwargs) -> Any:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, data: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return self.request("POST", path, data=data, **kwargs)

    def put(self, path: str, data: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return self.request("PUT", path, data=data, **kwargs)

    # === CLUSTER ===

    def version(self) -> Dict[str, Any]:
        return self.get("/version")

    def list_resources(self) -> List[Dict[str, Any]]:
        """All guests (VMs, containers and templates) across the cluster"""
        return self.get("/cluster/resources", params={"type": "vm"}) or []

    def find_resource(self, vmid: int) -> Optional[Dict[str, Any]]:
        for entry in self.list_resources():
            if int(entry.get("vmid", -1)) == int(vmid):
                return entry
        return None

    # === GUESTS ===

    def clone_vm(self, node: str, template_vmid: int, newid: int, name: str,
                 target: Optional[str] = None, storage: Optional[str] = None) -> str:
        """Full clone of a template, returns the task UPID"""
        data: Dict[str, Any] = {"newid": newid, "name": name, "full": 1}
        if target and target != node:
            data["target"] = target
        if storage:
            data["storage"] = storage
        return self.post(f"/nodes/{node}/qemu/{template_vmid}/clone", data=data)

    def vm_config(self, node: str, vmid: int) -> Dict[str, Any]:
        return self.get(f"/nodes/{node}/qemu/{vmid}/config") or {}

    def configure_vm(self, node: str, vmid: int, **options) -> Optional[str]:
        return self.post(f"/nodes/{node}/qemu/{vmid}/config", data=options)

    def resize_disk(self, node: str, vmid: int, disk: str, size: str) -> Optional[str]:
        return self.put(f"/nodes/{node}/qemu/{vmid}/resize", data={"disk": disk, "size": size})

    def create_container(self, node: str, vmid: int, **options) -> str:
        data = dict(options, vmid=vmid)
        return self.post(f"/nodes/{node}/lxc", data=data)

    def start(self, node: str, kind: ResourceKind, vmid: int) -> str:
        return self.post(f"/nodes/{node}/{kind.api_type}/{vmid}/status/start")

    def current_status(self, node: str, kind: ResourceKind, vmid: int) -> Dict[str, Any]:
        return self.get(f"/nodes/{node}/{kind.api_type}/{vmid}/status/current") or {}

    # === TASKS ===

    def task_status(self, node: str, upid: str) -> Dict[str, Any]:
        return self.get(f"/nodes/{node}/tasks/{upid}/status") or {}

    def wait_for_task(self, node: str, upid: Optional[str], timeout: Optional[float] = None,
                      poll_interval: Optional[float] = None,
                      clock: Callable[[], float] = time.monotonic) -> Dict[str, Any]:
        """Block until a platform task stops; raise if it did not end OK"""
        if not upid:
            return {}
        timeout = self.settings.task_timeout if timeout is None else timeout
        poll_interval = self.settings.task_poll_interval if poll_interval is None else poll_interval
        deadline = clock() + timeout

        while True:
            status = self.task_status(node, upid)
            if status.get("status") == "stopped":
                exitstatus = status.get("exitstatus", "")
                if exitstatus == "OK":
                    return status
                message = f"Task {upid} failed: {exitstatus}"
                raise classify_error(500, message) or PlatformError(message)
            if clock() >= deadline:
                raise PlatformUnavailable(f"Task {upid} still running after {timeout:.0f}s")
            self.sleep(poll_interval)

    # === DISCOVERY ===

    def agent_network_interfaces(self, node: str, vmid: int) -> List[Dict[str, Any]]:
        """QEMU guest agent network-get-interfaces (single attempt)"""
        data = self.get(f"/nodes/{node}/qemu/{vmid}/agent/network-get-interfaces", max_attempts=1)
        if isinstance(data, dict):
            return data.get("result", []) or []
        return data or []

    def container_interfaces(self, node: str, vmid: int) -> List[Dict[str, Any]]:
        """LXC interface listing (single attempt)"""
        return self.get(f"/nodes/{node}/lxc/{vmid}/interfaces", max_attempts=1) or []
