"""
Kubernetes cluster health verification after the configure phase.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from .errors import HealthCheckError
from .topology import VerifySettings

logger = logging.getLogger(__name__)


@dataclass
class ClusterHealth:
    healthy_nodes: List[str] = field(default_factory=list)
    unhealthy_nodes: List[Tuple[str, str, str]] = field(default_factory=list)   # name, reason, message
    missing_nodes: List[str] = field(default_factory=list)
    unhealthy_pods: List[Tuple[str, str, str]] = field(default_factory=list)    # namespace, name, phase

    @property
    def ok(self) -> bool:
        return not self.unhealthy_nodes and not self.missing_nodes


def core_api(settings: VerifySettings) -> client.CoreV1Api:
    """CoreV1Api bound to the topology's kubeconfig, without touching the global default"""
    try:
        api_client = config.new_client_from_config(config_file=settings.kubeconfig, context=settings.context)
    except (ConfigException, OSError) as e:
        raise HealthCheckError(f"Cannot load kubeconfig {settings.kubeconfig}: {e}") from e
    return client.CoreV1Api(api_client)


def check_node_health(api: client.CoreV1Api, expected: Iterable[str] = ()) -> ClusterHealth:
    """Checks the Ready condition of every node and that expected nodes exist"""
    health = ClusterHealth()
    nodes = api.list_node()
    for node in nodes.items:
        ready = None
        for condition in node.status.conditions or []:
            if condition.type == "Ready":
                ready = condition
        if ready is not None and ready.status == "True":
            health.healthy_nodes.append(node.metadata.name)
        else:
            reason = ready.reason if ready is not None else "NoReadyCondition"
            message = ready.message if ready is not None else ""
            health.unhealthy_nodes.append((node.metadata.name, reason or "", message or ""))

    seen = set(health.healthy_nodes) | {name for name, _, _ in health.unhealthy_nodes}
    health.missing_nodes = sorted(set(expected) - seen)
    return health


def check_pod_health(api: client.CoreV1Api, health: ClusterHealth) -> ClusterHealth:
    pods = api.list_pod_for_all_namespaces()
    for pod in pods.items:
        if pod.status.phase not in ("Running", "Succeeded"):
            health.unhealthy_pods.append((pod.metadata.namespace, pod.metadata.name, pod.status.phase))
    return health


def verify_cluster(settings: VerifySettings, expected: Iterable[str],
                   api: Optional[client.CoreV1Api] = None, include_pods: bool = False) -> ClusterHealth:
    """Raise HealthCheckError unless every expected host is a Ready node"""
    api = api or core_api(settings)
    expected = sorted(expected)
    try:
        health = check_node_health(api, expected)
        if include_pods:
            check_pod_health(api, health)
    except ApiException as e:
        raise HealthCheckError(f"Kubernetes API error: {e.status} {e.reason}") from e

    for name, reason, message in health.unhealthy_nodes:
        logger.warning(f"Node {name} not Ready: {reason} {message}".rstrip())
    for namespace, name, phase in health.unhealthy_pods:
        logger.warning(f"Pod {namespace}/{name} is {phase}")

    if not health.ok:
        problems = [f"{name} not Ready" for name, _, _ in health.unhealthy_nodes]
        problems += [f"{name} missing" for name in health.missing_nodes]
        raise HealthCheckError("Cluster unhealthy: " + ", ".join(problems))

    logger.info(f"✅ All {len(health.healthy_nodes)} Kubernetes node(s) Ready")
    return health
