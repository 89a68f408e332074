"""
Cluster capability probes.

Detects local single-node cluster variants so job templates can reach the
image registry those variants provision.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

logger = logging.getLogger(__name__)

MINIKUBE_NODE_SELECTOR = "kubernetes.io/hostname=minikube"
MINIKUBE_REGISTRY_PORT = 5000

MICROK8S_REGISTRY_NAMESPACE = "container-registry"
MICROK8S_REGISTRY_SELECTOR = "app=registry"
MICROK8S_REGISTRY_PORT = 32000


class ProbeError(Exception):
    """Raised when a probe gets an unexpected answer from the cluster."""


@dataclass(frozen=True)
class RegistryInfo:
    variant: str
    host: str
    port: int

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


def is_minikube(core) -> bool:
    nodes = core.list_node(label_selector=MINIKUBE_NODE_SELECTOR)
    return len(nodes.items) > 0


def microk8s_registry_pod(core):
    """Return the single running microk8s registry pod."""
    pods = core.list_namespaced_pod(
        MICROK8S_REGISTRY_NAMESPACE, label_selector=MICROK8S_REGISTRY_SELECTOR
    )
    running = [p for p in pods.items if p.status and p.status.phase == "Running"]
    if len(running) > 1:
        raise ProbeError(
            f"too many registry pods inside the {MICROK8S_REGISTRY_NAMESPACE} namespace"
        )
    if not running:
        raise ProbeError(f"{MICROK8S_REGISTRY_NAMESPACE} namespace missing expected pod")
    return running[0]


def _minikube_node_ip(core) -> Optional[str]:
    nodes = core.list_node(label_selector=MINIKUBE_NODE_SELECTOR)
    for node in nodes.items:
        for address in (node.status.addresses or []) if node.status else []:
            if address.type == "InternalIP":
                return address.address
    return None


def detect_registry(core) -> Optional[RegistryInfo]:
    """Registry address for microk8s or minikube clusters, None elsewhere."""
    try:
        pod = microk8s_registry_pod(core)
        host = (pod.status.host_ip if pod.status else None) or "localhost"
        return RegistryInfo(variant="microk8s", host=host, port=MICROK8S_REGISTRY_PORT)
    except (ApiException, HTTPError, ProbeError) as e:
        logger.debug(f"microk8s registry not detected: {e}")

    try:
        if is_minikube(core):
            host = _minikube_node_ip(core) or "localhost"
            return RegistryInfo(variant="minikube", host=host, port=MINIKUBE_REGISTRY_PORT)
    except (ApiException, HTTPError) as e:
        logger.debug(f"minikube not detected: {e}")

    return None
