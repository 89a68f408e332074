"""Secret, service, volume claim and job creation inside a task namespace, and listing."""

import logging
from typing import Iterable, List, Optional, Tuple

from gitdispatch.entities import JobManifest, SecretManifest, ServiceManifest

logger = logging.getLogger(__name__)

VOLUME_ACCESS_MODES = ["ReadWriteMany"]


def create_secrets(core, namespace: str, secrets: Iterable[SecretManifest]) -> List[str]:
    """Create secrets in order; the first API error propagates."""
    created = []
    for secret in secrets:
        core.create_namespaced_secret(namespace, secret.in_namespace(namespace).to_body())
        created.append(secret.display_name)
    return created


def create_services(core, namespace: str, services: Iterable[ServiceManifest]) -> List[str]:
    """Create services in order; the first API error propagates."""
    created = []
    for service in services:
        core.create_namespaced_service(namespace, service.in_namespace(namespace).to_body())
        created.append(service.display_name)
    return created


def volume_claim_name(task_id: str) -> str:
    return f"workspace-{task_id}"[:63].rstrip("-")


def create_volume_claim(
    core,
    namespace: str,
    name: str,
    size: str,
    storage_class: Optional[str] = None,
) -> str:
    spec = {
        "accessModes": VOLUME_ACCESS_MODES,
        "volumeMode": "Filesystem",
        "resources": {"requests": {"storage": size}},
    }
    if storage_class:
        spec["storageClassName"] = storage_class

    body = {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": name, "namespace": namespace},
        "spec": spec,
    }
    core.create_namespaced_persistent_volume_claim(namespace, body)
    return name


def submit_job(batch, namespace: str, job: JobManifest) -> str:
    """
    Submit the job and return its name once the API server accepted it.

    Execution and completion are left to the cluster scheduler.
    """
    created = batch.create_namespaced_job(namespace, job.in_namespace(namespace).to_body())
    metadata = getattr(created, "metadata", None)
    return getattr(metadata, "name", None) or job.display_name


def list_task_resources(core, namespace: str) -> Tuple[List[dict], List[dict]]:
    """
    Describe the pods and volume claims present in a task namespace.

    Returns:
        (pods, claims) as flat dicts ready to use as status details
    """
    pods = [
        {
            "pod_name": pod.metadata.name,
            "node_name": getattr(pod.spec, "node_name", None) or "",
        }
        for pod in core.list_namespaced_pod(namespace).items
    ]
    claims = []
    for claim in core.list_namespaced_persistent_volume_claim(namespace).items:
        requests = getattr(claim.spec.resources, "requests", None) or {}
        claims.append(
            {"volume_name": claim.metadata.name, "capacity": str(requests.get("storage", ""))}
        )
    return pods, claims
