from .client import KubeClient
from .namespace import (
    NamespaceDeleteTimeout,
    create_namespace,
    delete_namespace,
    trim_namespace,
    word_trim,
)
from .probes import RegistryInfo, detect_registry
from .resources import (
    create_secrets,
    create_services,
    create_volume_claim,
    list_task_resources,
    submit_job,
    volume_claim_name,
)
from .workspace import CopyPodError, VolumeBindTimeout, seed_volume, wait_for_volume_bound

__all__ = [
    "CopyPodError",
    "KubeClient",
    "NamespaceDeleteTimeout",
    "RegistryInfo",
    "VolumeBindTimeout",
    "create_namespace",
    "create_secrets",
    "create_services",
    "create_volume_claim",
    "delete_namespace",
    "detect_registry",
    "list_task_resources",
    "seed_volume",
    "submit_job",
    "trim_namespace",
    "volume_claim_name",
    "wait_for_volume_bound",
    "word_trim",
]
