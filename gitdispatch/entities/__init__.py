from .enums import DispatchStage, ManifestKind, Severity
from .manifest import (
    MANIFEST_ADAPTER,
    JobManifest,
    Manifest,
    ObjectMeta,
    SecretManifest,
    ServiceManifest,
)
from .repository import DEFAULT_BRANCH, Change, RegisteredRepo, parse_repo_arg
from .task import ErrorReport, Status, Task, TaskSpec

__all__ = [
    "Change",
    "DEFAULT_BRANCH",
    "DispatchStage",
    "ErrorReport",
    "JobManifest",
    "MANIFEST_ADAPTER",
    "Manifest",
    "ManifestKind",
    "ObjectMeta",
    "RegisteredRepo",
    "SecretManifest",
    "ServiceManifest",
    "Severity",
    "Status",
    "Task",
    "TaskSpec",
    "parse_repo_arg",
]
