"""Custom exceptions for the watch and dispatch pipeline."""

from __future__ import annotations

from typing import Optional


class GitDispatchError(Exception):
    """Base exception for pipeline failures."""


class WatcherError(GitDispatchError):
    """Raised for change watcher setup and lifecycle failures."""


class InvalidStateDirError(WatcherError):
    """Raised when a caller-supplied state directory does not exist."""

    def __init__(self, state_dir: str):
        super().__init__(f"state directory does not exist: {state_dir}")
        self.state_dir = state_dir


class TempAllocationError(WatcherError):
    """Raised when a scratch state directory cannot be created."""


class DuplicateRepoError(WatcherError):
    """Raised when a URL is registered twice."""

    def __init__(self, url: str, key: str):
        super().__init__(f"url already present in the git watcher: {url} (key {key})")
        self.url = url
        self.key = key


class MissingChannelError(WatcherError):
    """Raised when a repository is registered without a notification queue."""


class RepositorySyncError(WatcherError):
    """Raised when a clone, fetch, checkout or pull fails for one repository."""

    def __init__(self, url: str, operation: str, message: str):
        super().__init__(f"{operation} failed for {url}: {message}")
        self.url = url
        self.operation = operation


class StateWriteError(WatcherError):
    """Raised when the last-seen commit hash cannot be persisted."""


class RepoArgumentError(GitDispatchError):
    """Raised for malformed `<url>[^<branch>]` arguments."""


class RenderError(GitDispatchError):
    """Base exception for job template rendering."""


class TemplateRenderError(RenderError):
    """Raised when the template cannot be read or evaluated."""


class ManifestValidationError(RenderError):
    """Raised when rendered output is not a valid set of cluster resources."""


class KubernetesUnavailableError(GitDispatchError):
    """Raised when no cluster configuration could be loaded."""


class ProvisioningError(GitDispatchError):
    """Raised when a dispatch stage fails for a task."""

    def __init__(self, stage: str, message: str, namespace: Optional[str] = None):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.namespace = namespace
