"""
Shared enums for entities.
"""

import logging
from enum import Enum


class Severity(str, Enum):
    """Severity carried by dispatch status events."""

    DEBUG = "debug"
    INFO = "info"
    NOTICE = "notice"
    WARNING = "warning"
    ERROR = "error"
    FATAL = "fatal"

    @property
    def log_level(self) -> int:
        return _LOG_LEVELS[self]


_LOG_LEVELS = {
    Severity.DEBUG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.NOTICE: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.FATAL: logging.CRITICAL,
}


class DispatchStage(str, Enum):
    """Provisioning stages, in execution order."""

    RENDER = "render"
    CLEANUP = "cleanup"
    NAMESPACE = "namespace"
    SECRETS = "secrets"
    SERVICES = "services"
    VOLUME = "volume"
    COPY = "copy"
    JOB = "job"
    WATCH = "watch"
    DONE = "done"


class ManifestKind(str, Enum):
    JOB = "Job"
    SECRET = "Secret"
    SERVICE = "Service"
