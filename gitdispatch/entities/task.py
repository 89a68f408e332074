"""Task specifications, runtime task state and dispatch status events."""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from gitdispatch.entities.enums import DispatchStage, Severity
from gitdispatch.entities.manifest import JobManifest, SecretManifest, ServiceManifest


class TaskSpec(BaseModel):
    """
    Fully rendered description of the cluster resources for one change.

    Owned by the dispatcher once queued and never modified afterwards.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    namespace: str
    source_dir: str
    source_url: str = ""
    commit_hash: str = ""
    env: Dict[str, str] = Field(default_factory=dict)
    job: JobManifest
    secrets: List[SecretManifest] = Field(default_factory=list)
    services: List[ServiceManifest] = Field(default_factory=list)
    volume_claim: Optional[str] = None


class Task:
    """Runtime wrapper tracking one dispatch attempt of a TaskSpec."""

    def __init__(self, spec: TaskSpec) -> None:
        self.spec = spec
        self.first_error: Optional[Exception] = None
        self.volume_name: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.first_error is not None

    def fail(self, exc: Exception) -> Exception:
        if self.first_error is None:
            self.first_error = exc
        return self.first_error


class Status(BaseModel):
    """Ephemeral progress event for a task."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    severity: Severity
    message: str
    stage: Optional[DispatchStage] = None
    terminal: bool = False
    details: Dict[str, str] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.terminal and self.severity == Severity.NOTICE

    def as_payload(self) -> Dict[str, object]:
        """Flat dict suitable for structured logging or publication."""
        payload: Dict[str, object] = {
            "task_id": self.task_id,
            "severity": self.severity.value,
            "message": self.message,
            "terminal": self.terminal,
        }
        if self.stage is not None:
            payload["stage"] = self.stage.value
        payload.update(self.details)
        return payload


class ErrorReport(BaseModel):
    """Failure observed by a background loop, sent to the error sink."""

    model_config = ConfigDict(frozen=True)

    message: str
    repo_url: Optional[str] = None
    exc_type: Optional[str] = None
