"""Routes detected changes through the renderer to the dispatcher."""

import logging
import queue
import threading
import uuid
from typing import Optional

from gitdispatch.entities import Change, DispatchStage, Severity, Status, TaskSpec
from gitdispatch.services.exceptions import RenderError
from gitdispatch.services.job_renderer import JobRenderer
from gitdispatch.services.status_tracker import StatusTracker
from gitdispatch.utils.prometheus_metrics import TASKS_DISPATCHED

logger = logging.getLogger(__name__)

SEND_WAKEUP_SECONDS = 0.2


class ChangeRouter:
    def __init__(
        self,
        renderer: JobRenderer,
        tracker: StatusTracker,
        change_queue: queue.Queue,
        trigger_queue: queue.Queue,
        status_queue: queue.Queue,
        status_send_timeout: float = 0.02,
    ):
        self.renderer = renderer
        self.tracker = tracker
        self.change_queue = change_queue
        self.trigger_queue = trigger_queue
        self.status_queue = status_queue
        self.status_send_timeout = status_send_timeout
        self._thread: Optional[threading.Thread] = None

    def start(self, stop_event: threading.Event) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.run, args=(stop_event,), name="change-router", daemon=True
        )
        self._thread.start()
        return self._thread

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                change = self.change_queue.get(timeout=SEND_WAKEUP_SECONDS)
            except queue.Empty:
                continue
            if change is None:
                break
            spec = self.route(change)
            if spec is not None and not self._forward(spec, stop_event):
                break

    def route(self, change: Change) -> Optional[TaskSpec]:
        """Render a change and record it; render failures become terminal statuses."""
        try:
            spec = self.renderer.render(change)
        except RenderError as e:
            task_id = str(uuid.uuid4())
            logger.error(
                f"Rendering job for {change.source_url}@{change.commit_hash[:12]} failed: {e}"
            )
            TASKS_DISPATCHED.labels(outcome="render_failed").inc()
            self._send_status(
                Status(
                    task_id=task_id,
                    severity=Severity.FATAL,
                    message=str(e),
                    stage=DispatchStage.RENDER,
                    terminal=True,
                    details={"dir": change.local_dir, "commit": change.commit_hash},
                )
            )
            return None

        self.tracker.record(spec.id, spec)
        logger.info(
            f"Task {spec.id} rendered for {change.source_url}@{change.commit_hash[:12]} "
            f"in {spec.namespace}"
        )
        return spec

    def _forward(self, spec: TaskSpec, stop_event: threading.Event) -> bool:
        while not stop_event.is_set():
            try:
                self.trigger_queue.put(spec, timeout=SEND_WAKEUP_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def _send_status(self, status: Status) -> None:
        try:
            self.status_queue.put(status, timeout=self.status_send_timeout)
        except queue.Full:
            logger.warning(f"ID {status.task_id} {status.as_payload()}")
