"""
Status consumer.

Drains the dispatcher's status stream into the log (and optionally Redis),
enriching terminal events with what the tracker knows about the task, and
keeps the terminal outcomes used for the process exit code.
"""

import logging
import queue
import threading
from typing import Optional

from gitdispatch.core.redis import StatusPublisher
from gitdispatch.entities import Status
from gitdispatch.services.status_tracker import StatusTracker

logger = logging.getLogger("gitdispatch.status")


class StatusConsumer:
    def __init__(
        self,
        status_queue: queue.Queue,
        tracker: StatusTracker,
        publisher: Optional[StatusPublisher] = None,
    ):
        self.status_queue = status_queue
        self.tracker = tracker
        self.publisher = publisher
        self.succeeded = 0
        self.failed = 0
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def exit_code(self) -> int:
        with self._lock:
            return 1 if self.failed else 0

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name="status-consumer", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def run(self) -> None:
        """Consume until the dispatcher closes the stream with None."""
        while True:
            status = self.status_queue.get()
            if status is None:
                return
            self.handle(status)

    def handle(self, status: Status) -> None:
        payload = status.as_payload()

        if status.terminal:
            spec, found = self.tracker.lookup(status.task_id)
            if found:
                payload.setdefault("dir", spec.source_dir)
                payload.setdefault("namespace", spec.namespace)
                payload.setdefault("commit", spec.commit_hash)
                self.tracker.forget(status.task_id)
            with self._lock:
                if status.succeeded:
                    self.succeeded += 1
                else:
                    self.failed += 1

        if status.succeeded:
            label = "task completed"
        elif status.terminal:
            label = "task failed"
        else:
            label = "task update"
        fields = " ".join(
            f"{k}={v}" for k, v in payload.items() if k not in ("task_id", "message")
        )
        logger.log(
            status.severity.log_level,
            f"{label} id={status.task_id} {status.message} {fields}",
        )

        if self.publisher is not None:
            self.publisher.publish(status)
