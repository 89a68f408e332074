"""
Best-effort error reporting for background loops.

Failures are offered to an error sink queue for a bounded time; when no sink
is attached or it stays full, the error is written to the log instead so a
stalled consumer never blocks the caller.
"""

import logging
import queue
import threading
from typing import Optional

from gitdispatch.entities import ErrorReport
from gitdispatch.utils.prometheus_metrics import ERRORS_REPORTED

logger = logging.getLogger(__name__)


def report_error(
    exc: BaseException,
    sink: Optional[queue.Queue],
    repo_url: Optional[str] = None,
    timeout: float = 1.0,
) -> None:
    report = ErrorReport(
        message=str(exc),
        repo_url=repo_url,
        exc_type=type(exc).__name__,
    )
    if sink is not None:
        try:
            sink.put(report, timeout=timeout)
            ERRORS_REPORTED.labels(delivery="sink").inc()
            return
        except queue.Full:
            pass
    ERRORS_REPORTED.labels(delivery="log").inc()
    logger.error(f"error sending report: {report.exc_type}: {report.message} (repo={repo_url})")


class ErrorSink:
    """Drains error reports into the log until stopped."""

    def __init__(self, maxsize: int = 1):
        self.queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="error-sink", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                report = self.queue.get(timeout=0.2)
            except queue.Empty:
                continue
            if report is None:
                continue
            logger.warning(f"{report.exc_type}: {report.message} (repo={report.repo_url})")
