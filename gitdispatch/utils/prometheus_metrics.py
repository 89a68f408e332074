"""
Prometheus Metrics Integration

Counters and gauges for the watch/dispatch pipeline. The exporter is only
started when a metrics port is configured.
"""

import logging
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

CHANGES_DETECTED = Counter(
    "git_dispatch_changes_detected_total",
    "Total number of branch tip changes delivered",
)

POLL_FAILURES = Counter(
    "git_dispatch_poll_failures_total",
    "Total number of repository polls that failed",
    ["operation"],  # clone, fetch, checkout, pull, state
)

REGISTERED_REPOSITORIES = Gauge(
    "git_dispatch_registered_repositories",
    "Number of repositories registered with the watcher",
)

TASKS_DISPATCHED = Counter(
    "git_dispatch_tasks_total",
    "Total number of tasks that reached a terminal status",
    ["outcome"],  # success, failed, render_failed
)

STAGE_DURATION = Histogram(
    "git_dispatch_stage_duration_seconds",
    "Time spent in each dispatch stage",
    ["stage"],
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120],
)

ERRORS_REPORTED = Counter(
    "git_dispatch_errors_reported_total",
    "Background errors reported",
    ["delivery"],  # sink, log
)


@contextmanager
def track_stage(stage: str) -> Iterator[None]:
    """Observe the duration of a dispatch stage, successful or not."""
    start = time.perf_counter()
    try:
        yield
    finally:
        STAGE_DURATION.labels(stage=stage).observe(time.perf_counter() - start)


def setup_prometheus(port: Optional[int]) -> bool:
    """Start the metrics exporter when a port is configured."""
    if not port:
        return False
    start_http_server(port)
    logger.info(f"Prometheus metrics exposed on :{port}")
    return True
