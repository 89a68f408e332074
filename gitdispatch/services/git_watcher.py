"""
Change watcher.

Polls every registered repository on a fixed cadence and delivers a Change on
the repository's notification queue whenever its tracked branch tip moves.
This is meant for environments that cannot receive webhooks.

Delivery is at-least-once: the new hash is only recorded after the Change was
handed over, so a failed write causes the same Change to be delivered again on
the next tick. Consumers must treat Changes as idempotent.
"""

from __future__ import annotations

import logging
import queue
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple

from gitdispatch.entities import DEFAULT_BRANCH, Change, RegisteredRepo
from gitdispatch.services.error_reporting import report_error
from gitdispatch.services.exceptions import (
    DuplicateRepoError,
    InvalidStateDirError,
    MissingChannelError,
    RepositorySyncError,
    StateWriteError,
    TempAllocationError,
    WatcherError,
)
from gitdispatch.services.repo_state_store import RepoStateStore
from gitdispatch.services.repository_poller import RepositoryPoller
from gitdispatch.utils.prometheus_metrics import (
    CHANGES_DETECTED,
    POLL_FAILURES,
    REGISTERED_REPOSITORIES,
)

logger = logging.getLogger(__name__)

# How often a blocked delivery wakes up to check for shutdown
SEND_WAKEUP_SECONDS = 0.2


class ChangeWatcher:
    """
    Caller-owned git watcher with a single background polling thread.

    Repositories are polled one after another within a tick, which bounds
    resource usage at the cost of latency proportional to the watch list.
    """

    def __init__(
        self,
        poll_interval: float,
        state_dir: Optional[str] = None,
        error_sink: Optional[queue.Queue] = None,
        first_tick_delay: float = 1.0,
        error_report_timeout: float = 1.0,
    ):
        """
        Args:
            poll_interval: Seconds between ticks after the first one
            state_dir: Existing directory for checkouts and state files; a
                temporary directory owned by the watcher is used when None
            error_sink: Queue receiving ErrorReport items, optional
            first_tick_delay: Seconds before the first tick
            error_report_timeout: How long to wait on a full error sink
        """
        if state_dir:
            path = Path(state_dir)
            if not path.is_dir():
                raise InvalidStateDirError(str(state_dir))
            self.owns_storage = False
        else:
            try:
                path = Path(tempfile.mkdtemp(prefix="git-watcher"))
            except OSError as e:
                raise TempAllocationError(f"could not allocate a scratch directory: {e}") from e
            self.owns_storage = True

        self.state_dir = path
        self.poll_interval = poll_interval
        self.first_tick_delay = first_tick_delay
        self.error_sink = error_sink
        self.error_report_timeout = error_report_timeout

        self.store = RepoStateStore(self.state_dir)
        self.poller = RepositoryPoller(self.state_dir, self.store)

        self._repos: Dict[str, RegisteredRepo] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add(
        self,
        url: str,
        branch: Optional[str],
        token: Optional[str],
        notify: Optional[queue.Queue],
    ) -> RegisteredRepo:
        """Register a repository; it is polled from the next tick onwards."""
        if notify is None:
            raise MissingChannelError(f"no notification queue supplied for {url}")

        repo = RegisteredRepo(
            url=url,
            branch=branch or DEFAULT_BRANCH,
            token=token or None,
            notify=notify,
        )

        with self._lock:
            if repo.key in self._repos:
                raise DuplicateRepoError(url, repo.key)
            self._repos[repo.key] = repo
            REGISTERED_REPOSITORIES.set(len(self._repos))

        logger.info(f"Watching {url}^{repo.branch}")
        return repo

    def snapshot(self) -> Tuple[RegisteredRepo, ...]:
        """Point-in-time copy of the registrations."""
        with self._lock:
            return tuple(self._repos.values())

    def start(self) -> None:
        if self._thread is not None:
            raise WatcherError("git watcher already started")
        self._thread = threading.Thread(target=self._run, name="git-watcher", daemon=True)
        self._thread.start()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout: float) -> bool:
        """
        Halt the polling loop.

        Waits at most `timeout` seconds for an in-flight tick to finish.

        Returns:
            True for an orderly shutdown, False when the loop was still busy
        """
        self._stop.set()

        orderly = True
        if self._thread is not None:
            self._thread.join(timeout)
            orderly = not self._thread.is_alive()

        if self.owns_storage:
            if orderly:
                shutil.rmtree(self.state_dir, ignore_errors=True)
            else:
                # The polling thread may still be writing there
                logger.warning(f"Leaving {self.state_dir} in place, git watcher still busy")

        return orderly

    def _run(self) -> None:
        # The first pass fires almost immediately, subsequent passes wait
        delay = self.first_tick_delay
        while not self._stop.wait(delay):
            self.tick()
            delay = self.poll_interval
        logger.debug("git watcher loop stopped")

    def tick(self) -> int:
        """
        Poll every registered repository once.

        Returns:
            Number of Changes delivered
        """
        delivered = 0
        for repo in self.snapshot():
            if self._stop.is_set():
                break
            if self._check(repo):
                delivered += 1
        return delivered

    def _check(self, repo: RegisteredRepo) -> bool:
        try:
            change = self.poller.poll(repo)
        except RepositorySyncError as e:
            POLL_FAILURES.labels(operation=e.operation).inc()
            self._report(e, repo)
            return False
        except Exception as e:
            POLL_FAILURES.labels(operation="unknown").inc()
            self._report(e, repo)
            return False

        if change is None:
            return False

        if not self._deliver(repo, change):
            return False
        CHANGES_DETECTED.inc()

        try:
            self.store.write(repo.key, change.commit_hash)
        except StateWriteError as e:
            # Delivered but not recorded: the next tick delivers it again
            POLL_FAILURES.labels(operation="state").inc()
            self._report(e, repo)
        return True

    def _deliver(self, repo: RegisteredRepo, change: Change) -> bool:
        """Blocking send that gives way only to shutdown."""
        while not self._stop.is_set():
            try:
                repo.notify.put(change, timeout=SEND_WAKEUP_SECONDS)
                logger.info(f"updating to {change.commit_hash} for {repo.url}")
                return True
            except queue.Full:
                continue
        return False

    def _report(self, exc: Exception, repo: RegisteredRepo) -> None:
        report_error(exc, self.error_sink, repo_url=repo.url, timeout=self.error_report_timeout)
