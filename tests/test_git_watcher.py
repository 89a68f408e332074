"""Tests for the change watcher."""

import queue
import threading
import time
from pathlib import Path

import pytest

from gitdispatch.entities import Change, ErrorReport
from gitdispatch.services.exceptions import (
    DuplicateRepoError,
    InvalidStateDirError,
    MissingChannelError,
    RepositorySyncError,
    StateWriteError,
    WatcherError,
)
from gitdispatch.services.git_watcher import ChangeWatcher
from helpers import SourceRepo


def _drain(q: queue.Queue):
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items


class TestWatcherSetup:
    def test_missing_state_dir_is_rejected(self, tmp_path):
        with pytest.raises(InvalidStateDirError):
            ChangeWatcher(poll_interval=1, state_dir=str(tmp_path / "missing"))

    def test_scratch_dir_is_owned_and_removed_on_stop(self):
        watcher = ChangeWatcher(poll_interval=1)
        scratch = watcher.state_dir

        assert watcher.owns_storage
        assert scratch.is_dir()

        assert watcher.stop(timeout=1.0) is True
        assert not scratch.exists()

    def test_caller_state_dir_is_kept_on_stop(self, state_dir):
        watcher = ChangeWatcher(poll_interval=1, state_dir=str(state_dir))

        watcher.stop(timeout=1.0)

        assert not watcher.owns_storage
        assert state_dir.is_dir()

    def test_registration_requires_a_queue(self, state_dir):
        watcher = ChangeWatcher(poll_interval=1, state_dir=str(state_dir))

        with pytest.raises(MissingChannelError):
            watcher.add("https://github.com/example/project.git", "master", None, None)

    def test_duplicate_registration_leaves_original_untouched(self, state_dir):
        watcher = ChangeWatcher(poll_interval=1, state_dir=str(state_dir))
        first_queue = queue.Queue()
        original = watcher.add("https://github.com/example/project.git", "main", None, first_queue)

        with pytest.raises(DuplicateRepoError):
            watcher.add("https://github.com/example/project.git", "dev", "token", queue.Queue())

        (registered,) = watcher.snapshot()
        assert registered is original
        assert registered.branch == "main"
        assert registered.notify is first_queue

    def test_branch_defaults_to_master(self, state_dir):
        watcher = ChangeWatcher(poll_interval=1, state_dir=str(state_dir))

        repo = watcher.add("https://github.com/example/project.git", None, None, queue.Queue())

        assert repo.branch == "master"

    def test_start_twice_is_rejected(self, state_dir):
        watcher = ChangeWatcher(poll_interval=60, state_dir=str(state_dir), first_tick_delay=60)
        watcher.start()
        try:
            with pytest.raises(WatcherError):
                watcher.start()
        finally:
            watcher.stop(timeout=1.0)


class TestWatcherTicks:
    def test_first_tick_emits_exactly_one_change(self, source_repo, state_dir):
        watcher = ChangeWatcher(poll_interval=1, state_dir=str(state_dir))
        notify = queue.Queue()
        watcher.add(source_repo.url, "master", None, notify)

        assert watcher.tick() == 1

        (change,) = _drain(notify)
        assert isinstance(change, Change)
        assert change.commit_hash == source_repo._git("rev-parse", "HEAD").strip()

    def test_unchanged_tip_emits_nothing(self, source_repo, state_dir):
        watcher = ChangeWatcher(poll_interval=1, state_dir=str(state_dir))
        notify = queue.Queue()
        watcher.add(source_repo.url, "master", None, notify)
        watcher.tick()
        _drain(notify)

        assert watcher.tick() == 0
        assert _drain(notify) == []

    def test_new_commit_emits_new_change(self, source_repo, state_dir):
        watcher = ChangeWatcher(poll_interval=1, state_dir=str(state_dir))
        notify = queue.Queue()
        watcher.add(source_repo.url, "master", None, notify)
        watcher.tick()
        _drain(notify)

        tip = source_repo.commit("second")
        watcher.tick()

        (change,) = _drain(notify)
        assert change.commit_hash == tip

    def test_main_branch_scenario(self, tmp_path, state_dir):
        """Test that a `main` branch is checked out and its tip recorded."""
        origin = SourceRepo(tmp_path / "main-origin", branch="main")
        tip = origin.commit("initial")
        watcher = ChangeWatcher(poll_interval=1, state_dir=str(state_dir))
        notify = queue.Queue()
        repo = watcher.add(origin.url, "main", None, notify)

        watcher.tick()

        (change,) = _drain(notify)
        assert change.branch == "main"
        assert change.commit_hash == tip
        assert Path(change.local_dir) == state_dir / repo.key
        assert (state_dir / f"{repo.key}.last").read_text() == tip

    def test_truncated_state_file_redelivers(self, source_repo, state_dir):
        watcher = ChangeWatcher(poll_interval=1, state_dir=str(state_dir))
        notify = queue.Queue()
        repo = watcher.add(source_repo.url, "master", None, notify)
        watcher.tick()
        (first,) = _drain(notify)

        (state_dir / f"{repo.key}.last").write_text("")
        watcher.tick()

        (second,) = _drain(notify)
        assert second.commit_hash == first.commit_hash

    def test_unrecorded_change_is_delivered_again(self, source_repo, state_dir):
        errors = queue.Queue(maxsize=4)
        watcher = ChangeWatcher(poll_interval=1, state_dir=str(state_dir), error_sink=errors)
        notify = queue.Queue()
        watcher.add(source_repo.url, "master", None, notify)
        real_write = watcher.store.write

        def failing_write(key, commit_hash):
            raise StateWriteError(f"could not record {commit_hash}: disk full")

        watcher.store.write = failing_write
        assert watcher.tick() == 1
        (first,) = _drain(notify)
        (report,) = _drain(errors)
        assert report.exc_type == "StateWriteError"

        watcher.store.write = real_write
        assert watcher.tick() == 1
        (second,) = _drain(notify)
        assert second.commit_hash == first.commit_hash

        assert watcher.tick() == 0
        assert _drain(notify) == []

    def test_sync_failure_is_reported_and_other_repos_still_polled(
        self, tmp_path, source_repo, state_dir
    ):
        errors = queue.Queue(maxsize=4)
        watcher = ChangeWatcher(poll_interval=1, state_dir=str(state_dir), error_sink=errors)
        broken = queue.Queue()
        healthy = queue.Queue()
        watcher.add(str(tmp_path / "missing-origin"), "master", None, broken)
        watcher.add(source_repo.url, "master", None, healthy)

        assert watcher.tick() == 1

        (report,) = _drain(errors)
        assert isinstance(report, ErrorReport)
        assert report.exc_type == "RepositorySyncError"
        assert report.repo_url == str(tmp_path / "missing-origin")
        assert _drain(broken) == []
        assert len(_drain(healthy)) == 1


class _SlowPoller:
    def __init__(self, delay):
        self.delay = delay
        self.entered = threading.Event()

    def poll(self, repo):
        self.entered.set()
        time.sleep(self.delay)
        return None


class _FailingPoller:
    def poll(self, repo):
        raise RepositorySyncError(repo.url, "fetch", "remote hung up")


class TestWatcherStop:
    def test_stop_during_tick_is_forced(self, state_dir):
        watcher = ChangeWatcher(poll_interval=60, state_dir=str(state_dir), first_tick_delay=0)
        watcher.poller = _SlowPoller(delay=1.0)
        watcher.add("https://github.com/example/project.git", "master", None, queue.Queue())

        watcher.start()
        assert watcher.poller.entered.wait(timeout=5)

        assert watcher.stop(timeout=0.05) is False

    def test_forced_stop_keeps_scratch_dir(self, caplog):
        watcher = ChangeWatcher(poll_interval=60, first_tick_delay=0)
        scratch = watcher.state_dir
        watcher.poller = _SlowPoller(delay=1.0)
        watcher.add("https://github.com/example/project.git", "master", None, queue.Queue())

        watcher.start()
        assert watcher.poller.entered.wait(timeout=5)

        with caplog.at_level("WARNING"):
            assert watcher.stop(timeout=0.05) is False

        assert scratch.is_dir()
        assert "still busy" in caplog.text
        watcher.stop(timeout=5.0)
        assert not scratch.exists()

    def test_stop_between_ticks_is_orderly(self, state_dir):
        watcher = ChangeWatcher(poll_interval=60, state_dir=str(state_dir), first_tick_delay=0)
        watcher.poller = _SlowPoller(delay=0)
        watcher.add("https://github.com/example/project.git", "master", None, queue.Queue())

        watcher.start()
        assert watcher.poller.entered.wait(timeout=5)
        time.sleep(0.1)

        assert watcher.stop(timeout=2.0) is True
        assert not watcher.running

    def test_unreported_error_falls_back_to_log(self, state_dir, caplog):
        watcher = ChangeWatcher(poll_interval=1, state_dir=str(state_dir))
        watcher.poller = _FailingPoller()
        watcher.add("https://github.com/example/project.git", "master", None, queue.Queue())

        with caplog.at_level("ERROR"):
            watcher.tick()

        assert "remote hung up" in caplog.text
