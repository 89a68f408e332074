"""In-memory task id -> TaskSpec bookkeeping shared by the dispatch and status loops."""

import threading
from typing import Dict, Optional, Tuple

from gitdispatch.entities import TaskSpec


class StatusTracker:
    def __init__(self) -> None:
        self._tasks: Dict[str, TaskSpec] = {}
        self._lock = threading.Lock()

    def record(self, task_id: str, spec: TaskSpec) -> None:
        with self._lock:
            self._tasks[task_id] = spec

    def lookup(self, task_id: str) -> Tuple[Optional[TaskSpec], bool]:
        with self._lock:
            spec = self._tasks.get(task_id)
        return spec, spec is not None

    def forget(self, task_id: str) -> None:
        with self._lock:
            self._tasks.pop(task_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)
