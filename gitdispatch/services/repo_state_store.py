"""
Last-seen commit hashes, one plain file per watched repository.

Writes are whole-file overwrites. Content that does not look like a full
commit hash (empty, truncated, garbage) reads as "no prior state", which makes
the watcher redeliver the current tip instead of silently skipping it.
"""

import logging
import os
import re
from pathlib import Path
from typing import Optional, Tuple

from gitdispatch.paths import get_state_file_path
from gitdispatch.services.exceptions import StateWriteError

logger = logging.getLogger(__name__)

# sha1 and sha256 object names
_COMMIT_HASH_RE = re.compile(r"^(?:[0-9a-f]{40}|[0-9a-f]{64})$")


class RepoStateStore:
    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    def path_for(self, key: str) -> Path:
        return get_state_file_path(self.state_dir, key)

    def read(self, key: str) -> Tuple[Optional[str], bool]:
        """
        Read the recorded commit hash for a repository key.

        Returns:
            (hash, found); found is False when the file is missing or unusable
        """
        path = self.path_for(key)
        try:
            content = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None, False
        except OSError as e:
            logger.warning(f"Could not read state file {path}: {e}")
            return None, False

        if not _COMMIT_HASH_RE.match(content):
            if content:
                logger.warning(f"Ignoring malformed state file {path}")
            return None, False
        return content, True

    def write(self, key: str, commit_hash: str) -> None:
        path = self.path_for(key)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(commit_hash)
        except OSError as e:
            raise StateWriteError(f"could not record {commit_hash} in {path}: {e}") from e
