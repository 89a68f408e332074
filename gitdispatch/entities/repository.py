"""Watched repository registrations and detected changes."""

import queue
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, SecretStr

from gitdispatch.paths import repo_key
from gitdispatch.services.exceptions import RepoArgumentError

DEFAULT_BRANCH = "master"


class RegisteredRepo(BaseModel):
    """A repository tracked by the change watcher. Immutable once registered."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    url: str
    branch: str = DEFAULT_BRANCH
    token: Optional[SecretStr] = None
    notify: queue.Queue

    @property
    def key(self) -> str:
        return repo_key(self.url)


class Change(BaseModel):
    """A new branch tip observed for a repository."""

    model_config = ConfigDict(frozen=True)

    source_url: str
    local_dir: str
    commit_hash: str
    branch: str = DEFAULT_BRANCH


def parse_repo_arg(arg: str) -> Tuple[str, str]:
    """
    Split a `<url>[^<branch>]` argument.

    Returns:
        (url, branch) with the branch defaulting to master
    """
    parts = arg.strip().split("^")
    if len(parts) > 2:
        raise RepoArgumentError(f"more than one branch given for {arg!r}")
    url = parts[0].strip()
    if not url:
        raise RepoArgumentError(f"missing repository url in {arg!r}")
    branch = parts[1].strip() if len(parts) == 2 else ""
    return url, branch or DEFAULT_BRANCH
