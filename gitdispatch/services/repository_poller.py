"""
Repository poller.

Handles, for one registered repository:
- Cloning the working copy on first use
- Fetching and force-checking out the tracked branch
- Fast-forwarding to the remote tip
- Comparing the tip with the last recorded hash
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from gitdispatch.entities import Change, RegisteredRepo
from gitdispatch.paths import get_checkout_path
from gitdispatch.services.exceptions import RepositorySyncError
from gitdispatch.services.repo_state_store import RepoStateStore

logger = logging.getLogger(__name__)

TOKEN_USERNAME = "x-access-token"


def authenticated_url(url: str, token: Optional[str]) -> str:
    """Inject a token into an http(s) clone URL; other schemes are left alone."""
    if not token:
        return url
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit(
        (parts.scheme, f"{TOKEN_USERNAME}:{token}@{host}", parts.path, parts.query, parts.fragment)
    )


class RepositoryPoller:
    """Synchronizes working copies and detects new branch tips."""

    def __init__(self, state_dir: Path, store: RepoStateStore):
        self.state_dir = Path(state_dir)
        self.store = store

    def checkout_path(self, repo: RegisteredRepo) -> Path:
        return get_checkout_path(self.state_dir, repo.key)

    def poll(self, repo: RegisteredRepo) -> Optional[Change]:
        """
        Bring the working copy up to date and compare it with the stored hash.

        Returns:
            A Change when the tip differs from the recorded hash (or nothing
            was recorded yet), otherwise None
        """
        path = self.checkout_path(repo)
        tip = self.sync(repo, path)

        recorded, found = self.store.read(repo.key)
        if found and recorded == tip:
            logger.debug(f"{repo.url}^{repo.branch} unchanged at {tip[:12]}")
            return None

        previous = recorded[:12] if recorded else "nothing"
        logger.info(f"{repo.url}^{repo.branch} moved from {previous} to {tip[:12]}")
        return Change(
            source_url=repo.url,
            local_dir=str(path),
            commit_hash=tip,
            branch=repo.branch,
        )

    def sync(self, repo: RegisteredRepo, path: Path) -> str:
        """Clone if absent, then fetch, force-checkout and pull. Returns the HEAD sha."""
        token = repo.token.get_secret_value() if repo.token else None

        if not path.exists() or not any(path.iterdir()):
            self._clone(repo, path, token)

        try:
            git_repo = Repo(str(path))
        except InvalidGitRepositoryError:
            # Leftovers of an interrupted clone
            logger.warning(f"{path} is not a git working copy, cloning {repo.url} again")
            shutil.rmtree(path, ignore_errors=True)
            self._clone(repo, path, token)
            git_repo = self._open(repo, path)
        except NoSuchPathError as e:
            raise RepositorySyncError(repo.url, "open", f"not a git working copy: {path}") from e

        with git_repo:
            origin = self._run(repo, token, "fetch", lambda: self._fetch(git_repo))
            try:
                remote_ref = origin.refs[repo.branch]
            except IndexError as e:
                raise RepositorySyncError(
                    repo.url, "fetch", f"branch {repo.branch} not found on remote"
                ) from e

            self._run(
                repo,
                token,
                "checkout",
                lambda: git_repo.git.checkout("-f", "-B", repo.branch, remote_ref.name),
            )
            # "Already up to date." exits 0, anything else non-zero is a real failure
            self._run(
                repo,
                token,
                "pull",
                lambda: git_repo.git.pull("--ff-only", origin.name, repo.branch),
            )
            return git_repo.head.commit.hexsha

    def _open(self, repo: RegisteredRepo, path: Path) -> Repo:
        try:
            return Repo(str(path))
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise RepositorySyncError(repo.url, "open", f"not a git working copy: {path}") from e

    def _fetch(self, git_repo: Repo):
        origin = git_repo.remotes.origin
        origin.fetch(prune=True)
        return origin

    def _clone(self, repo: RegisteredRepo, path: Path, token: Optional[str]) -> None:
        logger.info(f"Cloning {repo.url} to {path}")
        clone_url = authenticated_url(repo.url, token)
        try:
            Repo.clone_from(clone_url, str(path), recurse_submodules=True)
        except (GitCommandError, OSError) as e:
            # Clean up failed clone
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
            raise RepositorySyncError(repo.url, "clone", _redact(str(e), token)) from e

    def _run(self, repo: RegisteredRepo, token: Optional[str], operation: str, fn):
        try:
            return fn()
        except (GitCommandError, OSError, ValueError) as e:
            raise RepositorySyncError(repo.url, operation, _redact(str(e), token)) from e


def _redact(text: str, token: Optional[str]) -> str:
    if token:
        return text.replace(token, "***")
    return text
