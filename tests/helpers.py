"""Shared builders for the test suite."""

import subprocess
from pathlib import Path

from gitdispatch.entities import JobManifest, SecretManifest, ServiceManifest, TaskSpec


class SourceRepo:
    """A local git repository acting as the watched remote."""

    def __init__(self, path: Path, branch: str = "master"):
        self.path = path
        self.branch = branch
        path.mkdir(parents=True, exist_ok=True)
        self._git("init")
        self._git("checkout", "-b", branch)
        self._git("config", "user.name", "Test User")
        self._git("config", "user.email", "test@example.com")

    @property
    def url(self) -> str:
        return str(self.path)

    def _git(self, *args: str) -> str:
        return subprocess.run(
            ["git", *args],
            cwd=self.path,
            check=True,
            capture_output=True,
            text=True,
        ).stdout

    def commit(self, message: str) -> str:
        (self.path / "file.txt").write_text(f"content {message}")
        self._git("add", "file.txt")
        self._git("commit", "-m", message)
        return self._git("rev-parse", "HEAD").strip()


def make_job(name: str = "build") -> JobManifest:
    return JobManifest.model_validate(
        {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {"name": name},
            "spec": {
                "template": {
                    "spec": {
                        "containers": [{"name": "build", "image": "builder:latest"}],
                        "restartPolicy": "Never",
                    }
                }
            },
        }
    )


def make_secret(name: str = "creds") -> SecretManifest:
    return SecretManifest.model_validate(
        {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": name},
            "stringData": {"token": "s3cret"},
        }
    )


def make_service(name: str = "cache") -> ServiceManifest:
    return ServiceManifest.model_validate(
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": name},
            "spec": {"ports": [{"port": 6379}]},
        }
    )


def make_spec(task_id: str = "task-1", **overrides) -> TaskSpec:
    fields = {
        "id": task_id,
        "namespace": task_id,
        "source_dir": f"/tmp/git-watcher/{task_id}",
        "source_url": "https://github.com/example/project.git",
        "commit_hash": "a" * 40,
        "job": make_job(),
    }
    fields.update(overrides)
    return TaskSpec(**fields)
