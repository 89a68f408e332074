"""
Path definitions for watcher state.

Every watched repository owns two entries inside the state directory, both
named by the repository key (base62 sha256 of the URL):

    <state_dir>/<key>        git working copy
    <state_dir>/<key>.last   last observed commit hash
"""

import hashlib
from pathlib import Path

STATE_SUFFIX = ".last"

_BASE62_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"


def _base62(value: int) -> str:
    if value == 0:
        return _BASE62_ALPHABET[0]
    digits = []
    while value:
        value, rem = divmod(value, 62)
        digits.append(_BASE62_ALPHABET[rem])
    return "".join(reversed(digits))


def repo_key(url: str) -> str:
    """Stable directory key for a repository URL."""
    digest = hashlib.sha256(url.encode("utf-8")).digest()
    return _base62(int.from_bytes(digest, "big"))


def get_checkout_path(state_dir: Path, key: str) -> Path:
    """Get the working copy path for a repository key."""
    return Path(state_dir) / key


def get_state_file_path(state_dir: Path, key: str) -> Path:
    """Get the last-seen commit file for a repository key."""
    return Path(state_dir) / f"{key}{STATE_SUFFIX}"
