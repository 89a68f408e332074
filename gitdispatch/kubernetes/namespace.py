"""Namespace naming, creation and deletion."""

import logging
import re

from kubernetes.client.exceptions import ApiException
from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

logger = logging.getLogger(__name__)

# DNS-1123 label limit
MAX_NAMESPACE_LENGTH = 63

_INVALID_CHARS_RE = re.compile(r"[^a-z0-9-]+")


class NamespaceDeleteTimeout(Exception):
    """Raised when a deleted namespace is still present after the wait."""


def word_trim(value: str, delimiter: str, max_len: int) -> str:
    """
    Shorten a delimited name to max_len while keeping its significant parts.

    The first and last words are always kept; words from the middle are added
    left to right while they still fit.
    """
    words = value.split(delimiter)

    if len(words) == 1:
        return words[0][:max_len]

    if len(words[0]) + len(delimiter) + len(words[1]) > max_len:
        return words[0][:max_len]

    output = [words[0], words[-1]]
    gathered = len(output[0]) + len(delimiter) + len(output[1])
    if gathered > max_len:
        return words[0][:max_len]

    for word in words[1:-1]:
        gathered += len(delimiter) + len(word)
        if gathered > max_len:
            break
        output.insert(len(output) - 1, word)

    return delimiter.join(output)


def trim_namespace(name: str) -> str:
    """Make a name usable as a namespace: lowercase DNS label, at most 63 chars."""
    cleaned = _INVALID_CHARS_RE.sub("-", name.lower()).strip("-")
    return word_trim(cleaned, "-", MAX_NAMESPACE_LENGTH).strip("-")


def create_namespace(core, name: str, overwrite: bool) -> bool:
    """
    Create a namespace.

    Returns:
        True when created, False when it already existed and overwrite is set

    Raises:
        ApiException: on any failure, including AlreadyExists without overwrite
    """
    body = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}
    try:
        core.create_namespace(body)
        return True
    except ApiException as e:
        if e.status == 409 and overwrite:
            logger.info(f"Namespace {name} already exists, reusing it")
            return False
        raise


def delete_namespace(core, name: str, timeout: float, poll_interval: float = 1.0) -> bool:
    """
    Delete a namespace with foreground propagation and wait for it to go away.

    Returns:
        False when there was nothing to delete, True once it is gone

    Raises:
        ApiException: when the API rejects the request
        NamespaceDeleteTimeout: when it is still present after `timeout`
    """
    try:
        core.delete_namespace(name, propagation_policy="Foreground")
    except ApiException as e:
        if e.status == 404:
            return False
        raise

    if timeout <= 0:
        return True

    def _gone() -> bool:
        try:
            core.read_namespace(name)
        except ApiException as e:
            if e.status == 404:
                return True
            raise
        return False

    retryer = Retrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(poll_interval),
        retry=retry_if_result(lambda gone: not gone),
    )
    try:
        retryer(_gone)
    except RetryError as e:
        raise NamespaceDeleteTimeout(
            f"could not verify the namespace {name} was deleted within {timeout}s"
        ) from e
    return True
