"""
Seeding a task volume claim with the checked out source.

The checkout is packed into a gzipped tar on the watcher host, then streamed
into a short lived pod that mounts the claim and unpacks it there. The job
mounting the same claim afterwards finds the source at the claim root.
"""

import logging
import os
import tarfile
from typing import List, Optional

from kubernetes.client.exceptions import ApiException
from kubernetes.stream import stream
from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

logger = logging.getLogger(__name__)

COPY_POD_NAME = "copy-pod"
COPY_CONTAINER = "alpine"
COPY_MOUNT_PATH = "/data"
ARCHIVE_CHUNK_SIZE = 64 * 1024

BOUND_PHASE = "Bound"
RUNNING_PHASE = "Running"


class VolumeBindTimeout(Exception):
    """Raised when a claim is not Bound within the wait."""


class CopyPodError(Exception):
    """Raised when the copy pod does not start or the unpack fails."""


def _wait_for(check, timeout: float, poll_interval: float) -> bool:
    retryer = Retrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(poll_interval),
        retry=retry_if_result(lambda done: not done),
    )
    try:
        retryer(check)
    except RetryError:
        return False
    return True


def wait_for_volume_bound(
    core, namespace: str, name: str, timeout: float, poll_interval: float = 1.0
) -> str:
    """
    Wait for a claim to reach the Bound phase.

    Returns:
        The claim's bound capacity, empty when the cluster does not report one

    Raises:
        ApiException: when the claim cannot be read
        VolumeBindTimeout: when it is still unbound after `timeout`
    """
    state = {}

    def _bound() -> bool:
        claim = core.read_namespaced_persistent_volume_claim(name, namespace)
        status = claim.status
        state["phase"] = getattr(status, "phase", None)
        state["capacity"] = (getattr(status, "capacity", None) or {}).get("storage", "")
        return state["phase"] == BOUND_PHASE

    if not _wait_for(_bound, timeout, poll_interval):
        raise VolumeBindTimeout(
            f"volume claim {name} not bound within {timeout}s (phase={state.get('phase')})"
        )
    return str(state["capacity"] or "")


def create_archive(src: str, dst: str) -> int:
    """
    Pack the contents of src into a gzipped tar at dst.

    Member names are relative to src so unpacking lands at the target root.

    Returns:
        Size of the archive in bytes
    """
    with tarfile.open(dst, "w:gz") as archive:
        for entry in sorted(os.listdir(src)):
            archive.add(os.path.join(src, entry), arcname=entry)
    return os.path.getsize(dst)


def copy_pod_body(name: str, claim: str, image: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "labels": {"app": name}},
        "spec": {
            "restartPolicy": "Never",
            "containers": [
                {
                    "name": COPY_CONTAINER,
                    "image": image,
                    "imagePullPolicy": "IfNotPresent",
                    "securityContext": {"privileged": False},
                    "command": ["/bin/sleep"],
                    "args": ["1d"],
                    "volumeMounts": [{"name": "data", "mountPath": COPY_MOUNT_PATH}],
                }
            ],
            "volumes": [{"name": "data", "persistentVolumeClaim": {"claimName": claim}}],
        },
    }


def start_copy_pod(
    core,
    namespace: str,
    claim: str,
    image: str = "alpine",
    timeout: float = 10.0,
    poll_interval: float = 0.5,
    name: str = COPY_POD_NAME,
) -> str:
    """Start a pod mounting the claim and wait for it to run."""
    core.create_namespaced_pod(namespace, copy_pod_body(name, claim, image))

    state = {}

    def _running() -> bool:
        pod = core.read_namespaced_pod(name, namespace)
        state["phase"] = getattr(pod.status, "phase", None)
        return state["phase"] == RUNNING_PHASE

    if not _wait_for(_running, timeout, poll_interval):
        phase = state.get("phase")
        raise CopyPodError(f"pod {name} not started within {timeout}s (phase={phase})")
    return name


def unpack_into_pod(
    core,
    namespace: str,
    pod: str,
    archive_path: str,
    target: str = COPY_MOUNT_PATH,
) -> None:
    """Stream a local gzipped tar into the pod and unpack it under target."""
    resp = stream(
        core.connect_get_namespaced_pod_exec,
        pod,
        namespace,
        container=COPY_CONTAINER,
        command=["tar", "-xzf", "-", "-C", target],
        stderr=True,
        stdin=True,
        stdout=True,
        tty=False,
        _preload_content=False,
    )
    errors: List[str] = []
    sent = False
    try:
        with open(archive_path, "rb") as archive:
            while resp.is_open():
                resp.update(timeout=1)
                if resp.peek_stdout():
                    logger.debug(f"{pod}: {resp.read_stdout()}")
                if resp.peek_stderr():
                    errors.append(resp.read_stderr())
                chunk = archive.read(ARCHIVE_CHUNK_SIZE)
                if not chunk:
                    sent = True
                    break
                resp.write_stdin(chunk)
    finally:
        resp.close()

    if errors:
        raise CopyPodError(f"unpacking into {pod} failed: {''.join(errors).strip()}")
    if not sent:
        raise CopyPodError(f"exec stream to {pod} closed before the archive was sent")


def delete_pod(core, namespace: str, name: str = COPY_POD_NAME) -> None:
    core.delete_namespaced_pod(name, namespace, grace_period_seconds=0)


def seed_volume(
    core,
    namespace: str,
    claim: str,
    source_dir: str,
    image: str = "alpine",
    pod_start_timeout: float = 10.0,
    poll_interval: float = 0.5,
) -> int:
    """
    Copy source_dir into the claim through a temporary pod.

    The archive and the pod are removed whether or not the copy succeeds.

    Returns:
        Size of the transferred archive in bytes
    """
    archive_path = source_dir.rstrip(os.sep) + ".tar.gz"
    pod: Optional[str] = None
    try:
        size = create_archive(source_dir, archive_path)
        pod = COPY_POD_NAME
        start_copy_pod(
            core,
            namespace,
            claim,
            image=image,
            timeout=pod_start_timeout,
            poll_interval=poll_interval,
            name=pod,
        )
        unpack_into_pod(core, namespace, pod, archive_path)
        return size
    finally:
        if os.path.exists(archive_path):
            os.remove(archive_path)
        if pod is not None:
            try:
                delete_pod(core, namespace, pod)
            except ApiException as e:
                if e.status != 404:
                    logger.warning(f"Could not delete pod {pod} in {namespace}: {e.reason}")
