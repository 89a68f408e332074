"""
Task dispatcher.

Single consumer that provisions cluster resources for one TaskSpec at a time:

1. best-effort removal of a namespace left over from an earlier run
2. namespace creation
3. secrets
4. services
5. persistent volume claim, waited on until Bound
6. copy of the checkout into the claim through a temporary pod
7. job submission
8. a listing of the pods and volume claims in the namespace

Every stage reports a Status. The first failing stage ends the task with a
terminal failure Status; resources created up to that point are left in place
for inspection. A failed task never stops the loop.
"""

from __future__ import annotations

import json
import logging
import queue
import tarfile
import threading
from typing import Callable, Dict, Optional, TypeVar

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from gitdispatch.entities import DispatchStage, Severity, Status, Task, TaskSpec
from gitdispatch.kubernetes import (
    CopyPodError,
    KubeClient,
    NamespaceDeleteTimeout,
    VolumeBindTimeout,
    create_namespace,
    create_secrets,
    create_services,
    create_volume_claim,
    delete_namespace,
    list_task_resources,
    seed_volume,
    submit_job,
    wait_for_volume_bound,
)
from gitdispatch.services.exceptions import ProvisioningError
from gitdispatch.utils.prometheus_metrics import TASKS_DISPATCHED, track_stage

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures talking to the API server
API_ERRORS = (ApiException, HTTPError, OSError)

# Anything a provisioning stage may fail with
STAGE_ERRORS = API_ERRORS + (VolumeBindTimeout, CopyPodError, tarfile.TarError)

CLOSE_TIMEOUT_SECONDS = 1.0


def describe_api_error(exc: BaseException) -> str:
    if isinstance(exc, ApiException):
        message = exc.reason or ""
        if exc.body:
            try:
                message = json.loads(exc.body).get("message", message)
            except (ValueError, AttributeError):
                pass
        return f"{exc.status} {message}".strip()
    return str(exc)


class TaskDispatcher:
    def __init__(
        self,
        kube: Optional[KubeClient],
        overwrite: bool = False,
        namespace_delete_timeout: float = 30.0,
        status_send_timeout: float = 0.02,
        volume_size: str = "10Gi",
        volume_storage_class: Optional[str] = None,
        volume_bind_timeout: float = 120.0,
        copy_image: str = "alpine",
        copy_pod_timeout: float = 60.0,
        init_failure: Optional[Exception] = None,
        receive_timeout: float = 0.2,
        delete_poll_interval: float = 1.0,
        wait_poll_interval: float = 1.0,
    ):
        """
        Args:
            kube: Cluster handle; None when it could not be created
            overwrite: Tolerate an already existing namespace
            namespace_delete_timeout: Bound on waiting for stale namespace removal
            status_send_timeout: Bound on each status send before logging instead
            volume_size: Claim size; empty disables the volume stage
            volume_storage_class: Storage class for the claim, cluster default when None
            volume_bind_timeout: Bound on waiting for the claim to become Bound
            copy_image: Image of the pod unpacking the checkout into the claim
            copy_pod_timeout: Bound on waiting for that pod to run
            init_failure: Reason the cluster handle is missing, reported per task
            receive_timeout: How often the idle loop checks for shutdown
            delete_poll_interval: Seconds between namespace deletion checks
            wait_poll_interval: Seconds between claim and copy pod phase checks
        """
        self.kube = kube
        self.overwrite = overwrite
        self.namespace_delete_timeout = namespace_delete_timeout
        self.status_send_timeout = status_send_timeout
        self.volume_size = volume_size
        self.volume_storage_class = volume_storage_class
        self.volume_bind_timeout = volume_bind_timeout
        self.copy_image = copy_image
        self.copy_pod_timeout = copy_pod_timeout
        self.init_failure = init_failure
        self.receive_timeout = receive_timeout
        self.delete_poll_interval = delete_poll_interval
        self.wait_poll_interval = wait_poll_interval
        self._thread: Optional[threading.Thread] = None

    def start(
        self,
        stop_event: threading.Event,
        trigger_queue: queue.Queue,
        status_queue: queue.Queue,
    ) -> threading.Thread:
        """Spawn the consumer loop; `None` on status_queue marks its end."""
        self._thread = threading.Thread(
            target=self.run,
            args=(stop_event, trigger_queue, status_queue),
            name="task-dispatcher",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def run(
        self,
        stop_event: threading.Event,
        trigger_queue: queue.Queue,
        status_queue: queue.Queue,
    ) -> None:
        try:
            while not stop_event.is_set():
                try:
                    spec = trigger_queue.get(timeout=self.receive_timeout)
                except queue.Empty:
                    continue
                if spec is None:
                    break
                try:
                    self.dispatch(spec, status_queue)
                except Exception as e:
                    logger.exception(f"Dispatch of task {spec.id} crashed")
                    TASKS_DISPATCHED.labels(outcome="failed").inc()
                    self._send(
                        status_queue,
                        Status(
                            task_id=spec.id,
                            severity=Severity.FATAL,
                            message=f"dispatch crashed: {e}",
                            terminal=True,
                            details={"namespace": spec.namespace, "dir": spec.source_dir},
                        ),
                    )
        finally:
            try:
                status_queue.put(None, timeout=CLOSE_TIMEOUT_SECONDS)
            except queue.Full:
                logger.warning("Status queue full, consumer not notified of dispatcher shutdown")

    def dispatch(self, spec: TaskSpec, status_queue: queue.Queue) -> Task:
        """Provision every resource for one task. Never raises for stage failures."""
        task = Task(spec)
        details = {"namespace": spec.namespace, "dir": spec.source_dir}

        if self.kube is None:
            task.fail(
                self.init_failure
                or ProvisioningError(DispatchStage.NAMESPACE.value, "no cluster client")
            )
            return self._finish_failed(task, status_queue, DispatchStage.NAMESPACE)

        self._send(
            status_queue,
            Status(task_id=spec.id, severity=Severity.INFO, message="running", details=details),
        )

        self._cleanup(task, status_queue)

        core = self.kube.core
        try:
            self._stage(
                task,
                DispatchStage.NAMESPACE,
                lambda: create_namespace(core, spec.namespace, self.overwrite),
            )
            self._progress(task, status_queue, DispatchStage.NAMESPACE, "namespace ready")

            if spec.secrets:
                names = self._stage(
                    task,
                    DispatchStage.SECRETS,
                    lambda: create_secrets(core, spec.namespace, spec.secrets),
                )
                message = f"secrets created: {', '.join(names)}"
                self._progress(task, status_queue, DispatchStage.SECRETS, message)

            if spec.services:
                names = self._stage(
                    task,
                    DispatchStage.SERVICES,
                    lambda: create_services(core, spec.namespace, spec.services),
                )
                message = f"services created: {', '.join(names)}"
                self._progress(task, status_queue, DispatchStage.SERVICES, message)

            if spec.volume_claim and self.volume_size:
                task.volume_name = self._stage(
                    task,
                    DispatchStage.VOLUME,
                    lambda: create_volume_claim(
                        core,
                        spec.namespace,
                        spec.volume_claim,
                        self.volume_size,
                        self.volume_storage_class,
                    ),
                )
                capacity = self._stage(
                    task,
                    DispatchStage.VOLUME,
                    lambda: wait_for_volume_bound(
                        core,
                        spec.namespace,
                        task.volume_name,
                        self.volume_bind_timeout,
                        poll_interval=self.wait_poll_interval,
                    ),
                )
                message = f"volume claim {task.volume_name} bound {capacity}".rstrip()
                self._progress(task, status_queue, DispatchStage.VOLUME, message)

                size = self._stage(
                    task,
                    DispatchStage.COPY,
                    lambda: seed_volume(
                        core,
                        spec.namespace,
                        task.volume_name,
                        spec.source_dir,
                        image=self.copy_image,
                        pod_start_timeout=self.copy_pod_timeout,
                        poll_interval=self.wait_poll_interval,
                    ),
                )
                message = f"source copied into {task.volume_name} ({size} bytes)"
                self._progress(task, status_queue, DispatchStage.COPY, message)

            job_name = self._stage(
                task,
                DispatchStage.JOB,
                lambda: submit_job(self.kube.batch, spec.namespace, spec.job),
            )

            pods, claims = self._stage(
                task, DispatchStage.WATCH, lambda: list_task_resources(core, spec.namespace)
            )
            for pod in pods:
                self._progress(task, status_queue, DispatchStage.WATCH, "pod", details=pod)
            for claim in claims:
                self._progress(task, status_queue, DispatchStage.WATCH, "volume", details=claim)
        except ProvisioningError as e:
            return self._finish_failed(task, status_queue, DispatchStage(e.stage))

        TASKS_DISPATCHED.labels(outcome="success").inc()
        done = dict(details, job=job_name)
        if task.volume_name:
            done["volume"] = task.volume_name
        self._send(
            status_queue,
            Status(
                task_id=spec.id,
                severity=Severity.NOTICE,
                message="success",
                stage=DispatchStage.DONE,
                terminal=True,
                details=done,
            ),
        )
        return task

    def _cleanup(self, task: Task, status_queue: queue.Queue) -> None:
        """Remove a namespace left by a previous run; failures only warn."""
        namespace = task.spec.namespace
        try:
            with track_stage(DispatchStage.CLEANUP.value):
                deleted = delete_namespace(
                    self.kube.core,
                    namespace,
                    self.namespace_delete_timeout,
                    poll_interval=self.delete_poll_interval,
                )
        except (NamespaceDeleteTimeout,) + API_ERRORS as e:
            message = describe_api_error(e)
            logger.warning(f"Cleanup of namespace {namespace} failed: {message}")
            self._progress(
                task,
                status_queue,
                DispatchStage.CLEANUP,
                f"namespace cleanup failed: {message}",
                Severity.WARNING,
            )
            return
        if deleted:
            self._progress(
                task, status_queue, DispatchStage.CLEANUP, f"stale namespace {namespace} removed"
            )

    def _stage(self, task: Task, stage: DispatchStage, fn: Callable[[], T]) -> T:
        with track_stage(stage.value):
            try:
                return fn()
            except STAGE_ERRORS as e:
                error = ProvisioningError(
                    stage.value, describe_api_error(e), namespace=task.spec.namespace
                )
                task.fail(error)
                raise error from e

    def _finish_failed(self, task: Task, status_queue: queue.Queue, stage: DispatchStage) -> Task:
        TASKS_DISPATCHED.labels(outcome="failed").inc()
        self._send(
            status_queue,
            Status(
                task_id=task.spec.id,
                severity=Severity.FATAL,
                message=str(task.first_error),
                stage=stage,
                terminal=True,
                details={"namespace": task.spec.namespace, "dir": task.spec.source_dir},
            ),
        )
        return task

    def _progress(
        self,
        task: Task,
        status_queue: queue.Queue,
        stage: DispatchStage,
        message: str,
        severity: Severity = Severity.INFO,
        details: Optional[Dict[str, str]] = None,
    ) -> None:
        self._send(
            status_queue,
            Status(
                task_id=task.spec.id,
                severity=severity,
                message=message,
                stage=stage,
                details=dict(details or {}, namespace=task.spec.namespace),
            ),
        )

    def _send(self, status_queue: queue.Queue, status: Status) -> None:
        try:
            status_queue.put(status, timeout=self.status_send_timeout)
        except queue.Full:
            logger.warning(f"ID {status.task_id} {status.as_payload()}")
