"""git-dispatch command line entry point."""

import argparse
import logging
import queue
import signal
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from pydantic import ValidationError

from gitdispatch import __version__
from gitdispatch.config import Settings
from gitdispatch.core.redis import StatusPublisher
from gitdispatch.entities import parse_repo_arg
from gitdispatch.kubernetes import KubeClient, detect_registry
from gitdispatch.services.change_router import ChangeRouter
from gitdispatch.services.error_reporting import ErrorSink
from gitdispatch.services.exceptions import (
    GitDispatchError,
    KubernetesUnavailableError,
    RepoArgumentError,
)
from gitdispatch.services.git_watcher import ChangeWatcher
from gitdispatch.services.job_renderer import JobRenderer
from gitdispatch.services.status_consumer import StatusConsumer
from gitdispatch.services.status_tracker import StatusTracker
from gitdispatch.services.task_dispatcher import TaskDispatcher
from gitdispatch.utils.prometheus_metrics import setup_prometheus

logger = logging.getLogger("gitdispatch.main")

EXIT_CONFIG_ERROR = 2
EXIT_FORCED_SHUTDOWN = 1

CHANGE_QUEUE_SIZE = 1
TRIGGER_QUEUE_SIZE = 1
STATUS_QUEUE_SIZE = 128

EPILOG = """\
Repositories take the form of a URL followed by an optional caret '^' and
branch name, the branch defaults to master:

  https://github.com/example/project.git
  https://github.com/example/project.git^main

Options can also be given as environment variables (or a .env file) using
the setting names, for example JOB_TEMPLATE or STATE_DIR.
"""


def configure_logging(env: str, verbose: bool) -> None:
    is_dev = env.lower() == "dev"
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.ERROR,
        format=(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
            if is_dev
            else "%(levelname)s | %(message)s"
        ),
        datefmt="%H:%M:%S",
    )
    # Task outcomes are the tool's output and always shown
    logging.getLogger("gitdispatch.status").setLevel(logging.INFO)
    if verbose:
        for noisy in ("urllib3", "kubernetes", "git"):
            logging.getLogger(noisy).setLevel(logging.INFO)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="git-dispatch",
        description="Watch git branches and launch a Kubernetes job for every new commit.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("repos", nargs="*", metavar="URL[^BRANCH]", help="repositories to watch")
    parser.add_argument("--github-token", help="token used to access the watched repositories")
    parser.add_argument(
        "--job-template",
        help="Jinja2 job template rendered for each change, GIT_HOME names the checkout",
    )
    parser.add_argument(
        "--namespace", help="namespace override, 'generated' for a fresh uuid per task"
    )
    parser.add_argument(
        "--persistent-state-dir",
        dest="state_dir",
        help="directory keeping checkouts and the last seen commit of each repository",
    )
    parser.add_argument("--poll-interval", type=float, help="seconds between polls")
    parser.add_argument(
        "--overwrite-namespace",
        action="store_true",
        default=None,
        help="reuse a namespace that already exists instead of failing the task",
    )
    parser.add_argument(
        "--values-file",
        action="append",
        dest="value_files",
        help="YAML or JSON file of template values, may be repeated",
    )
    parser.add_argument(
        "--set",
        action="append",
        dest="overrides",
        metavar="KEY=VALUE",
        help="template value override, may be repeated",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="print internal logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def parse_overrides(items: Optional[Sequence[str]]) -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise RepoArgumentError(f"template override must be KEY=VALUE: {item!r}")
        overrides[key] = value
    return overrides


def load_settings(args: argparse.Namespace) -> Settings:
    """Environment settings with command line flags taking precedence."""
    flags = {
        "GITHUB_TOKEN": args.github_token,
        "JOB_TEMPLATE": args.job_template,
        "NAMESPACE": args.namespace,
        "STATE_DIR": args.state_dir,
        "POLL_INTERVAL_SECONDS": args.poll_interval,
        "OVERWRITE_NAMESPACE": args.overwrite_namespace,
        "TEMPLATE_VALUE_FILES": args.value_files,
    }
    return Settings(**{k: v for k, v in flags.items() if v is not None})


class Application:
    """Owns the pipeline threads and their shared cancellation event."""

    def __init__(self, settings: Settings, repos: List[str], overrides: Dict[str, str]):
        self.settings = settings
        self.stop_event = threading.Event()

        self.change_queue: queue.Queue = queue.Queue(maxsize=CHANGE_QUEUE_SIZE)
        self.trigger_queue: queue.Queue = queue.Queue(maxsize=TRIGGER_QUEUE_SIZE)
        self.status_queue: queue.Queue = queue.Queue(maxsize=STATUS_QUEUE_SIZE)

        self.kube: Optional[KubeClient] = None
        init_failure: Optional[Exception] = None
        try:
            self.kube = KubeClient.from_environment(settings.KUBECONFIG)
        except KubernetesUnavailableError as e:
            logger.error(str(e))
            init_failure = e

        registry = detect_registry(self.kube.core) if self.kube is not None else None
        if registry is not None:
            logger.info(f"Using {registry.variant} registry at {registry.address}")

        self.renderer = JobRenderer(
            settings.JOB_TEMPLATE,
            namespace=settings.NAMESPACE,
            value_files=settings.TEMPLATE_VALUE_FILES,
            overrides=overrides,
            registry=registry,
            volume_claims=bool(settings.VOLUME_SIZE),
        )
        self.tracker = StatusTracker()
        self.error_sink = ErrorSink()
        self.watcher = ChangeWatcher(
            settings.POLL_INTERVAL_SECONDS,
            state_dir=settings.STATE_DIR,
            error_sink=self.error_sink.queue,
            first_tick_delay=settings.FIRST_TICK_DELAY_SECONDS,
            error_report_timeout=settings.ERROR_REPORT_TIMEOUT_SECONDS,
        )
        self.router = ChangeRouter(
            self.renderer,
            self.tracker,
            self.change_queue,
            self.trigger_queue,
            self.status_queue,
            status_send_timeout=settings.STATUS_SEND_TIMEOUT_SECONDS,
        )
        self.dispatcher = TaskDispatcher(
            self.kube,
            overwrite=settings.OVERWRITE_NAMESPACE,
            namespace_delete_timeout=settings.NAMESPACE_DELETE_TIMEOUT_SECONDS,
            status_send_timeout=settings.STATUS_SEND_TIMEOUT_SECONDS,
            volume_size=settings.VOLUME_SIZE,
            volume_storage_class=settings.VOLUME_STORAGE_CLASS,
            volume_bind_timeout=settings.VOLUME_BIND_TIMEOUT_SECONDS,
            copy_image=settings.COPY_POD_IMAGE,
            copy_pod_timeout=settings.COPY_POD_START_TIMEOUT_SECONDS,
            init_failure=init_failure,
        )
        self.consumer = StatusConsumer(
            self.status_queue,
            self.tracker,
            publisher=StatusPublisher.from_url(settings.STATUS_REDIS_URL, settings.STATUS_CHANNEL),
        )

        token = settings.GITHUB_TOKEN
        for arg in repos:
            url, branch = parse_repo_arg(arg)
            self.watcher.add(url, branch, token, self.change_queue)

    def start(self) -> None:
        self.error_sink.start()
        self.consumer.start()
        self.dispatcher.start(self.stop_event, self.trigger_queue, self.status_queue)
        self.router.start(self.stop_event)
        self.watcher.start()

    def request_stop(self, signum=None, frame=None) -> None:
        if signum is not None:
            logger.info(f"Received signal {signum}, shutting down")
        self.stop_event.set()

    def wait(self) -> None:
        while not self.stop_event.wait(0.5):
            pass

    def shutdown(self) -> bool:
        """
        Stop every loop, waiting up to the grace period for each.

        Returns:
            True when the watcher stopped in an orderly fashion
        """
        grace = self.settings.SHUTDOWN_GRACE_SECONDS
        self.stop_event.set()

        orderly = self.watcher.stop(grace)
        if not orderly:
            logger.warning(f"git watch had to force shutdown (timeout={grace}s)")

        self.dispatcher.join(grace)
        self.consumer.join(grace)
        self.error_sink.stop(grace)
        if self.kube is not None:
            self.kube.close()
        return orderly


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args)
    except ValidationError as e:
        print(f"invalid configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    configure_logging(settings.ENV, args.verbose)
    logger.debug(f"{settings.APP_NAME} {settings.APP_VERSION}")

    if not args.repos:
        print("no git repositories were specified", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    if not settings.JOB_TEMPLATE:
        print("a job template is required (--job-template or JOB_TEMPLATE)", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        if settings.STATE_DIR:
            Path(settings.STATE_DIR).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(f"state directory {settings.STATE_DIR} unavailable: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        app = Application(settings, args.repos, parse_overrides(args.overrides))
    except GitDispatchError as e:
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_prometheus(settings.METRICS_PORT)

    signal.signal(signal.SIGINT, app.request_stop)
    signal.signal(signal.SIGTERM, app.request_stop)

    app.start()
    app.wait()

    if not app.shutdown():
        return EXIT_FORCED_SHUTDOWN
    return app.consumer.exit_code


if __name__ == "__main__":
    sys.exit(main())
