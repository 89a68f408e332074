from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "git-dispatch"
    APP_VERSION: str = "1.0.0"
    ENV: str = "dev"  # Environment: "dev", "staging", "prod"

    # Git watching
    GITHUB_TOKEN: Optional[str] = None
    STATE_DIR: str = "/tmp/git-watcher"
    POLL_INTERVAL_SECONDS: float = 34.0
    FIRST_TICK_DELAY_SECONDS: float = 1.0  # Fast first check surfaces errors early
    ERROR_REPORT_TIMEOUT_SECONDS: float = 1.0
    SHUTDOWN_GRACE_SECONDS: float = 1.0

    # Job templating
    JOB_TEMPLATE: Optional[str] = None
    NAMESPACE: str = ""  # "" = task id, "generated" = fresh uuid
    TEMPLATE_VALUE_FILES: List[str] = []

    # Kubernetes provisioning
    OVERWRITE_NAMESPACE: bool = False
    NAMESPACE_DELETE_TIMEOUT_SECONDS: float = 30.0
    STATUS_SEND_TIMEOUT_SECONDS: float = 0.02
    VOLUME_SIZE: str = "10Gi"  # "" disables the per-task volume claim
    VOLUME_STORAGE_CLASS: Optional[str] = None
    VOLUME_BIND_TIMEOUT_SECONDS: float = 120.0
    COPY_POD_IMAGE: str = "alpine"  # Needs tar, unpacks the checkout into the claim
    COPY_POD_START_TIMEOUT_SECONDS: float = 60.0
    KUBECONFIG: Optional[str] = None

    # Status publication (Redis pub/sub), disabled when unset
    STATUS_REDIS_URL: Optional[str] = None
    STATUS_CHANNEL: str = "git-dispatch:status"

    # Prometheus exporter, disabled when unset
    METRICS_PORT: Optional[int] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
