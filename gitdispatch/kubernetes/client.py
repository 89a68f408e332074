"""
Cluster API access.

One KubeClient wraps a single ApiClient shared by every API group. The
underlying urllib3 pool is safe for concurrent use, so the same handle serves
both the dispatcher and the cluster probes.
"""

import logging
from typing import Optional

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

from gitdispatch.services.exceptions import KubernetesUnavailableError

logger = logging.getLogger(__name__)


class KubeClient:
    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.core = client.CoreV1Api(api_client)
        self.batch = client.BatchV1Api(api_client)

    @classmethod
    def from_environment(cls, kubeconfig: Optional[str] = None) -> "KubeClient":
        """
        Load in-cluster credentials, falling back to a kubeconfig file.

        The kubeconfig defaults to $KUBECONFIG, then ~/.kube/config.
        """
        configuration = client.Configuration()
        try:
            config.load_incluster_config(client_configuration=configuration)
            logger.info("Using in-cluster Kubernetes configuration")
        except ConfigException:
            try:
                config.load_kube_config(
                    config_file=kubeconfig, client_configuration=configuration
                )
            except (ConfigException, OSError, TypeError) as e:
                raise KubernetesUnavailableError(f"kubernetes not detected: {e}") from e
            logger.info("Using kubeconfig Kubernetes configuration")
        return cls(client.ApiClient(configuration))

    def close(self) -> None:
        self.api_client.close()
