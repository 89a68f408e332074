"""
Status publication over Redis pub/sub.

Status events are published as JSON so dashboards or other tooling can follow
task progress without tailing the log.
"""

import json
import logging
from typing import Optional

import redis

from gitdispatch.entities import Status

logger = logging.getLogger(__name__)


class StatusPublisher:
    def __init__(self, client: redis.Redis, channel: str):
        self._client = client
        self.channel = channel

    @classmethod
    def from_url(cls, url: Optional[str], channel: str) -> Optional["StatusPublisher"]:
        if not url:
            return None
        return cls(redis.from_url(url, decode_responses=True), channel)

    def publish(self, status: Status) -> bool:
        """
        Publish a status event.

        Returns:
            True if published successfully, False otherwise
        """
        try:
            message = json.dumps({"type": "TASK_STATUS", "payload": status.as_payload()})
            self._client.publish(self.channel, message)
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to publish status for task {status.task_id}: {e}")
            return False
