"""Redis publisher for lifecycle events."""

import logging
from typing import Optional

import redis.asyncio as redis

from orchestrator.models.events import LifecycleEvent

logger = logging.getLogger(__name__)


class RedisPublisher:
    """Publishes lifecycle events to the shared events channel."""

    def __init__(self, redis_url: str, channel: str = "events"):
        self.redis_url = redis_url
        self.channel = channel
        self._client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        logger.info(f"Connected to Redis at {self.redis_url}")

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def publish_event(self, event: LifecycleEvent) -> int:
        """Publish a lifecycle event; returns the number of receivers."""
        if not self._client:
            raise RuntimeError("Not connected to Redis")

        receivers = await self._client.publish(self.channel, event.to_json())
        logger.info(f"Published {event.type.value} for session {event.session_id}")
        return receivers
