"""Redis pub/sub event bridge.

Delivery is fire-and-forget: publishers get no acknowledgement, and events
published while no listener is subscribed are gone.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import redis.asyncio as redis
from pydantic import ValidationError

from orchestrator.core.config import get_settings
from orchestrator.models.events import EventType, LifecycleEvent

logger = logging.getLogger(__name__)
settings = get_settings()

KNOWN_EVENT_TYPES = {member.value for member in EventType}


def parse_event(raw: Any) -> Optional[LifecycleEvent]:
    """Decode a channel message; None for invalid JSON or unknown event types."""
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning(f"Invalid JSON in event message: {raw!r}")
        return None

    if not isinstance(data, dict) or data.get("type") not in KNOWN_EVENT_TYPES:
        logger.debug(f"Ignoring unrecognized event: {data!r}")
        return None

    try:
        return LifecycleEvent.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Malformed lifecycle event {data!r}: {e}")
        return None


class PubSubService:
    """Service for Redis pub/sub operations."""

    def __init__(self, redis_client: redis.Redis, channel: Optional[str] = None):
        self.redis = redis_client
        self.channel = channel or settings.events_channel

    async def publish_event(self, event: LifecycleEvent) -> int:
        """Publish a lifecycle event; returns the number of receivers."""
        receivers = await self.redis.publish(self.channel, event.to_json())
        if receivers == 0:
            logger.debug(f"No listener received {event.type.value} for session {event.session_id}")
        return receivers

    async def subscribe(self, channel: str) -> AsyncIterator[Any]:
        """Subscribe to a channel and yield raw message payloads."""
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel)

        try:
            async for message in pubsub.listen():
                if message["type"] == "message":
                    yield message["data"]
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()


class EventListener:
    """Consumes lifecycle events and hands each to a handler, in order.

    Events are applied one at a time, so the events of a session take effect
    in the order they arrive on the channel.
    """

    def __init__(
        self,
        pubsub: PubSubService,
        handler: Callable[[LifecycleEvent], Awaitable[Any]],
        reconnect_delay: float = 5.0,
    ):
        self.pubsub = pubsub
        self.handler = handler
        self.reconnect_delay = reconnect_delay
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start listening in the background."""
        if self._task is None:
            self._task = asyncio.create_task(self._listen())
            logger.info(f"Event listener subscribed to '{self.pubsub.channel}'")

    async def stop(self) -> None:
        """Stop listening."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def handle_message(self, raw: Any) -> Optional[LifecycleEvent]:
        """Parse and apply one message; errors are logged, never raised."""
        event = parse_event(raw)
        if event is None:
            return None
        logger.info(
            f"Event: {event.type.value} session={event.session_id}"
            + (f" error={event.error}" if event.error else "")
        )
        try:
            await self.handler(event)
        except Exception as e:
            logger.error(
                f"Failed to apply {event.type.value} for session {event.session_id}: {e}"
            )
        return event

    async def _listen(self) -> None:
        # Events published while reconnecting are lost.
        while True:
            try:
                async for raw in self.pubsub.subscribe(self.pubsub.channel):
                    await self.handle_message(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Event listener connection lost, reconnecting in "
                    f"{self.reconnect_delay}s: {e}"
                )
            await asyncio.sleep(self.reconnect_delay)
