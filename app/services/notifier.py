"""Best-effort domain event fan-out over Redis pub/sub.

Published after the owning transaction commits. Delivery failures are logged
and dropped; no state transition depends on a notification arriving.
"""

import abc
import json
import logging
from datetime import UTC, datetime

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.config import settings
from app.redis import pooled_client

logger = logging.getLogger(__name__)


def assignment_channel(assignment_id: object) -> str:
    return f"assignment:{assignment_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class EventNotifier(abc.ABC):
    @abc.abstractmethod
    async def publish(self, channel: str, event: str, payload: dict) -> None: ...

    async def publish_many(self, channels: list[str], event: str, payload: dict) -> None:
        for channel in channels:
            await self.publish(channel, event, payload)


class RedisEventNotifier(EventNotifier):
    def __init__(self, client: aioredis.Redis | None = None, prefix: str | None = None) -> None:
        self._client = client
        self.prefix = prefix if prefix is not None else settings.notifier_channel_prefix

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = pooled_client()
        return self._client

    async def publish(self, channel: str, event: str, payload: dict) -> None:
        message = json.dumps(
            {"event": event, "data": payload, "timestamp": datetime.now(UTC).isoformat()},
            default=str,
        )
        try:
            await self.client.publish(f"{self.prefix}:{channel}", message)
        except (RedisError, OSError):
            logger.warning("Dropped %s notification on %s", event, channel, exc_info=True)


_notifier: EventNotifier | None = None


def get_notifier() -> EventNotifier:
    global _notifier
    if _notifier is None:
        _notifier = RedisEventNotifier()
    return _notifier
