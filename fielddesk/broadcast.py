"""Real-time UI feed sink.

Dashboards subscribe to the Redis channel; this side only publishes after a
transition has committed. Publishing is fire-and-forget.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import redis
from redis.exceptions import RedisError

from .config import settings

logger = logging.getLogger(__name__)


class Broadcaster(Protocol):
    def __call__(self, event: str, payload: dict[str, Any]) -> None:
        ...


class NullBroadcaster:
    def __call__(self, event: str, payload: dict[str, Any]) -> None:
        return None


class RedisBroadcaster:
    def __init__(self, client: redis.Redis, channel: str):
        self._client = client
        self.channel = channel

    def __call__(self, event: str, payload: dict[str, Any]) -> None:
        message = json.dumps({"event": event, "payload": payload}, default=str)
        try:
            self._client.publish(self.channel, message)
        except RedisError:
            # Fail open: the UI catches up on its next poll.
            logger.exception("Broadcast of %s failed (ignored)", event)


_broadcaster: Broadcaster | None = None


def get_broadcaster() -> Broadcaster:
    """FastAPI dependency; override it in tests."""
    global _broadcaster
    if _broadcaster is None:
        client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        _broadcaster = RedisBroadcaster(client, settings.BROADCAST_CHANNEL)
    return _broadcaster
