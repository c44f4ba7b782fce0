from __future__ import annotations

import json

from redis.exceptions import ConnectionError as RedisConnectionError

from fielddesk.broadcast import NullBroadcaster, RedisBroadcaster
from fielddesk.use_cases.envelopes import DeliveryHooks


class PublishingRedis:
    def __init__(self, error: Exception | None = None):
        self.published: list[tuple[str, str]] = []
        self._error = error

    def publish(self, channel, message):
        if self._error:
            raise self._error
        self.published.append((channel, message))


def test_redis_broadcaster_publishes_event_envelope() -> None:
    client = PublishingRedis()

    RedisBroadcaster(client, "fielddesk:events")("ticket.created", {"id": "t-1"})

    [(channel, message)] = client.published
    assert channel == "fielddesk:events"
    assert json.loads(message) == {"event": "ticket.created", "payload": {"id": "t-1"}}


def test_redis_broadcaster_swallows_redis_errors() -> None:
    client = PublishingRedis(error=RedisConnectionError("down"))

    RedisBroadcaster(client, "fielddesk:events")("ticket.created", {"id": "t-1"})

    assert client.published == []


def test_null_broadcaster_does_nothing() -> None:
    assert NullBroadcaster()("ticket.created", {}) is None


def test_after_commit_ignores_failing_broadcast_sink(db) -> None:
    def _explode(event, payload):
        raise RuntimeError("sink down")

    DeliveryHooks(broadcast=_explode).after_commit(db, event="ticket.created", payload={"id": "t-1"})
