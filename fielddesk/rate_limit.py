"""Redis-backed fixed-window counters for code issuance."""
from __future__ import annotations

import logging

import redis
from redis.exceptions import RedisError

from .config import settings
from .domain_errors import RateLimited

logger = logging.getLogger(__name__)


class IssueRateLimiter:
    """At most ``limit`` issue/resend calls per (address, purpose) per window."""

    def __init__(self, client: redis.Redis, *, limit: int, window_seconds: int = 3600):
        self._client = client
        self.limit = limit
        self.window_seconds = window_seconds

    def _incr_with_ttl(self, key: str) -> tuple[int, int]:
        """
        Increment a Redis counter and ensure it has an expiry.
        Returns (value, ttl_remaining_seconds).
        """
        value = self._client.incr(key)
        if value == 1:
            self._client.expire(key, self.window_seconds)
        ttl = self._client.ttl(key)
        if ttl is None or ttl < 0:
            ttl = self.window_seconds
        return int(value), int(ttl)

    def check(self, *, address: str, purpose: str) -> None:
        if self.limit <= 0:
            return
        key = f"codes:rl:issue:{purpose.upper()}:{address}"
        try:
            attempts, ttl = self._incr_with_ttl(key)
        except RedisError:
            # Fail open if Redis is down; codes still expire on their own.
            logger.exception("Redis error during code issue rate limiting (fail-open)")
            return
        if attempts > self.limit:
            raise RateLimited("Too many codes requested, try again later", retry_after=ttl)


_limiter: IssueRateLimiter | None = None


def get_issue_rate_limiter() -> IssueRateLimiter:
    """FastAPI dependency; override it in tests."""
    global _limiter
    if _limiter is None:
        client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        _limiter = IssueRateLimiter(client, limit=settings.OTP_ISSUE_LIMIT_PER_HOUR)
    return _limiter
