"""
Fixed-window rate limiting for API endpoints.

Limits are counted per (user, endpoint class). The in-memory backend is
per process; the Redis backend shares counters across workers.
"""

import time
from typing import Protocol

import redis.asyncio as redis

from dnc_engine.shared.exceptions import RateLimitExceededError
from dnc_engine.shared.logging import get_logger

logger = get_logger(__name__)


class RateLimitBackend(Protocol):
    async def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        """Register one hit; return (count in current window, seconds until reset)."""
        ...


class InMemoryRateLimitBackend:
    """Per-process counters keyed by window start."""

    def __init__(self) -> None:
        self._counters: dict[str, tuple[int, int]] = {}

    async def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        now = int(time.time())
        window_start = now - (now % window_seconds)
        start, count = self._counters.get(key, (window_start, 0))
        if start != window_start:
            start, count = window_start, 0
        count += 1
        self._counters[key] = (start, count)
        return count, window_start + window_seconds - now

    def reset(self) -> None:
        self._counters.clear()


class RedisRateLimitBackend:
    """INCR/EXPIRE counters shared by every worker."""

    def __init__(self, client: redis.Redis, prefix: str = "ratelimit") -> None:
        self._client = client
        self._prefix = prefix

    async def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        now = int(time.time())
        window_start = now - (now % window_seconds)
        redis_key = f"{self._prefix}:{key}:{window_start}"
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            pipe.expire(redis_key, window_seconds)
            count, _ = await pipe.execute()
        return int(count), window_start + window_seconds - now


class RateLimiter:
    """Checks one endpoint class against its configured budget."""

    def __init__(self, backend: RateLimitBackend, window_seconds: int) -> None:
        self._backend = backend
        self._window_seconds = window_seconds

    async def check(self, endpoint_class: str, subject: str, limit: int) -> None:
        """Count a request and raise when the window budget is exhausted.

        Raises:
            RateLimitExceededError: If ``limit`` requests were already made
                in the current window.
        """
        count, retry_after = await self._backend.hit(
            f"{endpoint_class}:{subject}", self._window_seconds
        )
        if count > limit:
            logger.warning(
                "Rate limit exceeded",
                extra={
                    "endpoint_class": endpoint_class,
                    "subject": subject,
                    "limit": limit,
                    "count": count,
                },
            )
            raise RateLimitExceededError(
                f"Rate limit of {limit} requests per {self._window_seconds}s exceeded",
                retry_after=max(retry_after, 1),
            )
