"""
Decision cache for positive DNC verdicts.

Only "on list" verdicts are ever cached, so an expired or stale key can
never turn into a wrong "clear" answer. Entries are deleted explicitly on
add/remove instead of waiting for the TTL.
"""

import json
import logging
from typing import Any, Protocol

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class DecisionCache(Protocol):
    """Protocol for the verdict cache used by the compliance service."""

    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> bool: ...

    async def delete(self, key: str) -> bool: ...


def decision_cache_key(organization_id: Any, phone_number: str) -> str:
    return f"dnc:{organization_id}:{phone_number}"


class NullDecisionCache:
    """Cache that never stores anything."""

    async def get(self, key: str) -> dict[str, Any] | None:
        return None

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> bool:
        return False

    async def delete(self, key: str) -> bool:
        return True


class RedisDecisionCache:
    """Redis cache client with JSON serialization."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    async def get(self, key: str) -> dict[str, Any] | None:
        """Get value from cache; read errors count as a miss."""
        try:
            value = await self._client.get(key)
            if value:
                return json.loads(value)
            return None
        except (redis.RedisError, ValueError) as e:
            logger.warning("Cache get failed", extra={"cache_key": key, "error": str(e)})
            return None

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> bool:
        """Set value in cache with TTL."""
        try:
            await self._client.setex(key, ttl_seconds, json.dumps(value, default=str))
            return True
        except redis.RedisError as e:
            logger.warning("Cache set failed", extra={"cache_key": key, "error": str(e)})
            return False

    async def delete(self, key: str) -> bool:
        """Delete value from cache.

        A failed delete leaves at most a stale positive verdict, which
        blocks rather than allows, until the TTL runs out.
        """
        try:
            await self._client.delete(key)
            return True
        except redis.RedisError as e:
            logger.warning("Cache delete failed", extra={"cache_key": key, "error": str(e)})
            return False
