"""
Membership filters answering "definitely absent" or "maybe present".

Four backings share one interface:

- ``BloomMembershipFilter``: in-process Bloom filter, no removal.
- ``SetMembershipFilter``: in-process exact set, supports removal.
- ``RedisBloomMembershipFilter``: RedisBloom ``BF.*`` commands, no removal.
- ``RedisSetMembershipFilter``: plain Redis set, supports removal.

In-process backings are private to one worker; the Redis backings share
state between workers. All of them build a new structure on
:meth:`MembershipFilter.initialize` and only then publish it, so a
concurrent ``check`` never sees a half-built filter.
"""

from __future__ import annotations

import contextlib
import hashlib
import math
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from uuid import uuid4

import redis.asyncio as redis

from dnc_engine.config import Settings
from dnc_engine.shared.exceptions import FilterDegradedError, FilterRemovalUnsupportedError
from dnc_engine.shared.logging import get_logger

logger = get_logger(__name__)

REDIS_BATCH_SIZE = 10_000


@dataclass(frozen=True)
class FilterStats:
    count: int
    implementation: str
    capacity: int | None
    target_error_rate: float
    estimated_false_positive_rate: float
    ready: bool


def bloom_parameters(capacity: int, error_rate: float) -> tuple[int, int]:
    """Return (bit count, hash count) for the target capacity and error rate."""
    bits = math.ceil(-capacity * math.log(error_rate) / (math.log(2) ** 2))
    hashes = max(1, round(bits / capacity * math.log(2)))
    return bits, hashes


def bloom_false_positive_rate(bits: int, hashes: int, count: int) -> float:
    if count <= 0:
        return 0.0
    return (1.0 - math.exp(-hashes * count / bits)) ** hashes


class MembershipFilter(ABC):
    """Fast pre-check in front of the compliance store."""

    implementation: str = "abstract"
    supports_removal: bool = False

    @property
    @abstractmethod
    def ready(self) -> bool:
        """True once a snapshot has been published."""

    @abstractmethod
    async def initialize(self, keys: Iterable[str]) -> None:
        """Build a fresh structure from ``keys`` and publish it atomically."""

    @abstractmethod
    async def add(self, key: str) -> None: ...

    @abstractmethod
    async def bulk_add(self, keys: Iterable[str]) -> None: ...

    @abstractmethod
    async def check(self, key: str) -> bool:
        """False means definitely absent; True means maybe present."""

    async def remove(self, key: str) -> None:
        """Delete ``key``; only backings with ``supports_removal`` implement this."""
        raise FilterRemovalUnsupportedError(
            f"{self.implementation} filter does not support removal",
            {"implementation": self.implementation},
        )

    @abstractmethod
    async def stats(self) -> FilterStats: ...


class _BloomBits:
    """Bit array with blake2b double hashing."""

    __slots__ = ("bits", "hashes", "array", "count")

    def __init__(self, bits: int, hashes: int) -> None:
        self.bits = bits
        self.hashes = hashes
        self.array = bytearray((bits + 7) // 8)
        self.count = 0

    def _positions(self, key: str) -> list[int]:
        digest = hashlib.blake2b(key.encode("utf-8"), digest_size=16).digest()
        h1 = int.from_bytes(digest[:8], "big")
        h2 = int.from_bytes(digest[8:], "big") | 1
        return [(h1 + i * h2) % self.bits for i in range(self.hashes)]

    def add(self, key: str) -> None:
        new = False
        for pos in self._positions(key):
            byte, mask = pos >> 3, 1 << (pos & 7)
            if not self.array[byte] & mask:
                self.array[byte] |= mask
                new = True
        if new:
            self.count += 1

    def __contains__(self, key: str) -> bool:
        return all(self.array[pos >> 3] & (1 << (pos & 7)) for pos in self._positions(key))


class BloomMembershipFilter(MembershipFilter):
    implementation = "bloom"
    supports_removal = False

    def __init__(self, capacity: int = 1_000_000, error_rate: float = 0.01) -> None:
        self._capacity = capacity
        self._error_rate = error_rate
        self._bits, self._hashes = bloom_parameters(capacity, error_rate)
        self._state: _BloomBits | None = None

    @property
    def ready(self) -> bool:
        return self._state is not None

    def _require_state(self) -> _BloomBits:
        if self._state is None:
            raise FilterDegradedError("Bloom filter has not been initialized")
        return self._state

    async def initialize(self, keys: Iterable[str]) -> None:
        state = _BloomBits(self._bits, self._hashes)
        for key in keys:
            state.add(key)
        self._state = state

    async def add(self, key: str) -> None:
        self._require_state().add(key)

    async def bulk_add(self, keys: Iterable[str]) -> None:
        state = self._require_state()
        for key in keys:
            state.add(key)

    async def check(self, key: str) -> bool:
        return key in self._require_state()

    async def stats(self) -> FilterStats:
        count = self._state.count if self._state is not None else 0
        return FilterStats(
            count=count,
            implementation=self.implementation,
            capacity=self._capacity,
            target_error_rate=self._error_rate,
            estimated_false_positive_rate=bloom_false_positive_rate(self._bits, self._hashes, count),
            ready=self.ready,
        )


class SetMembershipFilter(MembershipFilter):
    implementation = "set"
    supports_removal = True

    def __init__(self) -> None:
        self._keys: set[str] | None = None

    @property
    def ready(self) -> bool:
        return self._keys is not None

    def _require_keys(self) -> set[str]:
        if self._keys is None:
            raise FilterDegradedError("Set filter has not been initialized")
        return self._keys

    async def initialize(self, keys: Iterable[str]) -> None:
        self._keys = set(keys)

    async def add(self, key: str) -> None:
        self._require_keys().add(key)

    async def bulk_add(self, keys: Iterable[str]) -> None:
        self._require_keys().update(keys)

    async def check(self, key: str) -> bool:
        return key in self._require_keys()

    async def remove(self, key: str) -> None:
        self._require_keys().discard(key)

    async def stats(self) -> FilterStats:
        return FilterStats(
            count=len(self._keys or ()),
            implementation=self.implementation,
            capacity=None,
            target_error_rate=0.0,
            estimated_false_positive_rate=0.0,
            ready=self.ready,
        )


class _RedisFilter(MembershipFilter):
    """Shared plumbing for the Redis-hosted backings."""

    def __init__(self, client: redis.Redis, key: str) -> None:
        self._client = client
        self._key = key
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    def _degraded(self, operation: str, exc: Exception) -> FilterDegradedError:
        logger.warning(
            "Redis filter operation failed",
            extra={"implementation": self.implementation, "operation": operation, "error": str(exc)},
        )
        return FilterDegradedError(
            f"{self.implementation} filter unavailable",
            {"operation": operation},
        )

    def _building_key(self) -> str:
        return f"{self._key}:building:{uuid4().hex}"

    async def _publish(self, building_key: str) -> None:
        await self._client.rename(building_key, self._key)
        self._ready = True


class RedisBloomMembershipFilter(_RedisFilter):
    implementation = "redis_bloom"
    supports_removal = False

    def __init__(
        self,
        client: redis.Redis,
        key: str,
        capacity: int = 1_000_000,
        error_rate: float = 0.01,
    ) -> None:
        super().__init__(client, key)
        self._capacity = capacity
        self._error_rate = error_rate

    async def initialize(self, keys: Iterable[str]) -> None:
        building_key = self._building_key()
        try:
            await self._client.execute_command("BF.RESERVE", building_key, self._error_rate, self._capacity)
            await self._madd(building_key, keys)
            await self._publish(building_key)
        except redis.RedisError as exc:
            with contextlib.suppress(redis.RedisError):
                await self._client.delete(building_key)
            raise self._degraded("initialize", exc) from exc

    async def _madd(self, target: str, keys: Iterable[str]) -> None:
        batch: list[str] = []
        for key in keys:
            batch.append(key)
            if len(batch) >= REDIS_BATCH_SIZE:
                await self._client.execute_command("BF.MADD", target, *batch)
                batch = []
        if batch:
            await self._client.execute_command("BF.MADD", target, *batch)

    async def add(self, key: str) -> None:
        try:
            await self._client.execute_command("BF.ADD", self._key, key)
        except redis.RedisError as exc:
            raise self._degraded("add", exc) from exc

    async def bulk_add(self, keys: Iterable[str]) -> None:
        try:
            await self._madd(self._key, keys)
        except redis.RedisError as exc:
            raise self._degraded("bulk_add", exc) from exc

    async def check(self, key: str) -> bool:
        try:
            return bool(await self._client.execute_command("BF.EXISTS", self._key, key))
        except redis.RedisError as exc:
            raise self._degraded("check", exc) from exc

    async def stats(self) -> FilterStats:
        try:
            count = int(await self._client.execute_command("BF.INFO", self._key, "ITEMS"))
        except redis.ResponseError:
            count = 0
        except redis.RedisError as exc:
            raise self._degraded("stats", exc) from exc
        bits, hashes = bloom_parameters(self._capacity, self._error_rate)
        return FilterStats(
            count=count,
            implementation=self.implementation,
            capacity=self._capacity,
            target_error_rate=self._error_rate,
            estimated_false_positive_rate=bloom_false_positive_rate(bits, hashes, count),
            ready=self.ready,
        )


class RedisSetMembershipFilter(_RedisFilter):
    implementation = "redis_set"
    supports_removal = True

    async def initialize(self, keys: Iterable[str]) -> None:
        building_key = self._building_key()
        try:
            added = await self._sadd(building_key, keys)
            if added:
                await self._publish(building_key)
            else:
                # RENAME needs an existing source key
                await self._client.delete(self._key)
                self._ready = True
        except redis.RedisError as exc:
            with contextlib.suppress(redis.RedisError):
                await self._client.delete(building_key)
            raise self._degraded("initialize", exc) from exc

    async def _sadd(self, target: str, keys: Iterable[str]) -> int:
        added = 0
        batch: list[str] = []
        for key in keys:
            batch.append(key)
            if len(batch) >= REDIS_BATCH_SIZE:
                added += await self._client.sadd(target, *batch)
                batch = []
        if batch:
            added += await self._client.sadd(target, *batch)
        return added

    async def add(self, key: str) -> None:
        try:
            await self._client.sadd(self._key, key)
        except redis.RedisError as exc:
            raise self._degraded("add", exc) from exc

    async def bulk_add(self, keys: Iterable[str]) -> None:
        try:
            await self._sadd(self._key, keys)
        except redis.RedisError as exc:
            raise self._degraded("bulk_add", exc) from exc

    async def check(self, key: str) -> bool:
        try:
            return bool(await self._client.sismember(self._key, key))
        except redis.RedisError as exc:
            raise self._degraded("check", exc) from exc

    async def remove(self, key: str) -> None:
        try:
            await self._client.srem(self._key, key)
        except redis.RedisError as exc:
            raise self._degraded("remove", exc) from exc

    async def stats(self) -> FilterStats:
        try:
            count = int(await self._client.scard(self._key))
        except redis.RedisError as exc:
            raise self._degraded("stats", exc) from exc
        return FilterStats(
            count=count,
            implementation=self.implementation,
            capacity=None,
            target_error_rate=0.0,
            estimated_false_positive_rate=0.0,
            ready=self.ready,
        )


def build_membership_filter(settings: Settings, redis_client: redis.Redis | None = None) -> MembershipFilter:
    """Create the filter backing selected by configuration."""
    backend = settings.dnc_filter_backend
    location = settings.dnc_filter_location

    logger.info(
        "Membership filter resolved",
        extra={
            "backend": backend,
            "location": location,
            "capacity": settings.dnc_filter_capacity,
            "error_rate": settings.dnc_filter_error_rate,
        },
    )

    if location == "redis":
        if redis_client is None:
            raise ValueError("A Redis client is required for dnc_filter_location=redis")
        if backend == "bloom":
            return RedisBloomMembershipFilter(
                redis_client,
                settings.dnc_filter_redis_key,
                capacity=settings.dnc_filter_capacity,
                error_rate=settings.dnc_filter_error_rate,
            )
        return RedisSetMembershipFilter(redis_client, settings.dnc_filter_redis_key)

    if backend == "bloom":
        return BloomMembershipFilter(
            capacity=settings.dnc_filter_capacity,
            error_rate=settings.dnc_filter_error_rate,
        )
    return SetMembershipFilter()
