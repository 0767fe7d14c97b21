"""
Tests for the membership filter backings.
"""

from uuid import uuid4

import pytest
import redis

from dnc_engine.config import Settings
from dnc_engine.dnc.filters import (
    BloomMembershipFilter,
    RedisBloomMembershipFilter,
    SetMembershipFilter,
    bloom_false_positive_rate,
    bloom_parameters,
    build_membership_filter,
)
from dnc_engine.dnc.store import membership_key
from dnc_engine.shared.exceptions import FilterDegradedError, FilterRemovalUnsupportedError


def _keys(count: int) -> list[str]:
    org = uuid4()
    return [membership_key(org, f"+1212{i:07d}") for i in range(count)]


class TestBloomParameters:
    def test_one_million_at_one_percent(self) -> None:
        bits, hashes = bloom_parameters(1_000_000, 0.01)

        assert 9_500_000 < bits < 9_700_000
        assert hashes == 7

    def test_false_positive_rate_matches_target_at_capacity(self) -> None:
        bits, hashes = bloom_parameters(10_000, 0.01)

        assert bloom_false_positive_rate(bits, hashes, 0) == 0.0
        assert bloom_false_positive_rate(bits, hashes, 10_000) == pytest.approx(0.01, rel=0.1)


class TestBloomMembershipFilter:
    @pytest.mark.asyncio
    async def test_not_ready_until_initialized(self) -> None:
        bloom = BloomMembershipFilter(capacity=100, error_rate=0.01)

        assert bloom.ready is False
        with pytest.raises(FilterDegradedError):
            await bloom.check("anything")

        await bloom.initialize([])
        assert bloom.ready is True
        assert await bloom.check("anything") is False

    @pytest.mark.asyncio
    async def test_no_false_negatives(self) -> None:
        """Every key ever added must answer maybe-present."""
        members = _keys(1000)
        bloom = BloomMembershipFilter(capacity=1000, error_rate=0.01)
        await bloom.initialize(members[:500])
        for key in members[500:900]:
            await bloom.add(key)
        await bloom.bulk_add(members[900:])

        for key in members:
            assert await bloom.check(key) is True

    @pytest.mark.asyncio
    async def test_false_positive_rate_within_twice_target(self) -> None:
        members = _keys(1000)
        bloom = BloomMembershipFilter(capacity=1000, error_rate=0.01)
        await bloom.initialize(members)

        org = uuid4()
        lookups = 100_000
        false_positives = 0
        for i in range(lookups):
            if await bloom.check(membership_key(org, f"+1646{i:07d}")):
                false_positives += 1

        assert false_positives / lookups <= 0.02

    @pytest.mark.asyncio
    async def test_remove_not_supported(self) -> None:
        bloom = BloomMembershipFilter(capacity=10)
        await bloom.initialize(["a"])

        assert bloom.supports_removal is False
        with pytest.raises(FilterRemovalUnsupportedError):
            await bloom.remove("a")
        assert await bloom.check("a") is True

    @pytest.mark.asyncio
    async def test_initialize_replaces_previous_contents(self) -> None:
        bloom = BloomMembershipFilter(capacity=100)
        await bloom.initialize(["old"])
        await bloom.initialize(["new"])

        assert await bloom.check("new") is True
        assert await bloom.check("old") is False

    @pytest.mark.asyncio
    async def test_stats(self) -> None:
        bloom = BloomMembershipFilter(capacity=1000, error_rate=0.01)
        await bloom.initialize(_keys(100))

        stats = await bloom.stats()

        assert stats.implementation == "bloom"
        assert stats.count == 100
        assert stats.capacity == 1000
        assert stats.target_error_rate == 0.01
        assert 0.0 < stats.estimated_false_positive_rate < 0.01
        assert stats.ready is True


class TestSetMembershipFilter:
    @pytest.mark.asyncio
    async def test_exact_membership_and_removal(self) -> None:
        exact = SetMembershipFilter()
        await exact.initialize(["a", "b"])
        await exact.add("c")
        await exact.remove("a")

        assert exact.supports_removal is True
        assert await exact.check("a") is False
        assert await exact.check("b") is True
        assert await exact.check("c") is True
        assert (await exact.stats()).count == 2

    @pytest.mark.asyncio
    async def test_not_ready_until_initialized(self) -> None:
        exact = SetMembershipFilter()

        with pytest.raises(FilterDegradedError):
            await exact.add("a")


class TestBuildMembershipFilter:
    def test_memory_bloom(self) -> None:
        settings = Settings(dnc_filter_backend="bloom", dnc_filter_location="memory", dnc_filter_capacity=50)

        assert isinstance(build_membership_filter(settings), BloomMembershipFilter)

    def test_memory_set(self) -> None:
        settings = Settings(dnc_filter_backend="set", dnc_filter_location="memory")

        assert isinstance(build_membership_filter(settings), SetMembershipFilter)

    def test_redis_requires_client(self) -> None:
        settings = Settings(dnc_filter_backend="bloom", dnc_filter_location="redis")

        with pytest.raises(ValueError):
            build_membership_filter(settings)


class _FailingRedis:
    async def execute_command(self, *args):
        raise redis.ConnectionError("connection refused")

    async def delete(self, *keys):
        return 0


class TestRedisBloomMembershipFilter:
    @pytest.mark.asyncio
    async def test_connection_failure_is_reported_as_degraded(self) -> None:
        bloom = RedisBloomMembershipFilter(_FailingRedis(), "dnc:test")

        with pytest.raises(FilterDegradedError):
            await bloom.initialize(["a"])
        with pytest.raises(FilterDegradedError):
            await bloom.check("a")
        assert bloom.ready is False
