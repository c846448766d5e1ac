"""Tests for the TTL cache."""

import pytest

from fakes import FakeClock
from zestswap.cache import TTLCache


@pytest.fixture
def clock():
    return FakeClock(start=1000.0)


class TestTTLCache:
    """Expiry, eviction and sweeping."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, clock):
        cache = TTLCache(default_ttl=30, clock=clock)
        await cache.set("a", 1)
        assert await cache.get("a") == 1
        assert await cache.get("missing") is None

    @pytest.mark.asyncio
    async def test_entry_expires_exactly_at_ttl(self, clock):
        cache = TTLCache(default_ttl=30, clock=clock)
        await cache.set("a", 1)

        clock.advance(29.9)
        assert await cache.get("a") == 1

        clock.advance(0.1)
        assert await cache.get("a") is None
        assert cache.size() == 0

    @pytest.mark.asyncio
    async def test_per_entry_ttl_overrides_default(self, clock):
        cache = TTLCache(default_ttl=30, clock=clock)
        await cache.set("short", 1, ttl=5)
        await cache.set("long", 2)

        clock.advance(10)
        assert await cache.get("short") is None
        assert await cache.get("long") == 2

    @pytest.mark.asyncio
    async def test_full_cache_evicts_oldest(self, clock):
        cache = TTLCache(default_ttl=300, max_size=2, clock=clock)
        await cache.set("first", 1)
        clock.advance(1)
        await cache.set("second", 2)
        clock.advance(1)
        await cache.set("third", 3)

        assert cache.size() == 2
        assert await cache.get("first") is None
        assert await cache.get("third") == 3

    @pytest.mark.asyncio
    async def test_full_cache_sweeps_expired_before_evicting(self, clock):
        cache = TTLCache(default_ttl=300, max_size=2, clock=clock)
        await cache.set("old", 1, ttl=1)
        await cache.set("keep", 2)
        clock.advance(5)
        await cache.set("new", 3)

        assert sorted(cache.keys()) == ["keep", "new"]

    @pytest.mark.asyncio
    async def test_overwriting_existing_key_does_not_evict(self, clock):
        cache = TTLCache(default_ttl=300, max_size=2, clock=clock)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("a", 10)

        assert cache.size() == 2
        assert await cache.get("a") == 10
        assert await cache.get("b") == 2

    @pytest.mark.asyncio
    async def test_sweep_returns_removed_count(self, clock):
        cache = TTLCache(default_ttl=10, clock=clock)
        await cache.set("a", 1)
        await cache.set("b", 2, ttl=60)
        clock.advance(11)

        assert await cache.sweep() == 1
        assert cache.keys() == ["b"]

    @pytest.mark.asyncio
    async def test_prune_older_than(self, clock):
        cache = TTLCache(default_ttl=3600, clock=clock)
        await cache.set("old", 1)
        clock.advance(100)
        await cache.set("fresh", 2)

        assert await cache.prune_older_than(50) == 1
        assert cache.keys() == ["fresh"]

    @pytest.mark.asyncio
    async def test_get_entry_and_clear(self, clock):
        cache = TTLCache(default_ttl=30, clock=clock)
        await cache.set("a", "value")

        entry = await cache.get_entry("a")
        assert entry.value == "value"
        assert entry.timestamp == 1000.0

        await cache.clear()
        assert await cache.get_entry("a") is None
