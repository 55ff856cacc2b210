"""
Unit tests for the in-process cache tier.
"""

import pytest

from dynafusion.caching.memory_cache import MemoryCache
from dynafusion.shared.config import L1Settings

from conftest import FakeClock


class TestMemoryCache:
    """Test cases for MemoryCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def l1(self, clock):
        return MemoryCache(L1Settings(max_entries=100, max_expiration_seconds=120), clock=clock)

    @pytest.mark.asyncio
    async def test_set_and_get(self, l1):
        assert await l1.set("query:Users:abc", '{"id": 1}', ttl=60) is True

        assert await l1.get("query:Users:abc") == '{"id": 1}'
        assert await l1.get("query:Users:missing") is None

        stats = await l1.statistics()
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.hit_ratio == 0.5

    @pytest.mark.asyncio
    async def test_expired_entries_read_as_miss(self, l1, clock):
        await l1.set("k", "v", ttl=30)
        clock.advance(29)
        assert await l1.get("k") == "v"

        clock.advance(2)
        assert await l1.get("k") is None
        assert await l1.exists("k") is False
        assert (await l1.statistics()).entry_count == 0

    @pytest.mark.asyncio
    async def test_ttl_is_clamped_to_tier_maximum(self, l1, clock):
        await l1.set("k", "v", ttl=3600)

        clock.advance(121)
        assert await l1.get("k") is None

    @pytest.mark.asyncio
    async def test_lru_eviction_keeps_most_recent_keys(self, l1):
        """Inserting 150 keys into a 100-entry tier keeps the latest 50."""
        for i in range(150):
            await l1.set(f"key-{i}", f"value-{i}", ttl=60)

        stats = await l1.statistics()
        assert stats.entry_count <= 100
        for i in range(100, 150):
            assert await l1.exists(f"key-{i}"), f"key-{i} was evicted"
        assert await l1.exists("key-0") is False

    @pytest.mark.asyncio
    async def test_read_refreshes_recency(self, clock):
        l1 = MemoryCache(L1Settings(max_entries=3), clock=clock)
        for key in ("a", "b", "c"):
            await l1.set(key, key, ttl=60)

        await l1.get("a")
        await l1.set("d", "d", ttl=60)

        assert await l1.exists("a")
        assert await l1.exists("b") is False

    @pytest.mark.asyncio
    async def test_memory_bound_triggers_eviction(self, clock):
        l1 = MemoryCache(L1Settings(max_entries=1000, max_memory_mb=0.001), clock=clock)
        for i in range(20):
            await l1.set(f"k{i}", "x" * 200, ttl=60)

        stats = await l1.statistics()
        assert stats.memory_usage <= l1.max_memory_bytes
        assert await l1.exists("k19")

    @pytest.mark.asyncio
    async def test_overwrite_replaces_size_accounting(self, l1):
        await l1.set("k", "x" * 100, ttl=60)
        first = (await l1.statistics()).memory_usage
        await l1.set("k", "x" * 10, ttl=60)

        stats = await l1.statistics()
        assert stats.entry_count == 1
        assert stats.memory_usage == first - 90

    @pytest.mark.asyncio
    async def test_remove_by_pattern_matches_logical_keys(self, l1):
        await l1.set("query:Users:1", "a", ttl=60)
        await l1.set("query:Users:2", "b", ttl=60)
        await l1.set("query:Orders:1", "c", ttl=60)

        assert await l1.remove_by_pattern("query:Users:*") == 2
        assert await l1.exists("query:Orders:1")

    @pytest.mark.asyncio
    async def test_long_keys_are_hashed(self, clock):
        l1 = MemoryCache(L1Settings(), max_key_length=40, clock=clock)
        key = "query:Users:" + "x" * 100

        await l1.set(key, "v", ttl=60)

        assert await l1.get(key) == "v"
        assert all(len(storage_key) <= 90 for storage_key in l1._entries)
        assert next(iter(l1._entries)).startswith("dynamodb-fusion:l1:hash:")

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, l1):
        await l1.set("a", "1", ttl=60)
        await l1.set("b", "2", ttl=60)

        assert await l1.remove("a") is True
        assert await l1.remove("a") is False

        await l1.clear()
        stats = await l1.statistics()
        assert stats.entry_count == 0
        assert stats.memory_usage == 0

    @pytest.mark.asyncio
    async def test_purge_expired(self, l1, clock):
        await l1.set("short", "1", ttl=5)
        await l1.set("long", "2", ttl=100)
        clock.advance(10)

        assert l1.purge_expired() == 1
        assert await l1.exists("long")

    @pytest.mark.asyncio
    async def test_cleanup_task_stops_on_close(self, l1):
        l1.start_cleanup()
        task = l1._cleanup_task
        assert task is not None and not task.done()

        await l1.close()
        assert task.cancelled()
