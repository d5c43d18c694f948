"""Tests for SQLiteCache: async SQLite-backed cache for trace results."""

from __future__ import annotations


import pytest

from miner_watch.cache import SQLiteCache
from miner_watch.models import TraceResult


@pytest.fixture
async def cache(tmp_path):
    db = str(tmp_path / "test_cache.db")
    c = SQLiteCache(db_path=db, default_ttl=10)
    yield c
    await c.close()


class TestSQLiteCache:

    @pytest.mark.asyncio
    async def test_get_miss(self, cache):
        result = await cache.get("nonexistent")
        assert result is None

    @pytest.mark.asyncio
    async def test_set_and_get(self, cache):
        await cache.set("key1", {"hello": "world"})
        result = await cache.get("key1")
        assert result == {"hello": "world"}

    @pytest.mark.asyncio
    async def test_set_overwrite(self, cache):
        await cache.set("key1", "v1")
        await cache.set("key1", "v2")
        assert await cache.get("key1") == "v2"

    @pytest.mark.asyncio
    async def test_invalidate(self, cache):
        await cache.set("key1", "value")
        await cache.invalidate("key1")
        assert await cache.get("key1") is None

    @pytest.mark.asyncio
    async def test_clear(self, cache):
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.clear()
        assert await cache.get("a") is None
        assert await cache.get("b") is None

    @pytest.mark.asyncio
    async def test_expired_entry(self, tmp_path):
        """Entries past TTL should return None."""
        c = SQLiteCache(db_path=str(tmp_path / "exp.db"), default_ttl=0)
        await c.set("key", "val", ttl=0)
        import time
        time.sleep(0.05)
        assert await c.get("key") is None
        await c.close()

    @pytest.mark.asyncio
    async def test_purge_expired(self, tmp_path):
        c = SQLiteCache(db_path=str(tmp_path / "purge.db"), default_ttl=0)
        await c.set("a", 1, ttl=0)
        await c.set("b", 2, ttl=0)
        import time
        time.sleep(0.05)
        removed = await c.purge_expired()
        assert removed >= 2
        await c.close()

    @pytest.mark.asyncio
    async def test_model_stored_with_camel_case_keys(self, cache):
        result = TraceResult(is_linked_to_miner=True, trace_depth=0,
                             miner_address="0xbeef", trace_path=["0xa", "0xbeef"])
        await cache.set("trace:abstract:0xa", result)

        raw = await cache.get("trace:abstract:0xa")

        assert raw["isLinkedToMiner"] is True
        assert TraceResult.model_validate(raw) == result

    @pytest.mark.asyncio
    async def test_invalidate_prefix(self, cache):
        await cache.set("trace:abstract:0xa", 1)
        await cache.set("trace:abstract:0xb", 2)
        await cache.set("trace:base:0xa", 3)

        removed = await cache.invalidate_prefix("trace:abstract:")

        assert removed == 2
        assert await cache.get("trace:abstract:0xa") is None
        assert await cache.get("trace:base:0xa") == 3

    @pytest.mark.asyncio
    async def test_max_entries_enforced(self, tmp_path):
        c = SQLiteCache(db_path=str(tmp_path / "small.db"), default_ttl=60, max_entries=2)
        await c.set("a", 1, ttl=10)
        await c.set("b", 2, ttl=20)
        await c.set("c", 3, ttl=30)
        assert await c.get("a") is None
        assert await c.get("c") == 3
        await c.close()

    @pytest.mark.asyncio
    async def test_invalidate_nonexistent(self, cache):
        """Invalidating a non-existent key should not raise."""
        await cache.invalidate("ghost")  # should not raise
