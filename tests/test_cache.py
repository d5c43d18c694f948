"""Unit tests for the in-memory TTL cache used as the trace memo."""

from __future__ import annotations

import time


from miner_watch.cache import TTLCache
from miner_watch.models import TraceResult


class TestTTLCache:
    def test_set_and_get(self):
        cache = TTLCache(default_ttl=60)
        cache.set("key", "value")
        assert cache.get("key") == "value"

    def test_missing_key_returns_none(self):
        cache = TTLCache(default_ttl=60)
        assert cache.get("nonexistent") is None

    def test_expiration(self):
        cache = TTLCache(default_ttl=1)
        cache.set("key", "value", ttl=0)  # expires immediately
        time.sleep(0.01)
        assert cache.get("key") is None

    def test_custom_ttl(self):
        cache = TTLCache(default_ttl=0)
        cache.set("key", "value", ttl=60)
        assert cache.get("key") == "value"

    def test_invalidate(self):
        cache = TTLCache(default_ttl=60)
        cache.set("key", "value")
        cache.invalidate("key")
        assert cache.get("key") is None

    def test_invalidate_missing_key(self):
        cache = TTLCache(default_ttl=60)
        cache.invalidate("nonexistent")  # should not raise

    def test_clear(self):
        cache = TTLCache(default_ttl=60)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.clear()
        assert len(cache) == 0

    def test_contains_does_not_count_as_lookup(self):
        cache = TTLCache(default_ttl=60)
        cache.set("key", "value")
        assert "key" in cache
        assert "missing" not in cache
        assert cache.stats() == {"entries": 1, "hits": 0, "misses": 0}

    def test_expired_entry_not_contained(self):
        cache = TTLCache(default_ttl=60)
        cache.set("key", "value", ttl=0)
        time.sleep(0.01)
        assert "key" not in cache

    def test_stats(self):
        cache = TTLCache(default_ttl=60)
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")
        assert cache.stats() == {"entries": 1, "hits": 1, "misses": 1}

    def test_bounded_size_evicts_oldest(self):
        cache = TTLCache(default_ttl=60, max_entries=3)
        for i in range(5):
            cache.set(f"k{i}", i, ttl=60 + i)
        assert len(cache) == 3
        assert cache.get("k0") is None
        assert cache.get("k1") is None
        assert cache.get("k4") == 4

    def test_expired_entries_evicted_first(self):
        cache = TTLCache(default_ttl=60, max_entries=2)
        cache.set("stale", 0, ttl=0)
        cache.set("a", 1)
        time.sleep(0.01)
        cache.set("b", 2)
        assert cache.get("a") == 1
        assert cache.get("b") == 2

    def test_stores_models(self):
        cache = TTLCache(default_ttl=60)
        result = TraceResult.direct("0xabc", 0)
        cache.set("abstract:0xabc:0", result)
        assert cache.get("abstract:0xabc:0") is result
