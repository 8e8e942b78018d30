"""Tests for the processed-message cache."""

from __future__ import annotations

from panelsync.pipeline.cache import CacheCheck, ProcessedMessageCache


class TestProcessedMessageCache:
    def test_new_duplicate_stale(self):
        cache = ProcessedMessageCache()
        assert cache.check("m1", "h1") is CacheCheck.NEW
        cache.record("m1", "h1", "r1")
        assert cache.check("m1", "h1") is CacheCheck.DUPLICATE
        assert cache.check("m1", "h2") is CacheCheck.STALE

    def test_record_replaces(self):
        cache = ProcessedMessageCache()
        cache.record("m1", "h1", "r1")
        cache.record("m1", "h2", None)
        record = cache.get("m1")
        assert record.block_hash == "h2"
        assert record.result_hash is None
        assert len(cache) == 1

    def test_lru_eviction(self):
        cache = ProcessedMessageCache(max_size=2)
        cache.record("a", "h", "r")
        cache.record("b", "h", "r")
        cache.record("a", "h", "r")  # refresh a
        cache.record("c", "h", "r")
        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache

    def test_invalidate_and_clear(self):
        cache = ProcessedMessageCache()
        cache.record("a", "h", "r")
        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        cache.record("b", "h", "r")
        cache.clear()
        assert len(cache) == 0
