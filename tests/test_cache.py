"""
Tests for LRUCache.
"""

import pytest

from vaultsearch import LRUCache


class TestLRUCache:

    def test_get_and_set(self):
        cache = LRUCache(2)
        cache.set("a", 1)

        assert cache.get("a") == 1
        assert cache.get("missing") is None
        assert "a" in cache
        assert len(cache) == 1

    def test_evicts_least_recently_used(self):
        cache = LRUCache(2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)

        assert "a" not in cache
        assert cache.get("b") == 2
        assert cache.get("c") == 3

    def test_get_refreshes_entry(self):
        cache = LRUCache(2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert "a" in cache
        assert "b" not in cache

    def test_set_existing_key_does_not_evict(self):
        cache = LRUCache(2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)

        assert len(cache) == 2
        assert cache.get("a") == 10
        assert cache.get("b") == 2

    def test_delete_and_clear(self):
        cache = LRUCache(3)
        cache.set("a", 1)
        cache.set("b", None)

        assert cache.delete("a") is True
        assert cache.delete("a") is False
        assert cache.delete("b") is True

        cache.set("c", 3)
        cache.clear()
        assert len(cache) == 0

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            LRUCache(0)
