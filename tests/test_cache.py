"""Tests for the in-memory cache."""

import time

from odio_api.cache import Cache


class TestCache:
    def test_missing_key(self):
        cache = Cache()
        assert cache.get("nope") == (None, False)

    def test_set_and_get(self):
        cache = Cache()
        cache.set("a", 1)
        assert cache.get("a") == (1, True)
        assert len(cache) == 1

    def test_stored_none_is_found(self):
        """A stored None is distinguishable from a missing key."""
        cache = Cache()
        cache.set("a", None)
        assert cache.get("a") == (None, True)

    def test_delete_and_clear(self):
        cache = Cache()
        cache.set("a", 1)
        cache.set("b", 2)
        cache.delete("a")
        cache.delete("missing")
        assert cache.get("a") == (None, False)
        cache.clear()
        assert len(cache) == 0

    def test_zero_ttl_never_expires(self):
        cache = Cache(ttl=0)
        cache.set("a", 1)
        assert cache.clean_expired() == 0
        assert cache.get("a") == (1, True)


class TestCacheExpiry:
    def test_expired_entry_is_missing(self):
        cache = Cache(ttl=0.01)
        cache.set("a", 1)
        time.sleep(0.03)
        assert cache.get("a") == (None, False)

    def test_clean_expired_counts_removed(self):
        cache = Cache(ttl=0.01)
        cache.set("a", 1)
        cache.set("b", 2)
        time.sleep(0.03)
        assert cache.clean_expired() == 2
        assert len(cache) == 0
