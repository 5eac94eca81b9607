# =============================================================================
# Unit Tests — In-Process TTL Cache
# =============================================================================
#
# A fake clock drives expiry, so no test sleeps.
# =============================================================================

import pytest

from dataroom_rag.services.cache import TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestTTLCache:
    def test_get_missing_returns_none(self):
        cache = TTLCache(ttl_seconds=60, max_entries=10)
        assert cache.get("missing") is None
        assert cache.misses == 1

    def test_set_then_get(self):
        cache = TTLCache(ttl_seconds=60, max_entries=10)
        cache.set("k", [0.1, 0.2])
        assert cache.get("k") == [0.1, 0.2]
        assert cache.hits == 1

    def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=60, max_entries=10, clock=clock)
        cache.set("k", "v")
        clock.now += 59
        assert cache.get("k") == "v"
        clock.now += 1
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_least_recently_used_is_evicted(self):
        cache = TTLCache(ttl_seconds=60, max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")  # "b" is now the oldest
        cache.set("c", 3)
        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache

    def test_purge_expired(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=10, max_entries=10, clock=clock)
        cache.set("old", 1)
        clock.now += 5
        cache.set("new", 2)
        clock.now += 6
        assert cache.purge_expired() == 1
        assert len(cache) == 1

    def test_delete_and_clear(self):
        cache = TTLCache(ttl_seconds=60, max_entries=10)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.delete("a")
        assert len(cache) == 1
        cache.clear()
        assert len(cache) == 0

    def test_empty_cache_is_falsy_but_usable(self):
        cache = TTLCache(ttl_seconds=60, max_entries=10)
        assert not cache
        cache.set("a", 1)
        assert cache

    @pytest.mark.parametrize("ttl, size", [(0, 10), (60, 0), (-1, 5)])
    def test_invalid_bounds_rejected(self, ttl, size):
        with pytest.raises(ValueError):
            TTLCache(ttl_seconds=ttl, max_entries=size)
