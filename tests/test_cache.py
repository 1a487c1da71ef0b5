"""Tests for the TTL cache."""

from memlayer.memory.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestTTLCache:
    def test_expiry(self):
        clock = FakeClock()
        cache = TTLCache(ttl=60, clock=clock)
        cache.set("k", "v")
        clock.now = 59.9
        assert cache.get("k") == "v"
        clock.now = 60.0
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_lru_eviction(self):
        cache = TTLCache(ttl=60, max_entries=2, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.get("a") == 1
        assert cache.get("b") is None
        assert cache.get("c") == 3

    def test_invalidate(self):
        cache = TTLCache(ttl=60, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate("a")
        assert cache.get("a") is None
        assert cache.get("b") == 2
        cache.invalidate()
        assert len(cache) == 0

    def test_default(self):
        assert TTLCache(ttl=1).get("missing", "fallback") == "fallback"
