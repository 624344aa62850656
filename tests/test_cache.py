"""Unit tests for the TTL cache."""

from shared.cache import TTLCache


class FakeTime:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestTTLCache:
    def test_get_returns_value_before_expiry(self):
        clock = FakeTime()
        cache = TTLCache(ttl_seconds=10, clock=clock)
        cache.set("a", 1)
        clock.now = 9.9
        assert cache.get("a") == 1

    def test_entries_expire(self):
        clock = FakeTime()
        cache = TTLCache(ttl_seconds=10, clock=clock)
        cache.set("a", 1)
        clock.now = 10.0
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_least_recently_used_is_evicted(self):
        cache = TTLCache(max_size=2, ttl_seconds=60, clock=FakeTime())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3

    def test_set_refreshes_expiry(self):
        clock = FakeTime()
        cache = TTLCache(ttl_seconds=10, clock=clock)
        cache.set("a", 1)
        clock.now = 8.0
        cache.set("a", 2)
        clock.now = 15.0
        assert cache.get("a") == 2

    def test_pop_and_clear(self):
        cache = TTLCache(clock=FakeTime())
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.pop("a") == 1
        assert cache.pop("a") is None
        cache.clear()
        assert len(cache) == 0
