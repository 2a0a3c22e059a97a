import pytest

from engines.caching import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=10, clock=clock)
    cache.set("a", 1)

    clock.now += 5
    assert cache.get("a") == 1
    clock.now += 6
    assert cache.get("a") is None
    assert len(cache) == 0


def test_pop_removes_entry():
    cache = TTLCache(ttl_seconds=10, clock=FakeClock())
    cache.set(("s1", "hint"), "value")

    assert cache.pop(("s1", "hint")) == "value"
    assert cache.pop(("s1", "hint"), "missing") == "missing"


def test_full_cache_evicts_oldest():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=60, max_size=2, clock=clock)
    cache.set("a", 1)
    clock.now += 1
    cache.set("b", 2)
    clock.now += 1
    cache.set("c", 3)

    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_sweep_counts_stale_entries():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=1, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    clock.now += 2

    assert cache.sweep() == 2


def test_invalid_arguments():
    with pytest.raises(ValueError):
        TTLCache(ttl_seconds=0)
    with pytest.raises(ValueError):
        TTLCache(max_size=0)
