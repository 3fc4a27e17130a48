from formengine.core.cache import ValidationCache
from formengine.core.rules import ok_result


def test_miss_then_hit(clock):
    cache = ValidationCache(clock)
    assert cache.get("k") is None

    result = ok_result("required")
    cache.set("k", result, ttl_ms=1_000, field_id="name", rule_id="required")

    assert cache.get("k") is result
    stats = cache.stats()
    assert (stats.size, stats.hits, stats.misses) == (1, 1, 1)
    assert stats.hit_rate == 0.5


def test_entry_served_only_before_expiry(clock):
    cache = ValidationCache(clock)
    cache.set("k", ok_result("r"), ttl_ms=100, field_id="f")

    clock.advance(99)
    assert cache.get("k") is not None

    clock.advance(1)
    assert cache.get("k") is None
    assert len(cache) == 0


def test_non_positive_ttl_is_not_stored(clock):
    cache = ValidationCache(clock)
    cache.set("k", ok_result("r"), ttl_ms=0, field_id="f")
    assert len(cache) == 0


def test_invalidate_fields_drops_only_matching_entries(clock):
    cache = ValidationCache(clock)
    cache.set("a1", ok_result("r1"), 1_000, field_id="a")
    cache.set("a2", ok_result("r2"), 1_000, field_id="a")
    cache.set("b1", ok_result("r1"), 1_000, field_id="b")

    assert cache.invalidate_fields(["a"]) == 2
    assert cache.get("b1") is not None
    assert cache.invalidate_fields([]) == 0


def test_sweep_removes_expired_entries(clock):
    cache = ValidationCache(clock)
    cache.set("short", ok_result("r"), 10, field_id="a")
    cache.set("long", ok_result("r"), 1_000, field_id="a")
    cache.set("other", ok_result("r"), 10, field_id="b")

    clock.advance(50)
    assert cache.sweep("a") == 1
    assert len(cache) == 2
    assert cache.sweep() == 1
    assert len(cache) == 1


def test_clear_resets_counters(clock):
    cache = ValidationCache(clock)
    cache.set("k", ok_result("r"), 1_000)
    cache.get("k")
    cache.clear()

    stats = cache.stats()
    assert (stats.size, stats.hits, stats.misses) == (0, 0, 0)
    assert stats.hit_rate == 0.0
