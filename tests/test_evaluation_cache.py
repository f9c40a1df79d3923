from __future__ import annotations

from rulecraft.core.cache.evaluation import EvaluationCache
from rulecraft.core.cache.keys import context_fingerprint


def test_fingerprint_ignores_key_order() -> None:
    first = context_fingerprint("r1", {"a": 1, "b": {"x": 1, "y": 2}}, {"v": True})
    second = context_fingerprint("r1", {"b": {"y": 2, "x": 1}, "a": 1}, {"v": True})

    assert first == second
    assert first != context_fingerprint("r2", {"a": 1, "b": {"x": 1, "y": 2}}, {"v": True})
    assert first != context_fingerprint("r1", {"a": 1, "b": {"x": 1, "y": 2}}, {"v": False})


def test_cache_hit_and_miss_counters() -> None:
    cache = EvaluationCache(max_entries=10)

    assert cache.get("r1", {"a": 1}, {}) is None
    cache.put("r1", {"a": 1}, {}, "matched")

    assert cache.get("r1", {"a": 1}, {}) == "matched"
    assert cache.get("r1", {"a": 2}, {}) is None
    assert cache.hits == 1
    assert cache.misses == 2
    assert cache.hit_rate() == 1 / 3


def test_cache_clears_wholesale_on_overflow() -> None:
    cache = EvaluationCache(max_entries=2)
    cache.put("r1", {"n": 1}, {}, 1)
    cache.put("r2", {"n": 2}, {}, 2)

    cache.put("r3", {"n": 3}, {}, 3)

    assert len(cache) == 1
    assert cache.get("r1", {"n": 1}, {}) is None
    assert cache.get("r2", {"n": 2}, {}) is None
    assert cache.get("r3", {"n": 3}, {}) == 3


def test_cache_invalidate_drops_only_that_rule() -> None:
    cache = EvaluationCache()
    cache.put("r1", {"n": 1}, {}, 1)
    cache.put("r1", {"n": 2}, {}, 2)
    cache.put("r2", {"n": 1}, {}, 3)

    assert cache.invalidate("r1") == 2
    assert len(cache) == 1
    assert cache.get("r1", {"n": 1}, {}) is None
    assert cache.get("r2", {"n": 1}, {}) == 3


def test_cache_entries_expire_and_sweep(monkeypatch) -> None:
    clock = {"now": 1000.0}
    monkeypatch.setattr("rulecraft.core.cache.evaluation.time.monotonic", lambda: clock["now"])
    cache = EvaluationCache(default_ttl_s=10)
    cache.put("r1", {"n": 1}, {}, 1)
    cache.put("r2", {"n": 1}, {}, 2, ttl_s=100)

    clock["now"] += 11

    assert cache.sweep() == 1
    assert len(cache) == 1
    assert cache.get("r1", {"n": 1}, {}) is None
    assert cache.get("r2", {"n": 1}, {}) == 2


def test_entries_are_keyed_by_rule_revision() -> None:
    cache = EvaluationCache(max_entries=10)
    cache.put("r1", {"a": 1}, {}, "old", revision=0)

    assert cache.get("r1", {"a": 1}, {}, revision=1) is None
    assert cache.get("r1", {"a": 1}, {}, revision=0) == "old"
