"""
Unit tests -- query execution cache.
"""
from src.engine.cache import QueryCache, make_key, text_key
from src.query.model import Dimension, Operator, Predicate, Projection, QueryModel, TimeWindow

TTLS = {"entity": 600, "metric": 60}


def _model(*values, window="30 minutes ago") -> QueryModel:
    return QueryModel(
        source="AwsMskClusterSample",
        projections=(Projection("count(*)"),),
        predicates=(Predicate(Dimension.of("provider.clusterName"), Operator.IN, values),),
        time_window=TimeWindow(since=window),
    )


# ── Keys ─────────────────────────────────────────────────

def test_equivalent_models_share_a_key():
    assert make_key(_model("a", "b"), "123") == make_key(_model("b", "a"), "123")


def test_account_is_part_of_key():
    assert make_key(_model("a"), "123") != make_key(_model("a"), "456")


def test_time_window_is_part_of_key():
    assert make_key(_model("a"), "1") != make_key(_model("a", window="6 hours ago"), "1")


def test_text_key_is_deterministic():
    assert text_key("SELECT 1", "1") == text_key("SELECT 1", "1")
    assert len(text_key("SELECT 1", "1")) == 64


# ── TTL ──────────────────────────────────────────────────

def test_hit_within_ttl(clock):
    cache = QueryCache(max_size=4, ttls=TTLS, clock=clock)
    cache.set("k", [1])
    clock.advance(59)
    assert cache.get("k") == [1]


def test_miss_after_ttl(clock):
    cache = QueryCache(max_size=4, ttls=TTLS, clock=clock)
    cache.set("k", [1])
    clock.advance(60)
    assert cache.get("k") is None
    assert "k" not in cache


def test_entity_class_lives_longer(clock):
    cache = QueryCache(max_size=4, ttls=TTLS, clock=clock)
    cache.set("topology", ["c1"], data_class="entity")
    cache.set("metric", [1], data_class="metric")
    clock.advance(120)
    assert cache.get("topology") == ["c1"]
    assert cache.get("metric") is None


def test_explicit_ttl_overrides_class(clock):
    cache = QueryCache(max_size=4, ttls=TTLS, clock=clock)
    cache.set("k", [1], ttl=5)
    clock.advance(5)
    assert cache.get("k") is None


def test_set_refreshes_entry(clock):
    cache = QueryCache(max_size=4, ttls=TTLS, clock=clock)
    cache.set("k", [1])
    clock.advance(50)
    cache.set("k", [2])
    clock.advance(50)
    assert cache.get("k") == [2]


# ── LRU ──────────────────────────────────────────────────

def test_lru_eviction_by_access(clock):
    cache = QueryCache(max_size=2, ttls=TTLS, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1      # a is now most recently used
    cache.set("c", 3)               # evicts b
    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert cache.stats()["evictions"] == 1


def test_size_never_exceeds_max(clock):
    cache = QueryCache(max_size=3, ttls=TTLS, clock=clock)
    for i in range(10):
        cache.set(f"k{i}", i)
    assert len(cache) == 3


# ── Stale area ───────────────────────────────────────────

def test_expired_entry_still_available_as_stale(clock):
    cache = QueryCache(max_size=4, ttls=TTLS, clock=clock)
    cache.set("k", ["old"])
    clock.advance(3600)
    assert cache.get("k") is None
    assert cache.get_stale("k") == ["old"]


def test_evicted_entry_available_as_stale(clock):
    cache = QueryCache(max_size=1, ttls=TTLS, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") is None
    assert cache.get_stale("a") == 1


def test_never_cached_has_no_stale(clock):
    assert QueryCache(max_size=1, ttls=TTLS, clock=clock).get_stale("nope") is None


# ── Maintenance ──────────────────────────────────────────

def test_invalidate_specific_and_all(clock):
    cache = QueryCache(max_size=4, ttls=TTLS, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.invalidate("a") == 1
    assert cache.get("a") is None
    assert cache.invalidate() == 1
    assert len(cache) == 0
    assert cache.get_stale("b") is None


def test_cleanup_expired(clock):
    cache = QueryCache(max_size=4, ttls=TTLS, clock=clock)
    cache.set("a", 1, ttl=1)
    cache.set("b", 2, ttl=100)
    clock.advance(10)
    assert cache.cleanup_expired() == 1
    assert len(cache) == 1


def test_stats(clock):
    cache = QueryCache(max_size=4, ttls=TTLS, clock=clock)
    cache.set("a", 1)
    cache.get("a")
    cache.get("missing")
    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5
    assert stats["ttl_seconds"] == TTLS
