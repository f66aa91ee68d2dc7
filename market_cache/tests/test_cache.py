"""
Tests for market_cache.cache.CacheStore.

Each test creates a fresh CacheStore driven by a fake clock so TTL boundaries
are exact and no test sleeps on wall-clock time.

Run with:
    pytest market_cache/tests/test_cache.py -v
"""

import logging
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from market_cache.cache import CacheConfig, CacheStore, estimate_size, normalize_key


def make_store(clock, **config) -> CacheStore:
    return CacheStore(CacheConfig(**config), name="test", clock=clock)


# ---------------------------------------------------------------------------
# 1. Basic set / get round-trip
# ---------------------------------------------------------------------------
def test_set_and_get_only(clock) -> None:
    """A value stored with set() must be retrievable with get_only()."""
    store = make_store(clock)
    store.set("stock:NVDA", {"price": 875.42}, ttl=60)
    assert store.get_only("stock:NVDA") == {"price": 875.42}


def test_get_only_missing_key(clock) -> None:
    store = make_store(clock)
    assert store.get_only("does_not_exist") is None
    assert store.get_only("does_not_exist", default="absent") == "absent"


# ---------------------------------------------------------------------------
# 2. Key normalization
# ---------------------------------------------------------------------------
def test_key_normalization_collides(clock) -> None:
    """' AAPL ' and 'aapl' address the same entry."""
    store = make_store(clock)
    store.set(" AAPL ", 190.5)
    assert store.get_only("aapl") == 190.5
    assert store.has("Aapl")
    assert store.keys() == ["aapl"]


def test_normalize_key() -> None:
    assert normalize_key("  Stock:MSFT \n") == "stock:msft"


# ---------------------------------------------------------------------------
# 3. TTL boundaries
# ---------------------------------------------------------------------------
def test_entry_fresh_until_ttl_boundary(clock) -> None:
    """Present strictly before and at the TTL, absent once age exceeds it."""
    store = make_store(clock)
    store.set("k", 1, ttl=1.0)

    clock.advance(0.999)
    assert store.get_only("k") == 1

    clock.advance(0.002)
    assert store.get_only("k") is None
    assert not store.has("k")


def test_entry_at_exact_ttl_is_fresh(clock) -> None:
    store = make_store(clock)
    store.set("k", 1, ttl=1.0)
    clock.advance(1.0)
    assert store.has("k")


def test_stale_entry_is_not_removed_on_read(clock) -> None:
    """Stale entries count as misses but stay until swept."""
    store = make_store(clock)
    store.set("k", "v", ttl=1)
    clock.advance(2)

    assert store.get_only("k") is None
    assert len(store) == 1


def test_default_ttl_applies_when_ttl_missing(clock) -> None:
    store = make_store(clock, default_ttl=10)
    store.set("a", 1)
    store.set("b", 2, ttl=0)

    clock.advance(9)
    assert store.has("a") and store.has("b")
    clock.advance(2)
    assert not store.has("a") and not store.has("b")


# ---------------------------------------------------------------------------
# 4. Replacement resets freshness and access metadata
# ---------------------------------------------------------------------------
def test_replacement_resets_freshness(clock) -> None:
    store = make_store(clock)
    store.set("k", "v1", ttl=0.1)
    clock.advance(0.05)
    store.set("k", "v2", ttl=0.1)
    clock.advance(0.08)

    assert store.get_only("k") == "v2"


def test_replacement_resets_access_count(clock) -> None:
    store = make_store(clock)
    store.set("k", "v1")
    store.get_only("k")
    store.get_only("k")
    assert store.entries()[0].access_count == 3

    store.set("k", "v2")
    entry = store.entries()[0]
    assert entry.access_count == 1
    assert entry.value == "v2"
    assert len(store) == 1


def test_hit_updates_access_metadata(clock) -> None:
    store = make_store(clock)
    store.set("k", 1)
    clock.advance(5)
    store.get_only("k")

    entry = store.entries()[0]
    assert entry.access_count == 2
    assert entry.last_accessed_at == clock.now


# ---------------------------------------------------------------------------
# 5. Delete / clear
# ---------------------------------------------------------------------------
def test_delete_reports_existence(clock) -> None:
    store = make_store(clock)
    store.set("to_delete", 42)
    assert store.delete("TO_DELETE") is True
    assert store.get_only("to_delete") is None
    assert store.delete("to_delete") is False


def test_clear_removes_all(clock) -> None:
    store = make_store(clock)
    for k in ["alpha", "beta", "gamma"]:
        store.set(k, k.upper())

    store.clear()

    assert len(store) == 0
    assert store.get_stats().total_size == 0


# ---------------------------------------------------------------------------
# 6. Tag invalidation
# ---------------------------------------------------------------------------
def test_invalidate_by_tags_removes_only_tagged(clock) -> None:
    store = make_store(clock)
    store.set("k1", 1, tags=["stock", "symbol:AAPL"])
    store.set("k2", 2, tags=["stock", "symbol:MSFT"])
    store.set("k3", 3, tags=["market"])

    assert store.invalidate_by_tags(["symbol:AAPL"]) == 1
    assert store.keys() == ["k2", "k3"]

    assert store.invalidate_by_tags({"stock", "market"}) == 2
    assert len(store) == 0


def test_invalidate_by_unknown_tag_is_noop(clock) -> None:
    store = make_store(clock)
    store.set("k1", 1, tags=["stock"])
    store.set("k2", 2)
    assert store.invalidate_by_tags(["crypto"]) == 0
    assert len(store) == 2


# ---------------------------------------------------------------------------
# 7. Capacity and eviction
# ---------------------------------------------------------------------------
def test_entry_count_never_exceeds_max_entries(clock) -> None:
    store = make_store(clock, max_entries=10)
    for i in range(50):
        clock.advance(1)
        store.set(f"k{i}", i)
        assert store.get_stats().total_entries <= 10


def test_eviction_prefers_least_recently_accessed(clock) -> None:
    store = make_store(clock, max_entries=4)
    for i in range(4):
        store.set(f"k{i}", i)
        clock.advance(1)

    # k0 becomes the most recently used entry.
    store.get_only("k0")
    clock.advance(1)
    store.set("k4", 4)

    assert not store.has("k1")
    for key in ["k0", "k2", "k3", "k4"]:
        assert store.has(key), f"{key} should survive eviction"


def test_eviction_removes_a_quarter_per_pass(clock) -> None:
    store = make_store(clock, max_entries=8)
    for i in range(8):
        store.set(f"k{i}", i)
        clock.advance(1)

    store.set("new", "value")

    # ceil(8 * 0.25) == 2 oldest entries evicted.
    assert not store.has("k0")
    assert not store.has("k1")
    assert len(store) == 7


def test_replacement_does_not_trigger_eviction(clock) -> None:
    store = make_store(clock, max_entries=2)
    store.set("a", 1)
    store.set("b", 2)
    store.set("a", 3)

    assert store.get_only("a") == 3
    assert store.get_only("b") == 2


def test_byte_limit_evicts_oldest(clock) -> None:
    value = "x" * 40  # 42 bytes once JSON-encoded
    store = make_store(clock, max_bytes=100)
    store.set("a", value)
    clock.advance(1)
    store.set("b", value)
    clock.advance(1)
    store.set("c", value)

    assert not store.has("a")
    assert store.has("b") and store.has("c")
    assert store.get_stats().total_size == 84


def test_expired_entries_are_swept_before_evicting(clock) -> None:
    store = make_store(clock, max_entries=2)
    store.set("short", 1, ttl=1)
    store.set("long", 2, ttl=100)
    clock.advance(5)

    store.set("new", 3)

    assert store.has("long")
    assert store.has("new")
    assert store.keys() == ["long", "new"]


def test_oversized_value_is_still_stored(clock, caplog: pytest.LogCaptureFixture) -> None:
    store = make_store(clock, max_bytes=10)
    store.set("small", 1)

    with caplog.at_level(logging.WARNING, logger="market_cache.cache"):
        store.set("big", "x" * 40)

    assert store.keys() == ["big"]
    assert "exceeds max_bytes" in caplog.text


# ---------------------------------------------------------------------------
# 8. Sweep
# ---------------------------------------------------------------------------
def test_sweep_expired_removes_only_stale(clock) -> None:
    store = make_store(clock)
    store.set("fast", "soon_gone", ttl=1)
    store.set("slow", "still_here", ttl=60)
    clock.advance(2)

    assert store.sweep_expired() == 1
    assert store.keys() == ["slow"]
    assert store.get_stats().total_entries == 1


# ---------------------------------------------------------------------------
# 9. Stats
# ---------------------------------------------------------------------------
def test_stats_on_empty_store(clock) -> None:
    stats = make_store(clock).get_stats()
    assert stats.total_entries == 0
    assert stats.hit_rate == 0.0
    assert stats.oldest_entry is None
    assert stats.newest_entry is None


def test_stats_hit_rate_and_timestamps(clock) -> None:
    store = make_store(clock)
    first = clock.now
    store.set("a", 1)
    clock.advance(10)
    store.set("b", 2)

    for _ in range(3):
        store.record_lookup(hit=True)
    store.record_lookup(hit=False)

    stats = store.get_stats()
    assert stats.total_requests == 4
    assert stats.total_hits == 3
    assert stats.total_misses == 1
    assert stats.hit_rate == pytest.approx(75.0)
    assert stats.oldest_entry == datetime.fromtimestamp(first, tz=timezone.utc)
    assert stats.newest_entry == datetime.fromtimestamp(first + 10, tz=timezone.utc)
    assert stats.total_size == estimate_size(1) + estimate_size(2)


def test_stats_follow_deletes(clock) -> None:
    store = make_store(clock)
    store.set("a", {"price": 1.0})
    store.set("b", {"price": 2.0})
    store.delete("a")

    stats = store.get_stats()
    assert stats.total_entries == 1
    assert stats.total_size == estimate_size({"price": 2.0})


# ---------------------------------------------------------------------------
# 10. Size estimation
# ---------------------------------------------------------------------------
def test_estimate_size_uses_json_length() -> None:
    assert estimate_size({"a": 1}) == len('{"a": 1}')
    assert estimate_size("abc") == 5
    assert estimate_size(True) == 4


def test_estimate_size_handles_circular_reference(caplog: pytest.LogCaptureFixture) -> None:
    loop: list = []
    loop.append(loop)

    with caplog.at_level(logging.WARNING, logger="market_cache.cache"):
        assert estimate_size(loop) == 1024

    assert "fell back" in caplog.text


def test_estimate_size_unserializable_object() -> None:
    assert estimate_size(object()) == 1024


def test_set_accepts_unserializable_value(clock) -> None:
    store = make_store(clock)
    marker = object()
    store.set("obj", marker)
    assert store.get_only("obj") is marker


# ---------------------------------------------------------------------------
# 11. Configuration
# ---------------------------------------------------------------------------
def test_update_config_validates(clock) -> None:
    store = make_store(clock)
    updated = store.update_config(max_entries=5)
    assert updated.max_entries == 5
    assert store.config.max_entries == 5

    with pytest.raises(ValidationError):
        store.update_config(max_entries=0)
    assert store.config.max_entries == 5


def test_entries_are_snapshots(clock) -> None:
    store = make_store(clock)
    store.set("k", 1)
    snapshot = store.entries()[0]
    snapshot.access_count = 99

    assert store.entries()[0].access_count == 1

