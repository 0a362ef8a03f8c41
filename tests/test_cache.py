import pytest

from cache.core import CacheStore
from cache.invalidation import InvalidationEngine
from cache.ledger_keys import CacheKeys, CacheTags
from error_handling.errors import InvalidKey, KeyTooLong, ValueTooLarge
from monitoring.cache_metrics import MetricsCollector
from security.cache_validator import SecurityValidator
from config.settings import SecurityRules


@pytest.fixture
def engine(store):
    """Create an invalidation engine over the test store."""
    return InvalidationEngine(store)


def test_cache_basic_operations(store):
    """Test basic cache operations."""
    store.set("test_key", "test_value")
    assert store.get("test_key") == "test_value"
    assert store.has("test_key")
    assert "test_key" in store
    assert len(store) == 1

    assert store.delete("test_key") is True
    assert store.get("test_key") is None
    assert store.delete("test_key") is False


def test_set_returns_sanitized_key(store):
    """Keys are sanitized before storage and lookups sanitize the same way."""
    stored = store.set("group 1/<status>", {"cycle": 1})
    assert stored == "group_1/_status_"
    assert store.get("group 1/<status>") == {"cycle": 1}
    assert store.get("group_1/_status_") == {"cycle": 1}


def test_scenario_ttl_expiry_serves_stale(store, clock):
    """An expired entry is gone for get() but still served stale."""
    store.set("group:1", {"cycle": 1}, ttl=1.0, tags=["group:1"])
    clock.advance(1.5)

    assert store.get("group:1") is None
    lookup = store.get_with_stale_fallback("group:1")
    assert lookup.data == {"cycle": 1}
    assert lookup.stale is True
    # Expired entries are not swept
    assert store.has("group:1")


def test_ttl_boundary_is_strict(store, clock):
    """An entry is still fresh at exactly ttl seconds old."""
    store.set("k", 1, ttl=1.0)
    clock.advance(1.0)
    assert store.get("k") == 1
    clock.advance(0.001)
    assert store.get("k") is None


def test_ttl_resolution(clock):
    """Explicit TTL wins, then the resolver, then the default."""
    store = CacheStore(default_ttl=10, clock=clock,
                       ttl_resolver=lambda key: 30.0 if key.startswith("group:") else 10.0)
    store.set("group:1:status", 1)
    store.set("other", 2)
    store.set("explicit", 3, ttl=5)

    assert store.get_entry("group:1:status").ttl == 30.0
    assert store.get_entry("other").ttl == 10.0
    assert store.get_entry("explicit").ttl == 5


def test_set_rejects_non_positive_ttl(store):
    with pytest.raises(ValueError):
        store.set("k", 1, ttl=0)


def test_refresh_replaces_timestamp(store, clock):
    """A second set() replaces the entry and restarts its TTL."""
    store.set("k", 1, ttl=2)
    clock.advance(1.5)
    store.set("k", 2, ttl=2)
    clock.advance(1.5)
    assert store.get("k") == 2
    assert store.get_entry("k").timestamp == clock.now - 1.5


def test_scenario_invalidate_by_tag(store, engine):
    """Every entry with the tag goes; nothing else does."""
    store.set("a", "v", tags=["g"])
    store.set("b", "v", tags=["g"])
    store.set("c", "v", tags=["other"])

    assert engine.invalidate_by_tag("g") == 2
    assert not store.has("a")
    assert not store.has("b")
    assert store.has("c")
    assert store.keys_for_tag("g") == set()


def test_retagging_on_overwrite(store, engine):
    """Overwriting an entry drops it from its old tags."""
    store.set("a", 1, tags=["old"])
    store.set("a", 2, tags=["new"])

    assert engine.invalidate_by_tag("old") == 0
    assert store.get("a") == 2
    assert engine.invalidate_by_tag("new") == 1


def test_scenario_lru_eviction(clock):
    """Inserting one past capacity evicts exactly the oldest entry."""
    metrics = MetricsCollector(capacity=2, clock=clock)
    store = CacheStore(max_size=2, metrics=metrics, clock=clock)
    store.set("x", 1)
    clock.advance(1)
    store.set("y", 2)
    clock.advance(1)
    store.set("z", 3)

    assert metrics.evictions == 1
    assert not store.has("x")
    assert store.has("y")
    assert store.has("z")


def test_manual_eviction_updates_size(clock):
    metrics = MetricsCollector(capacity=10, clock=clock)
    store = CacheStore(max_size=10, metrics=metrics, clock=clock)
    store.set("x", 1)
    clock.advance(1)
    store.set("y", 2)
    assert metrics.size == 2

    assert store.evict_lru() == "x"
    assert metrics.size == 1
    assert metrics.get_metrics()["size"] == 1


def test_lru_uses_timestamp_not_insertion_order(clock):
    """A refreshed entry is younger than one written after it."""
    store = CacheStore(max_size=2, clock=clock)
    store.set("x", 1)
    clock.advance(1)
    store.set("y", 2)
    clock.advance(1)
    store.set("x", 10)
    clock.advance(1)
    store.set("z", 3)

    assert not store.has("y")
    assert store.get("x") == 10


def test_overwrite_at_capacity_does_not_evict(clock):
    store = CacheStore(max_size=2, clock=clock)
    store.set("x", 1)
    store.set("y", 2)
    store.set("x", 3)
    assert store.metrics.evictions == 0
    assert len(store) == 2


def test_invalidate_by_pattern(store, engine):
    """Pattern invalidation matches anywhere in the sanitized key."""
    store.set(CacheKeys.group_status("1"), "active")
    store.set(CacheKeys.group_members("1"), ["a", "b"])
    store.set(CacheKeys.group_status("2"), "active")

    assert engine.invalidate_by_pattern(r"^group:1:") == 2
    assert store.has(CacheKeys.group_status("2"))


def test_invalidate_by_version_keeps_unversioned(store, engine):
    """Entries without a version survive a version sweep."""
    store.set("v1", 1, version="1")
    store.set("v2", 2, version="2")
    store.set("none", 3)

    assert engine.invalidate_by_version("2") == 1
    assert not store.has("v1")
    assert store.has("v2")
    assert store.has("none")


def test_invalidate_tags_counts_each_entry_once(store, engine):
    store.set("a", 1, tags=["t1", "t2"])
    store.set("b", 2, tags=["t2"])
    assert engine.invalidate_tags(["t1", "t2"]) == 2
    assert store.metrics.invalidations == 2


def test_entity_invalidation_rules(store, engine):
    """A write to a group invalidates that group's entries and every group list."""
    store.set(CacheKeys.group_status("7"), "active", tags=[CacheTags.group("7")])
    store.set(CacheKeys.groups(), [], tags=[CacheTags.groups])
    store.set(CacheKeys.group_status("8"), "active", tags=[CacheTags.group("8")])

    assert engine.tags_for_entity("group", "7") == ["group:7", "groups"]
    assert engine.invalidate_entity("group", "7") == 2
    assert store.has(CacheKeys.group_status("8"))

    # Without an id only the id-free tags apply
    assert engine.tags_for_entity("transaction") == ["transactions"]
    with pytest.raises(KeyError):
        engine.tags_for_entity("wallet", "1")


def test_batch_operations(store):
    stored = store.set_batch([
        {"key": "a", "data": 1},
        {"key": "b", "data": 2, "ttl": 5, "tags": ["t"]},
    ])
    assert stored == ["a", "b"]
    assert store.get_batch(["a", "b", "missing"]) == {"a": 1, "b": 2, "missing": None}
    assert store.bust_multiple(["a", "missing"]) == 1


def test_clear_counts_invalidations(store):
    store.set("a", 1)
    store.set("b", 2)
    assert store.clear() == 2
    assert len(store) == 0
    assert store.metrics.invalidations == 2
    assert store.metrics.size == 0


def test_validation_on_write(clock):
    """Hard checks run before anything is stored."""
    validator = SecurityValidator(SecurityRules(max_key_length=8, max_value_bytes=16))
    store = CacheStore(validator=validator, clock=clock)

    with pytest.raises(InvalidKey):
        store.set("", 1)
    with pytest.raises(KeyTooLong):
        store.set("k" * 9, 1)
    with pytest.raises(ValueTooLarge):
        store.set("k", "x" * 32)
    assert len(store) == 0


def test_reads_record_metrics(store, clock):
    store.set("k", 1, ttl=1)
    store.get("k")
    store.get("missing")
    clock.advance(2)
    store.get_with_stale_fallback("k")

    assert store.metrics.hits == 1
    assert store.metrics.misses == 1
    assert store.metrics.stale_hits == 1


def test_stale_listeners_notified(store, clock):
    seen = []
    store.add_stale_listener(seen.append)
    store.set("k", 1, ttl=1)
    store.get_with_stale_fallback("k")
    clock.advance(2)
    store.get_with_stale_fallback("k")
    assert seen == ["k"]


def test_export_state(store, clock):
    """The snapshot lists every entry with its metadata and current metrics."""
    store.set("a", {"x": 1}, ttl=10, tags=["t"], version="2", etag="abc")
    clock.advance(4)
    state = store.export_state()

    entry = state["entries"][0]
    assert entry["key"] == "a"
    assert entry["age"] == 4
    assert entry["expired"] is False
    assert entry["tags"] == ["t"]
    assert entry["version"] == "2"
    assert entry["etag"] == "abc"
    assert state["tags"] == {"t": ["a"]}
    assert state["metrics"]["size"] == 1


def test_ledger_key_builders():
    assert CacheKeys.group("1") == "group:1"
    assert CacheKeys.groups() == "groups:all"
    assert CacheKeys.groups("GABC") == "groups:user:GABC"
    assert CacheKeys.transactions("1") == "group:1:transactions:start:10"
    assert CacheKeys.transactions("1", cursor="c2", limit=20) == "group:1:transactions:c2:20"
    assert CacheTags.user("GABC") == "user:GABC"
