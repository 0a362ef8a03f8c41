"""
Core caching functionality for the ledger data-access layer.

``CacheStore`` is a synchronous, in-memory key -> entry map with TTL, tags,
versions and oldest-first eviction. Every key and value passes the
``SecurityValidator`` hard checks before it is stored. Expired entries are
not swept: ``get`` simply treats them as absent, while
``get_with_stale_fallback`` still serves them, flagged stale.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Set, Tuple

import structlog

from monitoring.cache_metrics import MetricsCollector
from security.cache_validator import SecurityValidator

logger = structlog.get_logger()


@dataclass(frozen=True)
class CacheEntry:
    """
    One stored value. Entries are immutable: a refresh replaces the whole
    entry, so ``timestamp`` only ever changes through ``CacheStore.set``.
    """
    data: Any
    timestamp: float
    ttl: float
    tags: FrozenSet[str] = field(default_factory=frozenset)
    version: Optional[str] = None
    etag: Optional[str] = None

    def age(self, now: float) -> float:
        return now - self.timestamp

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


@dataclass(frozen=True)
class CacheLookup:
    """Result of a read that may return expired data."""
    key: str
    data: Any
    stale: bool
    entry: CacheEntry


StaleListener = Callable[[str], None]


class CacheStore:
    """
    In-memory cache store.

    Single event loop, no locking: every method runs to completion without
    awaiting, so bulk operations are never observed half-done.
    """

    def __init__(
        self,
        max_size: int = 100,
        default_ttl: float = 300.0,
        validator: Optional[SecurityValidator] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
        ttl_resolver: Optional[Callable[[str], float]] = None,
    ):
        """
        Initialize the store.

        Args:
            max_size: Maximum number of entries
            default_ttl: TTL in seconds for entries stored without one
            validator: Hard checks applied on every write
            metrics: Collector receiving hit/miss/eviction/invalidation events
            clock: Time source in seconds for entry timestamps
            ttl_resolver: Maps a key to its TTL when ``set`` gets none;
                falls back to ``default_ttl``
        """
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._entries: Dict[str, CacheEntry] = {}
        self._tags: Dict[str, Set[str]] = {}
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.validator = validator or SecurityValidator()
        self.metrics = metrics or MetricsCollector(capacity=max_size)
        self._clock = clock
        self._ttl_resolver = ttl_resolver
        self._stale_listeners: List[StaleListener] = []

    def now(self) -> float:
        return self._clock()

    def add_stale_listener(self, listener: StaleListener) -> None:
        """Register a callback invoked with each key served stale."""
        self._stale_listeners.append(listener)

    # Reads

    def get(self, key: str) -> Optional[Any]:
        """
        Get a fresh value from the cache.

        Args:
            key: Cache key to retrieve

        Returns:
            The cached value, or None if absent or expired. Expired entries are kept.
        """
        sanitized = self._validate_read(key)
        entry = self._entries.get(sanitized)
        if entry is None or entry.is_expired(self._clock()):
            self.metrics.record_miss(sanitized)
            return None
        self.metrics.record_hit(sanitized)
        return entry.data

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Raw entry for ``key`` regardless of staleness."""
        return self._entries.get(self._validate_read(key))

    def get_with_stale_fallback(self, key: str) -> Optional[CacheLookup]:
        """
        Get a value even if it has expired.

        Expired results are flagged ``stale`` and reported to every stale
        listener, which is how background revalidation gets scheduled.

        Returns:
            A ``CacheLookup`` or None if the key is absent
        """
        sanitized = self._validate_read(key)
        entry = self._entries.get(sanitized)
        if entry is None:
            self.metrics.record_miss(sanitized)
            return None

        stale = entry.is_expired(self._clock())
        if not stale:
            self.metrics.record_hit(sanitized)
        else:
            self.metrics.record_stale_hit(sanitized)
            for listener in self._stale_listeners:
                listener(sanitized)
        return CacheLookup(key=sanitized, data=entry.data, stale=stale, entry=entry)

    def has(self, key: str) -> bool:
        """True if ``key`` is stored, fresh or not."""
        return self.validator.validate_key(key) in self._entries

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> List[str]:
        return list(self._entries)

    def entries(self) -> Iterator[Tuple[str, CacheEntry]]:
        """Snapshot iterator; safe to delete while iterating."""
        return iter(list(self._entries.items()))

    def keys_for_tag(self, tag: str) -> Set[str]:
        return set(self._tags.get(tag, ()))

    def get_batch(self, keys: Iterable[str]) -> Dict[str, Optional[Any]]:
        return {key: self.get(key) for key in keys}

    # Writes

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        version: Optional[str] = None,
        etag: Optional[str] = None,
    ) -> str:
        """
        Set a value in the cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time-to-live in seconds, or None for the key's configured TTL
            tags: Labels for bulk invalidation
            version: Data-shape version, used by version invalidation
            etag: Upstream entity tag, kept for diagnostics

        Returns:
            The sanitized key the value was stored under

        Raises:
            CacheValidationError: If the key or value fails validation
        """
        sanitized = self.validator.validate_key(key)
        self.validator.check_rate_limit(sanitized)
        self.validator.validate_value(value)

        if ttl is None:
            ttl = self._ttl_resolver(sanitized) if self._ttl_resolver else self.default_ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")

        if sanitized not in self._entries and len(self._entries) >= self.max_size:
            self.evict_lru()

        previous = self._entries.get(sanitized)
        if previous is not None:
            self._untag(sanitized, previous.tags)

        entry = CacheEntry(
            data=value,
            timestamp=self._clock(),
            ttl=ttl,
            tags=frozenset(tags or ()),
            version=version,
            etag=etag,
        )
        self._entries[sanitized] = entry
        for tag in entry.tags:
            self._tags.setdefault(tag, set()).add(sanitized)

        self.metrics.set_size(len(self._entries))
        return sanitized

    def set_batch(self, items: Iterable[Dict[str, Any]]) -> List[str]:
        """
        Store several entries.

        Args:
            items: Mappings with ``key`` and ``data`` plus optional ``ttl``,
                ``tags``, ``version`` and ``etag``
        """
        stored = []
        for item in items:
            options = {k: item[k] for k in ("ttl", "tags", "version", "etag") if k in item}
            stored.append(self.set(item["key"], item["data"], **options))
        return stored

    def delete(self, key: str) -> bool:
        """
        Delete a key from the cache.

        Returns:
            True if deleted, False if key not found
        """
        sanitized = self.validator.validate_key(key)
        if self._remove(sanitized) is None:
            return False
        self.metrics.record_invalidation(1, reason="delete")
        self.metrics.set_size(len(self._entries))
        return True

    bust = delete

    def bust_multiple(self, keys: Iterable[str]) -> int:
        """Delete several keys. Returns how many were present."""
        return sum(1 for key in keys if self.delete(key))

    def remove_many(self, keys: Iterable[str], reason: str) -> int:
        """
        Remove already-sanitized keys as a single invalidation.

        Used by bulk invalidation sweeps; counts one invalidation per entry removed.
        """
        removed = 0
        for key in keys:
            if self._remove(key) is not None:
                removed += 1
        if removed:
            self.metrics.record_invalidation(removed, reason=reason)
            self.metrics.set_size(len(self._entries))
        return removed

    def clear(self) -> int:
        """
        Remove every entry.

        Returns:
            Number of entries removed
        """
        count = len(self._entries)
        self._entries.clear()
        self._tags.clear()
        self.metrics.record_invalidation(count, reason="clear")
        self.metrics.set_size(0)
        logger.info("cache_cleared", entries=count)
        return count

    def evict_lru(self) -> Optional[str]:
        """
        Evict the entry with the oldest ``timestamp``.

        Freshness age stands in for recency: reads do not refresh an entry.

        Returns:
            The evicted key, or None if the store is empty
        """
        if not self._entries:
            return None
        oldest_key = min(self._entries.items(), key=lambda item: item[1].timestamp)[0]
        self._remove(oldest_key)
        self.metrics.record_eviction(oldest_key)
        self.metrics.set_size(len(self._entries))
        logger.debug("cache_evicted", key=oldest_key)
        return oldest_key

    # Diagnostics

    def export_state(self) -> Dict[str, Any]:
        """Debug snapshot of every entry, the tag index and current metrics."""
        now = self._clock()
        return {
            "entries": [
                {
                    "key": key,
                    "timestamp": entry.timestamp,
                    "ttl": entry.ttl,
                    "age": entry.age(now),
                    "expired": entry.is_expired(now),
                    "tags": sorted(entry.tags),
                    "version": entry.version,
                    "etag": entry.etag,
                }
                for key, entry in self._entries.items()
            ],
            "tags": {tag: sorted(keys) for tag, keys in self._tags.items()},
            "metrics": self.metrics.get_metrics(),
        }

    # Internals

    def _validate_read(self, key: str) -> str:
        sanitized = self.validator.validate_key(key)
        self.validator.check_rate_limit(sanitized)
        return sanitized

    def _remove(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._untag(key, entry.tags)
        return entry

    def _untag(self, key: str, tags: Iterable[str]) -> None:
        for tag in tags:
            keys = self._tags.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tags[tag]
