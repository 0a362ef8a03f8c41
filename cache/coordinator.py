"""
Read-through access to ledger data.

``QueryCoordinator`` composes the store, invalidation, background
revalidation and the resilient fetcher:

- ``get_or_fetch`` serves fresh hits, serves stale hits while a background
  refresh runs, and on a miss shares one upstream call between every
  concurrent caller for the same key;
- ``invalidate_after_mutation`` drops everything tied to a confirmed write so
  the next read goes upstream.

Build one per application with ``build_coordinator`` and pass it around.
"""
import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Pattern, Union

import structlog

from config.logging import log_error
from config.settings import CacheSettings, HealthThresholds
from error_handling.circuit_breaker import CircuitBreakerConfig
from error_handling.fetcher import DEFAULT_ENDPOINT, ResilientFetcher
from error_handling.retry import RetryPolicy
from monitoring.cache_metrics import HealthReport, LoggingSink, MetricsCollector, MetricsSink
from security.cache_validator import CachePolicyDecision, SecurityValidator
from .core import CacheStore
from .invalidation import InvalidationEngine
from .revalidation import RevalidationQueueEntry, RevalidationScheduler

logger = structlog.get_logger()

FetchFn = Callable[[], Awaitable[Any]]


@dataclass
class _InFlight:
    tags: FrozenSet[str] = field(default_factory=frozenset)
    version: Optional[str] = None
    task: Optional["asyncio.Task[Any]"] = None
    superseded: bool = False
    waiters: int = 0


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    # Every caller may have stopped waiting; keep asyncio from logging an unretrieved exception.
    if not task.cancelled():
        task.exception()


class QueryCoordinator:
    """Facade over the cache components; the only object the caller layer needs."""

    def __init__(
        self,
        store: CacheStore,
        fetcher: ResilientFetcher,
        scheduler: Optional[RevalidationScheduler] = None,
        invalidation: Optional[InvalidationEngine] = None,
        stale_while_revalidate: bool = True,
        reject_sensitive: bool = False,
    ):
        self.store = store
        self.fetcher = fetcher
        self.metrics = store.metrics
        self.scheduler = scheduler or RevalidationScheduler(store, fetcher, reject_sensitive=reject_sensitive)
        self.invalidation = invalidation or InvalidationEngine(store)
        self.stale_while_revalidate = stale_while_revalidate
        self.reject_sensitive = reject_sensitive
        self._in_flight: Dict[str, _InFlight] = {}
        store.add_stale_listener(self.scheduler.mark_stale)

    # Read-through

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: FetchFn,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        version: Optional[str] = None,
        use_cache: bool = True,
        bust_cache: bool = False,
        endpoint: str = DEFAULT_ENDPOINT,
    ) -> Any:
        """
        Return cached data for ``key`` or fetch it through the resilient fetcher.

        Args:
            key: Cache key (sanitized before use)
            fetch_fn: Zero-argument coroutine function calling the ledger
            ttl: TTL in seconds for a freshly fetched value
            tags: Tags for a freshly fetched value
            version: Data-shape version for a freshly fetched value
            use_cache: Skip the cache lookup when False
            bust_cache: Delete the key before looking it up
            endpoint: Upstream endpoint whose circuit breaker guards the call

        Returns:
            The fresh, stale or newly fetched data

        Raises:
            CacheValidationError: For an invalid key or an unstorable value
            CircuitOpenError: When the endpoint's breaker is open
            UpstreamError: When the fetch failed; any cached entry is left intact
        """
        sanitized = self.store.validator.validate_key(key)
        tag_set = frozenset(tags) if tags is not None else None

        if bust_cache:
            self.bust(sanitized)

        if use_cache:
            if self.stale_while_revalidate:
                lookup = self.store.get_with_stale_fallback(sanitized)
                if lookup is not None:
                    if lookup.stale:
                        entry = lookup.entry
                        self.scheduler.schedule(
                            sanitized,
                            fetch_fn,
                            ttl=ttl if ttl is not None else entry.ttl,
                            tags=tag_set if tag_set is not None else entry.tags,
                            version=version if version is not None else entry.version,
                            endpoint=endpoint,
                        )
                        logger.debug("cache_stale_hit", key=sanitized)
                    return lookup.data
            else:
                entry = self.store.get_entry(sanitized)
                if entry is not None and not entry.is_expired(self.store.now()):
                    self.metrics.record_hit(sanitized)
                    return entry.data
                self.metrics.record_miss(sanitized)
        else:
            self.metrics.record_miss(sanitized)

        return await self._fetch_shared(sanitized, fetch_fn, ttl, tag_set or frozenset(), version, endpoint)

    async def _fetch_shared(
        self,
        key: str,
        fetch_fn: FetchFn,
        ttl: Optional[float],
        tags: FrozenSet[str],
        version: Optional[str],
        endpoint: str,
    ) -> Any:
        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            in_flight.waiters += 1
            logger.debug("request_coalesced", key=key, waiters=in_flight.waiters)
        else:
            in_flight = _InFlight(tags=tags, version=version)
            in_flight.task = asyncio.get_running_loop().create_task(
                self._fetch_and_store(key, in_flight, fetch_fn, ttl, tags, version, endpoint)
            )
            in_flight.task.add_done_callback(_consume_exception)
            self._in_flight[key] = in_flight
            logger.debug("upstream_fetch_started", key=key, endpoint=endpoint)

        # The fetch belongs to the slot, not to any caller: a cancelled caller
        # only stops its own wait.
        return await asyncio.shield(in_flight.task)

    async def _fetch_and_store(
        self,
        key: str,
        in_flight: _InFlight,
        fetch_fn: FetchFn,
        ttl: Optional[float],
        tags: FrozenSet[str],
        version: Optional[str],
        endpoint: str,
    ) -> Any:
        try:
            data = await self.fetcher.execute(fetch_fn, endpoint)
            if not in_flight.superseded:
                if self.reject_sensitive:
                    self.store.validator.enforce(key, data)
                self.store.set(key, data, ttl=ttl, tags=tags, version=version)
            return data
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_error(logger, e, {"operation": "get_or_fetch", "key": key, "endpoint": endpoint})
            raise
        finally:
            if self._in_flight.get(key) is in_flight:
                del self._in_flight[key]

    def in_flight_keys(self) -> List[str]:
        return list(self._in_flight)

    # Writes and invalidation

    def invalidate_after_mutation(self, related_tags: Union[str, Iterable[str]]) -> int:
        """
        Invalidate every tag tied to a confirmed write.

        Fetches and refreshes already in flight for the affected keys are
        detached and will not write their (pre-mutation) results, so the next
        read of any of these tags goes upstream.

        Returns:
            Number of entries removed
        """
        tags = [related_tags] if isinstance(related_tags, str) else list(related_tags)
        tag_set = set(tags)
        keys = set()
        for tag in tags:
            keys |= self.store.keys_for_tag(tag)

        self._supersede_in_flight(lambda k, f: k in keys or bool(f.tags & tag_set))
        self.scheduler.supersede(keys=keys, tags=tag_set)
        count = self.invalidation.invalidate_tags(tags)
        logger.info("mutation_invalidated", tags=tags, count=count)
        return count

    def invalidate_entity(self, entity_type: str, entity_id: Optional[str] = None) -> int:
        """``invalidate_after_mutation`` for the tags of a ledger entity."""
        return self.invalidate_after_mutation(
            self.invalidation.tags_for_entity(entity_type, entity_id)
        )

    def invalidate_by_tag(self, tag: str) -> int:
        return self.invalidate_after_mutation([tag])

    def invalidate_by_pattern(self, pattern: Union[str, Pattern[str]]) -> int:
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        self._supersede_in_flight(lambda k, f: bool(regex.search(k)))
        self.scheduler.supersede(keys=[k for k in self.scheduler.refreshing_keys() if regex.search(k)])
        return self.invalidation.invalidate_by_pattern(regex)

    def invalidate_by_version(self, version: str) -> int:
        """
        Drop entries stamped with a version other than ``version``.

        Fetches and refreshes that would write another version are detached
        so they cannot put the old shape back.
        """
        self._supersede_in_flight(lambda k, f: f.version is not None and f.version != version)
        self.scheduler.supersede_versions(version)
        return self.invalidation.invalidate_by_version(version)

    def _supersede_in_flight(self, predicate: Callable[[str, _InFlight], bool]) -> None:
        for key in [k for k, f in self._in_flight.items() if predicate(k, f)]:
            self._in_flight.pop(key).superseded = True
            logger.debug("in_flight_superseded", key=key)

    # Facade over the store

    def get(self, key: str) -> Optional[Any]:
        return self.store.get(key)

    def set(self, key: str, value: Any, ttl: Optional[float] = None,
            tags: Optional[Iterable[str]] = None, version: Optional[str] = None,
            etag: Optional[str] = None) -> str:
        if self.reject_sensitive:
            self.store.validator.enforce(self.store.validator.validate_key(key), value)
        return self.store.set(key, value, ttl=ttl, tags=tags, version=version, etag=etag)

    def has(self, key: str) -> bool:
        return self.store.has(key)

    def bust(self, key: str) -> bool:
        sanitized = self.store.validator.validate_key(key)
        self._supersede_in_flight(lambda k, f: k == sanitized)
        self.scheduler.supersede(keys=[sanitized])
        return self.store.delete(sanitized)

    def bust_multiple(self, keys: Iterable[str]) -> int:
        return sum(1 for key in keys if self.bust(key))

    def clear(self) -> int:
        self._supersede_in_flight(lambda k, f: True)
        self.scheduler.supersede_all()
        return self.store.clear()

    def should_cache(self, key: str, value: Any) -> CachePolicyDecision:
        return self.store.validator.should_cache(self.store.validator.validate_key(key), value)

    # Diagnostics

    def get_revalidation_queue(self) -> List[RevalidationQueueEntry]:
        return self.scheduler.get_revalidation_queue()

    def get_metrics(self) -> Dict[str, Any]:
        metrics = self.metrics.get_metrics()
        metrics["in_flight"] = len(self._in_flight)
        metrics["revalidation_queue"] = len(self.scheduler.get_revalidation_queue())
        metrics["revalidations_pending"] = self.scheduler.pending_count
        return metrics

    def check_health(self, thresholds: Optional[HealthThresholds] = None) -> HealthReport:
        return self.metrics.check_health(thresholds)

    def export_state(self) -> Dict[str, Any]:
        state = self.store.export_state()
        state["metrics"] = self.get_metrics()
        state["revalidation_queue"] = [
            {"key": e.key, "due_since": e.due_since} for e in self.scheduler.get_revalidation_queue()
        ]
        state["in_flight"] = self.in_flight_keys()
        state["circuit_breakers"] = self.fetcher.breaker_states()
        return state

    async def aclose(self, cancel: bool = False) -> None:
        """Wait for (or cancel) outstanding background refreshes."""
        if cancel:
            await self.scheduler.cancel_all()
        else:
            await self.scheduler.flush()


def build_coordinator(
    settings: Optional[CacheSettings] = None,
    sink: Optional[MetricsSink] = None,
    clock: Optional[Callable[[], float]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> QueryCoordinator:
    """
    Composition root: wire every component from ``settings``.

    Args:
        settings: Resolved settings; defaults to the profile named by the environment
        sink: Metrics destination; defaults to a structlog sink
        clock: Single time source for every component (tests pass a fake one);
            defaults to wall time for entries and monotonic time elsewhere
        sleep: Awaitable sleep used between retries
    """
    settings = settings or CacheSettings.for_environment()
    wall_clock = clock or time.time
    mono_clock = clock or time.monotonic

    metrics = MetricsCollector(
        capacity=settings.max_size,
        sink=sink or LoggingSink(),
        clock=mono_clock,
        thresholds=settings.health,
    )
    validator = SecurityValidator(settings.security_rules, clock=mono_clock)
    store = CacheStore(
        max_size=settings.max_size,
        default_ttl=settings.default_ttl,
        validator=validator,
        metrics=metrics,
        clock=wall_clock,
        ttl_resolver=settings.ttl_for,
    )
    fetcher = ResilientFetcher(
        retry_policy=RetryPolicy(**settings.retry.model_dump()),
        breaker_config=CircuitBreakerConfig(
            failure_threshold=settings.breaker.failure_threshold,
            failure_window=settings.breaker.failure_window,
            base_cooldown=settings.breaker.base_cooldown,
            max_cooldown=settings.breaker.max_cooldown,
        ),
        call_timeout=settings.breaker.call_timeout,
        clock=mono_clock,
        sleep=sleep,
        metrics=metrics,
    )
    scheduler = RevalidationScheduler(
        store, fetcher, metrics=metrics, clock=wall_clock,
        reject_sensitive=settings.security_rules.reject_sensitive,
    )
    coordinator = QueryCoordinator(
        store,
        fetcher,
        scheduler=scheduler,
        invalidation=InvalidationEngine(store),
        stale_while_revalidate=settings.stale_while_revalidate,
        reject_sensitive=settings.security_rules.reject_sensitive,
    )
    logger.info("ledger_cache_ready", environment=settings.environment.value,
                max_size=settings.max_size, default_ttl=settings.default_ttl,
                stale_while_revalidate=settings.stale_while_revalidate)
    return coordinator
