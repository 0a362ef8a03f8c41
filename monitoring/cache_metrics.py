"""
Metrics for the ledger cache.

``MetricsCollector`` keeps in-process counters and a sliding window of
evictions and invalidations for health checks; every recorded event is also
forwarded to a pluggable sink (structlog, Prometheus, or nothing).

Stale hits count as hits in the hit rate:
``hit_rate = (hits + stale_hits) / (hits + stale_hits + misses)``.
"""
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge

from config.settings import HealthThresholds

logger = structlog.get_logger()

LOOKUP_EVENTS = ("hit", "stale_hit", "miss")


class MetricsSink:
    """Receives every metrics event. Subclasses decide where it goes."""

    def report(self, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class NullSink(MetricsSink):
    def report(self, event: str, payload: Dict[str, Any]) -> None:
        pass


class LoggingSink(MetricsSink):
    """Emits each event as a structlog debug line."""

    def __init__(self, log: Any = None):
        self._log = log or logger

    def report(self, event: str, payload: Dict[str, Any]) -> None:
        self._log.debug("cache_metric", metric=event, **payload)


class PrometheusSink(MetricsSink):
    """
    Exports events through prometheus_client.

    Each sink owns its own ``CollectorRegistry`` unless one is passed in, so
    several caches (or tests) can coexist in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "ledger_cache"):
        self.registry = registry or CollectorRegistry()
        self.lookups = Counter(
            f'{namespace}_lookups_total',
            'Cache lookups by result',
            ['result'],
            registry=self.registry,
        )
        self.events = Counter(
            f'{namespace}_events_total',
            'Cache and upstream events',
            ['event'],
            registry=self.registry,
        )
        self.size = Gauge(
            f'{namespace}_entries',
            'Current number of entries in the cache',
            registry=self.registry,
        )

    def report(self, event: str, payload: Dict[str, Any]) -> None:
        if event in LOOKUP_EVENTS:
            self.lookups.labels(result=event).inc()
        elif event == "size":
            self.size.set(payload.get("size", 0))
            return
        else:
            self.events.labels(event=event).inc(payload.get("count", 1))
        if "size" in payload:
            self.size.set(payload["size"])


@dataclass
class HealthReport:
    healthy: bool
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"healthy": self.healthy, "issues": list(self.issues), "warnings": list(self.warnings)}


class MetricsCollector:
    """Counters, hit rate and health evaluation for one cache instance."""

    def __init__(
        self,
        capacity: int,
        sink: Optional[MetricsSink] = None,
        clock: Callable[[], float] = time.monotonic,
        window: float = 60.0,
        thresholds: Optional[HealthThresholds] = None,
    ):
        """
        Args:
            capacity: Maximum number of entries of the observed store
            sink: Destination for every event; defaults to ``NullSink``
            clock: Monotonic time source in seconds
            window: Width of the sliding window used for per-minute rates
            thresholds: Defaults for ``check_health``
        """
        self.capacity = capacity
        self.sink = sink or NullSink()
        self.thresholds = thresholds or HealthThresholds()
        self._clock = clock
        self._window = window
        self._evictions_window: Deque[Tuple[float, int]] = deque()
        self._invalidations_window: Deque[Tuple[float, int]] = deque()
        self.reset()

    def reset(self) -> None:
        """Zero all counters; ``size`` keeps tracking the store."""
        size = getattr(self, "size", 0)
        self.hits = 0
        self.misses = 0
        self.stale_hits = 0
        self.evictions = 0
        self.invalidations = 0
        self.revalidations = 0
        self.revalidation_failures = 0
        self.size = size
        self._evictions_window.clear()
        self._invalidations_window.clear()

    # Recording

    def record_event(self, event: str, **payload: Any) -> None:
        self.sink.report(event, payload)

    def record_hit(self, key: str) -> None:
        self.hits += 1
        self.record_event("hit", key=key)

    def record_stale_hit(self, key: str) -> None:
        self.stale_hits += 1
        self.record_event("stale_hit", key=key)

    def record_miss(self, key: str) -> None:
        self.misses += 1
        self.record_event("miss", key=key)

    def record_eviction(self, key: str) -> None:
        self.evictions += 1
        self._evictions_window.append((self._clock(), 1))
        self.record_event("eviction", key=key)

    def record_invalidation(self, count: int = 1, reason: str = "delete") -> None:
        if count <= 0:
            return
        self.invalidations += count
        self._invalidations_window.append((self._clock(), count))
        self.record_event("invalidation", count=count, reason=reason)

    def record_revalidation(self, key: str, success: bool) -> None:
        if success:
            self.revalidations += 1
        else:
            self.revalidation_failures += 1
        self.record_event("revalidation", key=key, success=success)

    def set_size(self, size: int) -> None:
        self.size = size
        self.record_event("size", size=size)

    # Derived values

    @property
    def lookups(self) -> int:
        return self.hits + self.stale_hits + self.misses

    @property
    def hit_rate(self) -> float:
        total = self.lookups
        if total == 0:
            return 0.0
        return (self.hits + self.stale_hits) / total

    def _rate_per_minute(self, samples: Deque[Tuple[float, int]]) -> float:
        horizon = self._clock() - self._window
        while samples and samples[0][0] <= horizon:
            samples.popleft()
        return sum(count for _, count in samples) * (60.0 / self._window)

    def evictions_per_minute(self) -> float:
        return self._rate_per_minute(self._evictions_window)

    def invalidations_per_minute(self) -> float:
        return self._rate_per_minute(self._invalidations_window)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "revalidations": self.revalidations,
            "revalidation_failures": self.revalidation_failures,
            "size": self.size,
            "capacity": self.capacity,
            "hit_rate": self.hit_rate,
        }

    def check_health(self, thresholds: Optional[HealthThresholds] = None) -> HealthReport:
        """
        Compare current metrics against ``thresholds``.

        Breaching a threshold is an issue and marks the report unhealthy.
        Approaching one (80% of a ceiling, or within 10 points of the minimum
        hit rate) is a warning only.
        """
        t = thresholds or self.thresholds
        issues: List[str] = []
        warnings: List[str] = []

        if self.lookups >= t.min_samples:
            rate = self.hit_rate
            if rate < t.min_hit_rate:
                issues.append(f"hit rate {rate:.2%} below minimum {t.min_hit_rate:.2%}")
            elif rate < min(1.0, t.min_hit_rate + 0.1):
                warnings.append(f"hit rate {rate:.2%} close to minimum {t.min_hit_rate:.2%}")

        if self.capacity:
            fraction = self.size / self.capacity
            if fraction > t.max_size_fraction:
                issues.append(f"cache size {self.size}/{self.capacity} above {t.max_size_fraction:.0%} of capacity")
            elif fraction > t.max_size_fraction * 0.8:
                warnings.append(f"cache size {self.size}/{self.capacity} approaching {t.max_size_fraction:.0%} of capacity")

        for label, rate, ceiling in (
            ("eviction", self.evictions_per_minute(), t.max_evictions_per_minute),
            ("invalidation", self.invalidations_per_minute(), t.max_invalidations_per_minute),
        ):
            if rate > ceiling:
                issues.append(f"{label} rate {rate:.1f}/min above {ceiling:g}/min")
            elif ceiling and rate > ceiling * 0.8:
                warnings.append(f"{label} rate {rate:.1f}/min approaching {ceiling:g}/min")

        report = HealthReport(healthy=not issues, issues=issues, warnings=warnings)
        if issues:
            logger.warning("cache_unhealthy", issues=issues, warnings=warnings)
        return report
