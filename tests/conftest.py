"""Shared fixtures for the ledger cache test suite."""
import pytest

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cache.coordinator import build_coordinator
from cache.core import CacheStore
from config.settings import CacheSettings
from monitoring.cache_metrics import MetricsCollector, MetricsSink


class FakeClock:
    """Manually advanced time source shared by the store, metrics and breakers."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for asyncio.sleep between retries; advances the clock instead of waiting."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        self.clock.advance(seconds)


class RecordingSink(MetricsSink):
    """Keeps every reported event for assertions."""

    def __init__(self):
        self.events = []

    def report(self, event, payload):
        self.events.append((event, payload))

    def names(self):
        return [event for event, _ in self.events]


@pytest.fixture
def clock():
    """Create a fake clock."""
    return FakeClock()


@pytest.fixture
def sleep(clock):
    """Create a recording sleep bound to the fake clock."""
    return RecordingSleep(clock)


@pytest.fixture
def sink():
    """Create a recording metrics sink."""
    return RecordingSink()


@pytest.fixture
def metrics(clock):
    """Create a metrics collector on the fake clock."""
    return MetricsCollector(capacity=100, clock=clock)


@pytest.fixture
def store(clock, metrics):
    """Create a test cache store."""
    return CacheStore(max_size=100, default_ttl=60, metrics=metrics, clock=clock)


@pytest.fixture
def settings():
    """Test profile settings."""
    return CacheSettings.for_environment("test")


@pytest.fixture
def coordinator(settings, clock, sleep, sink):
    """Create a coordinator wired from the test profile."""
    return build_coordinator(settings, sink=sink, clock=clock, sleep=sleep)
