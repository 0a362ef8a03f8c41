"""Test suite for the diagnostics API."""
import pytest
from fastapi.testclient import TestClient

from api import create_app
from cache.coordinator import build_coordinator
from monitoring.cache_metrics import PrometheusSink


@pytest.fixture
def prometheus_sink():
    return PrometheusSink()


@pytest.fixture
def coordinator(settings, clock, sleep, prometheus_sink):
    """Create a coordinator exporting to Prometheus."""
    return build_coordinator(settings, sink=prometheus_sink, clock=clock, sleep=sleep)


@pytest.fixture
def client(coordinator):
    return TestClient(create_app(coordinator))


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "healthy": True, "issues": [], "warnings": []}


def test_health_check_degraded(client, coordinator):
    for _ in range(20):
        coordinator.get("missing")

    body = client.get("/health").json()
    assert body["status"] == "degraded"
    assert body["issues"]


def test_cache_state(client, coordinator):
    coordinator.set("group:1:status", "active", tags=["group:1"])

    state = client.get("/cache/state").json()
    assert [entry["key"] for entry in state["entries"]] == ["group:1:status"]
    assert state["tags"] == {"group:1": ["group:1:status"]}
    assert state["in_flight"] == []


def test_cache_metrics(client, coordinator):
    coordinator.set("a", 1)
    coordinator.get("a")

    metrics = client.get("/cache/metrics").json()
    assert metrics["size"] == 1
    assert metrics["hits"] == 1
    assert metrics["in_flight"] == 0


def test_invalidate(client, coordinator):
    coordinator.set("group:1:status", "active", tags=["group:1"])
    coordinator.set("group:2:status", "active", tags=["group:2"])

    response = client.post("/cache/invalidate", json={"tags": ["group:1"]})
    assert response.status_code == 200
    assert response.json() == {"tags": ["group:1"], "invalidated": 1}
    assert not coordinator.has("group:1:status")
    assert coordinator.has("group:2:status")


def test_invalidate_requires_tags(client):
    assert client.post("/cache/invalidate", json={"tags": []}).status_code == 422


def test_prometheus_metrics(client, coordinator):
    coordinator.set("a", 1)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "ledger_cache_entries 1.0" in response.text


def test_prometheus_disabled(settings, clock, sleep):
    client = TestClient(create_app(build_coordinator(settings, clock=clock, sleep=sleep)))
    assert client.get("/metrics").status_code == 404
