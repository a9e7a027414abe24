"""Integration tests for the FastAPI status server."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from steadfast.config import SteadfastConfig
from steadfast.resilience.coordinator import ResilienceCoordinator
from steadfast.resilience.events import EventType
from steadfast.resilience.health import HealthCheckConfig
from steadfast.server import create_app


async def failing_probe():
    return {"healthy": False, "error": "index offline"}


@pytest.fixture
def config():
    # Health timers stay idle during tests: long grace period, checks run on demand
    cfg = SteadfastConfig()
    cfg.health["general"] = HealthCheckConfig(grace_period=3600, retries=0, failure_threshold=1)
    return cfg


@pytest.fixture
def coordinator(config):
    return ResilienceCoordinator(config)


@pytest.fixture
def client(coordinator):
    app = create_app(coordinator)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def vector_client(coordinator):
    # Registered before startup so its timer is created on the server loop
    coordinator.register_service("vector", probes=[failing_probe])
    with TestClient(create_app(coordinator)) as c:
        yield c


class TestLiveness:
    def test_health_endpoint(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_builds_coordinator_from_config(self, config):
        with patch("steadfast.server.load_config", return_value=config) as loader:
            with TestClient(create_app()) as c:
                assert c.get("/api/v1/status").json()["status"] == "degraded"
        loader.assert_called_once()


class TestStatus:
    def test_status_without_services(self, client):
        data = client.get("/api/v1/status").json()
        assert data["status"] == "degraded"
        assert data["open_circuits"] == []
        assert data["config"]["retry_enabled"] is True

    def test_stats(self, client):
        data = client.get("/api/v1/stats").json()
        assert data["total_operations"] == 0
        assert data["overall_status"] in ("degraded", "unknown")


class TestServices:
    def test_register_and_check(self, vector_client):
        client = vector_client
        resp = client.post("/api/v1/services/vector/check")
        assert resp.status_code == 200
        assert resp.json()["healthy"] is False

        view = client.get("/api/v1/services/vector").json()
        assert view["status"] == "unhealthy"
        names = [s["service"] for s in client.get("/api/v1/services").json()["services"]]
        assert names == ["vector"]

    def test_unknown_service(self, client):
        assert client.get("/api/v1/services/ghost").status_code == 404
        assert client.post("/api/v1/services/ghost/check").status_code == 404


class TestCircuits:
    def test_open_close_reset(self, client, coordinator):
        assert client.post("/api/v1/circuits/docs:lookup/open").json()["status"] == "opened"
        assert client.get("/api/v1/circuits").json()["open"] == ["docs:lookup"]
        assert client.post("/api/v1/circuits/docs:lookup/close").json()["status"] == "closed"
        assert coordinator.circuit_breaker.get_open_circuits() == []
        assert client.post("/api/v1/circuits/docs:lookup/reset").status_code == 200

    def test_reset_unknown(self, client):
        assert client.post("/api/v1/circuits/never/reset").status_code == 404


class TestAlerts:
    def test_alert_lifecycle(self, vector_client):
        client = vector_client
        client.post("/api/v1/services/vector/check")
        alerts = client.get("/api/v1/alerts").json()["alerts"]
        assert len(alerts) == 1
        alert_id = alerts[0]["id"]

        assert client.post(f"/api/v1/alerts/{alert_id}/acknowledge").status_code == 200
        assert client.post(f"/api/v1/alerts/{alert_id}/resolve").status_code == 200
        assert client.get("/api/v1/alerts").json()["alerts"] == []
        resolved = client.get("/api/v1/alerts", params={"include_resolved": True}).json()["alerts"]
        assert resolved[0]["resolved"] is True

    def test_unknown_alert(self, client):
        assert client.post("/api/v1/alerts/nope/acknowledge").status_code == 404
        assert client.post("/api/v1/alerts/nope/resolve").status_code == 404


class TestObservability:
    def test_metrics_json(self, client):
        client.post("/api/v1/circuits/llm/open")
        assert client.get("/api/v1/metrics").json()["open_circuits"] == 1

    def test_prometheus(self, client):
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert "steadfast_operations_total" in resp.text

    def test_recent_events(self, client, coordinator):
        coordinator.events.publish(EventType.OPERATION_ATTEMPTED, "docs")
        events = client.get("/api/v1/events", params={"type": "operation_attempted"}).json()["events"]
        assert [e["name"] for e in events] == ["docs"]

    def test_bad_event_type(self, client):
        assert client.get("/api/v1/events", params={"type": "nonsense"}).status_code == 400
