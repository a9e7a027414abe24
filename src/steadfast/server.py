"""
Steadfast status server — FastAPI surface over a ResilienceCoordinator.

Status:
    GET  /health                              Liveness probe
    GET  /api/v1/status                       Overall status + stats
    GET  /api/v1/stats                        ResilienceStats snapshot

Services:
    GET  /api/v1/services                     Merged health for every service
    GET  /api/v1/services/{name}              Merged health for one service
    POST /api/v1/services/{name}/check        Run the service's health probes now

Circuit breaker:
    GET  /api/v1/circuits                     All circuit states
    POST /api/v1/circuits/{op}/open           Force circuit open
    POST /api/v1/circuits/{op}/close          Force circuit closed
    POST /api/v1/circuits/{op}/reset          Reset circuit

Alerts:
    GET  /api/v1/alerts                       Active (or all) alerts
    POST /api/v1/alerts/{id}/acknowledge      Acknowledge an alert
    POST /api/v1/alerts/{id}/resolve          Resolve an alert

Observability:
    GET  /api/v1/metrics                      Metrics summary (JSON)
    GET  /metrics                             Metrics (Prometheus text)
    GET  /api/v1/events                       Recent events
    GET  /api/v1/events/stream                Live events (server-sent events)
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from sse_starlette.sse import EventSourceResponse

from steadfast.config import SteadfastConfig, load_config
from steadfast.core.errors import UnknownOperationError, UnknownServiceError
from steadfast.resilience.coordinator import ResilienceCoordinator
from steadfast.resilience.events import EventType

logger = logging.getLogger("steadfast.server")

# ---------------------------------------------------------------------------
# Global state
# ---------------------------------------------------------------------------
_config: SteadfastConfig | None = None
_coordinator: ResilienceCoordinator | None = None


def _require_coordinator() -> ResilienceCoordinator:
    if _coordinator is None:
        raise HTTPException(503, "Resilience coordinator not running")
    return _coordinator


def _parse_event_type(value: str | None) -> EventType | None:
    if value is None:
        return None
    try:
        return EventType(value)
    except ValueError:
        raise HTTPException(400, f"Unknown event type '{value}'") from None


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(coordinator: ResilienceCoordinator | None = None) -> FastAPI:
    """
    Build the status app. Pass a coordinator to expose one the caller already
    drives; otherwise one is built from load_config() when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        global _config, _coordinator

        _coordinator = coordinator or ResilienceCoordinator(load_config())
        _config = _coordinator.config
        logging.getLogger("steadfast").setLevel(_config.log_level.upper())
        logger.info(
            f"Steadfast starting — retry: {_config.retry_enabled}, "
            f"circuit breaker: {_config.circuit_breaker_enabled}, "
            f"health checks: {_config.health_check_enabled}"
        )
        _coordinator.start()
        logger.info(f"Steadfast ready on {_config.host}:{_config.port}")
        yield

        # Shutdown
        await _coordinator.stop()
        _coordinator = None
        _config = None

    app = FastAPI(
        title="Steadfast",
        version="0.1.0",
        description="Resilience status and control for downstream services",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"], allow_methods=["*"], allow_headers=["*"],
    )

    # ==================================================================
    # Status
    # ==================================================================

    @app.get("/health")
    async def liveness():
        return {"status": "ok"}

    @app.get("/api/v1/status")
    async def status():
        coord = _require_coordinator()
        return {
            "status": coord.refresh_status().value,
            "stats": coord.get_stats().model_dump(mode="json"),
            "open_circuits": coord.circuit_breaker.get_open_circuits(),
            "active_alerts": len(coord.health_monitor.get_active_alerts()),
            "config": coord.config.to_dict(),
        }

    @app.get("/api/v1/stats")
    async def stats():
        return _require_coordinator().get_stats().model_dump(mode="json")

    # ==================================================================
    # Services
    # ==================================================================

    @app.get("/api/v1/services")
    async def list_services():
        coord = _require_coordinator()
        return {"services": [coord.get_service_health(name) for name in coord.services]}

    @app.get("/api/v1/services/{name}")
    async def service_health(name: str):
        view = _require_coordinator().get_service_health(name)
        if view is None:
            raise HTTPException(404, f"Unknown service '{name}'")
        return view

    @app.post("/api/v1/services/{name}/check")
    async def check_service(name: str):
        coord = _require_coordinator()
        try:
            result = await coord.health_monitor.check_service(name)
        except UnknownServiceError as e:
            raise HTTPException(404, str(e)) from None
        return result.to_dict()

    # ==================================================================
    # Circuit breaker control
    # ==================================================================

    @app.get("/api/v1/circuits")
    async def list_circuits():
        coord = _require_coordinator()
        return {
            "circuits": coord.circuit_breaker.get_all_states(),
            "open": coord.circuit_breaker.get_open_circuits(),
        }

    @app.post("/api/v1/circuits/{operation}/open")
    async def force_circuit_open(operation: str):
        coord = _require_coordinator()
        try:
            coord.circuit_breaker.force_open(operation)
        except UnknownOperationError as e:
            raise HTTPException(404, str(e)) from None
        coord.refresh_status()
        return {"status": "opened", "operation": operation}

    @app.post("/api/v1/circuits/{operation}/close")
    async def force_circuit_close(operation: str):
        coord = _require_coordinator()
        try:
            coord.circuit_breaker.force_close(operation)
        except UnknownOperationError as e:
            raise HTTPException(404, str(e)) from None
        coord.refresh_status()
        return {"status": "closed", "operation": operation}

    @app.post("/api/v1/circuits/{operation}/reset")
    async def reset_circuit(operation: str):
        if not _require_coordinator().reset_circuit(operation):
            raise HTTPException(404, f"No circuit for '{operation}'")
        return {"status": "reset", "operation": operation}

    # ==================================================================
    # Alerts
    # ==================================================================

    @app.get("/api/v1/alerts")
    async def list_alerts(include_resolved: bool = False):
        alerts = _require_coordinator().health_monitor.get_alerts(include_resolved)
        return {"alerts": [a.to_dict() for a in alerts]}

    @app.post("/api/v1/alerts/{alert_id}/acknowledge")
    async def acknowledge_alert(alert_id: str):
        if not _require_coordinator().health_monitor.acknowledge_alert(alert_id):
            raise HTTPException(404, f"Unknown alert '{alert_id}'")
        return {"status": "acknowledged", "alert_id": alert_id}

    @app.post("/api/v1/alerts/{alert_id}/resolve")
    async def resolve_alert(alert_id: str):
        if not _require_coordinator().health_monitor.resolve_alert(alert_id):
            raise HTTPException(404, f"Unknown alert '{alert_id}'")
        return {"status": "resolved", "alert_id": alert_id}

    # ==================================================================
    # Observability
    # ==================================================================

    @app.get("/api/v1/metrics")
    async def metrics():
        return _require_coordinator().metrics.get_summary()

    @app.get("/metrics", response_class=PlainTextResponse)
    async def prometheus_metrics():
        return _require_coordinator().metrics.to_prometheus()

    @app.get("/api/v1/events")
    async def recent_events(limit: int = 100, type: str | None = None):
        events = _require_coordinator().events.recent(limit, _parse_event_type(type))
        return {"events": [e.to_dict() for e in events]}

    @app.get("/api/v1/events/stream")
    async def event_stream(type: str | None = None):
        bus = _require_coordinator().events
        wanted = _parse_event_type(type)

        async def generate():
            async for event in bus.listen():
                if wanted is None or event.type == wanted:
                    yield {"event": event.type.value, "data": json.dumps(event.to_dict())}

        return EventSourceResponse(generate())

    return app
