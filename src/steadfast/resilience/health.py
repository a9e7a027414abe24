"""
Health monitor — scheduled out-of-band liveness probes per service.

Each registered service runs on its own asyncio task: wait out the grace
period, then probe every `interval` seconds. A probe runs the service's
custom check functions under a per-attempt timeout, retrying with a fixed
delay. Results feed a rolling status record and raise alerts once
consecutive failures reach the service's threshold.

Probe failures never propagate to request-path callers; they only update
status and alerts.
"""

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from steadfast.core.errors import UnknownServiceError
from steadfast.core.types import AlertSeverity, ResilienceStatus, ServiceStatus, aggregate_status

from .events import EventBus, EventType

logger = logging.getLogger("steadfast.health")

# Upper bound on waiting for cancelled probe tasks during stop()
STOP_TIMEOUT = 5.0


# ---------------------------------------------------------------------------
# Probe contract
# ---------------------------------------------------------------------------

@dataclass
class ProbeResult:
    healthy: bool
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def coerce(cls, value: Any) -> "ProbeResult":
        """Accept a ProbeResult, a {healthy, details?, error?} mapping, or a bare bool."""
        if isinstance(value, ProbeResult):
            return value
        if isinstance(value, Mapping):
            return cls(
                healthy=bool(value.get("healthy", False)),
                details=dict(value.get("details") or {}),
                error=value.get("error"),
            )
        if isinstance(value, bool):
            return cls(healthy=value)
        raise TypeError(f"Unsupported probe result: {value!r}")


HealthProbe = Callable[[], Awaitable[Any]]


class ProbeFailure(Exception):
    pass


@dataclass
class HealthCheckConfig:
    enabled: bool = True
    interval: float = 60.0
    timeout: float = 5.0
    retries: int = 2
    failure_threshold: int = 3
    grace_period: float = 5.0
    retry_delay: float = 1.0
    probes: list[HealthProbe] = field(default_factory=list)

    def __post_init__(self):
        if self.interval <= 0 or self.timeout <= 0:
            raise ValueError("interval and timeout must be positive")
        if self.retries < 0 or self.grace_period < 0 or self.retry_delay < 0:
            raise ValueError("retries, grace_period and retry_delay must not be negative")
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled, "interval": self.interval, "timeout": self.timeout,
            "retries": self.retries, "failure_threshold": self.failure_threshold,
            "grace_period": self.grace_period, "probes": len(self.probes),
        }


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class HealthCheckResult:
    service: str
    healthy: bool
    status: ServiceStatus
    response_time: float
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    consecutive_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service, "healthy": self.healthy, "status": self.status.value,
            "response_time": self.response_time, "timestamp": self.timestamp.isoformat(),
            "details": self.details, "error": self.error,
            "consecutive_failures": self.consecutive_failures,
        }


@dataclass
class ServiceHealthStatus:
    service: str
    status: ServiceStatus = ServiceStatus.UNKNOWN
    last_check: datetime | None = None
    last_success: datetime | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    total_checks: int = 0
    successful_checks: int = 0
    failed_checks: int = 0
    average_response_time: float = 0.0
    health_score: float = 100.0

    @property
    def healthy(self) -> bool:
        return self.status == ServiceStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service, "status": self.status.value, "healthy": self.healthy,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "total_checks": self.total_checks, "successful_checks": self.successful_checks,
            "failed_checks": self.failed_checks,
            "average_response_time": self.average_response_time,
            "health_score": self.health_score,
        }


@dataclass
class HealthAlert:
    id: str
    service: str
    severity: AlertSeverity
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    acknowledged: bool = False
    resolved: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "service": self.service, "severity": self.severity.value,
            "message": self.message, "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "acknowledged": self.acknowledged, "resolved": self.resolved,
        }


def health_score(consecutive_failures: int, failed_checks: int, total_checks: int) -> float:
    ratio = failed_checks / total_checks if total_checks else 0.0
    return max(0.0, 100 - 20 * consecutive_failures - 50 * ratio)


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

class HealthMonitor:
    """
    Tracks per-service liveness from scheduled and on-demand probes.

    Args:
        events: Bus for check/status/alert events (a private one if omitted).
        sleep: Suspension function used for grace periods, intervals and retry delays.
    """

    def __init__(
        self,
        events: EventBus | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.events = events or EventBus()
        self._configs: dict[str, HealthCheckConfig] = {}
        self._status: dict[str, ServiceHealthStatus] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._alerts: dict[str, HealthAlert] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._sleep = sleep
        self._clock = clock
        self._started_at = clock()
        self.alerts_generated = 0
        self.alerts_resolved = 0

    # --- Registration ---

    def register_service(self, name: str, config: HealthCheckConfig | None = None) -> ServiceHealthStatus:
        """Register (or reconfigure) a service. Reconfiguring keeps its history."""
        self._configs[name] = config or HealthCheckConfig()
        self._locks.setdefault(name, threading.Lock())
        status = self._status.setdefault(name, ServiceHealthStatus(service=name))
        if name in self._tasks:
            self.stop_service(name)
            self.start_service(name)
        logger.debug(f"Health monitoring registered for {name}")
        return status

    def unregister_service(self, name: str) -> bool:
        self.stop_service(name)
        self._locks.pop(name, None)
        self._status.pop(name, None)
        return self._configs.pop(name, None) is not None

    def update_config(self, name: str, **changes: Any) -> HealthCheckConfig:
        self._configs[name] = replace(self._config(name), **changes)
        if name in self._tasks:
            self.stop_service(name)
            self.start_service(name)
        return self._configs[name]

    def get_config(self, name: str) -> HealthCheckConfig:
        return self._config(name)

    def _config(self, name: str) -> HealthCheckConfig:
        if name not in self._configs:
            raise UnknownServiceError(name)
        return self._configs[name]

    @property
    def services(self) -> list[str]:
        return list(self._configs)

    # --- Scheduling ---

    def start(self):
        """Start timers for every enabled service. Requires a running event loop."""
        for name, cfg in self._configs.items():
            if cfg.enabled and cfg.probes and name not in self._tasks:
                self.start_service(name)
        logger.info(f"Health monitoring started for {len(self._tasks)} service(s)")

    async def stop(self):
        tasks = list(self._tasks.values())
        for name in list(self._tasks):
            self.stop_service(name)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=STOP_TIMEOUT)
            if pending:
                logger.warning(f"{len(pending)} health check task(s) still running after stop")
        logger.info("Health monitoring stopped")

    def start_service(self, name: str):
        self._config(name)
        if name in self._tasks and not self._tasks[name].done():
            return
        self._tasks[name] = asyncio.create_task(self._monitor_loop(name), name=f"health:{name}")

    def stop_service(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        task.cancel()
        return True

    def is_monitoring(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    async def _monitor_loop(self, name: str):
        # Config changes restart the task, so the snapshot stays current
        cfg = self._config(name)
        await self._sleep(cfg.grace_period)
        while True:
            try:
                await self.check_service(name)
            except UnknownServiceError:
                logger.info(f"Health monitoring for {name} ended: service unregistered")
                return
            except Exception as e:
                logger.warning(f"Health check loop error for {name}: {e}")
            await self._sleep(cfg.interval)

    # --- Probing ---

    async def check_service(self, name: str) -> HealthCheckResult:
        """
        Probe `name` now, update its record, and return the result.

        A service without probes has nothing to observe: the result is UNKNOWN and
        no check is counted.
        """
        cfg = self._config(name)
        if not cfg.probes:
            return self._unobserved(name)
        start = self._clock()
        last_error: str | None = None
        details: dict[str, Any] = {}
        healthy = False

        for attempt in range(cfg.retries + 1):
            try:
                async with asyncio.timeout(cfg.timeout):
                    details = await self._run_probes(name, cfg)
                healthy = True
                break
            except TimeoutError:
                last_error = f"Health check timed out after {cfg.timeout:g}s"
            except Exception as e:
                last_error = str(e) or type(e).__name__
            if attempt < cfg.retries:
                await self._sleep(cfg.retry_delay)

        return self._record(name, cfg, healthy, self._clock() - start, details, last_error)

    async def check_all_services(self) -> list[HealthCheckResult]:
        results = []
        for name in list(self._configs):
            try:
                results.append(await self.check_service(name))
            except UnknownServiceError:
                continue
        return results

    async def _run_probes(self, name: str, cfg: HealthCheckConfig) -> dict[str, Any]:
        details: dict[str, Any] = {}
        for i, probe in enumerate(cfg.probes):
            label = getattr(probe, "__name__", None) or f"probe_{i}"
            try:
                result = ProbeResult.coerce(await probe())
            except Exception as e:
                raise ProbeFailure(f"{label}: {e}") from e
            details[label] = result.details
            if not result.healthy:
                raise ProbeFailure(f"{label}: {result.error or 'reported unhealthy'}")
        return details

    def _unobserved(self, name: str) -> HealthCheckResult:
        h = self._status.get(name)
        if h is None:
            raise UnknownServiceError(name)
        return HealthCheckResult(
            service=name, healthy=h.healthy, status=h.status, response_time=0.0,
            timestamp=datetime.now(UTC), error="No health probes configured",
            consecutive_failures=h.consecutive_failures,
        )

    def _record(
        self,
        name: str,
        cfg: HealthCheckConfig,
        healthy: bool,
        response_time: float,
        details: dict[str, Any],
        error: str | None,
    ) -> HealthCheckResult:
        lock = self._locks.get(name)
        if lock is None:
            raise UnknownServiceError(name)
        raise_alert = False
        with lock:
            h = self._status[name]
            old_status = h.status
            now = datetime.now(UTC)
            h.last_check = now
            h.total_checks += 1
            if healthy:
                h.consecutive_failures = 0
                h.successful_checks += 1
                h.last_success = now
                h.status = ServiceStatus.HEALTHY
            else:
                h.consecutive_failures += 1
                h.failed_checks += 1
                h.last_error = error
                if h.consecutive_failures >= cfg.failure_threshold:
                    h.status = ServiceStatus.UNHEALTHY
                else:
                    h.status = ServiceStatus.DEGRADED
                raise_alert = h.consecutive_failures == cfg.failure_threshold
            h.average_response_time += (response_time - h.average_response_time) / h.total_checks
            h.health_score = health_score(h.consecutive_failures, h.failed_checks, h.total_checks)
            result = HealthCheckResult(
                service=name, healthy=healthy, status=h.status, response_time=response_time,
                timestamp=now, details=details, error=error,
                consecutive_failures=h.consecutive_failures,
            )

        if healthy:
            self.events.publish(EventType.HEALTH_CHECK_SUCCEEDED, name, response_time=response_time)
        else:
            logger.warning(f"Health check failed for {name} ({result.consecutive_failures} in a row): {error}")
            self.events.publish(EventType.HEALTH_CHECK_FAILED, name, error=error,
                                consecutive_failures=result.consecutive_failures)
        if old_status != result.status:
            logger.info(f"Service {name}: {old_status.value} -> {result.status.value}")
            self.events.publish(EventType.SERVICE_STATUS_CHANGED, name,
                                old_status=old_status, new_status=result.status)
        if raise_alert:
            self._raise_alert(name, error)
        return result

    # --- Alerts ---

    def _raise_alert(self, name: str, error: str | None) -> HealthAlert:
        alert = HealthAlert(
            id=f"{name}-{uuid.uuid4().hex[:12]}", service=name, severity=AlertSeverity.ERROR,
            message=f"Service {name} is unhealthy: {error or 'unknown error'}",
        )
        self._alerts[alert.id] = alert
        self.alerts_generated += 1
        logger.error(alert.message)
        self.events.publish(EventType.ALERT_RAISED, name, alert_id=alert.id,
                            severity=alert.severity, message=alert.message)
        return alert

    def acknowledge_alert(self, alert_id: str) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None:
            return False
        alert.acknowledged = True
        alert.updated_at = datetime.now(UTC)
        self.events.publish(EventType.ALERT_ACKNOWLEDGED, alert.service, alert_id=alert_id)
        return True

    def resolve_alert(self, alert_id: str) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None:
            return False
        if not alert.resolved:
            alert.resolved = True
            alert.updated_at = datetime.now(UTC)
            self.alerts_resolved += 1
            self.events.publish(EventType.ALERT_RESOLVED, alert.service, alert_id=alert_id)
        return True

    def get_alert(self, alert_id: str) -> HealthAlert | None:
        return self._alerts.get(alert_id)

    def get_active_alerts(self) -> list[HealthAlert]:
        return [a for a in self._alerts.values() if not a.resolved]

    def get_alerts(self, include_resolved: bool = False) -> list[HealthAlert]:
        if include_resolved:
            return list(self._alerts.values())
        return self.get_active_alerts()

    # --- Views ---

    def get_service_health(self, name: str) -> ServiceHealthStatus | None:
        return self._status.get(name)

    def get_system_health(self) -> dict[str, Any]:
        """Aggregate over services that have been probed; unprobed ones are left out."""
        services = list(self._status.values())
        checked = [s for s in services if s.status != ServiceStatus.UNKNOWN]
        healthy = sum(1 for s in checked if s.healthy)
        overall: ResilienceStatus = aggregate_status(healthy, len(checked))
        return {
            "overall": overall,
            "services": [s.to_dict() for s in services],
            "healthy_services": healthy,
            "checked_services": len(checked),
            "total_services": len(services),
            "uptime": self._clock() - self._started_at,
            "last_updated": datetime.now(UTC).isoformat(),
            "alerts": [a.to_dict() for a in self.get_active_alerts()],
        }

    def get_stats(self) -> dict[str, Any]:
        services = list(self._status.values())
        avg_score = round(sum(s.health_score for s in services) / len(services)) if services else 0
        return {
            "total_checks": sum(s.total_checks for s in services),
            "successful_checks": sum(s.successful_checks for s in services),
            "failed_checks": sum(s.failed_checks for s in services),
            "alerts_generated": self.alerts_generated,
            "alerts_resolved": self.alerts_resolved,
            "active_alerts": len(self.get_active_alerts()),
            "services_monitored": sum(1 for n in self._tasks if self.is_monitoring(n)),
            "average_health_score": avg_score,
            "uptime": self._clock() - self._started_at,
        }
