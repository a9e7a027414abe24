"""
Resilience coordinator — one call-wrapping API over retry, circuit breaking and health.

Composition per call (breaker outside, retry inside):

    can_execute(name)?  ── no ──► OPERATION_REJECTED, raise CircuitOpenError
          │ yes
    retry loop ── each attempt runs under the call timeout
          │
    record_success / record_failure once for the whole call
          │
    request-path bookkeeping, events, status refresh, return value or re-raise

The coordinator owns no component internals: it reads breaker and monitor
state through their public methods and keeps its own per-operation records.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from steadfast.core.errors import CircuitOpenError, OperationTimeoutError
from steadfast.core.types import (
    CircuitState,
    ResilienceStats,
    ResilienceStatus,
    ServiceStatus,
    aggregate_status,
    policy_key,
    worst_resilience_status,
    worst_service_status,
)

from .circuit_breaker import CircuitBreaker
from .events import EventBus, EventType, ResilienceEvent
from .health import HealthCheckConfig, HealthMonitor, HealthProbe
from .metrics import ResilienceMetrics
from .retry import RetryConfig, RetryExecutor

if TYPE_CHECKING:
    from steadfast.config import SteadfastConfig

logger = logging.getLogger("steadfast.coordinator")

_CIRCUIT_SERVICE_STATUS = {
    CircuitState.CLOSED: ServiceStatus.HEALTHY,
    CircuitState.HALF_OPEN: ServiceStatus.DEGRADED,
    CircuitState.OPEN: ServiceStatus.UNHEALTHY,
}


@dataclass
class ExecutionOptions:
    """Per-call switches; a `timeout` of None falls back to the configured default."""
    retry: bool = True
    circuit_breaker: bool = True
    timeout: float | None = None
    retry_config: RetryConfig | None = None


@dataclass
class OperationHealth:
    """Request-path health of one operation, updated synchronously with each call."""
    name: str
    status: ServiceStatus = ServiceStatus.UNKNOWN
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    consecutive_failures: int = 0
    successful_retries: int = 0
    failed_retries: int = 0
    circuit_trips: int = 0
    circuit_resets: int = 0
    total_response_time: float = 0.0
    last_error: str | None = None
    last_success: datetime | None = None
    last_failure: datetime | None = None

    @property
    def retries(self) -> int:
        return self.successful_retries + self.failed_retries

    @property
    def average_response_time(self) -> float:
        completed = self.successful_calls + self.failed_calls
        return self.total_response_time / completed if completed else 0.0

    @property
    def error_rate(self) -> float:
        completed = self.successful_calls + self.failed_calls
        return self.failed_calls / completed if completed else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name, "status": self.status.value,
            "total_calls": self.total_calls, "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls, "rejected_calls": self.rejected_calls,
            "consecutive_failures": self.consecutive_failures,
            "retries": self.retries, "circuit_trips": self.circuit_trips,
            "circuit_resets": self.circuit_resets,
            "average_response_time": self.average_response_time,
            "error_rate": round(self.error_rate, 4),
            "last_error": self.last_error,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
        }


class ResilienceCoordinator:
    """
    Facade composing RetryExecutor, CircuitBreaker and HealthMonitor.

    Components are built from `config` unless passed in. All of them publish
    onto one EventBus, which also feeds the coordinator's ResilienceMetrics.

    Args:
        config: Toggles, global defaults and per-class policies.
        retry_executor: Executor to use (its configs are left untouched).
        circuit_breaker: Breaker to use (its configs are left untouched).
        health_monitor: Monitor to use; its bus becomes the shared bus unless `events` is given.
        events: Shared event bus.
    """

    def __init__(
        self,
        config: SteadfastConfig | None = None,
        *,
        retry_executor: RetryExecutor | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        health_monitor: HealthMonitor | None = None,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if config is None:
            from steadfast.config import SteadfastConfig
            config = SteadfastConfig()
        self.config = config
        self.events = events or (health_monitor.events if health_monitor else EventBus())
        self.retry_executor = retry_executor or RetryExecutor(config.retry)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(config.circuits, strict=config.strict)
        self.health_monitor = health_monitor or HealthMonitor(events=self.events)
        self.health_monitor.events = self.events
        self.metrics = ResilienceMetrics()
        self.metrics.bind(self.events)

        self._clock = clock
        self._operations: dict[str, OperationHealth] = {}
        self._lock = threading.Lock()
        self._status = ResilienceStatus.UNKNOWN
        self._started = False

        self.circuit_breaker.on_transition(self._on_circuit_transition)
        self.events.subscribe(self._on_event)

    # --- Lifecycle ---

    def start(self):
        """Begin scheduled health probes. Requires a running event loop."""
        if self.config.health_check_enabled:
            self.health_monitor.start()
        self._started = True
        logger.info(
            f"Resilience coordinator started (retry={self.config.retry_enabled}, "
            f"circuit_breaker={self.config.circuit_breaker_enabled}, "
            f"health_checks={self.config.health_check_enabled})"
        )

    async def stop(self):
        await self.health_monitor.stop()
        self._started = False
        logger.info("Resilience coordinator stopped")

    # --- Execution ---

    async def execute_with_resilience(
        self,
        name: str,
        operation: Callable[[], Awaitable[Any]],
        options: ExecutionOptions | None = None,
    ) -> Any:
        """
        Run `operation` under the timeout, circuit breaker and retry policy for `name`.

        Returns the operation's value. Raises CircuitOpenError without invoking the
        operation while the circuit rejects calls, OperationTimeoutError if the last
        attempt timed out, otherwise the last error the operation raised.
        """
        if not self.config.enabled:
            return await operation()

        opts = options or ExecutionOptions()
        use_breaker = self.config.circuit_breaker_enabled and opts.circuit_breaker
        use_retry = self.config.retry_enabled and opts.retry
        timeout = opts.timeout if opts.timeout is not None else self.config.default_timeout

        self._operation(name)
        self.events.publish(EventType.OPERATION_ATTEMPTED, name)

        if use_breaker and not self.circuit_breaker.can_execute(name):
            recovery = self.circuit_breaker.get_recovery_time(name)
            with self._lock:
                record = self._operations.setdefault(name, OperationHealth(name=name))
                record.total_calls += 1
                record.rejected_calls += 1
            self.events.publish(EventType.OPERATION_REJECTED, name, recovery_in_seconds=recovery)
            self.refresh_status()
            raise CircuitOpenError(name, recovery)

        cfg = self._retry_config(name, opts.retry_config, use_retry)
        start = self._clock()
        try:
            outcome = await self.retry_executor.execute_with_retry(
                lambda: self._with_timeout(name, operation, timeout), cfg, service=name,
            )
        except BaseException:
            # Cancelled mid-call: give back a half-open trial slot, record nothing
            if use_breaker:
                self.circuit_breaker.release(name)
            raise
        duration = self._clock() - start

        if use_breaker:
            if outcome.success:
                self.circuit_breaker.record_success(name, response_time=duration)
            else:
                self.circuit_breaker.record_failure(name, outcome.error, response_time=duration)

        self._record_outcome(name, outcome.success, outcome.retries, duration, outcome.error)

        if outcome.success:
            self.events.publish(EventType.OPERATION_SUCCEEDED, name, duration=duration,
                                attempts=outcome.attempts, retries=outcome.retries)
            self.refresh_status()
            return outcome.value

        logger.warning(f"Operation {name} failed after {outcome.attempts} attempt(s): {outcome.error}")
        self.events.publish(EventType.OPERATION_FAILED, name, duration=duration,
                            attempts=outcome.attempts, retries=outcome.retries, error=outcome.error)
        self.refresh_status()
        raise outcome.error  # type: ignore[misc]

    def _retry_config(self, name: str, override: RetryConfig | None, use_retry: bool) -> RetryConfig:
        cfg = override or self.retry_executor.get_config(policy_key(name, self.retry_executor.configs))
        if not use_retry:
            cfg = replace(cfg, max_attempts=1)
        user_hook = cfg.on_retry

        def on_retry(attempt: int, error: BaseException):
            self.events.publish(EventType.OPERATION_RETRIED, name, attempt=attempt, error=error)
            if user_hook is not None:
                user_hook(attempt, error)

        return replace(cfg, on_retry=on_retry)

    async def _with_timeout(self, name: str, operation: Callable[[], Awaitable[Any]], timeout: float | None) -> Any:
        if not timeout:
            return await operation()
        try:
            async with asyncio.timeout(timeout):
                return await operation()
        except TimeoutError:
            raise OperationTimeoutError(name, timeout) from None

    # --- Request-path bookkeeping ---

    def _operation(self, name: str) -> OperationHealth:
        record = self._operations.get(name)
        if record is not None:
            return record
        with self._lock:
            return self._operations.setdefault(name, OperationHealth(name=name))

    def _record_outcome(
        self,
        name: str,
        success: bool,
        retries: int,
        duration: float,
        error: BaseException | None,
    ):
        threshold = self.config.operation_failure_threshold
        with self._lock:
            record = self._operations.setdefault(name, OperationHealth(name=name))
            old_status = record.status
            now = datetime.now(UTC)
            record.total_calls += 1
            record.total_response_time += duration
            if success:
                record.successful_calls += 1
                record.successful_retries += retries
                record.consecutive_failures = 0
                record.last_success = now
                record.status = ServiceStatus.HEALTHY
            else:
                record.failed_calls += 1
                record.failed_retries += retries
                record.consecutive_failures += 1
                record.last_failure = now
                record.last_error = str(error) if error is not None else None
                if record.consecutive_failures >= threshold:
                    record.status = ServiceStatus.UNHEALTHY
                else:
                    record.status = ServiceStatus.DEGRADED
            new_status = record.status

        if old_status != new_status:
            logger.info(f"Operation {name}: {old_status.value} -> {new_status.value}")
            self.events.publish(EventType.SERVICE_STATUS_CHANGED, name, source="request_path",
                                old_status=old_status, new_status=new_status)

    def _on_circuit_transition(self, key: str, old: CircuitState, new: CircuitState):
        record = self._operation(key)
        if new == CircuitState.OPEN:
            with self._lock:
                record.circuit_trips += 1
            logger.warning(f"Circuit opened for {key}")
            self.events.publish(EventType.CIRCUIT_OPENED, key, old_state=old, trips=record.circuit_trips)
        elif new == CircuitState.HALF_OPEN:
            self.events.publish(EventType.CIRCUIT_HALF_OPENED, key, old_state=old)
        elif old == CircuitState.HALF_OPEN:
            with self._lock:
                record.circuit_resets += 1
            self.events.publish(EventType.CIRCUIT_CLOSED, key, old_state=old, resets=record.circuit_resets)
        else:
            if old != CircuitState.CLOSED:
                with self._lock:
                    record.circuit_resets += 1
            self.events.publish(EventType.CIRCUIT_RESET, key, old_state=old, resets=record.circuit_resets)

    def _on_event(self, event: ResilienceEvent):
        if event.type == EventType.SERVICE_STATUS_CHANGED and event.data.get("source") != "request_path":
            self.refresh_status()

    # --- Services ---

    def register_service(
        self,
        name: str,
        probes: Iterable[HealthProbe] | None = None,
        config: HealthCheckConfig | None = None,
    ) -> OperationHealth:
        """
        Track `name` on the request path and, when health checks are enabled, register it
        with the health monitor. Services with probes are scheduled immediately if the
        coordinator is running; without probes their monitor status stays unknown.
        """
        record = self._operation(name)
        if self.config.health_check_enabled:
            cfg = config or self.config.health_config_for(name)
            if probes is not None:
                cfg = replace(cfg, probes=list(probes))
            self.health_monitor.register_service(name, cfg)
            if self._started and cfg.enabled and cfg.probes:
                self.health_monitor.start_service(name)
        self.events.publish(EventType.SERVICE_REGISTERED, name)
        logger.info(f"Service registered: {name}")
        return record

    def unregister_service(self, name: str) -> bool:
        with self._lock:
            known = self._operations.pop(name, None) is not None
        known = self.health_monitor.unregister_service(name) or known
        if known:
            self.events.publish(EventType.SERVICE_UNREGISTERED, name)
            self.refresh_status()
        return known

    @property
    def services(self) -> list[str]:
        names = dict.fromkeys(self._operations)
        names.update(dict.fromkeys(self.health_monitor.services))
        return list(names)

    def get_operation_health(self, name: str) -> OperationHealth | None:
        return self._operations.get(name)

    def get_service_health(self, name: str) -> dict[str, Any] | None:
        """Merged view of request-path, monitor and circuit data; None if `name` is unknown."""
        record = self._operations.get(name)
        monitored = self.health_monitor.get_service_health(name)
        circuit = self.circuit_breaker.circuits.get(name)
        if record is None and monitored is None and circuit is None:
            return None

        statuses = []
        if record is not None:
            statuses.append(record.status)
        if monitored is not None:
            statuses.append(monitored.status)
        if circuit is not None:
            statuses.append(_CIRCUIT_SERVICE_STATUS[circuit.state])
        return {
            "service": name,
            "status": worst_service_status(statuses).value,
            "request_path": record.to_dict() if record else None,
            "health_check": monitored.to_dict() if monitored else None,
            "circuit": self.circuit_breaker.get_stats(name) if circuit else None,
        }

    def _service_statuses(self) -> dict[str, ServiceStatus]:
        statuses = {}
        for name in self.services:
            view = self.get_service_health(name)
            if view is not None:
                statuses[name] = ServiceStatus(view["status"])
        return statuses

    # --- Status ---

    def get_status(self) -> ResilienceStatus:
        if self._status == ResilienceStatus.UNKNOWN:
            return self.refresh_status()
        return self._status

    def refresh_status(self) -> ResilienceStatus:
        """
        Recompute overall status: the worse of the health monitor's aggregate (when
        health checks are enabled and some service has been probed) and the request-path
        aggregate. Unobserved services are left out; nothing observed counts as degraded.
        """
        parts: list[ResilienceStatus] = []
        if self.config.health_check_enabled:
            system = self.health_monitor.get_system_health()
            if system["checked_services"]:
                parts.append(system["overall"])

        observed = [s for s in self._service_statuses().values() if s != ServiceStatus.UNKNOWN]
        if observed:
            healthy = sum(1 for s in observed if s == ServiceStatus.HEALTHY)
            parts.append(aggregate_status(healthy, len(observed)))
        if self.circuit_breaker.get_open_circuits():
            parts.append(ResilienceStatus.DEGRADED)

        status = worst_resilience_status(parts) if parts else aggregate_status(0, 0)
        old, self._status = self._status, status
        if old != status:
            logger.info(f"Resilience status: {old.value} -> {status.value}")
            self.events.publish(EventType.STATUS_CHANGED, "coordinator", old_status=old, new_status=status)
        return status

    def get_stats(self) -> ResilienceStats:
        """Aggregate snapshot; every count is a sum over per-operation and per-service records."""
        statuses = self._service_statuses().values()
        with self._lock:
            records = list(self._operations.values())
            totals = {
                "total_operations": sum(r.total_calls for r in records),
                "successful_operations": sum(r.successful_calls for r in records),
                "failed_operations": sum(r.failed_calls for r in records),
                "rejected_operations": sum(r.rejected_calls for r in records),
                "total_retries": sum(r.retries for r in records),
                "successful_retries": sum(r.successful_retries for r in records),
                "failed_retries": sum(r.failed_retries for r in records),
                "circuit_breaker_trips": sum(r.circuit_trips for r in records),
                "circuit_breaker_resets": sum(r.circuit_resets for r in records),
            }
        return ResilienceStats(
            overall_status=self.get_status(),
            services_healthy=sum(1 for s in statuses if s == ServiceStatus.HEALTHY),
            services_degraded=sum(1 for s in statuses if s == ServiceStatus.DEGRADED),
            services_critical=sum(1 for s in statuses if s == ServiceStatus.UNHEALTHY),
            health_check_failures=self.health_monitor.get_stats()["failed_checks"],
            **totals,
        )

    # --- Circuit control ---

    def reset_circuit(self, name: str) -> bool:
        if name not in self.circuit_breaker.circuits:
            return False
        self.circuit_breaker.reset(name)
        self.refresh_status()
        return True
