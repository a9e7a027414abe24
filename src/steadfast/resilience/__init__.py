"""Resilience layer — retry, circuit breaking, health monitoring, coordination, metrics."""

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .coordinator import ExecutionOptions, OperationHealth, ResilienceCoordinator
from .events import EventBus, EventType, ResilienceEvent
from .health import HealthAlert, HealthCheckConfig, HealthCheckResult, HealthMonitor, ProbeResult
from .metrics import ResilienceMetrics
from .probes import callable_probe, http_probe
from .retry import RetryConfig, RetryExecutor, RetryOutcome, RetryStrategy, is_retryable_error

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "EventBus",
    "EventType",
    "ExecutionOptions",
    "HealthAlert",
    "HealthCheckConfig",
    "HealthCheckResult",
    "HealthMonitor",
    "OperationHealth",
    "ProbeResult",
    "ResilienceCoordinator",
    "ResilienceEvent",
    "ResilienceMetrics",
    "RetryConfig",
    "RetryExecutor",
    "RetryOutcome",
    "RetryStrategy",
    "callable_probe",
    "http_probe",
    "is_retryable_error",
]
