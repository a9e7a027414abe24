"""
Steadfast — a resilience core for calls to unreliable downstream services.

Wrap any async call with a timeout, a per-operation circuit breaker and bounded
retries; track service liveness with scheduled probes and alerts.

Quick start::

    from steadfast import ResilienceCoordinator, load_config

    coordinator = ResilienceCoordinator(load_config())
    coordinator.register_service("vector", probes=[http_probe("http://localhost:6333/healthz")])
    coordinator.start()

    hits = await coordinator.execute_with_resilience("vector:search", lambda: index.search(q))
"""

__version__ = "0.1.0"

from steadfast.config import SteadfastConfig, get_config, load_config
from steadfast.core.errors import (
    CircuitOpenError,
    DownstreamError,
    OperationTimeoutError,
    RateLimitError,
    SteadfastError,
    UnknownOperationError,
    UnknownServiceError,
)
from steadfast.core.types import CircuitState, ResilienceStats, ResilienceStatus, ServiceStatus
from steadfast.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    EventBus,
    EventType,
    ExecutionOptions,
    HealthCheckConfig,
    HealthMonitor,
    ResilienceCoordinator,
    RetryConfig,
    RetryExecutor,
    callable_probe,
    http_probe,
)

__all__ = [
    # Core types
    "CircuitState",
    "ResilienceStats",
    "ResilienceStatus",
    "ServiceStatus",
    # Errors
    "SteadfastError",
    "DownstreamError",
    "RateLimitError",
    "CircuitOpenError",
    "OperationTimeoutError",
    "UnknownOperationError",
    "UnknownServiceError",
    # Config
    "load_config",
    "get_config",
    "SteadfastConfig",
    # Resilience
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "EventBus",
    "EventType",
    "ExecutionOptions",
    "HealthCheckConfig",
    "HealthMonitor",
    "ResilienceCoordinator",
    "RetryConfig",
    "RetryExecutor",
    "callable_probe",
    "http_probe",
]
