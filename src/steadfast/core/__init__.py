"""Core vocabulary — status enums, error taxonomy, stats snapshot."""

from .errors import (
    CircuitOpenError,
    DownstreamError,
    OperationTimeoutError,
    RateLimitError,
    SteadfastError,
    UnknownOperationError,
    UnknownServiceError,
)
from .types import (
    AlertSeverity,
    CircuitState,
    ResilienceStats,
    ResilienceStatus,
    ServiceStatus,
    policy_key,
)

__all__ = [
    "AlertSeverity",
    "CircuitOpenError",
    "CircuitState",
    "DownstreamError",
    "OperationTimeoutError",
    "RateLimitError",
    "ResilienceStats",
    "ResilienceStatus",
    "ServiceStatus",
    "SteadfastError",
    "UnknownOperationError",
    "UnknownServiceError",
    "policy_key",
]
