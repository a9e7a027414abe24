"""
Shared vocabulary for the resilience core.

Status enums used across components, the policy-class resolver that maps an
operation name onto its configured policy, and the serializable
ResilienceStats snapshot exposed to status endpoints.
"""

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

DEFAULT_POLICY = "general"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class ServiceStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class ResilienceStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# Higher rank = worse. UNKNOWN never outranks a known status.
_SERVICE_RANK = {
    ServiceStatus.UNKNOWN: 0,
    ServiceStatus.HEALTHY: 1,
    ServiceStatus.DEGRADED: 2,
    ServiceStatus.UNHEALTHY: 3,
}

_RESILIENCE_RANK = {
    ResilienceStatus.UNKNOWN: 0,
    ResilienceStatus.HEALTHY: 1,
    ResilienceStatus.DEGRADED: 2,
    ResilienceStatus.CRITICAL: 3,
}


def worst_service_status(statuses: Iterable[ServiceStatus]) -> ServiceStatus:
    return max(statuses, key=_SERVICE_RANK.__getitem__, default=ServiceStatus.UNKNOWN)


def worst_resilience_status(statuses: Iterable[ResilienceStatus]) -> ResilienceStatus:
    return max(statuses, key=_RESILIENCE_RANK.__getitem__, default=ResilienceStatus.UNKNOWN)


def aggregate_status(healthy: int, total: int) -> ResilienceStatus:
    """
    Overall status from per-service health.

    All healthy → healthy; at least 70% healthy → degraded; otherwise critical.
    With nothing to judge the result is degraded, never healthy.
    """
    if total == 0:
        return ResilienceStatus.DEGRADED
    if healthy == total:
        return ResilienceStatus.HEALTHY
    if healthy >= total * 0.7:
        return ResilienceStatus.DEGRADED
    return ResilienceStatus.CRITICAL


# ---------------------------------------------------------------------------
# Policy resolution
# ---------------------------------------------------------------------------

def policy_key(name: str, policies: Mapping[str, Any], default: str = DEFAULT_POLICY) -> str:
    """
    Resolve an operation name to the policy class that governs it.

    Accepts:
        "docs"          → exact match
        "docs:resolve"  → prefix before the first ':' or '.'
        "whatever"      → default
    """
    if name in policies:
        return name
    for sep in (":", "."):
        if sep in name:
            prefix = name.split(sep, 1)[0]
            if prefix in policies:
                return prefix
    return default


# ---------------------------------------------------------------------------
# Stats snapshot
# ---------------------------------------------------------------------------

class ResilienceStats(BaseModel):
    """Coordinator-level aggregate, derived from per-service and per-operation counters."""
    overall_status: ResilienceStatus = ResilienceStatus.UNKNOWN
    services_healthy: int = 0
    services_degraded: int = 0
    services_critical: int = 0
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    rejected_operations: int = 0
    total_retries: int = 0
    successful_retries: int = 0
    failed_retries: int = 0
    circuit_breaker_trips: int = 0
    circuit_breaker_resets: int = 0
    health_check_failures: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
