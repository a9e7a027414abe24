"""
Error taxonomy for steadfast.

Downstream failures, the synthetic circuit-open error, timeouts, and misuse errors
all share one base class so callers can catch the whole family at once.
"""


class SteadfastError(Exception):
    """Base exception for all steadfast errors."""


# ---------------------------------------------------------------------------
# Downstream failures
# ---------------------------------------------------------------------------

class DownstreamError(SteadfastError):
    """A failure reported by a protected collaborator, optionally with a status/code."""

    def __init__(self, message: str, service: str = "unknown", status_code: int | None = None, code: str | None = None):
        self.message = message
        self.service = service
        self.status_code = status_code
        self.code = code
        super().__init__(f"[{service}] {message}")


class RateLimitError(DownstreamError):
    def __init__(self, message: str = "Rate limit exceeded.", service: str = "unknown"):
        super().__init__(message, service, 429)


# ---------------------------------------------------------------------------
# Raised by the resilience layer itself
# ---------------------------------------------------------------------------

class CircuitOpenError(SteadfastError):
    """Raised without invoking the protected operation while its circuit is open."""

    def __init__(self, operation: str, recovery_in_seconds: float = 0.0):
        self.operation = operation
        self.recovery_in_seconds = recovery_in_seconds
        super().__init__(f"Circuit breaker OPEN for {operation}. Try again in {recovery_in_seconds:.0f}s")


class OperationTimeoutError(SteadfastError, TimeoutError):
    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Operation {operation} timed out after {timeout:g}s")


class UnknownOperationError(SteadfastError, KeyError):
    """Strict-mode circuit breaker was asked about an operation with no configured policy."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"No circuit breaker policy configured for operation: {operation}")

    def __str__(self) -> str:
        return self.args[0]


class UnknownServiceError(SteadfastError, KeyError):
    def __init__(self, service: str):
        self.service = service
        super().__init__(f"No health check configuration for service: {service}")

    def __str__(self) -> str:
        return self.args[0]
