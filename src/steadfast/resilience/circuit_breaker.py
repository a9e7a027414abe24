"""
Circuit breaker — fail fast on a failing downstream, probe for recovery.

States:
    CLOSED    → Normal operation, requests pass through
    OPEN      → Downstream is failing, fail fast without calling it
    HALF_OPEN → One trial request at a time tests whether it recovered

Transitions:
    closed    → open       requests >= volume_threshold and
                           (failures >= failure_threshold or failure rate >= error_threshold)
    open      → half-open  first can_execute() at least reset_timeout after the last failure
    half-open → closed     success_threshold consecutive trial successes (counts reset)
    half-open → open       any trial failure

All per-key mutation happens under that key's lock; different keys never contend.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from steadfast.core.errors import UnknownOperationError
from steadfast.core.types import DEFAULT_POLICY, CircuitState, policy_key

logger = logging.getLogger("steadfast.circuit_breaker")

TransitionListener = Callable[[str, CircuitState, CircuitState], None]


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 3
    volume_threshold: int = 10
    error_threshold: float = 0.5
    reset_timeout: float = 60.0

    def __post_init__(self):
        if self.failure_threshold < 1 or self.success_threshold < 1:
            raise ValueError("failure_threshold and success_threshold must be >= 1")
        if self.volume_threshold < 0:
            raise ValueError("volume_threshold must not be negative")
        if not 0.0 <= self.error_threshold <= 1.0:
            raise ValueError(f"error_threshold must be within 0-1, got {self.error_threshold}")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must not be negative")

    def to_dict(self) -> dict[str, Any]:
        return {
            "failure_threshold": self.failure_threshold, "success_threshold": self.success_threshold,
            "volume_threshold": self.volume_threshold, "error_threshold": self.error_threshold,
            "reset_timeout": self.reset_timeout,
        }


DEFAULT_CIRCUIT_CONFIGS: dict[str, CircuitBreakerConfig] = {
    "docs": CircuitBreakerConfig(5, 3, 10, 0.5, 60.0),
    "vector": CircuitBreakerConfig(3, 2, 5, 0.4, 30.0),
    "llm": CircuitBreakerConfig(4, 2, 8, 0.45, 45.0),
    "sandbox": CircuitBreakerConfig(3, 2, 6, 0.4, 25.0),
    "storage": CircuitBreakerConfig(3, 2, 6, 0.4, 30.0),
    DEFAULT_POLICY: CircuitBreakerConfig(5, 3, 10, 0.5, 60.0),
}


@dataclass
class CircuitBreakerState:
    key: str
    config: CircuitBreakerConfig
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    successes: int = 0
    requests: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None
    last_failure: datetime | None = None
    last_success: datetime | None = None
    last_failure_error: str | None = None
    opened_at: float | None = None
    last_state_change: datetime = field(default_factory=lambda: datetime.now(UTC))
    total_response_time: float = 0.0
    timed_requests: int = 0
    trips: int = 0
    recoveries: int = 0
    trial_in_flight: bool = False
    # Re-entrant: transition listeners may read the record they are notified about
    lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def failure_rate(self) -> float:
        return self.failures / self.requests if self.requests else 0.0

    @property
    def average_response_time(self) -> float:
        return self.total_response_time / self.timed_requests if self.timed_requests else 0.0

    @property
    def is_healthy(self) -> bool:
        return self.state != CircuitState.OPEN and self.failure_rate < self.config.error_threshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key, "state": self.state.value,
            "failures": self.failures, "successes": self.successes, "requests": self.requests,
            "failure_rate": round(self.failure_rate, 4),
            "average_response_time": self.average_response_time,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure_error": self.last_failure_error,
            "trips": self.trips, "recoveries": self.recoveries,
            "is_healthy": self.is_healthy,
        }


class CircuitBreaker:
    """
    Per-operation-key circuit breaker.

    Args:
        configs: Per-class thresholds; a key resolves to its class via policy_key().
        strict: Raise UnknownOperationError for keys with no configured class.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        configs: dict[str, CircuitBreakerConfig] | None = None,
        strict: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.configs: dict[str, CircuitBreakerConfig] = dict(DEFAULT_CIRCUIT_CONFIGS)
        if configs:
            self.configs.update(configs)
        self.strict = strict
        self.circuits: dict[str, CircuitBreakerState] = {}
        self._registry_lock = threading.Lock()
        self._listeners: list[TransitionListener] = []
        self._clock = clock

    def on_transition(self, listener: TransitionListener):
        """Register a callback invoked as (key, old_state, new_state) on every transition."""
        self._listeners.append(listener)

    def config_for(self, key: str) -> CircuitBreakerConfig:
        resolved = policy_key(key, self.configs, default="")
        if not resolved:
            if self.strict:
                raise UnknownOperationError(key)
            resolved = DEFAULT_POLICY
        return self.configs[resolved]

    def _get(self, key: str) -> CircuitBreakerState:
        s = self.circuits.get(key)
        if s is not None:
            return s
        with self._registry_lock:
            # Double-check after acquiring lock
            if key not in self.circuits:
                self.circuits[key] = CircuitBreakerState(key=key, config=self.config_for(key))
            return self.circuits[key]

    # --- Gate ---

    def can_execute(self, key: str) -> bool:
        """
        True if a request may proceed.

        Open circuits past their reset timeout move to half-open here, and the
        caller that observes it becomes the single trial request.
        """
        s = self._get(key)
        with s.lock:
            if s.state == CircuitState.CLOSED:
                return True
            if s.state == CircuitState.OPEN:
                if self._reset_elapsed(s):
                    self._transition(s, CircuitState.HALF_OPEN)
                    s.trial_in_flight = True
                    return True
                return False
            if s.trial_in_flight:
                return False
            s.trial_in_flight = True
            return True

    def release(self, key: str):
        """Give up a half-open trial slot without recording an outcome (e.g. cancellation)."""
        s = self._get(key)
        with s.lock:
            s.trial_in_flight = False

    def _open_since(self, s: CircuitBreakerState) -> float | None:
        # A trip can be caused by a success that pushed volume over the threshold
        marks = [t for t in (s.last_failure_time, s.opened_at) if t is not None]
        return max(marks) if marks else None

    def _reset_elapsed(self, s: CircuitBreakerState) -> bool:
        since = self._open_since(s)
        if since is None:
            return True
        return self._clock() - since >= s.config.reset_timeout

    def get_recovery_time(self, key: str) -> float:
        s = self._get(key)
        with s.lock:
            if s.state != CircuitState.OPEN:
                return 0.0
            since = self._open_since(s)
            if since is None:
                return 0.0
            return max(0.0, s.config.reset_timeout - (self._clock() - since))

    # --- Outcomes ---

    def record_success(self, key: str, response_time: float | None = None):
        s = self._get(key)
        with s.lock:
            s.successes += 1
            s.requests += 1
            s.last_success_time = self._clock()
            s.last_success = datetime.now(UTC)
            self._observe(s, response_time)
            if s.state == CircuitState.HALF_OPEN:
                s.trial_in_flight = False
                if s.successes >= s.config.success_threshold:
                    s.recoveries += 1
                    self._transition(s, CircuitState.CLOSED)
            elif s.state == CircuitState.CLOSED:
                self._evaluate(s)

    def record_failure(self, key: str, error: BaseException | None = None, response_time: float | None = None) -> bool:
        """Record a failure. Returns True if this failure opened the circuit."""
        s = self._get(key)
        with s.lock:
            s.failures += 1
            s.requests += 1
            s.last_failure_time = self._clock()
            s.last_failure = datetime.now(UTC)
            s.last_failure_error = str(error) if error is not None else None
            self._observe(s, response_time)
            if s.state == CircuitState.HALF_OPEN:
                s.trial_in_flight = False
                self._transition(s, CircuitState.OPEN)
                return True
            if s.state == CircuitState.CLOSED:
                return self._evaluate(s)
            return False

    def _observe(self, s: CircuitBreakerState, response_time: float | None):
        if response_time is not None:
            s.total_response_time += response_time
            s.timed_requests += 1

    def _evaluate(self, s: CircuitBreakerState) -> bool:
        cfg = s.config
        if s.requests < cfg.volume_threshold:
            return False
        if s.failures >= cfg.failure_threshold or s.failure_rate >= cfg.error_threshold:
            self._transition(s, CircuitState.OPEN)
            return True
        return False

    def _transition(self, s: CircuitBreakerState, new: CircuitState):
        old = s.state
        s.state = new
        s.last_state_change = datetime.now(UTC)
        if new == CircuitState.OPEN:
            s.opened_at = self._clock()
            s.trips += 1
        elif new == CircuitState.HALF_OPEN:
            s.successes = 0
        elif new == CircuitState.CLOSED:
            s.opened_at = None
            s.failures = 0
            s.successes = 0
            s.requests = 0
            s.trial_in_flight = False
        logger.info(f"Circuit {s.key}: {old.value} -> {new.value}")
        for listener in list(self._listeners):
            try:
                listener(s.key, old, new)
            except Exception as e:
                logger.error(f"Circuit transition listener error: {e}")

    # --- Manual control ---

    def force_open(self, key: str):
        s = self._get(key)
        with s.lock:
            if s.state != CircuitState.OPEN:
                s.last_failure_time = self._clock()
                self._transition(s, CircuitState.OPEN)

    def force_close(self, key: str):
        s = self._get(key)
        with s.lock:
            if s.state != CircuitState.CLOSED:
                self._transition(s, CircuitState.CLOSED)

    def reset(self, key: str):
        """Back to a fresh closed record, keeping trip/recovery history."""
        s = self.circuits.get(key)
        if s is None:
            return
        with s.lock:
            old = s.state
            s.state = CircuitState.CLOSED
            s.failures = s.successes = s.requests = 0
            s.last_failure_time = s.last_success_time = None
            s.last_failure = s.last_success = None
            s.last_failure_error = None
            s.opened_at = None
            s.total_response_time = 0.0
            s.timed_requests = 0
            s.trial_in_flight = False
            s.last_state_change = datetime.now(UTC)
        logger.info(f"Circuit {key}: reset")
        for listener in list(self._listeners):
            try:
                listener(key, old, CircuitState.CLOSED)
            except Exception as e:
                logger.error(f"Circuit transition listener error: {e}")

    def reset_all(self):
        for key in list(self.circuits):
            self.reset(key)

    def update_config(self, cls: str, **changes: Any) -> CircuitBreakerConfig:
        """Change a policy class; existing circuits of that class pick it up immediately."""
        base = self.configs.get(cls) or self.configs[DEFAULT_POLICY]
        self.configs[cls] = replace(base, **changes)
        for key, s in list(self.circuits.items()):
            if policy_key(key, self.configs) == cls:
                with s.lock:
                    s.config = self.configs[cls]
        return self.configs[cls]

    # --- Introspection ---

    def get_state(self, key: str) -> CircuitState:
        s = self.circuits.get(key)
        return s.state if s else CircuitState.CLOSED

    def get_stats(self, key: str) -> dict[str, Any]:
        s = self.circuits.get(key)
        if s is None:
            return CircuitBreakerState(key=key, config=self.config_for(key)).to_dict()
        with s.lock:
            return s.to_dict()

    def is_healthy(self, key: str) -> bool:
        s = self.circuits.get(key)
        return s.is_healthy if s else True

    def get_all_states(self) -> dict[str, dict[str, Any]]:
        return {k: self.get_stats(k) for k in list(self.circuits)}

    def get_open_circuits(self) -> list[str]:
        return [k for k, s in self.circuits.items() if s.state == CircuitState.OPEN]
