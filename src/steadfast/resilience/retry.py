"""
Retry executor — bounded re-attempts with exponential backoff and jitter.

The executor never raises on its own account: every run, successful or not,
comes back as a RetryOutcome carrying the full attempt history. The caller
decides how to surface the final error.

Delay before attempt n+1:
    min(max_delay, base_delay * backoff_multiplier ** (n - 1)), ±10% jitter
"""

from __future__ import annotations

import asyncio
import errno
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx

from steadfast.core.types import DEFAULT_POLICY

logger = logging.getLogger("steadfast.retry")

JITTER_RATIO = 0.1

RetryPredicate = Callable[[BaseException], bool]
RetryHook = Callable[[int, BaseException], None]
Operation = Callable[[], Awaitable[Any]]

_RETRYABLE_ERRNOS = {errno.ECONNRESET, errno.ETIMEDOUT, errno.ECONNREFUSED, errno.EPIPE}
_RETRYABLE_CODES = {"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "ECONNREFUSED", "EPIPE"}


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

def error_status(error: BaseException) -> int | None:
    """Best-effort HTTP-like status carried by an error."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_retryable_error(error: BaseException) -> bool:
    """Default predicate: network resets, timeouts, 5xx and 429 are transient."""
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if getattr(error, "errno", None) in _RETRYABLE_ERRNOS:
        return True
    if getattr(error, "code", None) in _RETRYABLE_CODES:
        return True
    status = error_status(error)
    return status is not None and (status >= 500 or status == 429)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 20.0
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True
    retry_predicate: RetryPredicate | None = None
    on_retry: RetryHook | None = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_multiplier < 1:
            raise ValueError(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    def with_overrides(self, **changes: Any) -> RetryConfig:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts, "base_delay": self.base_delay,
            "max_delay": self.max_delay, "backoff_multiplier": self.backoff_multiplier,
            "jitter_enabled": self.jitter_enabled,
            "custom_predicate": self.retry_predicate is not None,
        }


class RetryStrategy(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"
    CUSTOM = "custom"


DEFAULT_RETRY_CONFIGS: dict[str, RetryConfig] = {
    "docs": RetryConfig(max_attempts=5, base_delay=1.0, max_delay=30.0, backoff_multiplier=2.0),
    "vector": RetryConfig(max_attempts=3, base_delay=0.5, max_delay=10.0, backoff_multiplier=1.5),
    "llm": RetryConfig(max_attempts=4, base_delay=0.75, max_delay=15.0, backoff_multiplier=2.0),
    "sandbox": RetryConfig(max_attempts=3, base_delay=0.6, max_delay=12.0, backoff_multiplier=1.8),
    "storage": RetryConfig(max_attempts=3, base_delay=0.5, max_delay=10.0, backoff_multiplier=2.0),
    DEFAULT_POLICY: RetryConfig(max_attempts=3, base_delay=1.0, max_delay=20.0, backoff_multiplier=2.0),
}


def compute_delay(attempt: int, config: RetryConfig, rng: random.Random | None = None) -> float:
    """Backoff delay scheduled after failed attempt number `attempt` (1-based)."""
    delay = min(config.max_delay, config.base_delay * config.backoff_multiplier ** (attempt - 1))
    if config.jitter_enabled and delay > 0:
        spread = delay * JITTER_RATIO
        delay += (rng or random).uniform(-spread, spread)
    return max(0.0, min(config.max_delay, delay))


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

@dataclass
class RetryAttempt:
    attempt: int
    started_at: datetime
    duration: float
    success: bool
    error: BaseException | None = None
    delay: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt, "started_at": self.started_at.isoformat(),
            "duration": self.duration, "success": self.success,
            "error": str(self.error) if self.error else None, "delay": self.delay,
        }


@dataclass
class RetryOutcome:
    success: bool
    value: Any = None
    error: BaseException | None = None
    attempts: int = 0
    total_time: float = 0.0
    history: list[RetryAttempt] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)

    def unwrap(self) -> Any:
        """Return the value, or raise the final error."""
        if self.success:
            return self.value
        raise self.error  # type: ignore[misc]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success, "attempts": self.attempts, "retries": self.retries,
            "total_time": self.total_time,
            "error": str(self.error) if self.error else None,
            "history": [a.to_dict() for a in self.history],
        }


@dataclass
class RetryServiceStats:
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    total_attempts: int = 0
    total_time: float = 0.0

    @property
    def average_attempts(self) -> float:
        return self.total_attempts / self.total_runs if self.total_runs else 0.0

    @property
    def average_time(self) -> float:
        return self.total_time / self.total_runs if self.total_runs else 0.0

    def record(self, outcome: RetryOutcome):
        self.total_runs += 1
        self.total_attempts += outcome.attempts
        self.total_time += outcome.total_time
        if outcome.success:
            self.successful_runs += 1
        else:
            self.failed_runs += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_runs": self.total_runs, "successful_runs": self.successful_runs,
            "failed_runs": self.failed_runs, "average_attempts": round(self.average_attempts, 3),
            "average_time": round(self.average_time, 6),
        }


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class RetryExecutor:
    """
    Runs async operations with bounded re-attempts.

    Args:
        configs: Per-class policies (defaults to DEFAULT_RETRY_CONFIGS).
        rng: Jitter source; pass a seeded random.Random for deterministic runs.
        sleep: Suspension function between attempts (asyncio.sleep by default).
    """

    def __init__(
        self,
        configs: dict[str, RetryConfig] | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.configs: dict[str, RetryConfig] = dict(DEFAULT_RETRY_CONFIGS)
        if configs:
            self.configs.update(configs)
        self.rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock
        self._stats: dict[str, RetryServiceStats] = {}

    def get_config(self, service: str = DEFAULT_POLICY) -> RetryConfig:
        return self.configs.get(service) or self.configs[DEFAULT_POLICY]

    def update_config(self, service: str, **changes: Any) -> RetryConfig:
        self.configs[service] = self.get_config(service).with_overrides(**changes)
        logger.info(f"Retry config for {service} updated: {sorted(changes)}")
        return self.configs[service]

    def compute_delay(self, attempt: int, config: RetryConfig) -> float:
        return compute_delay(attempt, config, self.rng)

    async def execute_with_retry(
        self,
        operation: Operation,
        config: RetryConfig | None = None,
        service: str = DEFAULT_POLICY,
    ) -> RetryOutcome:
        """Invoke `operation` up to config.max_attempts times. Never raises."""
        cfg = config or self.get_config(service)
        predicate = cfg.retry_predicate or is_retryable_error
        start = self._clock()
        history: list[RetryAttempt] = []
        outcome: RetryOutcome | None = None

        for attempt in range(1, cfg.max_attempts + 1):
            started_at = datetime.now(UTC)
            t0 = self._clock()
            try:
                value = await operation()
            except Exception as e:
                record = RetryAttempt(attempt, started_at, self._clock() - t0, False, e)
                history.append(record)
                if attempt == cfg.max_attempts or not self._should_retry(predicate, e):
                    outcome = RetryOutcome(False, error=e, attempts=attempt,
                                           total_time=self._clock() - start, history=history)
                    break
                delay = self.compute_delay(attempt, cfg)
                record.delay = delay
                self._notify(cfg, attempt, e)
                logger.debug(f"Retry {service} attempt {attempt}/{cfg.max_attempts} failed ({e}); next in {delay:.3f}s")
                await self._sleep(delay)
            else:
                history.append(RetryAttempt(attempt, started_at, self._clock() - t0, True))
                outcome = RetryOutcome(True, value=value, attempts=attempt,
                                       total_time=self._clock() - start, history=history)
                break

        assert outcome is not None
        self._stats.setdefault(service, RetryServiceStats()).record(outcome)
        if not outcome.success and outcome.attempts > 1:
            logger.warning(f"Retry {service} exhausted after {outcome.attempts} attempts: {outcome.error}")
        return outcome

    async def execute_with_strategy(
        self,
        operation: Operation,
        strategy: RetryStrategy | str,
        config: RetryConfig | None = None,
        service: str = DEFAULT_POLICY,
    ) -> RetryOutcome:
        cfg = config or self.get_config(service)
        strategy = RetryStrategy(strategy)
        if strategy == RetryStrategy.LINEAR:
            cfg = cfg.with_overrides(backoff_multiplier=1.0)
        elif strategy == RetryStrategy.FIXED:
            cfg = cfg.with_overrides(backoff_multiplier=1.0, max_delay=cfg.base_delay)
        return await self.execute_with_retry(operation, cfg, service)

    def _should_retry(self, predicate: RetryPredicate, error: BaseException) -> bool:
        try:
            return bool(predicate(error))
        except Exception as e:
            logger.error(f"Retry predicate raised, treating error as terminal: {e}")
            return False

    def _notify(self, cfg: RetryConfig, attempt: int, error: BaseException):
        if cfg.on_retry is None:
            return
        try:
            cfg.on_retry(attempt, error)
        except Exception as e:
            logger.error(f"on_retry hook error: {e}")

    # --- Stats ---

    def get_stats(self) -> dict[str, Any]:
        totals = RetryServiceStats()
        for s in self._stats.values():
            totals.total_runs += s.total_runs
            totals.successful_runs += s.successful_runs
            totals.failed_runs += s.failed_runs
            totals.total_attempts += s.total_attempts
            totals.total_time += s.total_time
        success_rate = totals.successful_runs / totals.total_runs * 100 if totals.total_runs else 0.0
        return {
            **totals.to_dict(),
            "total_retries": totals.total_attempts - totals.total_runs,
            "success_rate": round(success_rate, 2),
            "services": {name: s.to_dict() for name, s in self._stats.items()},
        }

    def reset_stats(self):
        self._stats.clear()
