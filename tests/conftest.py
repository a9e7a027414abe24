"""Shared fixtures for the Steadfast test suite."""

import asyncio
import random

import pytest

from steadfast.config import SteadfastConfig
from steadfast.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from steadfast.resilience.coordinator import ResilienceCoordinator
from steadfast.resilience.events import EventBus
from steadfast.resilience.health import HealthMonitor
from steadfast.resilience.retry import RetryConfig, RetryExecutor


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement: records requested delays and returns immediately."""

    def __init__(self, clock: FakeClock | None = None):
        self.delays: list[float] = []
        self.clock = clock

    async def __call__(self, delay: float):
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        # Yield to the loop like a real sleep
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def steadfast_config():
    """Config with fast, deterministic policies for the 'test' class."""
    cfg = SteadfastConfig(default_timeout=5.0)
    cfg.retry["test"] = RetryConfig(max_attempts=3, base_delay=0.1, max_delay=1.0, jitter_enabled=False)
    cfg.circuits["test"] = CircuitBreakerConfig(
        failure_threshold=5, success_threshold=2, volume_threshold=10, error_threshold=0.5, reset_timeout=30.0,
    )
    return cfg


@pytest.fixture
def coordinator(steadfast_config, clock, sleep, events):
    """Coordinator with injected clock and sleep so nothing waits in real time."""
    return ResilienceCoordinator(
        steadfast_config,
        retry_executor=RetryExecutor(steadfast_config.retry, rng=random.Random(7), sleep=sleep),
        circuit_breaker=CircuitBreaker(steadfast_config.circuits, clock=clock),
        health_monitor=HealthMonitor(events=events, sleep=sleep),
        events=events,
        clock=clock,
    )
