"""
Resilience metrics — counters, gauges, histograms fed from the event bus.

Exportable to Prometheus text format or JSON.
"""

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from steadfast.core.types import CircuitState

from .events import EventBus, EventType, ResilienceEvent

logger = logging.getLogger("steadfast.metrics")


@dataclass
class CounterMetric:
    name: str
    description: str
    value: int = 0
    labels: dict[tuple, int] = field(default_factory=dict)

    def inc(self, labels: dict[str, str] | None = None, value: int = 1):
        self.value += value
        if labels:
            key = tuple(sorted(labels.items()))
            self.labels[key] = self.labels.get(key, 0) + value


@dataclass
class GaugeMetric:
    name: str
    description: str
    value: float = 0.0

    def set(self, value: float):
        self.value = value


@dataclass
class HistogramMetric:
    name: str
    description: str
    observations: list[float] = field(default_factory=list)
    sum_value: float = 0.0
    count: int = 0

    def observe(self, value: float):
        self.observations.append(value)
        self.sum_value += value
        self.count += 1
        if len(self.observations) > 1000:
            self.observations = self.observations[-1000:]

    def percentile(self, p: float) -> float:
        if not self.observations:
            return 0.0
        s = sorted(self.observations)
        return s[min(int(len(s) * p), len(s) - 1)]


_OUTCOMES = {
    EventType.OPERATION_SUCCEEDED: "success",
    EventType.OPERATION_FAILED: "failure",
    EventType.OPERATION_REJECTED: "rejected",
}

_CIRCUIT_EVENTS = {
    EventType.CIRCUIT_OPENED: CircuitState.OPEN,
    EventType.CIRCUIT_HALF_OPENED: CircuitState.HALF_OPEN,
    EventType.CIRCUIT_CLOSED: CircuitState.CLOSED,
}


class ResilienceMetrics:
    """Thread-safe metrics collector."""

    def __init__(self):
        self._lock = Lock()
        self.operations = CounterMetric("steadfast_operations_total", "Protected operations by outcome")
        self.retries = CounterMetric("steadfast_retries_total", "Re-attempts after a failed attempt")
        self.circuit_transitions = CounterMetric("steadfast_circuit_transitions_total", "Circuit breaker transitions")
        self.health_checks = CounterMetric("steadfast_health_checks_total", "Health probes by result")
        self.alerts = CounterMetric("steadfast_alerts_total", "Health alerts raised")
        self.open_circuits = GaugeMetric("steadfast_open_circuits", "Currently open circuits")
        self.operation_duration = HistogramMetric("steadfast_operation_duration_seconds", "Protected operation duration")
        self._open: set[str] = set()

    def bind(self, events: EventBus):
        """Subscribe to a bus. Returns the unsubscribe function."""
        return events.subscribe(self.observe)

    def observe(self, event: ResilienceEvent):
        with self._lock:
            if event.type in _OUTCOMES:
                self.operations.inc({"operation": event.name, "outcome": _OUTCOMES[event.type]})
                duration = event.data.get("duration")
                if duration is not None and event.type != EventType.OPERATION_REJECTED:
                    self.operation_duration.observe(float(duration))
            elif event.type == EventType.OPERATION_RETRIED:
                self.retries.inc({"operation": event.name})
            elif event.type in _CIRCUIT_EVENTS:
                state = _CIRCUIT_EVENTS[event.type]
                self.circuit_transitions.inc({"operation": event.name, "state": state.value})
                if state == CircuitState.OPEN:
                    self._open.add(event.name)
                else:
                    self._open.discard(event.name)
                self.open_circuits.set(len(self._open))
            elif event.type == EventType.CIRCUIT_RESET:
                self._open.discard(event.name)
                self.open_circuits.set(len(self._open))
            elif event.type == EventType.HEALTH_CHECK_SUCCEEDED:
                self.health_checks.inc({"service": event.name, "result": "success"})
            elif event.type == EventType.HEALTH_CHECK_FAILED:
                self.health_checks.inc({"service": event.name, "result": "failure"})
            elif event.type == EventType.ALERT_RAISED:
                self.alerts.inc({"service": event.name})

    def get_summary(self) -> dict[str, Any]:
        with self._lock:
            return {
                "operations": self.operations.value,
                "retries": self.retries.value,
                "circuit_transitions": self.circuit_transitions.value,
                "health_checks": self.health_checks.value,
                "alerts": self.alerts.value,
                "open_circuits": self.open_circuits.value,
                "operation_duration_p50": self.operation_duration.percentile(0.5),
                "operation_duration_p95": self.operation_duration.percentile(0.95),
            }

    def to_prometheus(self) -> str:
        lines: list[str] = []
        with self._lock:
            for c in (self.operations, self.retries, self.circuit_transitions, self.health_checks, self.alerts):
                lines.append(f"# HELP {c.name} {c.description}")
                lines.append(f"# TYPE {c.name} counter")
                if not c.labels:
                    lines.append(f"{c.name} {c.value}")
                for key, value in sorted(c.labels.items()):
                    rendered = ",".join(f'{k}="{_escape(v)}"' for k, v in key)
                    lines.append(f"{c.name}{{{rendered}}} {value}")
            g = self.open_circuits
            lines += [f"# HELP {g.name} {g.description}", f"# TYPE {g.name} gauge", f"{g.name} {g.value:g}"]
            h = self.operation_duration
            lines += [
                f"# HELP {h.name} {h.description}", f"# TYPE {h.name} summary",
                f'{h.name}{{quantile="0.5"}} {h.percentile(0.5):g}',
                f'{h.name}{{quantile="0.95"}} {h.percentile(0.95):g}',
                f"{h.name}_sum {h.sum_value:g}", f"{h.name}_count {h.count}",
            ]
        return "\n".join(lines) + "\n"


def _escape(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
