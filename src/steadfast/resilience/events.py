"""
Event bus — typed observability events published by the resilience layer.

Collaborators either subscribe a callback, poll the bounded history, or
iterate a per-listener queue (used by the SSE stream).
"""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger("steadfast.events")


class EventType(str, Enum):
    OPERATION_ATTEMPTED = "operation_attempted"
    OPERATION_SUCCEEDED = "operation_succeeded"
    OPERATION_FAILED = "operation_failed"
    OPERATION_RETRIED = "operation_retried"
    OPERATION_REJECTED = "operation_rejected"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_HALF_OPENED = "circuit_half_opened"
    CIRCUIT_CLOSED = "circuit_closed"
    CIRCUIT_RESET = "circuit_reset"
    HEALTH_CHECK_SUCCEEDED = "health_check_succeeded"
    HEALTH_CHECK_FAILED = "health_check_failed"
    SERVICE_STATUS_CHANGED = "service_status_changed"
    SERVICE_REGISTERED = "service_registered"
    SERVICE_UNREGISTERED = "service_unregistered"
    ALERT_RAISED = "alert_raised"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"
    ALERT_RESOLVED = "alert_resolved"
    STATUS_CHANGED = "status_changed"


@dataclass(frozen=True)
class ResilienceEvent:
    type: EventType
    name: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value, "name": self.name,
            "timestamp": self.timestamp.isoformat(), "data": _jsonable(self.data),
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, BaseException):
        return str(value)
    return value


Subscriber = Callable[[ResilienceEvent], None]


class EventBus:
    """In-process publish/subscribe channel with bounded history."""

    MAX_HISTORY = 1000

    def __init__(self, max_history: int = MAX_HISTORY):
        self._history: deque[ResilienceEvent] = deque(maxlen=max_history)
        self._subscribers: list[Subscriber] = []
        self._queues: list[asyncio.Queue[ResilienceEvent]] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for every event. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event_type: EventType, name: str, **data: Any) -> ResilienceEvent:
        event = ResilienceEvent(type=event_type, name=name, data=data)
        self._history.append(event)
        for cb in list(self._subscribers):
            try:
                cb(event)
            except Exception as e:
                logger.error(f"Event subscriber error on {event_type.value}: {e}")
        for q in list(self._queues):
            if q.full():
                # Slow listener: drop its oldest event
                q.get_nowait()
            q.put_nowait(event)
        return event

    def recent(self, limit: int | None = None, event_type: EventType | None = None) -> list[ResilienceEvent]:
        events = [e for e in self._history if event_type is None or e.type == event_type]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def clear(self) -> None:
        self._history.clear()

    async def listen(self, maxsize: int = 100) -> AsyncIterator[ResilienceEvent]:
        """Yield events published once iteration has started, until the consumer stops."""
        q: asyncio.Queue[ResilienceEvent] = asyncio.Queue(maxsize=maxsize)
        self._queues.append(q)
        try:
            while True:
                yield await q.get()
        finally:
            self._queues.remove(q)

    @property
    def listener_count(self) -> int:
        return len(self._queues)
