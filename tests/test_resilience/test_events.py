"""Tests for the event bus."""

import asyncio

from steadfast.core.types import CircuitState
from steadfast.resilience.events import EventBus, EventType


class TestEventBus:
    def test_publish_and_subscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe(received.append)
        event = bus.publish(EventType.OPERATION_SUCCEEDED, "docs", duration=0.2)
        assert received == [event]
        assert event.data == {"duration": 0.2}

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(received.append)
        unsubscribe()
        unsubscribe()
        bus.publish(EventType.OPERATION_ATTEMPTED, "docs")
        assert received == []

    def test_subscriber_error_is_contained(self):
        bus = EventBus()
        received = []

        def broken(_):
            raise RuntimeError("subscriber bug")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        bus.publish(EventType.OPERATION_ATTEMPTED, "docs")
        assert len(received) == 1

    def test_bounded_history(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            bus.publish(EventType.OPERATION_ATTEMPTED, f"op{i}")
        assert [e.name for e in bus.recent()] == ["op2", "op3", "op4"]

    def test_recent_filters(self):
        bus = EventBus()
        bus.publish(EventType.OPERATION_ATTEMPTED, "a")
        bus.publish(EventType.OPERATION_FAILED, "a")
        bus.publish(EventType.OPERATION_ATTEMPTED, "b")
        assert [e.name for e in bus.recent(event_type=EventType.OPERATION_ATTEMPTED)] == ["a", "b"]
        assert [e.name for e in bus.recent(1)] == ["b"]
        assert bus.recent(0) == []

    def test_clear(self):
        bus = EventBus()
        bus.publish(EventType.OPERATION_ATTEMPTED, "a")
        bus.clear()
        assert bus.recent() == []

    def test_to_dict_is_json_friendly(self):
        bus = EventBus()
        event = bus.publish(EventType.CIRCUIT_OPENED, "docs", old_state=CircuitState.CLOSED,
                            error=ValueError("boom"))
        data = event.to_dict()
        assert data["type"] == "circuit_opened"
        assert data["data"] == {"old_state": "closed", "error": "boom"}
        assert "T" in data["timestamp"]


class TestListen:
    async def test_listener_receives_new_events(self):
        bus = EventBus()
        received = []

        async def consume():
            stream = bus.listen()
            try:
                async for event in stream:
                    received.append(event.name)
                    if len(received) == 2:
                        break
            finally:
                await stream.aclose()

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        assert bus.listener_count == 1
        bus.publish(EventType.OPERATION_ATTEMPTED, "a")
        bus.publish(EventType.OPERATION_ATTEMPTED, "b")
        await asyncio.wait_for(task, timeout=1)
        assert received == ["a", "b"]
        assert bus.listener_count == 0

    async def test_slow_listener_drops_oldest(self):
        bus = EventBus()
        stream = bus.listen(maxsize=2)
        first = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        for name in ("a", "b", "c", "d"):
            bus.publish(EventType.OPERATION_ATTEMPTED, name)
        event = await asyncio.wait_for(first, timeout=1)
        assert event.name in ("a", "b", "c")
        await stream.aclose()
        assert bus.listener_count == 0
