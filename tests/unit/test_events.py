"""Unit tests for the event bus."""

from __future__ import annotations

import logging

import pytest

from offline_sync.events import Event, EventBus, EventType


@pytest.mark.unit
class TestEventBus:
    """Tests for subscribe/emit/unsubscribe."""

    def test_emit_delivers_payload(self) -> None:
        """Listeners receive the event with its payload."""
        bus = EventBus()
        received = []
        bus.subscribe(EventType.ONLINE, received.append)
        event = bus.emit(EventType.ONLINE, {"latency": 0.2})
        assert received == [event]
        assert isinstance(event, Event)
        assert event.type is EventType.ONLINE
        assert event.payload == {"latency": 0.2}
        assert event.timestamp.tzinfo is not None

    def test_only_matching_type(self) -> None:
        """Listeners only see their own event type."""
        bus = EventBus()
        received = []
        bus.subscribe(EventType.OFFLINE, received.append)
        bus.emit(EventType.ONLINE)
        assert received == []

    def test_subscription_order(self) -> None:
        """Listeners run in subscription order."""
        bus = EventBus()
        order = []
        bus.subscribe(EventType.STARTED, lambda e: order.append("a"))
        bus.subscribe(EventType.STARTED, lambda e: order.append("b"))
        bus.emit(EventType.STARTED)
        assert order == ["a", "b"]

    def test_unsubscribe_function(self) -> None:
        """The returned function removes the subscription."""
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(EventType.STOPPED, received.append)
        assert bus.listener_count(EventType.STOPPED) == 1
        unsubscribe()
        bus.emit(EventType.STOPPED)
        assert received == []
        assert bus.listener_count() == 0

    def test_unsubscribe_unknown(self) -> None:
        """Removing an unknown listener reports False."""
        bus = EventBus()
        assert bus.unsubscribe(EventType.STOPPED, print) is False

    def test_listener_error_is_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        """A raising listener is logged and later listeners still run."""
        bus = EventBus()
        received = []

        def broken(event: Event) -> None:
            raise RuntimeError("listener failure")

        bus.subscribe(EventType.SYNC_COMPLETED, broken)
        bus.subscribe(EventType.SYNC_COMPLETED, received.append)
        with caplog.at_level(logging.ERROR, logger="offline_sync.events"):
            bus.emit(EventType.SYNC_COMPLETED)
        assert len(received) == 1
        assert "syncCompleted" in caplog.text

    def test_payload_is_copied(self) -> None:
        """Mutating the emitted dict does not change the event."""
        bus = EventBus()
        payload = {"count": 1}
        event = bus.emit(EventType.SYNC_STARTED, payload)
        payload["count"] = 2
        assert event.payload == {"count": 1}
