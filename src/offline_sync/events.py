"""Observer registration for engine notifications.

Listeners subscribe to an EventType and are called synchronously, in
subscription order, on the emitting thread. A listener that raises is
logged and does not affect other listeners or the emitter.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .timestamp_utils import utc_now

logger = logging.getLogger(__name__)

__all__ = ["EventType", "Event", "EventBus", "Listener"]


class EventType(Enum):
    """Notifications emitted by the engine components."""

    STARTED = "started"
    STOPPED = "stopped"
    SYNC_STARTED = "syncStarted"
    SYNC_COMPLETED = "syncCompleted"
    SYNC_FAILED = "syncFailed"
    SYNC_PAUSED = "syncPaused"
    ONLINE = "online"
    OFFLINE = "offline"
    STATUS_CHANGED = "statusChanged"
    CONFLICT_DETECTED = "conflictDetected"
    CONFLICT_RESOLVED = "conflictResolved"
    MONITOR_STARTED = "monitorStarted"
    MONITOR_STOPPED = "monitorStopped"


@dataclass(frozen=True)
class Event:
    """A single notification."""

    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)


Listener = Callable[[Event], None]


class EventBus:
    """Synchronous publish/subscribe hub."""

    def __init__(self) -> None:
        self._listeners: Dict[EventType, List[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, callback: Listener) -> Callable[[], None]:
        """Register a listener.

        Args:
            event_type: Event to listen for
            callback: Called with the Event

        Returns:
            Function that removes this subscription
        """
        with self._lock:
            self._listeners.setdefault(event_type, []).append(callback)

        def unsubscribe() -> None:
            self.unsubscribe(event_type, callback)

        return unsubscribe

    def unsubscribe(self, event_type: EventType, callback: Listener) -> bool:
        """Remove a listener. Returns False if it was not subscribed."""
        with self._lock:
            listeners = self._listeners.get(event_type, [])
            if callback in listeners:
                listeners.remove(callback)
                return True
        return False

    def listener_count(self, event_type: Optional[EventType] = None) -> int:
        with self._lock:
            if event_type is not None:
                return len(self._listeners.get(event_type, []))
            return sum(len(items) for items in self._listeners.values())

    def emit(self, event_type: EventType, payload: Optional[Dict[str, Any]] = None) -> Event:
        """Deliver an event to every current listener.

        Returns:
            The delivered Event
        """
        event = Event(type=event_type, payload=dict(payload or {}))
        with self._lock:
            listeners = list(self._listeners.get(event_type, []))

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Error in {event_type.value} listener")
        return event
