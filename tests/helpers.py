"""Test doubles for offline-sync tests.

FakeProbe stands in for the HTTP reachability check and FakeRemote for the
system of record, so tests never touch the network.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from offline_sync.connectivity import ReachabilityProbe
from offline_sync.models import QueueEntry
from offline_sync.remote import RemoteApplier, RemoteOutcome

SRC_DIR = Path(__file__).parent.parent / "src"

Handler = Callable[[QueueEntry, bool], RemoteOutcome]


class FakeProbe(ReachabilityProbe):
    """Reachability probe with scripted answers.

    Attributes:
        reachable: Default answer for every endpoint
        per_endpoint: Overrides keyed by URL (True, False, or an exception)
        calls: URLs probed, in order
        gate: If set, probes block until the event is set
    """

    def __init__(self, reachable: bool = True) -> None:
        self.reachable = reachable
        self.per_endpoint: Dict[str, Any] = {}
        self.calls: List[str] = []
        self.gate: Optional[threading.Event] = None
        self._lock = threading.Lock()

    def is_reachable(self, url: str, timeout: float) -> bool:
        with self._lock:
            self.calls.append(url)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        answer = self.per_endpoint.get(url, self.reachable)
        if isinstance(answer, Exception):
            raise answer
        return answer


def raise_error(error: Exception) -> Handler:
    """Build a FakeRemote handler that always raises error."""

    def handler(entry: QueueEntry, overwrite: bool) -> RemoteOutcome:
        raise error

    return handler


def diverge_with(snapshot: Optional[Dict[str, Any]], times: int = 1) -> Handler:
    """Build a handler that reports divergence the first `times` calls."""
    remaining = [times]

    def handler(entry: QueueEntry, overwrite: bool) -> RemoteOutcome:
        if remaining[0] > 0 and not overwrite:
            remaining[0] -= 1
            return RemoteOutcome.diverged(snapshot)
        return RemoteOutcome.applied_ok(entry.payload)

    return handler


class FakeRemote(RemoteApplier):
    """In-memory system of record.

    Accepts every mutation unless a handler is installed. Records each call
    as (entry, overwrite).
    """

    def __init__(self, handler: Optional[Handler] = None) -> None:
        self.handler = handler
        self.calls: List[Tuple[QueueEntry, bool]] = []
        self._lock = threading.Lock()

    def apply(self, entry: QueueEntry, *, overwrite: bool = False) -> RemoteOutcome:
        with self._lock:
            self.calls.append((entry, overwrite))
        if self.handler is not None:
            return self.handler(entry, overwrite)
        return RemoteOutcome.applied_ok(entry.payload)

    @property
    def applied_ids(self) -> List[str]:
        return [entry.entity_id for entry, _ in self.calls]
