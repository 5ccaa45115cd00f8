"""Connectivity monitoring for offline-sync.

ConnectivityMonitor keeps a best-effort online/offline signal by probing a
list of endpoints on a fixed interval. Transitions emit ONLINE or OFFLINE
followed by STATUS_CHANGED on the event bus. Concurrent checks coalesce onto
the one already in flight.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import requests

from .events import EventBus, EventType
from .scheduler import Scheduler
from .timestamp_utils import to_iso, utc_now
from .validation import ValidationError

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_ENDPOINTS",
    "ConnectivityOptions",
    "ConnectivityStatus",
    "ReachabilityProbe",
    "HttpReachabilityProbe",
    "ConnectivityMonitor",
]

DEFAULT_ENDPOINTS = [
    "https://www.google.com",
    "https://www.cloudflare.com",
    "https://1.1.1.1",
]

CHECK_JOB_NAME = "connectivity-check"


@dataclass
class ConnectivityOptions:
    """Monitor configuration. Durations are in seconds."""

    check_interval: float = 30.0
    timeout: float = 5.0
    endpoints: List[str] = field(default_factory=lambda: list(DEFAULT_ENDPOINTS))
    max_consecutive_failures: int = 3


@dataclass
class ConnectivityStatus:
    """Snapshot of the monitor's state."""

    is_online: bool = False
    last_checked: Optional[datetime] = None
    last_online: Optional[datetime] = None
    last_offline: Optional[datetime] = None
    consecutive_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_online": self.is_online,
            "last_checked": to_iso(self.last_checked),
            "last_online": to_iso(self.last_online),
            "last_offline": to_iso(self.last_offline),
            "consecutive_failures": self.consecutive_failures,
        }


class ReachabilityProbe:
    """Interface for "is this endpoint reachable" checks."""

    def is_reachable(self, url: str, timeout: float) -> bool:
        raise NotImplementedError


class HttpReachabilityProbe(ReachabilityProbe):
    """Probe endpoints with an HTTP HEAD request.

    Any response below 500 counts as reachable: a server that answers with
    an error still proves the network path is up.
    """

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self.session = session or requests.Session()

    def is_reachable(self, url: str, timeout: float) -> bool:
        try:
            response = self.session.head(
                url,
                timeout=timeout,
                headers={"Cache-Control": "no-cache"},
                allow_redirects=False,
            )
        except requests.RequestException as e:
            logger.debug(f"Endpoint {url} unreachable: {e}")
            return False
        return response.ok or response.status_code < 500


class ConnectivityMonitor:
    """Tracks whether the remote side is reachable.

    Args:
        options: Monitor configuration (defaults if None)
        probe: Reachability transport (HTTP HEAD if None)
        events: Event bus for transition notifications
        scheduler: Shared scheduler driving periodic checks; a private one
            is created and owned by the monitor if None
    """

    def __init__(
        self,
        options: Optional[ConnectivityOptions] = None,
        probe: Optional[ReachabilityProbe] = None,
        events: Optional[EventBus] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.options = options or ConnectivityOptions()
        self.probe = probe or HttpReachabilityProbe()
        self.events = events or EventBus()
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or Scheduler(max_workers=1)

        self._status = ConnectivityStatus()
        self._lock = threading.Lock()
        self._online = threading.Event()
        self._check_lock = threading.Lock()
        self._inflight: Optional[Future] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Check once, then poll periodically. A second start is a no-op."""
        with self._lock:
            if self._running:
                return
            self._running = True

        logger.info(
            f"Connectivity monitor started (every {self.options.check_interval}s, "
            f"{len(self.options.endpoints)} endpoints)"
        )
        self.check_connectivity()
        if self._owns_scheduler:
            self.scheduler.start()
        self.scheduler.add_job(
            CHECK_JOB_NAME, self.options.check_interval, self.check_connectivity
        )
        self.events.emit(EventType.MONITOR_STARTED, {"options": self._options_dict()})

    def stop(self) -> None:
        """Cancel periodic polling."""
        with self._lock:
            if not self._running:
                return
            self._running = False

        self.scheduler.remove_job(CHECK_JOB_NAME)
        if self._owns_scheduler:
            self.scheduler.stop()
        logger.info("Connectivity monitor stopped")
        self.events.emit(EventType.MONITOR_STOPPED)

    def check_connectivity(self) -> bool:
        """Probe the configured endpoints and update status.

        Endpoints are tried in order and the first reachable one wins. A
        caller arriving while a check is in flight waits for that check and
        returns its result instead of probing again.

        Returns:
            True if any endpoint is reachable
        """
        with self._check_lock:
            inflight = self._inflight
            if inflight is None:
                future: Future = Future()
                self._inflight = future

        if inflight is not None:
            return inflight.result()

        try:
            result = self._probe_endpoints()
            self._apply_result(result)
            future.set_result(result)
            return result
        except Exception as e:
            future.set_exception(e)
            raise
        finally:
            with self._check_lock:
                self._inflight = None

    def _probe_endpoints(self) -> bool:
        for endpoint in list(self.options.endpoints):
            try:
                if self.probe.is_reachable(endpoint, self.options.timeout):
                    logger.debug(f"Endpoint {endpoint} reachable")
                    return True
            except Exception as e:
                logger.debug(f"Probe of {endpoint} failed: {e}")
        return False

    def _apply_result(self, is_online: bool) -> None:
        now = utc_now()
        with self._lock:
            was_online = self._status.is_online
            self._status.is_online = is_online
            self._status.last_checked = now
            if is_online:
                self._status.consecutive_failures = 0
            else:
                self._status.consecutive_failures += 1
            changed = was_online != is_online
            if changed and is_online:
                self._status.last_online = now
            elif changed:
                self._status.last_offline = now
            snapshot = replace(self._status)

        if is_online:
            self._online.set()
        else:
            self._online.clear()

        if not changed:
            if not is_online and snapshot.consecutive_failures == self.options.max_consecutive_failures:
                logger.warning(
                    f"Connectivity check failed {snapshot.consecutive_failures} times in a row"
                )
            return

        payload = snapshot.to_dict()
        if is_online:
            logger.info("Connectivity restored")
            self.events.emit(EventType.ONLINE, payload)
        else:
            logger.warning("Connectivity lost")
            self.events.emit(EventType.OFFLINE, payload)
        self.events.emit(EventType.STATUS_CHANGED, payload)

    def set_status(self, is_online: bool) -> None:
        """Force the online state, applying the normal transition rules."""
        self._apply_result(bool(is_online))

    def wait_for_connection(self, timeout: Optional[float] = None) -> bool:
        """Block until online.

        Args:
            timeout: Seconds to wait, None to wait indefinitely

        Returns:
            True once online, False if the timeout expired first
        """
        if self.is_online():
            return True
        return self._online.wait(timeout)

    def is_online(self) -> bool:
        with self._lock:
            return self._status.is_online

    def get_status(self) -> ConnectivityStatus:
        """Get a copy of the current status."""
        with self._lock:
            return replace(self._status)

    def get_last_online_time(self) -> Optional[datetime]:
        with self._lock:
            return self._status.last_online

    def get_offline_duration(self) -> Optional[timedelta]:
        """Get how long the monitor has been offline, None while online."""
        with self._lock:
            if self._status.is_online or self._status.last_offline is None:
                return None
            return utc_now() - self._status.last_offline

    def update_options(self, **changes: Any) -> ConnectivityOptions:
        """Change options; polling restarts with the new interval if running."""
        known = {f.name for f in fields(ConnectivityOptions)}
        for key in changes:
            if key not in known:
                raise ValidationError(key, "unknown connectivity option")
        if "endpoints" in changes:
            changes["endpoints"] = list(changes["endpoints"])
        self.options = replace(self.options, **changes)

        if self._running:
            self.scheduler.remove_job(CHECK_JOB_NAME)
            self.scheduler.add_job(
                CHECK_JOB_NAME, self.options.check_interval, self.check_connectivity
            )
        return self.options

    def _options_dict(self) -> Dict[str, Any]:
        return {
            "check_interval": self.options.check_interval,
            "timeout": self.options.timeout,
            "endpoints": list(self.options.endpoints),
            "max_consecutive_failures": self.options.max_consecutive_failures,
        }
