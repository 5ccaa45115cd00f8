"""Remote application of queued mutations.

A RemoteApplier replays one queue entry against the system of record and
reports either that it was applied or that the remote state has diverged
(with the remote snapshot, None when the remote entity is gone). Failures
raise RemoteError so the retry policy can classify them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from email.utils import format_datetime
from typing import Any, Callable, Dict, Optional, Union

import requests

from .errors import RemoteError
from .models import Operation, QueueEntry
from .retry import should_retry_status_code

logger = logging.getLogger(__name__)

__all__ = [
    "RemoteOutcome",
    "RemoteApplier",
    "HttpRemoteApplier",
    "CallableRemoteApplier",
]

DIVERGENCE_STATUS_CODES = (409, 412)


@dataclass
class RemoteOutcome:
    """Result of applying one entry remotely.

    Attributes:
        applied: True if the remote side accepted the mutation
        snapshot: Remote state after the call (or the diverged state);
            None means the remote entity does not exist
    """

    applied: bool
    snapshot: Optional[Dict[str, Any]] = None

    @classmethod
    def applied_ok(cls, snapshot: Optional[Dict[str, Any]] = None) -> "RemoteOutcome":
        return cls(applied=True, snapshot=snapshot)

    @classmethod
    def diverged(cls, snapshot: Optional[Dict[str, Any]]) -> "RemoteOutcome":
        return cls(applied=False, snapshot=snapshot)


class RemoteApplier:
    """Interface for the network call to the system of record."""

    def apply(self, entry: QueueEntry, *, overwrite: bool = False) -> RemoteOutcome:
        """Apply a queue entry remotely.

        Args:
            entry: Entry to replay
            overwrite: Skip the remote divergence check (used after a
                conflict has been resolved)

        Raises:
            RemoteError: If the call failed
        """
        raise NotImplementedError


class HttpRemoteApplier(RemoteApplier):
    """Replays entries against a REST endpoint.

    Routes:
        create -> POST   {base_url}/{entity_type}
        update -> PUT    {base_url}/{entity_type}/{entity_id}
        delete -> DELETE {base_url}/{entity_type}/{entity_id}
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = dict(headers or {})

    def _url(self, entry: QueueEntry) -> str:
        if entry.operation == Operation.CREATE:
            return f"{self.base_url}/{entry.entity_type}"
        return f"{self.base_url}/{entry.entity_type}/{entry.entity_id}"

    @staticmethod
    def _json_body(response: requests.Response) -> Optional[Dict[str, Any]]:
        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    def apply(self, entry: QueueEntry, *, overwrite: bool = False) -> RemoteOutcome:
        method = {
            Operation.CREATE: "POST",
            Operation.UPDATE: "PUT",
            Operation.DELETE: "DELETE",
        }[entry.operation]
        url = self._url(entry)
        headers = {"Idempotency-Key": entry.id, **self.headers}
        if not overwrite:
            headers["If-Unmodified-Since"] = format_datetime(entry.created_at, usegmt=True)

        kwargs: Dict[str, Any] = {"headers": headers, "timeout": self.timeout}
        if entry.payload is not None:
            kwargs["json"] = entry.payload

        try:
            response = self.session.request(method, url, **kwargs)
        except requests.Timeout as e:
            raise RemoteError(f"Request timeout: {method} {url}: {e}", retryable=True) from e
        except requests.ConnectionError as e:
            raise RemoteError(f"Connection error: {method} {url}: {e}", retryable=True) from e
        except requests.RequestException as e:
            raise RemoteError(f"Request failed: {method} {url}: {e}", retryable=False) from e

        status = response.status_code
        logger.debug(f"{method} {url} -> {status}")

        if 200 <= status < 300:
            return RemoteOutcome.applied_ok(self._json_body(response))
        if status in DIVERGENCE_STATUS_CODES:
            return RemoteOutcome.diverged(self._json_body(response))
        if status == 404 and entry.operation != Operation.CREATE:
            return RemoteOutcome.diverged(None)

        raise RemoteError(
            f"HTTP {status}: {method} {url}: {response.text[:200]}",
            status_code=status,
            retryable=should_retry_status_code(status),
        )


class CallableRemoteApplier(RemoteApplier):
    """Adapts a plain function to the RemoteApplier interface.

    The function receives (entry, overwrite) and returns a RemoteOutcome,
    a dict (applied, with that snapshot) or None (applied, no snapshot).
    """

    def __init__(
        self,
        func: Callable[[QueueEntry, bool], Union[RemoteOutcome, Dict[str, Any], None]],
    ) -> None:
        self.func = func

    def apply(self, entry: QueueEntry, *, overwrite: bool = False) -> RemoteOutcome:
        result = self.func(entry, overwrite)
        if isinstance(result, RemoteOutcome):
            return result
        return RemoteOutcome.applied_ok(result)
