"""Unit tests for remote appliers.

HttpRemoteApplier is tested against a mocked requests session.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from offline_sync.errors import RemoteError
from offline_sync.models import QueueEntry
from offline_sync.queue import create_entry
from offline_sync.remote import CallableRemoteApplier, HttpRemoteApplier, RemoteOutcome

BASE_URL = "https://api.example.test/v1/"


def response(status: int, body=None) -> MagicMock:
    """Build a fake requests.Response."""
    resp = MagicMock()
    resp.status_code = status
    resp.content = b"{}" if body is not None else b""
    resp.json.return_value = body
    resp.text = str(body or "")
    return resp


@pytest.fixture
def session() -> MagicMock:
    sess = MagicMock()
    sess.request.return_value = response(200, {"id": "emp-1"})
    return sess


@pytest.fixture
def applier(session: MagicMock) -> HttpRemoteApplier:
    return HttpRemoteApplier(BASE_URL, timeout=3.0, session=session, headers={"X-Token": "t"})


@pytest.mark.unit
class TestHttpRemoteApplierRequests:
    """Tests for request construction."""

    def test_create_posts_collection(self, applier: HttpRemoteApplier, session: MagicMock) -> None:
        """Creates POST to the collection URL with the payload."""
        entry = create_entry("create", "employee", "emp-1", {"name": "John"})
        applier.apply(entry)
        method, url = session.request.call_args.args
        kwargs = session.request.call_args.kwargs
        assert method == "POST"
        assert url == "https://api.example.test/v1/employee"
        assert kwargs["json"] == {"name": "John"}
        assert kwargs["timeout"] == 3.0
        assert kwargs["headers"]["Idempotency-Key"] == entry.id
        assert kwargs["headers"]["X-Token"] == "t"
        assert "If-Unmodified-Since" in kwargs["headers"]

    def test_update_puts_item(self, applier: HttpRemoteApplier, session: MagicMock) -> None:
        """Updates PUT to the item URL."""
        applier.apply(create_entry("update", "employee", "emp-1", {"name": "J"}))
        method, url = session.request.call_args.args
        assert (method, url) == ("PUT", "https://api.example.test/v1/employee/emp-1")

    def test_delete_has_no_body(self, applier: HttpRemoteApplier, session: MagicMock) -> None:
        """Deletes send no JSON body."""
        applier.apply(create_entry("delete", "employee", "emp-1"))
        method, _ = session.request.call_args.args
        assert method == "DELETE"
        assert "json" not in session.request.call_args.kwargs

    def test_overwrite_skips_precondition(
        self, applier: HttpRemoteApplier, session: MagicMock
    ) -> None:
        """Overwrites do not send If-Unmodified-Since."""
        applier.apply(create_entry("update", "employee", "emp-1", {"a": 1}), overwrite=True)
        assert "If-Unmodified-Since" not in session.request.call_args.kwargs["headers"]


@pytest.mark.unit
class TestHttpRemoteApplierResponses:
    """Tests for response interpretation."""

    def _apply(self, applier: HttpRemoteApplier, operation: str = "update") -> RemoteOutcome:
        payload = None if operation == "delete" else {"name": "John"}
        return applier.apply(create_entry(operation, "employee", "emp-1", payload))

    def test_success(self, applier: HttpRemoteApplier) -> None:
        """2xx means applied, with the response body as snapshot."""
        outcome = self._apply(applier)
        assert outcome.applied
        assert outcome.snapshot == {"id": "emp-1"}

    def test_no_content(self, applier: HttpRemoteApplier, session: MagicMock) -> None:
        """An empty 204 body gives no snapshot."""
        session.request.return_value = response(204)
        outcome = self._apply(applier, "delete")
        assert outcome.applied
        assert outcome.snapshot is None

    @pytest.mark.parametrize("status", [409, 412])
    def test_divergence(self, applier: HttpRemoteApplier, session: MagicMock, status: int) -> None:
        """Precondition failures report divergence with the remote state."""
        session.request.return_value = response(status, {"name": "Johnny"})
        outcome = self._apply(applier)
        assert not outcome.applied
        assert outcome.snapshot == {"name": "Johnny"}

    def test_missing_entity(self, applier: HttpRemoteApplier, session: MagicMock) -> None:
        """404 on an update means the remote entity is gone."""
        session.request.return_value = response(404)
        outcome = self._apply(applier)
        assert not outcome.applied
        assert outcome.snapshot is None

    def test_404_on_create_is_error(self, applier: HttpRemoteApplier, session: MagicMock) -> None:
        """404 on a create is a permanent error."""
        session.request.return_value = response(404)
        with pytest.raises(RemoteError) as exc:
            self._apply(applier, "create")
        assert exc.value.status_code == 404
        assert not exc.value.retryable

    @pytest.mark.parametrize("status,retryable", [(503, True), (429, True), (400, False)])
    def test_error_status(
        self, applier: HttpRemoteApplier, session: MagicMock, status: int, retryable: bool
    ) -> None:
        """Other statuses raise RemoteError classified by code."""
        session.request.return_value = response(status, {"error": "x"})
        with pytest.raises(RemoteError) as exc:
            self._apply(applier)
        assert exc.value.status_code == status
        assert exc.value.retryable is retryable

    @pytest.mark.parametrize(
        "error,retryable",
        [
            (requests.Timeout("slow"), True),
            (requests.ConnectionError("refused"), True),
            (requests.TooManyRedirects("loop"), False),
        ],
    )
    def test_transport_errors(
        self, applier: HttpRemoteApplier, session: MagicMock, error: Exception, retryable: bool
    ) -> None:
        """Transport failures raise RemoteError without a status code."""
        session.request.side_effect = error
        with pytest.raises(RemoteError) as exc:
            self._apply(applier)
        assert exc.value.status_code is None
        assert exc.value.retryable is retryable


@pytest.mark.unit
class TestCallableRemoteApplier:
    """Tests for the function adapter."""

    def test_passes_overwrite_flag(self) -> None:
        """The function receives the entry and the overwrite flag."""
        seen = []

        def func(entry: QueueEntry, overwrite: bool):
            seen.append((entry.entity_id, overwrite))

        CallableRemoteApplier(func).apply(
            create_entry("delete", "employee", "emp-1"), overwrite=True
        )
        assert seen == [("emp-1", True)]

    def test_wraps_plain_results(self) -> None:
        """Dicts and None become applied outcomes."""
        entry = create_entry("create", "employee", "emp-1", {"a": 1})
        assert CallableRemoteApplier(lambda e, o: {"a": 1}).apply(entry).snapshot == {"a": 1}
        assert CallableRemoteApplier(lambda e, o: None).apply(entry).applied

    def test_passes_outcome_through(self) -> None:
        """RemoteOutcome results are returned unchanged."""
        entry = create_entry("update", "employee", "emp-1", {"a": 1})
        outcome = RemoteOutcome.diverged({"a": 2})
        assert CallableRemoteApplier(lambda e, o: outcome).apply(entry) is outcome
