"""End-to-end sync scenarios.

Each test drives a complete engine (store, monitor, resolver, orchestrator)
through a realistic flow against FakeRemote.
"""

from __future__ import annotations

import pytest

from offline_sync.engine import SyncEngine
from offline_sync.errors import OfflineError
from offline_sync.models import ConflictType, EntryStatus, ResolutionStrategy

from tests.helpers import FakeRemote, diverge_with

T = "2024-03-01T12:00:00Z"


@pytest.mark.integration
class TestSyncScenarios:
    """Core end-to-end flows."""

    def test_single_update_syncs(self, engine: SyncEngine, remote: FakeRemote) -> None:
        """An enqueued update is replayed and completed."""
        entry = engine.orchestrator.enqueue("update", "employee", "emp-1", {"name": "John"})
        result = engine.orchestrator.trigger_sync()
        assert result.success is True
        assert result.processed_count == 1
        assert result.failed_count == 0
        assert engine.db.get_entry_by_id(entry.id).status == EntryStatus.COMPLETED
        assert remote.applied_ids == ["emp-1"]

    def test_batch_size_bounds_a_pass(self, engine: SyncEngine, remote: FakeRemote) -> None:
        """One pass processes at most batch_size entries."""
        engine.orchestrator.update_options(batch_size=5)
        for i in range(10):
            engine.orchestrator.enqueue("create", "employee", f"emp-{i}", {"n": i})
        result = engine.orchestrator.trigger_sync()
        assert result.processed_count == 5
        stats = engine.orchestrator.get_queue_stats()
        assert (stats.completed, stats.pending) == (5, 5)

    def test_equal_timestamps_default_to_local(self, engine: SyncEngine) -> None:
        """Same-timestamp divergence is a data conflict resolved to local."""
        entry = engine.orchestrator.enqueue(
            "update", "employee", "emp-1", {"name": "A", "updatedAt": T}
        )
        conflict = engine.resolver.detect_and_resolve(entry, {"name": "B", "updatedAt": T})
        assert conflict.conflict_type == ConflictType.DATA
        assert conflict.conflict_fields == ["name"]
        assert conflict.resolution == ResolutionStrategy.USE_LOCAL
        assert conflict.resolved_data["name"] == "A"

    def test_offline_trigger_changes_nothing(self, engine: SyncEngine, remote: FakeRemote) -> None:
        """Triggering while offline raises and leaves every entry pending."""
        for i in range(3):
            engine.orchestrator.enqueue("create", "employee", f"emp-{i}", {"n": i})
        engine.connectivity.set_status(False)
        with pytest.raises(OfflineError):
            engine.orchestrator.trigger_sync()
        assert engine.orchestrator.get_queue_stats().pending == 3
        assert remote.calls == []

    def test_rule_resolves_to_remote(self, engine: SyncEngine) -> None:
        """A matching use_remote rule yields the remote payload."""
        engine.resolver.create_rule("employee", "data", "use_remote", priority=10)
        entry = engine.orchestrator.enqueue("update", "employee", "emp-1", {"name": "A"})
        remote_payload = {"name": "B", "dept": "Ops"}
        conflict = engine.resolver.detect_and_resolve(entry, remote_payload)
        assert conflict.resolution == ResolutionStrategy.USE_REMOTE
        assert conflict.resolved_data == remote_payload


@pytest.mark.integration
class TestOfflineWorkflows:
    """Longer flows across several passes."""

    def test_offline_then_online(self, engine: SyncEngine, remote: FakeRemote) -> None:
        """Mutations recorded offline replay in order once back online."""
        engine.connectivity.set_status(False)
        engine.orchestrator.enqueue("create", "employee", "emp-1", {"name": "A"})
        engine.orchestrator.enqueue("update", "employee", "emp-1", {"name": "B"})
        engine.orchestrator.enqueue("delete", "employee", "emp-1")
        engine.connectivity.set_status(True)
        result = engine.orchestrator.trigger_sync()
        assert result.processed_count == 3
        operations = [entry.operation.value for entry, _ in remote.calls]
        assert operations == ["create", "update", "delete"]

    def test_manual_resolution_round_trip(self, engine: SyncEngine, remote: FakeRemote) -> None:
        """A parked conflict is resolved by hand and then pushed."""
        engine.resolver.update_options(default_resolution="manual")
        remote.handler = diverge_with({"name": "Remote", "phone": "555"})
        entry = engine.orchestrator.enqueue("update", "employee", "emp-1", {"name": "Local"})

        assert engine.orchestrator.trigger_sync().failed_count == 1
        conflict = engine.orchestrator.get_pending_conflicts()[0]
        assert conflict.conflict_fields == ["name", "phone"]

        engine.orchestrator.resolve_conflict(conflict.id, "merge", resolved_by="alice")
        assert engine.orchestrator.trigger_sync().processed_count == 1
        pushed, overwrite = remote.calls[-1]
        assert overwrite
        assert pushed.payload == {"name": "Local"}
        assert engine.db.get_entry_by_id(entry.id).status == EntryStatus.COMPLETED
        history = engine.orchestrator.get_resolution_history()
        assert history[0].resolved_by == "alice"

    def test_retention_sweep(self, engine: SyncEngine) -> None:
        """Completed entries are removed by the retention sweep."""
        engine.orchestrator.enqueue("create", "employee", "emp-1", {"n": 1})
        engine.orchestrator.enqueue("create", "employee", "emp-2", {"n": 2})
        engine.orchestrator.trigger_sync()
        assert engine.orchestrator.clear_completed_entries(older_than_days=7) == 0
        assert engine.orchestrator.clear_completed_entries(older_than_days=0) == 2
        assert engine.orchestrator.get_queue_stats().total == 0
