"""CLI tests for queue, history, conflict and rule commands.

Most tests run the CLI in a subprocess; commands that reach the remote run
in-process with the engine factory patched to use a fake remote.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys

import pytest

from offline_sync.config import Config
from offline_sync.conflicts import ConflictOptions, ConflictResolver
from offline_sync.database import Database
from offline_sync.engine import SyncEngine
from offline_sync.main import main
from offline_sync.models import EntryStatus
from offline_sync.queue import create_entry, mark_failed, mark_processing

from tests.helpers import SRC_DIR, FakeProbe, FakeRemote, raise_error


@pytest.fixture
def pending_conflict(empty_db: Database) -> str:
    """Store a failed entry parked on a pending conflict; return the conflict ID."""
    entry = empty_db.add_entry(create_entry("update", "employee", "emp-1", {"name": "John"}))
    resolver = ConflictResolver(empty_db, ConflictOptions(auto_resolve_enabled=False))
    conflict = resolver.detect_and_resolve(entry, {"name": "Johnny"})
    empty_db.update_entry(
        mark_failed(
            mark_processing(entry),
            {"error": "Conflict awaiting manual resolution", "conflict_id": conflict.id, "retryable": False},
        )
    )
    return conflict.id


@pytest.mark.cli
class TestCLIArguments:
    """Test argument parsing and general behaviour."""

    def test_no_command(self, run_cli) -> None:
        """Running cli without a command is an error."""
        result = run_cli()
        assert result.returncode == 1
        assert "No CLI command specified" in result.stderr

    def test_no_interface_shows_help(self) -> None:
        """Running without an interface prints usage."""
        env = dict(os.environ, PYTHONPATH=str(SRC_DIR))
        result = subprocess.run(
            [sys.executable, "-m", "offline_sync.main"],
            capture_output=True,
            text=True,
            env=env,
        )
        assert result.returncode == 1
        assert "usage:" in result.stdout.lower()

    def test_help_lists_commands(self, run_cli) -> None:
        """cli --help lists the commands."""
        result = run_cli("--help")
        assert result.returncode == 0
        for command in ("enqueue", "sync-now", "conflicts", "resolve", "rules"):
            assert command in result.stdout


@pytest.mark.cli
class TestQueueCommands:
    """Test enqueue, stats, failed and clear-completed."""

    def test_enqueue_and_stats(self, run_cli) -> None:
        """Enqueued entries show up in stats."""
        result = run_cli("enqueue", "update", "employee", "emp-1", "--payload", '{"name": "John"}')
        assert result.returncode == 0
        assert "Queued update employee/emp-1" in result.stdout

        stats = run_cli("--format", "json", "stats")
        assert json.loads(stats.stdout)["pending"] == 1

    def test_enqueue_json(self, run_cli) -> None:
        """JSON output describes the stored entry."""
        result = run_cli("--format", "json", "enqueue", "delete", "employee", "emp-9")
        entry = json.loads(result.stdout)
        assert entry["operation"] == "delete"
        assert entry["payload"] is None
        assert entry["status"] == "pending"

    def test_enqueue_missing_payload(self, run_cli) -> None:
        """Updates without a payload are rejected."""
        result = run_cli("enqueue", "update", "employee", "emp-1")
        assert result.returncode == 1
        assert "Error: Invalid payload" in result.stderr

    def test_enqueue_bad_json(self, run_cli) -> None:
        """Malformed payload JSON is rejected."""
        result = run_cli("enqueue", "create", "employee", "emp-1", "--payload", "{oops")
        assert result.returncode == 1
        assert "invalid JSON" in result.stderr

    def test_failed_empty(self, run_cli) -> None:
        """With no failures a friendly message is printed."""
        result = run_cli("failed")
        assert result.returncode == 0
        assert "No failed entries." in result.stdout

    def test_failed_lists_entries(self, run_cli, pending_conflict: str) -> None:
        """Failed entries are listed with their error."""
        result = run_cli("failed")
        assert "Failed Entries (1)" in result.stdout
        assert "awaiting manual resolution" in result.stdout

    def test_clear_completed(self, run_cli) -> None:
        """The sweep reports the number removed."""
        result = run_cli("--format", "json", "clear-completed", "--days", "0")
        assert json.loads(result.stdout) == {"removed": 0}

    def test_clear_completed_negative(self, run_cli) -> None:
        """Negative ages are rejected."""
        result = run_cli("clear-completed", "--days", "-1")
        assert result.returncode == 1


@pytest.mark.cli
class TestStatusAndHistory:
    """Test status and history."""

    def test_status_text(self, run_cli) -> None:
        """Status shows the queue and an unconfigured remote."""
        result = run_cli("status")
        assert result.returncode == 0
        assert "Remote: (not configured)" in result.stdout
        assert "Last Sync: never" in result.stdout

    def test_status_json(self, run_cli, pending_conflict: str) -> None:
        """JSON status counts pending conflicts."""
        data = json.loads(run_cli("--format", "json", "status").stdout)
        assert data["pending_conflicts"] == 1
        assert data["queue"]["failed"] == 1
        assert data["online"] is None

    def test_history_empty(self, run_cli) -> None:
        """Empty history prints a message."""
        assert "No sync history." in run_cli("history").stdout


@pytest.mark.cli
class TestConflictCommands:
    """Test conflicts, resolve and rules."""

    def test_conflicts_list(self, run_cli, pending_conflict: str) -> None:
        """Pending conflicts are listed by short ID."""
        result = run_cli("conflicts")
        assert "Pending Conflicts (1)" in result.stdout
        assert pending_conflict[:8] in result.stdout
        assert "data conflict on employee/emp-1" in result.stdout

    def test_resolve_by_prefix(
        self, run_cli, pending_conflict: str, empty_db: Database
    ) -> None:
        """A unique ID prefix resolves the conflict and re-queues the entry."""
        result = run_cli(
            "--format", "json", "resolve", pending_conflict[:8], "local", "--by", "alice"
        )
        assert result.returncode == 0
        data = json.loads(result.stdout)
        assert data["conflict"]["status"] == "resolved"
        assert data["conflict"]["resolved_by"] == "alice"
        assert data["entry"]["status"] == EntryStatus.PENDING.value
        assert data["entry"]["conflict_data"]["overwrite"] is True

    def test_resolve_remote_completes(self, run_cli, pending_conflict: str) -> None:
        """Keeping the remote state completes the entry."""
        result = run_cli("resolve", pending_conflict, "remote")
        assert result.returncode == 0
        assert "is now completed" in result.stdout

    def test_resolve_unknown(self, run_cli) -> None:
        """Unknown conflicts are reported on stderr."""
        result = run_cli("resolve", "deadbeef", "merge")
        assert result.returncode == 1
        assert "Conflict not found" in result.stderr

    def test_resolve_twice(self, run_cli, pending_conflict: str) -> None:
        """A resolved conflict cannot be resolved again."""
        run_cli("resolve", pending_conflict, "local")
        result = run_cli("resolve", pending_conflict, "remote")
        assert result.returncode == 1

    def test_rules_add_and_list(self, run_cli) -> None:
        """Rules are added and listed in priority order."""
        run_cli("rules", "add", "employee", "data", "use_remote", "--priority", "1")
        run_cli(
            "rules", "add", "employee", "data", "use_local",
            "--priority", "10", "--field-pattern", "^salary$",
        )
        rules = json.loads(run_cli("--format", "json", "rules", "list").stdout)
        assert [r["priority"] for r in rules] == [10, 1]
        assert rules[0]["field_pattern"] == "^salary$"

    def test_rules_add_invalid_pattern(self, run_cli) -> None:
        """Invalid regular expressions are rejected."""
        result = run_cli("rules", "add", "employee", "data", "merge", "--field-pattern", "(")
        assert result.returncode == 1
        assert "field_pattern" in result.stderr

    def test_rules_requires_subcommand(self, run_cli) -> None:
        """rules without list/add is an error."""
        assert run_cli("rules").returncode == 1


@pytest.mark.cli
class TestSyncCommands:
    """Test sync-now and retry in-process with a fake remote."""

    @pytest.fixture
    def remote(self, monkeypatch: pytest.MonkeyPatch, test_config: Config) -> FakeRemote:
        fake = FakeRemote()
        monkeypatch.setattr(
            "offline_sync.cli.SyncEngine.from_config",
            lambda config: SyncEngine(config.database_file, fake, probe=FakeProbe()),
        )
        return fake

    def _main(self, test_config: Config, *args: str) -> int:
        return main(["-d", str(test_config.get_config_dir()), "cli", *args])

    def test_sync_now(self, test_config: Config, remote: FakeRemote, capsys) -> None:
        """sync-now replays the queue."""
        self._main(test_config, "enqueue", "create", "employee", "emp-1", "--payload", '{"n": 1}')
        capsys.readouterr()
        assert self._main(test_config, "--format", "json", "sync-now") == 0
        result = json.loads(capsys.readouterr().out)
        assert result["processed_count"] == 1
        assert remote.applied_ids == ["emp-1"]

    def test_sync_now_failure_exit_code(
        self, test_config: Config, remote: FakeRemote, capsys
    ) -> None:
        """A pass with failures exits 1 and lists the errors."""
        remote.handler = raise_error(RuntimeError("connection refused"))
        self._main(test_config, "enqueue", "create", "employee", "emp-1", "--payload", '{"n": 1}')
        assert self._main(test_config, "sync-now") == 1
        assert "connection refused" in capsys.readouterr().out

    def test_sync_now_offline(self, test_config: Config, monkeypatch, capsys) -> None:
        """An unreachable network is reported without syncing."""
        monkeypatch.setattr(
            "offline_sync.cli.SyncEngine.from_config",
            lambda config: SyncEngine(config.database_file, FakeRemote(), probe=FakeProbe(False)),
        )
        assert self._main(test_config, "sync-now") == 1
        assert "offline" in capsys.readouterr().err

    def test_sync_now_unconfigured(self, test_config: Config, capsys) -> None:
        """Without a remote URL sync-now explains what is missing."""
        assert self._main(test_config, "sync-now") == 1
        assert "remote.base_url" in capsys.readouterr().err

    def test_retry(self, test_config: Config, remote: FakeRemote, capsys) -> None:
        """retry re-queues failures and replays them."""
        remote.handler = raise_error(RuntimeError("connection refused"))
        self._main(test_config, "enqueue", "create", "employee", "emp-1", "--payload", '{"n": 1}')
        self._main(test_config, "sync-now")
        remote.handler = None
        capsys.readouterr()
        assert self._main(test_config, "--format", "json", "retry") == 0
        assert json.loads(capsys.readouterr().out)["processed_count"] == 1
