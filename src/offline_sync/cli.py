"""Command-line interface for offline-sync.

Commands:
    enqueue <op> <type> <id>    Queue a local mutation
    status                      Show engine status
    stats                       Show queue counts per status
    failed                      List failed entries
    sync-now                    Run one sync pass against the remote
    retry                       Re-queue retryable failed entries and sync
    history                     Show recent sync passes
    conflicts                   List pending conflicts
    resolve <id> <choice>       Resolve a pending conflict
    rules list|add              Manage auto-resolution rules
    clear-completed             Remove old completed entries
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import Config
from .conflicts import ConflictResolver
from .connectivity import ConnectivityMonitor
from .database import Database
from .engine import SyncEngine
from .errors import SyncError
from .models import ConflictResolution, QueueEntry, SyncResult
from .queue import create_entry
from .sync_service import settle_resolved_entry
from .timestamp_utils import format_timestamp
from .validation import ValidationError

# Short choices accepted by "resolve", as well as the full strategy names
CHOICE_MAP = {
    "local": "use_local",
    "remote": "use_remote",
    "merge": "merge",
    "use_local": "use_local",
    "use_remote": "use_remote",
}


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def format_entry(entry: QueueEntry) -> str:
    """Format a queue entry as one line of text."""
    line = (
        f"[{entry.id[:8]}] {entry.operation.value:<6} {entry.entity_type}/{entry.entity_id} "
        f"- {entry.status.value}, {entry.attempts} attempt(s), "
        f"created {format_timestamp(entry.created_at)}"
    )
    if entry.conflict_data and entry.conflict_data.get("error"):
        line += f"\n    {entry.conflict_data['error']}"
    return line


def format_conflict(conflict: ConflictResolution) -> str:
    """Format a conflict as one line of text."""
    fields = ", ".join(conflict.conflict_fields) or "-"
    return (
        f"[{conflict.id[:8]}] {conflict.conflict_type.value} conflict on "
        f"{conflict.entity_type}/{conflict.entity_id} (fields: {fields})"
    )


def format_result(result: SyncResult) -> str:
    """Format a sync result for display."""
    lines = [
        f"Sync {'succeeded' if result.success else 'finished with failures'}",
        f"Processed: {result.processed_count}",
        f"Failed: {result.failed_count}",
        f"Duration: {result.duration:.2f}s",
    ]
    for error in result.errors:
        lines.append(f"  - {error}")
    return "\n".join(lines)


def _parse_payload(text: Optional[str]) -> Optional[Dict[str, Any]]:
    if text is None:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError("payload", f"invalid JSON: {e}") from None
    if not isinstance(payload, dict):
        raise ValidationError("payload", "must be a JSON object")
    return payload


def cmd_enqueue(db: Database, args: argparse.Namespace) -> int:
    """Queue a local mutation.

    Args:
        db: Database instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    entry = create_entry(
        args.operation, args.entity_type, args.entity_id, _parse_payload(args.payload)
    )
    db.add_entry(entry)

    if args.format == "json":
        _print_json(entry.to_dict())
    else:
        print(f"Queued {entry.operation.value} {entry.entity_type}/{entry.entity_id} ({entry.id})")
    return 0


def cmd_status(db: Database, config: Config, args: argparse.Namespace) -> int:
    """Show queue, conflict and (optionally) connectivity status.

    Args:
        db: Database instance
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    stats = db.get_queue_stats()
    pending_conflicts = db.get_pending_conflicts()
    history = db.get_sync_history(1)
    remote = config.get_remote_config()

    online: Optional[bool] = None
    if args.check:
        monitor = ConnectivityMonitor(config.get_connectivity_options())
        online = monitor.check_connectivity()

    if args.format == "json":
        _print_json({
            "queue": stats.to_dict(),
            "pending_conflicts": len(pending_conflicts),
            "last_sync": history[0].to_dict() if history else None,
            "remote": remote["base_url"],
            "online": online,
            "database": str(config.database_file),
        })
        return 0

    print(f"Database: {config.database_file}")
    print(f"Remote: {remote['base_url'] or '(not configured)'}")
    if online is not None:
        print(f"Online: {'yes' if online else 'no'}")
    print(
        f"Queue: {stats.pending} pending, {stats.processing} processing, "
        f"{stats.completed} completed, {stats.failed} failed"
    )
    print(f"Pending Conflicts: {len(pending_conflicts)}")
    if history:
        last = history[0]
        print(
            f"Last Sync: {format_timestamp(last.started_at)} ({last.sync_type.value}, "
            f"{last.status.value}, {last.records_processed} processed)"
        )
    else:
        print("Last Sync: never")
    return 0


def cmd_stats(db: Database, args: argparse.Namespace) -> int:
    """Show queue entry counts per status."""
    stats = db.get_queue_stats()
    if args.format == "json":
        _print_json(stats.to_dict())
    else:
        for name, count in stats.to_dict().items():
            print(f"{name.capitalize()}: {count}")
    return 0


def cmd_failed(db: Database, args: argparse.Namespace) -> int:
    """List failed entries."""
    entries = db.get_failed_entries()
    if args.format == "json":
        _print_json([entry.to_dict() for entry in entries])
        return 0

    if not entries:
        print("No failed entries.")
        return 0
    print(f"Failed Entries ({len(entries)}):\n")
    for entry in entries:
        print(f"  {format_entry(entry)}")
    return 0


def _run_pass(engine: SyncEngine, args: argparse.Namespace, retry: bool) -> int:
    if not engine.connectivity.check_connectivity():
        print("Error: Cannot sync while offline", file=sys.stderr)
        return 1

    if retry:
        result = engine.orchestrator.retry_failed_entries()
    else:
        result = engine.orchestrator.trigger_sync("manual")

    if args.format == "json":
        _print_json(result.to_dict())
    else:
        print(format_result(result))
    return 0 if result.success else 1


def cmd_sync_now(config: Config, args: argparse.Namespace) -> int:
    """Run one manual sync pass against the configured remote.

    Args:
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 if every entry synced, 1 otherwise)
    """
    with SyncEngine.from_config(config) as engine:
        return _run_pass(engine, args, retry=False)


def cmd_retry(config: Config, args: argparse.Namespace) -> int:
    """Re-queue retryable failed entries and run a manual pass."""
    with SyncEngine.from_config(config) as engine:
        return _run_pass(engine, args, retry=True)


def cmd_history(db: Database, args: argparse.Namespace) -> int:
    """Show recent sync passes, newest first."""
    history = db.get_sync_history(args.limit)
    if args.format == "json":
        _print_json([item.to_dict() for item in history])
        return 0

    if not history:
        print("No sync history.")
        return 0
    for item in history:
        print(
            f"{format_timestamp(item.started_at)}  {item.sync_type.value:<21} "
            f"{item.status.value:<9} {item.records_processed} processed, "
            f"{item.records_failed} failed"
        )
        for error in item.errors:
            print(f"    {error}")
    return 0


def cmd_conflicts(db: Database, args: argparse.Namespace) -> int:
    """List pending conflicts."""
    conflicts = db.get_pending_conflicts()
    if args.format == "json":
        _print_json([c.to_dict() for c in conflicts])
        return 0

    if not conflicts:
        print("No pending conflicts.")
        return 0
    print(f"Pending Conflicts ({len(conflicts)}):\n")
    for conflict in conflicts:
        print(f"  {format_conflict(conflict)}")
    return 0


def _find_conflict_id(db: Database, conflict_id: str) -> str:
    if len(conflict_id) == 32:
        return conflict_id
    matches = [c.id for c in db.get_pending_conflicts() if c.id.startswith(conflict_id)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        return conflict_id
    raise ValidationError("conflict_id", f"prefix '{conflict_id}' is ambiguous")


def cmd_resolve(db: Database, config: Config, args: argparse.Namespace) -> int:
    """Resolve a pending conflict and re-queue its entry.

    Args:
        db: Database instance
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    resolver = ConflictResolver(db, config.get_conflict_options())
    conflict_id = _find_conflict_id(db, args.conflict_id)
    resolved = resolver.apply_resolution(
        conflict_id, CHOICE_MAP[args.choice], resolved_by=args.resolved_by
    )
    entry = settle_resolved_entry(db, resolved)

    if args.format == "json":
        _print_json({
            "conflict": resolved.to_dict(),
            "entry": entry.to_dict() if entry else None,
        })
    else:
        print(f"Resolved {resolved.conflict_type.value} conflict with {resolved.resolution.value}")
        if entry is not None:
            print(f"Entry {entry.id[:8]} is now {entry.status.value}")
    return 0


def cmd_rules_list(db: Database, args: argparse.Namespace) -> int:
    """List auto-resolution rules in selection order."""
    rules = db.get_rules(active_only=args.active_only)
    if args.format == "json":
        _print_json([rule.to_dict() for rule in rules])
        return 0

    if not rules:
        print("No auto-resolution rules.")
        return 0
    for rule in rules:
        pattern = f" fields~/{rule.field_pattern}/" if rule.field_pattern else ""
        state = "" if rule.is_active else " (inactive)"
        print(
            f"[{rule.id[:8]}] {rule.priority:>4}  {rule.entity_type}/{rule.conflict_type.value}"
            f"{pattern} -> {rule.resolution.value}{state}"
        )
    return 0


def cmd_rules_add(db: Database, config: Config, args: argparse.Namespace) -> int:
    """Create an auto-resolution rule."""
    resolver = ConflictResolver(db, config.get_conflict_options())
    rule = resolver.create_rule(
        entity_type=args.entity_type,
        conflict_type=args.conflict_type,
        resolution=args.resolution,
        priority=args.priority,
        field_pattern=args.field_pattern,
    )
    if args.format == "json":
        _print_json(rule.to_dict())
    else:
        print(f"Created rule {rule.id}")
    return 0


def cmd_clear_completed(db: Database, args: argparse.Namespace) -> int:
    """Remove completed entries older than --days."""
    if args.days < 0:
        raise ValidationError("days", "must not be negative")
    removed = db.clear_completed_entries(args.days)
    if args.format == "json":
        _print_json({"removed": removed})
    else:
        print(f"Removed {removed} completed entries")
    return 0


def add_cli_subparser(subparsers: argparse._SubParsersAction) -> None:
    """Add CLI subparser and its nested subcommands.

    Args:
        subparsers: Parent subparsers object to add CLI parser to
    """
    cli_parser = subparsers.add_parser(
        "cli",
        help="Command-line interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    cli_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )

    cli_subparsers = cli_parser.add_subparsers(dest="cli_command", help="CLI commands")

    # enqueue
    enqueue_parser = cli_subparsers.add_parser("enqueue", help="Queue a local mutation")
    enqueue_parser.add_argument(
        "operation", choices=["create", "update", "delete"], help="Mutation type"
    )
    enqueue_parser.add_argument("entity_type", type=str, help="Entity tag (e.g. employee)")
    enqueue_parser.add_argument("entity_id", type=str, help="Entity identifier")
    enqueue_parser.add_argument(
        "--payload",
        type=str,
        default=None,
        help="Mutation data as a JSON object (required unless deleting)"
    )

    # status
    status_parser = cli_subparsers.add_parser("status", help="Show engine status")
    status_parser.add_argument(
        "--check",
        action="store_true",
        help="Probe connectivity endpoints as part of the status"
    )

    cli_subparsers.add_parser("stats", help="Show queue counts per status")
    cli_subparsers.add_parser("failed", help="List failed entries")
    cli_subparsers.add_parser("sync-now", help="Run one sync pass against the remote")
    cli_subparsers.add_parser("retry", help="Re-queue retryable failed entries and sync")

    # history
    history_parser = cli_subparsers.add_parser("history", help="Show recent sync passes")
    history_parser.add_argument(
        "--limit", type=int, default=20, help="Number of passes to show (default: 20)"
    )

    cli_subparsers.add_parser("conflicts", help="List pending conflicts")

    # resolve
    resolve_parser = cli_subparsers.add_parser("resolve", help="Resolve a pending conflict")
    resolve_parser.add_argument(
        "conflict_id",
        type=str,
        help="Conflict ID (or unique prefix) to resolve"
    )
    resolve_parser.add_argument(
        "choice",
        type=str,
        choices=sorted(CHOICE_MAP),
        help="Resolution: local, remote or merge"
    )
    resolve_parser.add_argument(
        "--by",
        dest="resolved_by",
        type=str,
        default=None,
        help="Who resolved the conflict (default: system)"
    )

    # rules
    rules_parser = cli_subparsers.add_parser("rules", help="Manage auto-resolution rules")
    rules_subparsers = rules_parser.add_subparsers(dest="rules_command", help="Rules commands")

    rules_list_parser = rules_subparsers.add_parser("list", help="List rules")
    rules_list_parser.add_argument(
        "--active-only", action="store_true", help="Only show active rules"
    )

    rules_add_parser = rules_subparsers.add_parser("add", help="Add a rule")
    rules_add_parser.add_argument("entity_type", type=str, help="Entity tag the rule applies to")
    rules_add_parser.add_argument(
        "conflict_type", choices=["timestamp", "data", "deletion"], help="Conflict type"
    )
    rules_add_parser.add_argument(
        "resolution", choices=["use_local", "use_remote", "merge"], help="Resolution to apply"
    )
    rules_add_parser.add_argument(
        "--priority", type=int, default=0, help="Higher wins (default: 0)"
    )
    rules_add_parser.add_argument(
        "--field-pattern",
        type=str,
        default=None,
        help="Regular expression; at least one conflicting field must match"
    )

    # clear-completed
    clear_parser = cli_subparsers.add_parser(
        "clear-completed", help="Remove old completed entries"
    )
    clear_parser.add_argument(
        "--days", type=float, default=7, help="Minimum age in days (default: 7)"
    )


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run CLI with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have cli_command attribute)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not getattr(args, "cli_command", None):
        print("Error: No CLI command specified. Use --help for available commands.", file=sys.stderr)
        return 1

    try:
        config = Config(config_dir=config_dir)
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1

    # Commands that talk to the remote build a full engine
    try:
        if args.cli_command == "sync-now":
            return cmd_sync_now(config, args)
        if args.cli_command == "retry":
            return cmd_retry(config, args)
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1
    except SyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    db = Database(config.database_file)
    try:
        if args.cli_command == "enqueue":
            return cmd_enqueue(db, args)
        elif args.cli_command == "status":
            return cmd_status(db, config, args)
        elif args.cli_command == "stats":
            return cmd_stats(db, args)
        elif args.cli_command == "failed":
            return cmd_failed(db, args)
        elif args.cli_command == "history":
            return cmd_history(db, args)
        elif args.cli_command == "conflicts":
            return cmd_conflicts(db, args)
        elif args.cli_command == "resolve":
            return cmd_resolve(db, config, args)
        elif args.cli_command == "rules":
            rules_cmd = getattr(args, "rules_command", None)
            if not rules_cmd:
                print("Error: No rules command specified. Use 'rules --help'.", file=sys.stderr)
                return 1
            if rules_cmd == "list":
                return cmd_rules_list(db, args)
            return cmd_rules_add(db, config, args)
        elif args.cli_command == "clear-completed":
            return cmd_clear_completed(db, args)
        else:
            print(f"Error: Unknown command '{args.cli_command}'", file=sys.stderr)
            return 1
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1
    except SyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()
