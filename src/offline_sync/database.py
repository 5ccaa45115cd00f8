"""Persistent queue store for offline-sync.

This module provides all data access for the engine using SQLite: queue
entries, conflict records, auto-resolution rules, the resolution log, sync
history and per-entity last-sync times. Every public method runs under one
re-entrant lock, so each is an atomic read-modify-write with respect to the
other threads of the process.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .models import (
    AutoResolutionRule,
    ConflictResolution,
    ConflictStatus,
    ConflictType,
    EntryStatus,
    Operation,
    QueueEntry,
    QueueStats,
    ResolutionLogEntry,
    ResolutionStrategy,
    SyncLogEntry,
    SyncLogStatus,
    SyncType,
    new_id,
)
from .retry import RetryOptions, calculate_delay
from .timestamp_utils import days_ago, from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

__all__ = ["Database", "SCHEMA_VERSION"]

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_queue (
    id TEXT PRIMARY KEY,
    operation TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    payload TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_attempt_at TEXT,
    conflict_data TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status, created_at);
CREATE INDEX IF NOT EXISTS idx_sync_queue_entity ON sync_queue(entity_type, entity_id);

CREATE TABLE IF NOT EXISTS conflict_resolutions (
    id TEXT PRIMARY KEY,
    queue_entry_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    conflict_type TEXT NOT NULL,
    local_data TEXT,
    remote_data TEXT,
    conflict_fields TEXT NOT NULL DEFAULT '[]',
    resolution TEXT NOT NULL,
    resolved_data TEXT,
    resolved_by TEXT,
    resolved_at TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_conflicts_status ON conflict_resolutions(status, created_at);
CREATE INDEX IF NOT EXISTS idx_conflicts_entry ON conflict_resolutions(queue_entry_id);

CREATE TABLE IF NOT EXISTS auto_resolution_rules (
    id TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    conflict_type TEXT NOT NULL,
    field_pattern TEXT,
    resolution TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conflict_resolution_log (
    id TEXT PRIMARY KEY,
    conflict_id TEXT NOT NULL,
    resolution_type TEXT NOT NULL,
    resolved_by TEXT NOT NULL,
    resolved_at TEXT NOT NULL,
    conflict_type TEXT NOT NULL,
    conflict_fields TEXT NOT NULL DEFAULT '[]',
    details TEXT
);

CREATE TABLE IF NOT EXISTS sync_log (
    id TEXT PRIMARY KEY,
    sync_type TEXT NOT NULL,
    status TEXT NOT NULL,
    records_processed INTEGER NOT NULL DEFAULT 0,
    records_failed INTEGER NOT NULL DEFAULT 0,
    errors TEXT NOT NULL DEFAULT '[]',
    started_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS entity_sync_state (
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    last_synced_at TEXT NOT NULL,
    PRIMARY KEY (entity_type, entity_id)
);
"""

_QUEUE_COLUMNS = (
    "id, operation, entity_type, entity_id, payload, attempts, status, "
    "created_at, updated_at, last_attempt_at, conflict_data"
)

_CONFLICT_COLUMNS = (
    "id, queue_entry_id, entity_type, entity_id, conflict_type, local_data, "
    "remote_data, conflict_fields, resolution, resolved_data, resolved_by, "
    "resolved_at, status, created_at, updated_at"
)


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _load(value: Optional[str]) -> Any:
    if value is None:
        return None
    return json.loads(value)


class Database:
    """SQLite-backed store for the sync engine.

    Args:
        db_path: Path to the SQLite database file, or ':memory:' for in-memory
    """

    def __init__(self, db_path: Union[Path, str]) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()
        logger.info(f"Opened database at {self.db_path}")

    def _init_schema(self) -> None:
        with self._lock:
            version = self._conn.execute("PRAGMA user_version").fetchone()[0]
            self._conn.executescript(_SCHEMA)
            if version < SCHEMA_VERSION:
                self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            self._conn.commit()

    @property
    def schema_version(self) -> int:
        with self._lock:
            return self._conn.execute("PRAGMA user_version").fetchone()[0]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
        logger.debug(f"Closed database at {self.db_path}")

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            cursor = self._conn.execute(sql, tuple(params))
            self._conn.commit()
            return cursor

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    # ===== Queue entries =====

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> QueueEntry:
        return QueueEntry(
            id=row["id"],
            operation=Operation(row["operation"]),
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            payload=_load(row["payload"]),
            attempts=row["attempts"],
            status=EntryStatus(row["status"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            last_attempt_at=from_iso(row["last_attempt_at"]),
            conflict_data=_load(row["conflict_data"]),
        )

    def add_entry(self, entry: QueueEntry) -> QueueEntry:
        """Insert a new queue entry."""
        self._execute(
            f"INSERT INTO sync_queue ({_QUEUE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.id,
                entry.operation.value,
                entry.entity_type,
                entry.entity_id,
                _dump(entry.payload),
                entry.attempts,
                entry.status.value,
                to_iso(entry.created_at),
                to_iso(entry.updated_at),
                to_iso(entry.last_attempt_at),
                _dump(entry.conflict_data),
            ),
        )
        logger.debug(
            f"Queued {entry.operation.value} {entry.entity_type}/{entry.entity_id} ({entry.id})"
        )
        return entry

    def get_entry_by_id(self, entry_id: str) -> Optional[QueueEntry]:
        """Get a queue entry by ID."""
        rows = self._query(f"SELECT {_QUEUE_COLUMNS} FROM sync_queue WHERE id = ?", (entry_id,))
        return self._row_to_entry(rows[0]) if rows else None

    def get_pending_entries(
        self,
        limit: Optional[int] = None,
        max_attempts: int = 5,
        due_at: Optional[datetime] = None,
        retry_options: Optional[RetryOptions] = None,
    ) -> List[QueueEntry]:
        """Get entries eligible for a sync pass, oldest first.

        Eligible means pending, or failed with attempts below max_attempts
        and not flagged as non-retryable.

        Args:
            limit: Maximum number of entries to return
            max_attempts: Attempt cap for failed entries
            due_at: If given, failed entries must also have waited out their
                backoff window (jitter off) as of this time
            retry_options: Backoff configuration used with due_at
        """
        sql = (
            f"SELECT {_QUEUE_COLUMNS} FROM sync_queue "
            "WHERE status = 'pending' OR (status = 'failed' AND attempts < ? "
            "AND COALESCE(json_extract(conflict_data, '$.retryable'), 1) != 0"
        )
        params: List[Any] = [max_attempts]
        if due_at is not None and max_attempts > 1:
            # One cutoff per attempt count: last_attempt_at + delay <= due_at
            options = replace(retry_options or RetryOptions(), jitter=False)
            cases = []
            for attempts in range(1, max_attempts):
                cutoff = due_at - timedelta(milliseconds=calculate_delay(attempts - 1, options))
                cases.append("WHEN ? THEN ?")
                params.extend([attempts, to_iso(cutoff)])
            sql += (
                " AND (last_attempt_at IS NULL OR last_attempt_at <= "
                f"CASE attempts {' '.join(cases)} ELSE ? END)"
            )
            params.append(to_iso(due_at))
        sql += ") ORDER BY created_at ASC, rowid ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_entry(row) for row in self._query(sql, params)]

    def update_entry(
        self, entry: QueueEntry, expected_status: Optional[EntryStatus] = None
    ) -> bool:
        """Persist an entry's mutable fields.

        Args:
            entry: Entry with new state
            expected_status: If given, only update when the stored status
                still equals it (compare-and-set)

        Returns:
            True if a row was updated
        """
        sql = (
            "UPDATE sync_queue SET operation = ?, payload = ?, attempts = ?, status = ?, "
            "updated_at = ?, last_attempt_at = ?, conflict_data = ? WHERE id = ?"
        )
        params: List[Any] = [
            entry.operation.value,
            _dump(entry.payload),
            entry.attempts,
            entry.status.value,
            to_iso(entry.updated_at),
            to_iso(entry.last_attempt_at),
            _dump(entry.conflict_data),
            entry.id,
        ]
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status.value)
        return self._execute(sql, params).rowcount == 1

    def remove_entry(self, entry_id: str) -> bool:
        """Delete a queue entry. Returns False if it did not exist."""
        return self._execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,)).rowcount > 0

    def get_entries_for_entity(self, entity_type: str, entity_id: str) -> List[QueueEntry]:
        """Get all entries for one entity, newest first."""
        rows = self._query(
            f"SELECT {_QUEUE_COLUMNS} FROM sync_queue "
            "WHERE entity_type = ? AND entity_id = ? ORDER BY created_at DESC, rowid DESC",
            (entity_type, entity_id),
        )
        return [self._row_to_entry(row) for row in rows]

    def get_failed_entries(self) -> List[QueueEntry]:
        """Get all failed entries, oldest first."""
        rows = self._query(
            f"SELECT {_QUEUE_COLUMNS} FROM sync_queue "
            "WHERE status = 'failed' ORDER BY created_at ASC, rowid ASC"
        )
        return [self._row_to_entry(row) for row in rows]

    def get_retryable_entries(self, max_attempts: int = 5) -> List[QueueEntry]:
        """Get failed entries that may be retried, oldest first."""
        rows = self._query(
            f"SELECT {_QUEUE_COLUMNS} FROM sync_queue "
            "WHERE status = 'failed' AND attempts < ? "
            "AND COALESCE(json_extract(conflict_data, '$.retryable'), 1) != 0 "
            "ORDER BY created_at ASC, rowid ASC",
            (max_attempts,),
        )
        return [self._row_to_entry(row) for row in rows]

    def clear_completed_entries(self, older_than_days: float = 7) -> int:
        """Delete completed entries last updated before the cutoff.

        Returns:
            Number of entries removed
        """
        cutoff = to_iso(days_ago(older_than_days))
        count = self._execute(
            "DELETE FROM sync_queue WHERE status = 'completed' AND updated_at < ?",
            (cutoff,),
        ).rowcount
        if count:
            logger.info(f"Removed {count} completed entries older than {older_than_days} days")
        return count

    def get_queue_stats(self) -> QueueStats:
        """Count entries per status."""
        rows = self._query("SELECT status, COUNT(*) AS count FROM sync_queue GROUP BY status")
        stats = QueueStats()
        for row in rows:
            if hasattr(stats, row["status"]):
                setattr(stats, row["status"], row["count"])
        return stats

    # ===== Conflict records =====

    @staticmethod
    def _row_to_conflict(row: sqlite3.Row) -> ConflictResolution:
        return ConflictResolution(
            id=row["id"],
            queue_entry_id=row["queue_entry_id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            conflict_type=ConflictType(row["conflict_type"]),
            local_data=_load(row["local_data"]),
            remote_data=_load(row["remote_data"]),
            conflict_fields=_load(row["conflict_fields"]) or [],
            resolution=ResolutionStrategy(row["resolution"]),
            resolved_data=_load(row["resolved_data"]),
            resolved_by=row["resolved_by"],
            resolved_at=from_iso(row["resolved_at"]),
            status=ConflictStatus(row["status"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )

    def add_conflict(self, conflict: ConflictResolution) -> ConflictResolution:
        """Insert a new conflict record."""
        self._execute(
            f"INSERT INTO conflict_resolutions ({_CONFLICT_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                conflict.id,
                conflict.queue_entry_id,
                conflict.entity_type,
                conflict.entity_id,
                conflict.conflict_type.value,
                _dump(conflict.local_data),
                _dump(conflict.remote_data),
                json.dumps(list(conflict.conflict_fields)),
                conflict.resolution.value,
                _dump(conflict.resolved_data),
                conflict.resolved_by,
                to_iso(conflict.resolved_at),
                conflict.status.value,
                to_iso(conflict.created_at),
                to_iso(conflict.updated_at),
            ),
        )
        return conflict

    def update_conflict(
        self, conflict: ConflictResolution, expected_status: Optional[ConflictStatus] = None
    ) -> bool:
        """Persist a conflict's resolution fields.

        Args:
            conflict: Conflict with new state
            expected_status: If given, only update when the stored status
                still equals it

        Returns:
            True if a row was updated
        """
        sql = (
            "UPDATE conflict_resolutions SET resolution = ?, resolved_data = ?, "
            "resolved_by = ?, resolved_at = ?, status = ?, updated_at = ? WHERE id = ?"
        )
        params: List[Any] = [
            conflict.resolution.value,
            json.dumps(conflict.resolved_data, default=str),
            conflict.resolved_by,
            to_iso(conflict.resolved_at),
            conflict.status.value,
            to_iso(conflict.updated_at),
            conflict.id,
        ]
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status.value)
        return self._execute(sql, params).rowcount == 1

    def get_conflict(self, conflict_id: str) -> Optional[ConflictResolution]:
        """Get a conflict record by ID."""
        rows = self._query(
            f"SELECT {_CONFLICT_COLUMNS} FROM conflict_resolutions WHERE id = ?",
            (conflict_id,),
        )
        return self._row_to_conflict(rows[0]) if rows else None

    def get_pending_conflicts(self) -> List[ConflictResolution]:
        """Get unresolved conflicts, oldest first."""
        rows = self._query(
            f"SELECT {_CONFLICT_COLUMNS} FROM conflict_resolutions "
            "WHERE status = 'pending' ORDER BY created_at ASC, rowid ASC"
        )
        return [self._row_to_conflict(row) for row in rows]

    def get_conflicts_for_entry(self, queue_entry_id: str) -> List[ConflictResolution]:
        """Get every conflict recorded for a queue entry, oldest first."""
        rows = self._query(
            f"SELECT {_CONFLICT_COLUMNS} FROM conflict_resolutions "
            "WHERE queue_entry_id = ? ORDER BY created_at ASC, rowid ASC",
            (queue_entry_id,),
        )
        return [self._row_to_conflict(row) for row in rows]

    # ===== Auto-resolution rules =====

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> AutoResolutionRule:
        return AutoResolutionRule(
            id=row["id"],
            entity_type=row["entity_type"],
            conflict_type=ConflictType(row["conflict_type"]),
            field_pattern=row["field_pattern"],
            resolution=ResolutionStrategy(row["resolution"]),
            priority=row["priority"],
            is_active=bool(row["is_active"]),
            created_at=from_iso(row["created_at"]),
        )

    def add_rule(self, rule: AutoResolutionRule) -> AutoResolutionRule:
        """Insert a new auto-resolution rule."""
        self._execute(
            "INSERT INTO auto_resolution_rules "
            "(id, entity_type, conflict_type, field_pattern, resolution, priority, "
            "is_active, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                rule.id,
                rule.entity_type,
                rule.conflict_type.value,
                rule.field_pattern,
                rule.resolution.value,
                rule.priority,
                1 if rule.is_active else 0,
                to_iso(rule.created_at),
            ),
        )
        return rule

    def get_rules(self, active_only: bool = False) -> List[AutoResolutionRule]:
        """Get rules in selection order (highest priority first)."""
        sql = "SELECT * FROM auto_resolution_rules"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY priority DESC, created_at ASC, rowid ASC"
        return [self._row_to_rule(row) for row in self._query(sql)]

    def get_rules_for(
        self, entity_type: str, conflict_type: ConflictType
    ) -> List[AutoResolutionRule]:
        """Get active rules for an entity type and conflict type, in selection order."""
        rows = self._query(
            "SELECT * FROM auto_resolution_rules "
            "WHERE is_active = 1 AND entity_type = ? AND conflict_type = ? "
            "ORDER BY priority DESC, created_at ASC, rowid ASC",
            (entity_type, conflict_type.value),
        )
        return [self._row_to_rule(row) for row in rows]

    def get_rule(self, rule_id: str) -> Optional[AutoResolutionRule]:
        rows = self._query("SELECT * FROM auto_resolution_rules WHERE id = ?", (rule_id,))
        return self._row_to_rule(rows[0]) if rows else None

    def set_rule_active(self, rule_id: str, active: bool) -> bool:
        """Enable or disable a rule. Returns False if the rule does not exist."""
        return (
            self._execute(
                "UPDATE auto_resolution_rules SET is_active = ? WHERE id = ?",
                (1 if active else 0, rule_id),
            ).rowcount
            == 1
        )

    # ===== Resolution log =====

    def add_resolution_log(self, entry: ResolutionLogEntry) -> ResolutionLogEntry:
        """Append to the resolution audit log."""
        self._execute(
            "INSERT INTO conflict_resolution_log "
            "(id, conflict_id, resolution_type, resolved_by, resolved_at, conflict_type, "
            "conflict_fields, details) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.id,
                entry.conflict_id,
                entry.resolution_type.value,
                entry.resolved_by,
                to_iso(entry.resolved_at),
                entry.conflict_type.value,
                json.dumps(list(entry.conflict_fields)),
                _dump(entry.details),
            ),
        )
        return entry

    def get_resolution_history(self, limit: int = 50) -> List[ResolutionLogEntry]:
        """Get the most recent resolutions, newest first."""
        rows = self._query(
            "SELECT * FROM conflict_resolution_log "
            "ORDER BY resolved_at DESC, rowid DESC LIMIT ?",
            (limit,),
        )
        return [
            ResolutionLogEntry(
                id=row["id"],
                conflict_id=row["conflict_id"],
                resolution_type=ResolutionStrategy(row["resolution_type"]),
                resolved_by=row["resolved_by"],
                resolved_at=from_iso(row["resolved_at"]),
                conflict_type=ConflictType(row["conflict_type"]),
                conflict_fields=_load(row["conflict_fields"]) or [],
                details=_load(row["details"]) or {},
            )
            for row in rows
        ]

    # ===== Sync history =====

    @staticmethod
    def _row_to_sync_log(row: sqlite3.Row) -> SyncLogEntry:
        return SyncLogEntry(
            id=row["id"],
            sync_type=SyncType(row["sync_type"]),
            status=SyncLogStatus(row["status"]),
            records_processed=row["records_processed"],
            records_failed=row["records_failed"],
            errors=_load(row["errors"]) or [],
            started_at=from_iso(row["started_at"]),
            completed_at=from_iso(row["completed_at"]),
        )

    def log_sync_start(self, sync_type: SyncType, started_at: Optional[datetime] = None) -> str:
        """Record the start of a sync pass.

        Returns:
            The new history record ID
        """
        sync_id = new_id()
        self._execute(
            "INSERT INTO sync_log (id, sync_type, status, started_at) VALUES (?, ?, ?, ?)",
            (sync_id, sync_type.value, SyncLogStatus.STARTED.value, to_iso(started_at or utc_now())),
        )
        return sync_id

    def _finish_sync(
        self,
        sync_id: str,
        status: SyncLogStatus,
        records_processed: int,
        records_failed: int,
        errors: List[str],
    ) -> None:
        self._execute(
            "UPDATE sync_log SET status = ?, records_processed = ?, records_failed = ?, "
            "errors = ?, completed_at = ? WHERE id = ?",
            (
                status.value,
                records_processed,
                records_failed,
                json.dumps(list(errors)),
                to_iso(utc_now()),
                sync_id,
            ),
        )

    def log_sync_complete(
        self,
        sync_id: str,
        records_processed: int,
        records_failed: int = 0,
        errors: Optional[List[str]] = None,
    ) -> None:
        """Mark a sync pass as completed."""
        self._finish_sync(
            sync_id, SyncLogStatus.COMPLETED, records_processed, records_failed, errors or []
        )

    def log_sync_failed(
        self,
        sync_id: str,
        errors: List[str],
        records_processed: int = 0,
        records_failed: int = 0,
    ) -> None:
        """Mark a sync pass as failed."""
        self._finish_sync(
            sync_id, SyncLogStatus.FAILED, records_processed, records_failed, errors
        )

    def get_sync_log(self, sync_id: str) -> Optional[SyncLogEntry]:
        rows = self._query("SELECT * FROM sync_log WHERE id = ?", (sync_id,))
        return self._row_to_sync_log(rows[0]) if rows else None

    def get_sync_history(self, limit: int = 50) -> List[SyncLogEntry]:
        """Get the most recent sync passes, newest first."""
        rows = self._query(
            "SELECT * FROM sync_log ORDER BY started_at DESC, rowid DESC LIMIT ?", (limit,)
        )
        return [self._row_to_sync_log(row) for row in rows]

    # ===== Entity sync state =====

    def get_last_synced_at(self, entity_type: str, entity_id: str) -> Optional[datetime]:
        """Get when an entity was last successfully synced."""
        rows = self._query(
            "SELECT last_synced_at FROM entity_sync_state WHERE entity_type = ? AND entity_id = ?",
            (entity_type, entity_id),
        )
        return from_iso(rows[0]["last_synced_at"]) if rows else None

    def set_last_synced_at(
        self, entity_type: str, entity_id: str, when: Optional[datetime] = None
    ) -> None:
        """Record a successful sync of an entity."""
        self._execute(
            "INSERT INTO entity_sync_state (entity_type, entity_id, last_synced_at) "
            "VALUES (?, ?, ?) ON CONFLICT(entity_type, entity_id) "
            "DO UPDATE SET last_synced_at = excluded.last_synced_at",
            (entity_type, entity_id, to_iso(when or utc_now())),
        )
