"""Data models for offline-sync.

This module defines the enums and immutable dataclasses shared by the queue,
the conflict resolver, the store and the orchestrator: QueueEntry,
ConflictResolution, AutoResolutionRule, SyncLogEntry, plus the result and
statistics records returned to callers.

All IDs are UUID7 hex strings (32 characters). All timestamps are aware UTC
datetimes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from uuid6 import uuid7

from .timestamp_utils import to_iso, utc_now


def new_id() -> str:
    """Generate a new UUID7 identifier as a hex string."""
    return uuid7().hex


class Operation(str, Enum):
    """Kinds of local mutation that can be queued."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EntryStatus(str, Enum):
    """Queue entry lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ConflictType(str, Enum):
    """Types of divergence between local and remote state."""

    TIMESTAMP = "timestamp"
    DATA = "data"
    DELETION = "deletion"


class ResolutionStrategy(str, Enum):
    """How a conflict is (or will be) resolved."""

    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    MERGE = "merge"
    MANUAL = "manual"


# Strategies that actually produce resolved data
APPLICABLE_STRATEGIES = (
    ResolutionStrategy.USE_LOCAL,
    ResolutionStrategy.USE_REMOTE,
    ResolutionStrategy.MERGE,
)


class ConflictStatus(str, Enum):
    """Conflict record lifecycle states."""

    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


class SyncType(str, Enum):
    """What started a sync pass."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"
    CONNECTIVITY_RESTORED = "connectivity-restored"


class SyncLogStatus(str, Enum):
    """Sync history record states."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class QueueEntry:
    """A single local mutation awaiting replay against the remote system.

    Attributes:
        id: Unique identifier (UUID7 hex)
        operation: create, update or delete
        entity_type: Opaque entity tag (e.g. "employee")
        entity_id: Identifier of the entity on the remote side
        payload: Mutation data, None for deletes
        attempts: Number of failed attempts so far (never decreases)
        status: Current lifecycle state
        created_at: When the mutation was recorded
        updated_at: Last state change (never decreases)
        last_attempt_at: When the last failed attempt happened
        conflict_data: Details attached on failure (error, conflict id, ...)
    """

    id: str
    operation: Operation
    entity_type: str
    entity_id: str
    payload: Optional[Dict[str, Any]]
    attempts: int
    status: EntryStatus
    created_at: datetime
    updated_at: datetime
    last_attempt_at: Optional[datetime] = None
    conflict_data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "id": self.id,
            "operation": self.operation.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "attempts": self.attempts,
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "last_attempt_at": to_iso(self.last_attempt_at),
            "conflict_data": self.conflict_data,
        }


@dataclass(frozen=True)
class ConflictResolution:
    """The record of one detected divergence.

    A record is created pending and mutated exactly once, when a resolution
    is applied. resolved_data may be None only when a deletion conflict is
    resolved in favour of the deleting side.
    """

    id: str
    queue_entry_id: str
    entity_type: str
    entity_id: str
    conflict_type: ConflictType
    local_data: Optional[Dict[str, Any]]
    remote_data: Optional[Dict[str, Any]]
    conflict_fields: List[str]
    resolution: ResolutionStrategy
    status: ConflictStatus
    created_at: datetime
    updated_at: datetime
    resolved_data: Optional[Dict[str, Any]] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.status == ConflictStatus.RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "id": self.id,
            "queue_entry_id": self.queue_entry_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "conflict_type": self.conflict_type.value,
            "local_data": self.local_data,
            "remote_data": self.remote_data,
            "conflict_fields": list(self.conflict_fields),
            "resolution": self.resolution.value,
            "resolved_data": self.resolved_data,
            "resolved_by": self.resolved_by,
            "resolved_at": to_iso(self.resolved_at),
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


@dataclass(frozen=True)
class AutoResolutionRule:
    """A priority-ordered policy mapping a conflict shape to a resolution."""

    id: str
    entity_type: str
    conflict_type: ConflictType
    resolution: ResolutionStrategy
    priority: int
    is_active: bool
    created_at: datetime
    field_pattern: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "conflict_type": self.conflict_type.value,
            "field_pattern": self.field_pattern,
            "resolution": self.resolution.value,
            "priority": self.priority,
            "is_active": self.is_active,
            "created_at": to_iso(self.created_at),
        }


@dataclass(frozen=True)
class SyncLogEntry:
    """One sync pass in the audit history."""

    id: str
    sync_type: SyncType
    status: SyncLogStatus
    records_processed: int
    records_failed: int
    errors: List[str]
    started_at: datetime
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "id": self.id,
            "sync_type": self.sync_type.value,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "errors": list(self.errors),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
        }


@dataclass(frozen=True)
class ResolutionLogEntry:
    """One applied resolution in the audit log."""

    id: str
    conflict_id: str
    resolution_type: ResolutionStrategy
    resolved_by: str
    resolved_at: datetime
    conflict_type: ConflictType
    conflict_fields: List[str]
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "id": self.id,
            "conflict_id": self.conflict_id,
            "resolution_type": self.resolution_type.value,
            "resolved_by": self.resolved_by,
            "resolved_at": to_iso(self.resolved_at),
            "conflict_type": self.conflict_type.value,
            "conflict_fields": list(self.conflict_fields),
            "details": self.details,
        }


@dataclass
class SyncResult:
    """Outcome of one sync pass.

    Attributes:
        success: True when no entry failed
        processed_count: Entries completed in this pass
        failed_count: Entries that ended the pass failed
        errors: One human-readable line per failure
        duration: Wall-clock duration of the pass in seconds
        timestamp: When the pass finished
        sync_id: History record ID, None when no pass ran
    """

    success: bool
    processed_count: int = 0
    failed_count: int = 0
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)
    sync_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "success": self.success,
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "errors": list(self.errors),
            "duration": self.duration,
            "timestamp": to_iso(self.timestamp),
            "sync_id": self.sync_id,
        }


@dataclass
class QueueStats:
    """Counts of queue entries per status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed

    def to_dict(self) -> Dict[str, int]:
        """Convert to a JSON-serializable dict."""
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
        }
