"""Queue entry state machine.

States: pending -> processing -> completed | failed, and failed -> pending
on re-queue. All functions are pure: they return new QueueEntry objects and
never mutate their input.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .errors import InvalidTransitionError
from .models import EntryStatus, Operation, QueueEntry, new_id
from .retry import RetryOptions, calculate_delay
from .timestamp_utils import utc_now
from .validation import (
    MAX_ENTITY_ID_LENGTH,
    MAX_ENTITY_TYPE_LENGTH,
    ValidationError,
    validate_enum,
    validate_payload,
    validate_required_string,
)

__all__ = [
    "MAX_RETRY_ATTEMPTS",
    "create_entry",
    "mark_processing",
    "mark_completed",
    "mark_failed",
    "requeue",
    "should_retry",
    "is_due_for_retry",
]

MAX_RETRY_ATTEMPTS = 5


def _advance(entry: QueueEntry, now: Optional[datetime]) -> datetime:
    now = now or utc_now()
    return max(now, entry.updated_at)


def _check(entry: QueueEntry, target: EntryStatus, *allowed: EntryStatus) -> None:
    if entry.status not in allowed:
        raise InvalidTransitionError("queue entry", entry.status.value, target.value)


def create_entry(
    operation: Any,
    entity_type: Any,
    entity_id: Any,
    payload: Optional[Dict[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> QueueEntry:
    """Create a new pending queue entry.

    Args:
        operation: Operation or its string value
        entity_type: Non-empty entity tag
        entity_id: Non-empty entity identifier
        payload: Mutation data; required unless operation is delete
        now: Creation time (defaults to current UTC time)

    Returns:
        New QueueEntry with status pending and zero attempts

    Raises:
        ValidationError: If any argument is missing or malformed
    """
    op = validate_enum(operation, Operation, "operation")
    entity_type = validate_required_string(
        entity_type, "entity_type", MAX_ENTITY_TYPE_LENGTH
    )
    if isinstance(entity_id, int) and not isinstance(entity_id, bool):
        entity_id = str(entity_id)
    entity_id = validate_required_string(entity_id, "entity_id", MAX_ENTITY_ID_LENGTH)

    if op == Operation.DELETE:
        payload = None
    else:
        validate_payload(payload)
        payload = dict(payload)

    now = now or utc_now()
    return QueueEntry(
        id=new_id(),
        operation=op,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload,
        attempts=0,
        status=EntryStatus.PENDING,
        created_at=now,
        updated_at=now,
    )


def mark_processing(entry: QueueEntry, now: Optional[datetime] = None) -> QueueEntry:
    """Move a pending or failed entry to processing."""
    _check(entry, EntryStatus.PROCESSING, EntryStatus.PENDING, EntryStatus.FAILED)
    return replace(entry, status=EntryStatus.PROCESSING, updated_at=_advance(entry, now))


def mark_completed(entry: QueueEntry, now: Optional[datetime] = None) -> QueueEntry:
    """Move a processing entry to completed."""
    _check(entry, EntryStatus.COMPLETED, EntryStatus.PROCESSING)
    return replace(entry, status=EntryStatus.COMPLETED, updated_at=_advance(entry, now))


def mark_failed(
    entry: QueueEntry,
    conflict_data: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> QueueEntry:
    """Move a processing entry to failed and count the attempt.

    Args:
        entry: Entry currently in processing
        conflict_data: Failure details; replaces any previous details
        now: Time of the attempt

    Returns:
        Failed entry with attempts incremented by one
    """
    _check(entry, EntryStatus.FAILED, EntryStatus.PROCESSING)
    updated_at = _advance(entry, now)
    return replace(
        entry,
        status=EntryStatus.FAILED,
        attempts=entry.attempts + 1,
        last_attempt_at=updated_at,
        updated_at=updated_at,
        conflict_data=dict(conflict_data) if conflict_data is not None else entry.conflict_data,
    )


def requeue(
    entry: QueueEntry,
    payload: Optional[Dict[str, Any]] = None,
    conflict_data: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> QueueEntry:
    """Move a failed entry back to pending.

    Args:
        entry: Entry currently failed
        payload: Replacement payload (e.g. resolved conflict data)
        conflict_data: Replacement details; None keeps the current ones
        now: Time of the transition
    """
    _check(entry, EntryStatus.PENDING, EntryStatus.FAILED)
    changes: Dict[str, Any] = {
        "status": EntryStatus.PENDING,
        "updated_at": _advance(entry, now),
    }
    if payload is not None:
        if entry.operation == Operation.DELETE:
            raise ValidationError("payload", "delete entries cannot carry a payload")
        changes["payload"] = dict(payload)
    if conflict_data is not None:
        changes["conflict_data"] = dict(conflict_data)
    return replace(entry, **changes)


def is_permanently_failed(entry: QueueEntry) -> bool:
    """Check whether an entry was flagged as not worth retrying."""
    return bool(entry.conflict_data) and entry.conflict_data.get("retryable") is False


def should_retry(entry: QueueEntry, max_attempts: int = MAX_RETRY_ATTEMPTS) -> bool:
    """Check whether a failed entry may be attempted again."""
    return (
        entry.status == EntryStatus.FAILED
        and entry.attempts < max_attempts
        and not is_permanently_failed(entry)
    )


def is_due_for_retry(
    entry: QueueEntry,
    now: Optional[datetime] = None,
    retry_options: Optional[RetryOptions] = None,
    max_attempts: int = MAX_RETRY_ATTEMPTS,
) -> bool:
    """Check whether an entry should be picked up by a sync pass now.

    Pending entries are always due. Failed entries are due once
    should_retry holds and the backoff window since the last attempt
    (jitter off) has elapsed.
    """
    if entry.status == EntryStatus.PENDING:
        return True
    if not should_retry(entry, max_attempts):
        return False
    if entry.last_attempt_at is None:
        return True
    options = replace(retry_options or RetryOptions(), jitter=False)
    delay_ms = calculate_delay(max(entry.attempts - 1, 0), options)
    now = now or utc_now()
    return now - entry.last_attempt_at >= timedelta(milliseconds=delay_ms)
