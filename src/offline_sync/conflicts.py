"""Conflict detection and resolution for offline-sync.

This module handles:
- Detecting divergence between a queued local mutation and remote state
- Selecting an auto-resolution rule (or the default policy)
- Applying a resolution and recording it in the audit log

Conflict Types:
- deletion: one side deleted the entity, the other still holds data
- timestamp: both sides changed since the last sync, too far apart in time
- data: field values differ
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from .database import Database
from .errors import ConflictNotFoundError, InvalidTransitionError
from .events import EventBus, EventType
from .merge import merge_fields
from .models import (
    APPLICABLE_STRATEGIES,
    AutoResolutionRule,
    ConflictResolution,
    ConflictStatus,
    ConflictType,
    QueueEntry,
    ResolutionLogEntry,
    ResolutionStrategy,
    new_id,
)
from .timestamp_utils import get_updated_at, milliseconds_between, utc_now
from .validation import (
    MAX_ENTITY_TYPE_LENGTH,
    ValidationError,
    validate_enum,
    validate_field_pattern,
    validate_non_negative_number,
    validate_required_string,
)

logger = logging.getLogger(__name__)

__all__ = [
    "AUDIT_FIELDS",
    "ConflictOptions",
    "ConflictDetection",
    "ConflictResolver",
    "detect_conflict",
    "compare_fields",
]

# Identity and audit fields never count as conflicting
AUDIT_FIELDS = frozenset(
    {
        "id",
        "createdAt",
        "updatedAt",
        "lastSyncAt",
        "created_at",
        "updated_at",
        "last_sync_at",
    }
)

SYSTEM_ACTOR = "system"


@dataclass
class ConflictOptions:
    """Resolver configuration."""

    auto_resolve_enabled: bool = True
    default_resolution: ResolutionStrategy = ResolutionStrategy.USE_LOCAL
    timestamp_tolerance_ms: float = 1000


@dataclass
class ConflictDetection:
    """Outcome of comparing local and remote versions of a record."""

    has_conflict: bool
    conflict_type: Optional[ConflictType] = None
    local_data: Optional[Dict[str, Any]] = None
    remote_data: Optional[Dict[str, Any]] = None
    conflict_fields: List[str] = field(default_factory=list)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _is_absent(data: Optional[Dict[str, Any]]) -> bool:
    return data is None or len(data) == 0


def compare_fields(local: Dict[str, Any], remote: Dict[str, Any]) -> List[str]:
    """List the non-audit fields whose serialized values differ.

    A field present on one side only counts as differing.
    """
    names = (set(local) | set(remote)) - AUDIT_FIELDS
    missing = object()
    differing = []
    for name in names:
        a = local.get(name, missing)
        b = remote.get(name, missing)
        if a is missing or b is missing:
            if a is not b:
                differing.append(name)
        elif _canonical(a) != _canonical(b):
            differing.append(name)
    return sorted(differing)


def detect_conflict(
    local: Optional[Dict[str, Any]],
    remote: Optional[Dict[str, Any]],
    last_sync_at: Optional[datetime] = None,
    tolerance_ms: float = 1000,
) -> ConflictDetection:
    """Decide whether local and remote versions of a record conflict.

    Rules are evaluated in order and the first match wins:
    1. Both absent: no conflict.
    2. Exactly one absent: deletion conflict.
    3. Both timestamps after last_sync_at and further apart than
       tolerance_ms: timestamp conflict.
    4. Any non-audit field differs: data conflict.

    Args:
        local: Local record (None or empty means deleted)
        remote: Remote record (None or empty means deleted)
        last_sync_at: Last successful sync of this entity, if known
        tolerance_ms: Allowed clock difference between the two sides

    Returns:
        ConflictDetection describing the outcome
    """
    local_absent = _is_absent(local)
    remote_absent = _is_absent(remote)

    if local_absent and remote_absent:
        return ConflictDetection(has_conflict=False, local_data=local, remote_data=remote)

    if local_absent or remote_absent:
        present = remote if local_absent else local
        return ConflictDetection(
            has_conflict=True,
            conflict_type=ConflictType.DELETION,
            local_data=None if local_absent else local,
            remote_data=None if remote_absent else remote,
            conflict_fields=sorted(set(present) - AUDIT_FIELDS),
        )

    differing = compare_fields(local, remote)

    local_ts = get_updated_at(local)
    remote_ts = get_updated_at(remote)
    if local_ts is not None and remote_ts is not None and last_sync_at is not None:
        if (
            local_ts > last_sync_at
            and remote_ts > last_sync_at
            and milliseconds_between(local_ts, remote_ts) > tolerance_ms
        ):
            return ConflictDetection(
                has_conflict=True,
                conflict_type=ConflictType.TIMESTAMP,
                local_data=local,
                remote_data=remote,
                conflict_fields=differing,
            )

    if differing:
        return ConflictDetection(
            has_conflict=True,
            conflict_type=ConflictType.DATA,
            local_data=local,
            remote_data=remote,
            conflict_fields=differing,
        )

    return ConflictDetection(has_conflict=False, local_data=local, remote_data=remote)


class ConflictResolver:
    """Creates, resolves and audits conflict records.

    Args:
        db: Persistent store
        options: Resolver configuration (defaults if None)
        events: Event bus for CONFLICT_DETECTED / CONFLICT_RESOLVED
    """

    def __init__(
        self,
        db: Database,
        options: Optional[ConflictOptions] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.db = db
        self.options = options or ConflictOptions()
        self.events = events or EventBus()

    def detect_and_resolve(
        self,
        entry: QueueEntry,
        remote_data: Optional[Dict[str, Any]],
        last_sync_at: Optional[datetime] = None,
    ) -> Optional[ConflictResolution]:
        """Compare a queued mutation with the remote snapshot.

        When a conflict exists a pending record is stored. With automatic
        resolution on it is resolved immediately; otherwise it stays pending
        and CONFLICT_DETECTED is emitted.

        Args:
            entry: The queue entry being replayed
            remote_data: Remote snapshot, None if the remote entity is gone
            last_sync_at: Last successful sync of the entity, if known

        Returns:
            The conflict record (resolved or pending), or None if no conflict
        """
        detection = detect_conflict(
            entry.payload,
            remote_data,
            last_sync_at=last_sync_at,
            tolerance_ms=self.options.timestamp_tolerance_ms,
        )
        if not detection.has_conflict:
            return None

        now = utc_now()
        conflict = ConflictResolution(
            id=new_id(),
            queue_entry_id=entry.id,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            conflict_type=detection.conflict_type,
            local_data=detection.local_data,
            remote_data=detection.remote_data,
            conflict_fields=detection.conflict_fields,
            resolution=ResolutionStrategy.MANUAL,
            status=ConflictStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.db.add_conflict(conflict)
        logger.info(
            f"Detected {conflict.conflict_type.value} conflict {conflict.id} on "
            f"{entry.entity_type}/{entry.entity_id} (fields: {', '.join(conflict.conflict_fields) or '-'})"
        )

        if self.options.auto_resolve_enabled:
            rule = self.select_rule(conflict)
            resolution = rule.resolution if rule else self.options.default_resolution
            if resolution != ResolutionStrategy.MANUAL:
                details = {"rule_id": rule.id} if rule else {"rule_id": None}
                return self.apply_resolution(conflict, resolution, details=details)

        self.events.emit(EventType.CONFLICT_DETECTED, {"conflict": conflict.to_dict()})
        return conflict

    def select_rule(self, conflict: ConflictResolution) -> Optional[AutoResolutionRule]:
        """Pick the highest-priority active rule matching a conflict."""
        for rule in self.db.get_rules_for(conflict.entity_type, conflict.conflict_type):
            if rule.field_pattern:
                try:
                    pattern = re.compile(rule.field_pattern)
                except re.error as e:
                    logger.warning(f"Skipping rule {rule.id}: invalid field pattern: {e}")
                    continue
                if not any(pattern.search(name) for name in conflict.conflict_fields):
                    continue
            return rule
        return None

    def _resolved_data(
        self, conflict: ConflictResolution, resolution: ResolutionStrategy
    ) -> Optional[Dict[str, Any]]:
        if resolution == ResolutionStrategy.USE_LOCAL:
            return conflict.local_data
        if resolution == ResolutionStrategy.USE_REMOTE:
            return conflict.remote_data
        if conflict.local_data is None or conflict.remote_data is None:
            # A merge never drops the side that still holds data
            return conflict.local_data if conflict.local_data is not None else conflict.remote_data
        return merge_fields(
            conflict.local_data, conflict.remote_data, conflict.conflict_fields
        ).data

    def apply_resolution(
        self,
        conflict: Union[ConflictResolution, str],
        resolution: Any,
        resolved_by: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ConflictResolution:
        """Resolve a pending conflict.

        Args:
            conflict: Conflict record or its ID
            resolution: use_local, use_remote or merge
            resolved_by: Actor identifier (defaults to "system")
            details: Extra information stored in the resolution log

        Returns:
            The resolved conflict record

        Raises:
            ConflictNotFoundError: If the ID is unknown
            ValidationError: If the resolution is not applicable
            InvalidTransitionError: If the conflict is already resolved
        """
        if isinstance(conflict, str):
            found = self.db.get_conflict(conflict)
            if found is None:
                raise ConflictNotFoundError(conflict)
            conflict = found

        strategy = validate_enum(
            resolution, ResolutionStrategy, "resolution", allowed=APPLICABLE_STRATEGIES
        )
        if conflict.status != ConflictStatus.PENDING:
            raise InvalidTransitionError(
                "conflict", conflict.status.value, ConflictStatus.RESOLVED.value
            )

        now = utc_now()
        resolved = replace(
            conflict,
            resolution=strategy,
            resolved_data=self._resolved_data(conflict, strategy),
            resolved_by=resolved_by or SYSTEM_ACTOR,
            resolved_at=now,
            status=ConflictStatus.RESOLVED,
            updated_at=max(now, conflict.updated_at),
        )
        if not self.db.update_conflict(resolved, expected_status=ConflictStatus.PENDING):
            current = self.db.get_conflict(conflict.id)
            raise InvalidTransitionError(
                "conflict",
                current.status.value if current else "missing",
                ConflictStatus.RESOLVED.value,
            )

        self.db.add_resolution_log(
            ResolutionLogEntry(
                id=new_id(),
                conflict_id=resolved.id,
                resolution_type=strategy,
                resolved_by=resolved.resolved_by,
                resolved_at=now,
                conflict_type=resolved.conflict_type,
                conflict_fields=list(resolved.conflict_fields),
                details=dict(details or {}),
            )
        )
        logger.info(
            f"Resolved conflict {resolved.id} with {strategy.value} by {resolved.resolved_by}"
        )
        self.events.emit(EventType.CONFLICT_RESOLVED, {"conflict": resolved.to_dict()})
        return resolved

    def get_pending_conflicts(self) -> List[ConflictResolution]:
        return self.db.get_pending_conflicts()

    def get_conflict(self, conflict_id: str) -> Optional[ConflictResolution]:
        return self.db.get_conflict(conflict_id)

    def get_resolution_history(self, limit: int = 50) -> List[ResolutionLogEntry]:
        return self.db.get_resolution_history(limit)

    def create_rule(
        self,
        entity_type: str,
        conflict_type: Any,
        resolution: Any,
        priority: int = 0,
        field_pattern: Optional[str] = None,
        is_active: bool = True,
    ) -> AutoResolutionRule:
        """Create and store an auto-resolution rule.

        Raises:
            ValidationError: If any argument is invalid
        """
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError("priority", "must be an integer")
        rule = AutoResolutionRule(
            id=new_id(),
            entity_type=validate_required_string(
                entity_type, "entity_type", MAX_ENTITY_TYPE_LENGTH
            ),
            conflict_type=validate_enum(conflict_type, ConflictType, "conflict_type"),
            field_pattern=validate_field_pattern(field_pattern),
            resolution=validate_enum(
                resolution, ResolutionStrategy, "resolution", allowed=APPLICABLE_STRATEGIES
            ),
            priority=priority,
            is_active=bool(is_active),
            created_at=utc_now(),
        )
        self.db.add_rule(rule)
        logger.info(
            f"Created rule {rule.id}: {rule.entity_type}/{rule.conflict_type.value} "
            f"-> {rule.resolution.value} (priority {rule.priority})"
        )
        return rule

    def get_rules(self, active_only: bool = False) -> List[AutoResolutionRule]:
        return self.db.get_rules(active_only=active_only)

    def set_rule_active(self, rule_id: str, active: bool) -> bool:
        """Enable or disable a rule. Returns False if the rule does not exist."""
        return self.db.set_rule_active(rule_id, active)

    def update_options(self, **changes: Any) -> ConflictOptions:
        known = {f.name for f in fields(ConflictOptions)}
        for key in changes:
            if key not in known:
                raise ValidationError(key, "unknown conflict option")
        if "default_resolution" in changes:
            changes["default_resolution"] = validate_enum(
                changes["default_resolution"], ResolutionStrategy, "default_resolution"
            )
        if "timestamp_tolerance_ms" in changes:
            changes["timestamp_tolerance_ms"] = validate_non_negative_number(
                changes["timestamp_tolerance_ms"], "timestamp_tolerance_ms"
            )
        self.options = replace(self.options, **changes)
        return self.options
