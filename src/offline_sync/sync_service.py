"""Sync orchestration for offline-sync.

SyncOrchestrator drives sync passes: it pulls due queue entries oldest
first, replays them one at a time through the remote applier, routes
divergence to the conflict resolver and records every pass in the sync
history. Passes run on the caller's thread (trigger_sync) or on the
scheduler's worker pool (periodic and connectivity-restored passes).
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Callable, Dict, List, Optional

from .conflicts import ConflictResolver
from .connectivity import ConnectivityMonitor
from .database import Database
from .errors import ConcurrencyLimitError, OfflineError
from .events import Event, EventBus, EventType
from .models import (
    ConflictResolution,
    ConflictStatus,
    EntryStatus,
    Operation,
    QueueEntry,
    QueueStats,
    ResolutionLogEntry,
    SyncLogEntry,
    SyncResult,
    SyncType,
)
from .queue import (
    MAX_RETRY_ATTEMPTS,
    create_entry,
    mark_completed,
    mark_failed,
    mark_processing,
    requeue,
    should_retry,
)
from .remote import RemoteApplier
from .retry import RetryOptions, is_retryable_error
from .scheduler import Scheduler
from .timestamp_utils import utc_now
from .validation import (
    ValidationError,
    validate_enum,
    validate_non_negative_number,
    validate_positive_int,
)

logger = logging.getLogger(__name__)

__all__ = [
    "SyncOptions",
    "SyncOrchestrator",
    "SYNC_JOB_NAME",
    "rewrite_for_resolution",
    "settle_resolved_entry",
]

SYNC_JOB_NAME = "sync-pass"


@dataclass
class SyncOptions:
    """Orchestrator configuration. sync_interval is in seconds."""

    batch_size: int = 10
    max_concurrent_syncs: int = 3
    sync_interval: float = 300.0
    auto_sync_enabled: bool = True
    max_retry_attempts: int = MAX_RETRY_ATTEMPTS
    retry: RetryOptions = field(default_factory=RetryOptions)


def _same_data(a: Optional[Dict[str, Any]], b: Optional[Dict[str, Any]]) -> bool:
    return json.dumps(a, sort_keys=True, default=str) == json.dumps(
        b, sort_keys=True, default=str
    )


def _describe(entry: QueueEntry) -> str:
    return f"{entry.operation.value} {entry.entity_type}/{entry.entity_id} ({entry.id})"


def rewrite_for_resolution(
    entry: QueueEntry,
    resolved_data: Optional[Dict[str, Any]],
    remote_data: Optional[Dict[str, Any]],
) -> QueueEntry:
    """Rewrite an entry so that replaying it produces the resolved state."""
    if resolved_data is None:
        return replace(entry, operation=Operation.DELETE, payload=None)
    operation = Operation.CREATE if remote_data is None else Operation.UPDATE
    return replace(entry, operation=operation, payload=dict(resolved_data))


def settle_resolved_entry(db: Database, resolved: ConflictResolution) -> Optional[QueueEntry]:
    """Move the entry that hit a now-resolved conflict out of failed.

    If the resolution keeps the remote state the entry is completed;
    otherwise it is re-queued to push the resolved data unconditionally.

    Returns:
        The updated entry, or None if the entry was not waiting on it
    """
    entry = db.get_entry_by_id(resolved.queue_entry_id)
    if entry is None or entry.status != EntryStatus.FAILED:
        return None

    if _same_data(resolved.resolved_data, resolved.remote_data):
        done = mark_completed(mark_processing(entry))
        if not db.update_entry(done, expected_status=EntryStatus.FAILED):
            return None
        db.set_last_synced_at(entry.entity_type, entry.entity_id)
        logger.info(f"Completed {_describe(done)}: resolution keeps the remote state")
        return done

    pending = rewrite_for_resolution(
        requeue(entry, conflict_data={"conflict_id": resolved.id, "overwrite": True}),
        resolved.resolved_data,
        resolved.remote_data,
    )
    if not db.update_entry(pending, expected_status=EntryStatus.FAILED):
        return None
    logger.info(f"Re-queued {_describe(pending)} after resolving {resolved.id}")
    return pending


class SyncOrchestrator:
    """Replays queued mutations when the network is available.

    Args:
        db: Persistent store (single source of truth for entry state)
        connectivity: Connectivity monitor gating every pass
        resolver: Conflict resolver for diverged entries
        applier: Remote transport
        scheduler: Scheduler for periodic passes (the monitor's if None)
        events: Event bus (the monitor's if None)
        options: Orchestrator configuration (defaults if None)
    """

    def __init__(
        self,
        db: Database,
        connectivity: ConnectivityMonitor,
        resolver: ConflictResolver,
        applier: RemoteApplier,
        scheduler: Optional[Scheduler] = None,
        events: Optional[EventBus] = None,
        options: Optional[SyncOptions] = None,
    ) -> None:
        self.db = db
        self.connectivity = connectivity
        self.resolver = resolver
        self.applier = applier
        self.scheduler = scheduler or connectivity.scheduler
        self.events = events or connectivity.events
        self.options = options or SyncOptions()

        self._lock = threading.Lock()
        self._active_syncs = 0
        self._running = False
        self._started_scheduler = False
        self._starting = False
        self._startup_pass: Optional[Future] = None
        self._subscriptions: List[Callable[[], None]] = [
            self.events.subscribe(EventType.ONLINE, self._handle_online),
            self.events.subscribe(EventType.OFFLINE, self._handle_offline),
        ]

    # ===== Lifecycle =====

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> Optional[Future]:
        """Start monitoring and periodic sync. A second start is a no-op.

        Returns:
            Future of the immediate pass when one was started, else None
        """
        with self._lock:
            if self._running:
                return None
            self._running = True

        if not self.scheduler.is_running:
            self.scheduler.start()
            self._started_scheduler = True

        was_online = self.connectivity.is_online()
        self._starting = True
        try:
            self.connectivity.start()
        finally:
            self._starting = False

        # A transition during connectivity.start() already queued the pass
        immediate, self._startup_pass = self._startup_pass, None
        if self.options.auto_sync_enabled:
            self._schedule_periodic()
            if immediate is None and was_online and self.connectivity.is_online():
                immediate = self.scheduler.submit(self._background_sync, SyncType.AUTOMATIC)

        logger.info("Sync orchestrator started")
        self.events.emit(EventType.STARTED, {"options": self._options_dict()})
        return immediate

    def stop(self) -> None:
        """Cancel periodic sync and stop the connectivity monitor."""
        with self._lock:
            if not self._running:
                return
            self._running = False

        self.scheduler.remove_job(SYNC_JOB_NAME)
        self.connectivity.stop()
        if self._started_scheduler:
            self.scheduler.stop()
            self._started_scheduler = False
        logger.info("Sync orchestrator stopped")
        self.events.emit(EventType.STOPPED)

    def close(self) -> None:
        """Stop and detach from the event bus."""
        self.stop()
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []

    def _schedule_periodic(self) -> None:
        self.scheduler.add_job(SYNC_JOB_NAME, self.options.sync_interval, self._periodic_sync)

    def _periodic_sync(self) -> None:
        if not self.connectivity.is_online():
            logger.debug("Skipping periodic sync: offline")
            return
        if self.is_active():
            logger.debug("Skipping periodic sync: a pass is already running")
            return
        self._background_sync(SyncType.AUTOMATIC)

    def _background_sync(self, sync_type: SyncType) -> Optional[SyncResult]:
        try:
            return self.trigger_sync(sync_type)
        except (OfflineError, ConcurrencyLimitError) as e:
            logger.info(f"{sync_type.value} sync not started: {e}")
            return None

    # ===== Connectivity integration =====

    def _handle_online(self, event: Event) -> Optional[Future]:
        if not self._running or not self.options.auto_sync_enabled:
            return None
        if self._starting:
            logger.info("Online at startup, starting sync")
            self._startup_pass = self.scheduler.submit(self._background_sync, SyncType.AUTOMATIC)
            return self._startup_pass
        logger.info("Connectivity restored, starting sync")
        return self.scheduler.submit(self._background_sync, SyncType.CONNECTIVITY_RESTORED)

    def _handle_offline(self, event: Event) -> None:
        logger.info("Connectivity lost, sync paused")
        self.events.emit(EventType.SYNC_PAUSED, {"reason": "connectivity-lost"})

    # ===== Queue =====

    def enqueue(
        self,
        operation: Any,
        entity_type: str,
        entity_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> QueueEntry:
        """Record a local mutation for later replay.

        Raises:
            ValidationError: If the mutation is malformed
        """
        entry = create_entry(operation, entity_type, entity_id, payload)
        self.db.add_entry(entry)
        logger.info(f"Queued {_describe(entry)}")
        return entry

    # ===== Sync passes =====

    def trigger_sync(self, sync_type: Any = SyncType.MANUAL) -> SyncResult:
        """Run one sync pass on the calling thread.

        Args:
            sync_type: What started the pass

        Returns:
            SyncResult for the pass

        Raises:
            OfflineError: If the connectivity monitor reports offline
            ConcurrencyLimitError: If too many passes are already running
        """
        sync_type = validate_enum(sync_type, SyncType, "sync_type")
        if not self.connectivity.is_online():
            raise OfflineError()

        with self._lock:
            if self._active_syncs >= self.options.max_concurrent_syncs:
                raise ConcurrencyLimitError(self.options.max_concurrent_syncs)
            self._active_syncs += 1

        try:
            return self._run_pass(sync_type)
        finally:
            with self._lock:
                self._active_syncs -= 1

    def _run_pass(self, sync_type: SyncType) -> SyncResult:
        started = time.monotonic()
        sync_id = self.db.log_sync_start(sync_type)
        logger.info(f"Sync {sync_id} started ({sync_type.value})")
        self.events.emit(
            EventType.SYNC_STARTED, {"sync_id": sync_id, "sync_type": sync_type.value}
        )

        processed = 0
        failed = 0
        errors: List[str] = []
        try:
            for entry in self._select_batch():
                outcome = self._process_entry(entry, errors)
                if outcome is True:
                    processed += 1
                elif outcome is False:
                    failed += 1
        except Exception as e:
            errors.append(f"Sync failed: {e}")
            self.db.log_sync_failed(sync_id, errors, processed, failed)
            logger.exception(f"Sync {sync_id} failed")
            self.events.emit(
                EventType.SYNC_FAILED,
                {"sync_id": sync_id, "sync_type": sync_type.value, "error": str(e)},
            )
            raise

        result = SyncResult(
            success=failed == 0,
            processed_count=processed,
            failed_count=failed,
            errors=errors,
            duration=time.monotonic() - started,
            timestamp=utc_now(),
            sync_id=sync_id,
        )
        self.db.log_sync_complete(sync_id, processed, failed, errors)
        logger.info(
            f"Sync {sync_id} completed: {processed} processed, {failed} failed "
            f"in {result.duration:.2f}s"
        )
        self.events.emit(
            EventType.SYNC_COMPLETED, {"sync_type": sync_type.value, **result.to_dict()}
        )
        return result

    def _select_batch(self) -> List[QueueEntry]:
        return self.db.get_pending_entries(
            limit=self.options.batch_size,
            max_attempts=self.options.max_retry_attempts,
            due_at=utc_now(),
            retry_options=self.options.retry,
        )

    def _process_entry(self, entry: QueueEntry, errors: List[str]) -> Optional[bool]:
        """Replay one entry.

        Returns:
            True if completed, False if failed, None if another pass owns it
        """
        current = self.db.get_entry_by_id(entry.id)
        if current is None or current.status not in (EntryStatus.PENDING, EntryStatus.FAILED):
            return None
        processing = mark_processing(current)
        if not self.db.update_entry(processing, expected_status=current.status):
            logger.debug(f"Entry {entry.id} claimed by another pass")
            return None

        overwrite = bool(current.conflict_data and current.conflict_data.get("overwrite"))
        try:
            outcome = self.applier.apply(processing, overwrite=overwrite)
            if outcome.applied:
                self._complete(processing)
                return True
            return self._handle_divergence(processing, outcome.snapshot, errors)
        except Exception as e:
            retryable = is_retryable_error(e)
            details: Dict[str, Any] = {
                "error": str(e),
                "retryable": retryable,
                "status_code": getattr(e, "status_code", None),
            }
            if overwrite:
                details["overwrite"] = True
                details["conflict_id"] = current.conflict_data.get("conflict_id")
            self._fail(processing, details)
            errors.append(f"{_describe(processing)}: {e}")
            logger.warning(
                f"Failed to sync {_describe(processing)} "
                f"({'retryable' if retryable else 'permanent'}): {e}"
            )
            return False

    def _complete(self, entry: QueueEntry) -> None:
        self.db.update_entry(mark_completed(entry), expected_status=EntryStatus.PROCESSING)
        self.db.set_last_synced_at(entry.entity_type, entry.entity_id)
        logger.debug(f"Synced {_describe(entry)}")

    def _fail(self, entry: QueueEntry, details: Dict[str, Any]) -> None:
        self.db.update_entry(mark_failed(entry, details), expected_status=EntryStatus.PROCESSING)

    def _handle_divergence(
        self,
        entry: QueueEntry,
        snapshot: Optional[Dict[str, Any]],
        errors: List[str],
    ) -> bool:
        last_synced_at = self.db.get_last_synced_at(entry.entity_type, entry.entity_id)
        conflict = self.resolver.detect_and_resolve(entry, snapshot, last_synced_at)

        if conflict is None:
            # Remote already holds what this entry would write
            self._complete(entry)
            return True

        if conflict.status == ConflictStatus.PENDING:
            self._fail(
                entry,
                {
                    "error": "Conflict awaiting manual resolution",
                    "conflict_id": conflict.id,
                    "conflict_type": conflict.conflict_type.value,
                    "retryable": False,
                },
            )
            errors.append(
                f"{_describe(entry)}: {conflict.conflict_type.value} conflict "
                f"{conflict.id} awaiting manual resolution"
            )
            return False

        if _same_data(conflict.resolved_data, snapshot):
            self._complete(entry)
            return True

        push = rewrite_for_resolution(entry, conflict.resolved_data, snapshot)
        outcome = self.applier.apply(push, overwrite=True)
        if outcome.applied:
            self._complete(entry)
            return True

        self._fail(
            entry,
            {
                "error": "Remote diverged again after conflict resolution",
                "conflict_id": conflict.id,
                "conflict_type": conflict.conflict_type.value,
                "retryable": True,
            },
        )
        errors.append(f"{_describe(entry)}: remote diverged again after resolving {conflict.id}")
        return False

    def retry_failed_entries(self) -> SyncResult:
        """Re-queue every retryable failed entry and run a manual pass.

        Returns:
            Result of the pass, or an empty successful result when nothing
            was retryable
        """
        candidates = [
            entry
            for entry in self.db.get_failed_entries()
            if should_retry(entry, self.options.max_retry_attempts)
        ]
        if not candidates:
            logger.info("No failed entries to retry")
            return SyncResult(success=True)

        requeued = 0
        for entry in candidates:
            if self.db.update_entry(requeue(entry), expected_status=EntryStatus.FAILED):
                requeued += 1
        logger.info(f"Re-queued {requeued} failed entries")
        return self.trigger_sync(SyncType.MANUAL)

    # ===== Conflicts =====

    def resolve_conflict(
        self, conflict_id: str, resolution: Any, resolved_by: Optional[str] = None
    ) -> ConflictResolution:
        """Resolve a pending conflict and re-queue the entry that hit it.

        If the resolution keeps the remote state the entry is completed;
        otherwise it is re-queued to push the resolved data unconditionally.

        Raises:
            ConflictNotFoundError: If the ID is unknown
            ValidationError: If the resolution is not applicable
            InvalidTransitionError: If the conflict is already resolved
        """
        resolved = self.resolver.apply_resolution(conflict_id, resolution, resolved_by)
        settle_resolved_entry(self.db, resolved)
        return resolved

    def get_pending_conflicts(self) -> List[ConflictResolution]:
        return self.resolver.get_pending_conflicts()

    def get_resolution_history(self, limit: int = 50) -> List[ResolutionLogEntry]:
        return self.resolver.get_resolution_history(limit)

    # ===== Queries =====

    def get_queue_stats(self) -> QueueStats:
        return self.db.get_queue_stats()

    def get_failed_entries(self) -> List[QueueEntry]:
        return self.db.get_failed_entries()

    def get_entries_for_entity(self, entity_type: str, entity_id: str) -> List[QueueEntry]:
        return self.db.get_entries_for_entity(entity_type, entity_id)

    def clear_completed_entries(self, older_than_days: float = 7) -> int:
        older_than_days = validate_non_negative_number(older_than_days, "older_than_days")
        return self.db.clear_completed_entries(older_than_days)

    def get_sync_history(self, limit: int = 50) -> List[SyncLogEntry]:
        """Get the most recent sync passes, newest first."""
        return self.db.get_sync_history(limit)

    def is_active(self) -> bool:
        with self._lock:
            return self._active_syncs > 0

    def get_active_sync_count(self) -> int:
        with self._lock:
            return self._active_syncs

    def get_status(self) -> Dict[str, Any]:
        """Get a JSON-serializable snapshot of the engine state."""
        return {
            "running": self._running,
            "syncing": self.is_active(),
            "active_syncs": self.get_active_sync_count(),
            "options": self._options_dict(),
            "connectivity": self.connectivity.get_status().to_dict(),
            "queue": self.get_queue_stats().to_dict(),
            "pending_conflicts": len(self.get_pending_conflicts()),
        }

    def update_options(self, **changes: Any) -> SyncOptions:
        """Change options; the periodic job is rescheduled if needed.

        Raises:
            ValidationError: If an option is unknown or invalid
        """
        known = {f.name for f in fields(SyncOptions)}
        for key in changes:
            if key not in known:
                raise ValidationError(key, "unknown sync option")
        for key in ("batch_size", "max_concurrent_syncs", "max_retry_attempts"):
            if key in changes:
                changes[key] = validate_positive_int(changes[key], key)
        if "sync_interval" in changes:
            interval = validate_non_negative_number(changes["sync_interval"], "sync_interval")
            if interval == 0:
                raise ValidationError("sync_interval", "must be greater than zero")
            changes["sync_interval"] = interval
        if isinstance(changes.get("retry"), dict):
            changes["retry"] = replace(self.options.retry, **changes["retry"])
        if "retry" in changes:
            changes.setdefault(
                "max_retry_attempts",
                validate_positive_int(changes["retry"].max_attempts, "retry.max_attempts"),
            )

        previous = self.options
        self.options = replace(self.options, **changes)

        if self._running:
            if not self.options.auto_sync_enabled:
                self.scheduler.remove_job(SYNC_JOB_NAME)
            elif (
                not previous.auto_sync_enabled
                or previous.sync_interval != self.options.sync_interval
            ):
                self._schedule_periodic()
        return self.options

    def _options_dict(self) -> Dict[str, Any]:
        return asdict(self.options)
