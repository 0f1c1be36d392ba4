from __future__ import annotations

import logging
from typing import Any

from records_sync.application.commit_dispatch import CommitDispatcher
from records_sync.core.errors import CommitFailureError, ValidationError
from records_sync.core.metrics import measure_time, metrics_registry
from records_sync.core.observability import OperationContext, log_event
from records_sync.core.operational_logging import log_operational_error
from records_sync.domain.payload_validation import validate_payload
from records_sync.domain.ports import AuditSink, SyncQueueRepository
from records_sync.domain.sync_models import (
    DEFAULT_CLEANUP_DAYS,
    DEFAULT_MAX_ATTEMPTS,
    SYNC_AUDIT_ACTION,
    SYNC_AUDIT_ENTITY_TYPE,
    SYSTEM_OFFICER_ID,
    AuditRecord,
    CommitOutcome,
    SyncError,
    SyncOperation,
    SyncQueueEntry,
    SyncResult,
    SyncStats,
    SyncStatus,
)

logger = logging.getLogger(__name__)

_VALID_OPERATIONS = frozenset(operation.value for operation in SyncOperation)


class SyncService:
    """Drains the offline queue against the authoritative store.

    Entries of one batch are processed strictly in order: an entry is
    validated, committed and its outcome persisted before the next one is
    claimed. A failing entry never aborts the batch; only store failures
    propagate to the caller.
    """

    def __init__(
        self,
        queue: SyncQueueRepository,
        audit_sink: AuditSink,
        dispatcher: CommitDispatcher,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        batch_limit: int | None = None,
    ) -> None:
        self._queue = queue
        self._audit_sink = audit_sink
        self._dispatcher = dispatcher
        self._max_attempts = max_attempts
        self._batch_limit = batch_limit

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def queue_change(self, entity_type: str, entity_id: str, operation: str, payload: Any) -> SyncQueueEntry:
        operation_value = getattr(operation, "value", operation)
        if operation_value not in _VALID_OPERATIONS:
            raise ValueError(f"Unknown sync operation: {operation_value}")
        entry = self._queue.create(
            getattr(entity_type, "value", entity_type),
            str(entity_id),
            operation_value,
            payload,
        )
        metrics_registry.increment("sync.entries_queued")
        logger.info(
            "sync_change_queued entry_id=%s entity_type=%s entity_id=%s operation=%s",
            entry.id,
            entry.entity_type,
            entry.entity_id,
            entry.operation,
        )
        return entry

    @measure_time("latency.sync_drain_ms")
    def process_pending_sync(self, limit: int | None = None) -> SyncResult:
        with OperationContext("process_pending_sync"):
            entries = self._queue.get_pending_entries(self._resolve_limit(limit))
            if not entries:
                return SyncResult.empty()
            log_event(logger, "sync_drain_started", {"source": "pending", "entries": len(entries)})
            result = self._drain(entries, retrying=False)
            log_event(logger, "sync_drain_finished", {"source": "pending", **result.to_dict()})
            return result

    @measure_time("latency.sync_drain_ms")
    def retry_failed_sync(self, max_attempts: int | None = None, limit: int | None = None) -> SyncResult:
        threshold = self._max_attempts if max_attempts is None else max_attempts
        with OperationContext("retry_failed_sync"):
            entries = self._queue.get_failed_entries(threshold, self._resolve_limit(limit))
            if not entries:
                return SyncResult.empty()
            log_event(
                logger,
                "sync_drain_started",
                {"source": "retry", "entries": len(entries), "max_attempts": threshold},
            )
            result = self._drain(entries, retrying=True)
            log_event(logger, "sync_drain_finished", {"source": "retry", **result.to_dict()})
            return result

    def get_sync_stats(self) -> SyncStats:
        return SyncStats(
            pending=self._queue.count_pending(),
            failed=self._queue.count_failed(),
            last_sync_at=self._queue.last_synced_at(),
        )

    def cleanup_old_entries(self, older_than_days: int = DEFAULT_CLEANUP_DAYS) -> int:
        return self._queue.delete_completed(older_than_days)

    def get_entries_by_entity(self, entity_type: str, entity_id: str) -> list[SyncQueueEntry]:
        return self._queue.get_entries_by_entity(getattr(entity_type, "value", entity_type), str(entity_id))

    def delete_entry(self, entry_id: str) -> None:
        """Operator removal of an entry that already synced."""
        self._queue.delete(entry_id)
        logger.info("sync_entry_deleted entry_id=%s", entry_id)

    def _resolve_limit(self, limit: int | None) -> int | None:
        return self._batch_limit if limit is None else limit

    def _drain(self, entries: list[SyncQueueEntry], *, retrying: bool) -> SyncResult:
        metrics_registry.increment("sync.drains")
        synced = 0
        skipped = 0
        errors: list[SyncError] = []

        for entry in entries:
            if retrying:
                claimed = self._queue.claim_for_retry(entry.id)
            else:
                claimed = self._queue.claim(entry.id, SyncStatus.PENDING)
            if claimed is None:
                skipped += 1
                continue

            # A first attempt is counted when it fails; retries are counted at claim time.
            already_counted = claimed.attempts > 0
            attempt = claimed.attempts if already_counted else 1
            try:
                validate_payload(claimed.entity_type, claimed.payload, claimed.operation)
                outcome = self._dispatcher.commit(claimed)
            except (ValidationError, CommitFailureError) as exc:
                message = str(exc)
                self._queue.mark_as_failed(claimed.id, message, count_attempt=not already_counted)
                errors.append(SyncError(entry_id=claimed.id, error=message))
                metrics_registry.increment("sync.entries_failed")
                logger.warning(
                    "sync_entry_failed entry_id=%s entity_type=%s attempt=%s error=%s",
                    claimed.id,
                    claimed.entity_type,
                    attempt,
                    message,
                )
                self._record_audit(claimed, success=False, attempt=attempt, error=message)
                continue

            self._queue.mark_as_completed(claimed.id)
            synced += 1
            metrics_registry.increment("sync.entries_synced")
            self._record_audit(claimed, success=True, attempt=attempt, outcome=outcome)

        return SyncResult(
            success=not errors,
            synced=synced,
            failed=len(errors),
            errors=tuple(errors),
            skipped=skipped,
        )

    def _record_audit(
        self,
        entry: SyncQueueEntry,
        *,
        success: bool,
        attempt: int,
        error: str | None = None,
        outcome: CommitOutcome | None = None,
    ) -> None:
        details: dict[str, Any] = {
            "entityType": entry.entity_type,
            "entityId": entry.entity_id,
            "operation": entry.operation,
            "attempt": attempt,
        }
        if outcome is not None and outcome.entity_id != entry.entity_id:
            details["serverEntityId"] = outcome.entity_id
        if error is not None:
            details["error"] = error
        audit = AuditRecord(
            entity_type=SYNC_AUDIT_ENTITY_TYPE,
            entity_id=entry.id,
            officer_id=SYSTEM_OFFICER_ID,
            action=SYNC_AUDIT_ACTION,
            success=success,
            details=details,
        )
        try:
            self._audit_sink.record(audit)
        except Exception as exc:  # noqa: BLE001
            metrics_registry.increment("sync.audit_failures")
            log_operational_error(
                "Audit write failed for sync entry; outcome kept",
                exc=exc,
                extra={"entry_id": entry.id, "success": success},
            )
