from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TypeVar

from records_sync.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    UnsupportedEntityTypeError,
)
from records_sync.domain.payload_validation import current_schema_version
from records_sync.domain.state_machine import ensure_transition
from records_sync.domain.sync_models import (
    DEFAULT_CLEANUP_DAYS,
    DEFAULT_MAX_ATTEMPTS,
    SyncQueueEntry,
    SyncStatus,
)
from records_sync.infrastructure.sqlite_uow import transaction

logger = logging.getLogger(__name__)

_LOCKED_RETRY_BACKOFF_SECONDS = (0.05, 0.15, 0.3)
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
_UPDATABLE_FIELDS = frozenset({"status", "attempts", "error", "synced_at"})
_T = TypeVar("_T")

_SELECT_COLUMNS = """
    SELECT id, entity_type, entity_id, operation, payload_json, schema_version,
           status, attempts, error, created_at, synced_at, claimed_at
    FROM sync_queue
"""


def to_db_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def from_db_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_locked_operational_error(error: sqlite3.OperationalError) -> bool:
    return "locked" in str(error).lower()


def _run_with_locked_retry(operation: Callable[[], _T], *, context: str) -> _T:
    for attempt, delay_seconds in enumerate(_LOCKED_RETRY_BACKOFF_SECONDS, start=1):
        try:
            return operation()
        except sqlite3.OperationalError as error:
            if not _is_locked_operational_error(error):
                raise
            logger.warning(
                "SQLite locked in %s (attempt=%s/%s); retrying in %.0fms",
                context,
                attempt,
                len(_LOCKED_RETRY_BACKOFF_SECONDS),
                delay_seconds * 1000,
            )
            time.sleep(delay_seconds)

    return operation()


def _schema_version_for(entity_type: str) -> int:
    try:
        return current_schema_version(entity_type)
    except UnsupportedEntityTypeError:
        # Stored anyway; the drain rejects it when validating.
        return 1


def _row_to_entry(row: sqlite3.Row) -> SyncQueueEntry:
    return SyncQueueEntry(
        id=row["id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        operation=row["operation"],
        payload=json.loads(row["payload_json"]),
        status=SyncStatus(row["status"]),
        attempts=int(row["attempts"]),
        error=row["error"],
        created_at=datetime.strptime(row["created_at"], _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc),
        synced_at=from_db_timestamp(row["synced_at"]),
        schema_version=int(row["schema_version"]),
        claimed_at=from_db_timestamp(row["claimed_at"]),
    )


class SyncQueueRepositorySQLite:
    """Queue Store on SQLite. Every write is one transaction over one entry."""

    def __init__(
        self,
        connection: sqlite3.Connection,
        *,
        now_provider: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._connection = connection
        self._connection.row_factory = sqlite3.Row
        self._now_provider = now_provider or _utc_now
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    def create(self, entity_type: str, entity_id: str, operation: str, payload: Any) -> SyncQueueEntry:
        entry_id = self._id_factory()
        created_at = self._now_iso()
        schema_version = _schema_version_for(entity_type)
        payload_json = json.dumps(payload, ensure_ascii=False)

        def _insert() -> None:
            with transaction(self._connection):
                self._connection.execute(
                    """
                    INSERT INTO sync_queue (
                        id, entity_type, entity_id, operation, payload_json, schema_version,
                        status, attempts, error, created_at, synced_at, claimed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, NULL, ?, NULL, NULL)
                    """,
                    (
                        entry_id,
                        str(entity_type),
                        str(entity_id),
                        str(operation),
                        payload_json,
                        schema_version,
                        SyncStatus.PENDING.value,
                        created_at,
                    ),
                )

        self._guarded(_insert, context="sync_queue.create")
        return self._require(entry_id)

    def get_by_id(self, entry_id: str) -> SyncQueueEntry | None:
        row = self._guarded(
            lambda: self._connection.execute(f"{_SELECT_COLUMNS} WHERE id = ?", (entry_id,)).fetchone(),
            context="sync_queue.get_by_id",
        )
        return _row_to_entry(row) if row else None

    def get_pending_entries(self, limit: int | None = None) -> list[SyncQueueEntry]:
        return self._select(
            "WHERE status = ? ORDER BY created_at ASC, seq ASC",
            (SyncStatus.PENDING.value,),
            limit=limit,
            context="sync_queue.get_pending_entries",
        )

    def get_failed_entries(
        self, max_attempts: int = DEFAULT_MAX_ATTEMPTS, limit: int | None = None
    ) -> list[SyncQueueEntry]:
        return self._select(
            "WHERE status = ? AND attempts < ? ORDER BY created_at ASC, seq ASC",
            (SyncStatus.FAILED.value, int(max_attempts)),
            limit=limit,
            context="sync_queue.get_failed_entries",
        )

    def get_quarantined_entries(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> list[SyncQueueEntry]:
        return self._select(
            "WHERE status = ? AND attempts >= ? ORDER BY created_at ASC, seq ASC",
            (SyncStatus.FAILED.value, int(max_attempts)),
            context="sync_queue.get_quarantined_entries",
        )

    def get_stale_processing(self, older_than: datetime) -> list[SyncQueueEntry]:
        return self._select(
            "WHERE status = ? AND claimed_at IS NOT NULL AND claimed_at < ? ORDER BY created_at ASC, seq ASC",
            (SyncStatus.PROCESSING.value, to_db_timestamp(older_than)),
            context="sync_queue.get_stale_processing",
        )

    def get_entries_by_entity(self, entity_type: str, entity_id: str) -> list[SyncQueueEntry]:
        return self._select(
            "WHERE entity_type = ? AND entity_id = ? ORDER BY created_at DESC, seq DESC",
            (str(entity_type), str(entity_id)),
            context="sync_queue.get_entries_by_entity",
        )

    def claim(self, entry_id: str, expected_status: SyncStatus) -> SyncQueueEntry | None:
        """Flips ``expected_status -> processing`` only if nobody else did it first."""
        ensure_transition(entry_id, expected_status, SyncStatus.PROCESSING)
        claimed_at = self._now_iso()

        def _claim() -> int:
            with transaction(self._connection):
                cursor = self._connection.execute(
                    """
                    UPDATE sync_queue
                    SET status = ?, claimed_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (SyncStatus.PROCESSING.value, claimed_at, entry_id, expected_status.value),
                )
                return cursor.rowcount

        if self._guarded(_claim, context="sync_queue.claim") == 0:
            if self.get_by_id(entry_id) is None:
                raise NotFoundError(entry_id)
            logger.info("sync_queue_claim_lost entry_id=%s expected=%s", entry_id, expected_status.value)
            return None
        return self._require(entry_id)

    def claim_for_retry(self, entry_id: str) -> SyncQueueEntry | None:
        """Moves ``failed -> processing`` and counts the attempt in one write.

        The entry never becomes visible as ``pending`` in between, so no other
        drain can pick it up and count the same attempt again.
        """
        ensure_transition(entry_id, SyncStatus.FAILED, SyncStatus.PENDING)
        ensure_transition(entry_id, SyncStatus.PENDING, SyncStatus.PROCESSING)
        claimed_at = self._now_iso()

        def _claim() -> int:
            with transaction(self._connection, immediate=True):
                cursor = self._connection.execute(
                    """
                    UPDATE sync_queue
                    SET status = ?, attempts = attempts + 1, claimed_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (SyncStatus.PROCESSING.value, claimed_at, entry_id, SyncStatus.FAILED.value),
                )
                return cursor.rowcount

        if self._guarded(_claim, context="sync_queue.claim_for_retry") == 0:
            if self.get_by_id(entry_id) is None:
                raise NotFoundError(entry_id)
            logger.info("sync_queue_claim_lost entry_id=%s expected=%s", entry_id, SyncStatus.FAILED.value)
            return None
        return self._require(entry_id)

    def release_stale_claim(self, entry_id: str, error: str, claimed_before: datetime) -> SyncQueueEntry | None:
        """Fails a ``processing`` entry whose claim is older than ``claimed_before``.

        Returns ``None`` when the entry finished or was claimed again meanwhile.
        Entries claimed for a retry already counted their attempt; only a
        first attempt (``attempts == 0``) is counted here.
        """
        ensure_transition(entry_id, SyncStatus.PROCESSING, SyncStatus.FAILED)
        cutoff = to_db_timestamp(claimed_before)

        def _release() -> int:
            with transaction(self._connection, immediate=True):
                cursor = self._connection.execute(
                    """
                    UPDATE sync_queue
                    SET status = ?,
                        error = ?,
                        attempts = CASE WHEN attempts = 0 THEN 1 ELSE attempts END,
                        synced_at = NULL,
                        claimed_at = NULL
                    WHERE id = ? AND status = ? AND claimed_at IS NOT NULL AND claimed_at < ?
                    """,
                    (SyncStatus.FAILED.value, error, entry_id, SyncStatus.PROCESSING.value, cutoff),
                )
                return cursor.rowcount

        if self._guarded(_release, context="sync_queue.release_stale_claim") == 0:
            return None
        return self._require(entry_id)

    def update(self, entry_id: str, **fields: Any) -> SyncQueueEntry:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable on a sync queue entry: {', '.join(sorted(unknown))}")

        def _apply(current: SyncQueueEntry) -> dict[str, Any]:
            changes: dict[str, Any] = {}
            if "status" in fields:
                target = SyncStatus(fields["status"])
                if target != current.status:
                    ensure_transition(entry_id, current.status, target)
                changes["status"] = target.value
                changes["claimed_at"] = self._now_iso() if target == SyncStatus.PROCESSING else None
                if target == SyncStatus.COMPLETED:
                    synced_at = fields.get("synced_at") or current.synced_at or self._now_provider()
                    changes["synced_at"] = to_db_timestamp(synced_at)
                else:
                    changes["synced_at"] = None
            elif fields.get("synced_at") is not None and current.status != SyncStatus.COMPLETED:
                raise ValueError("synced_at can only be set on completed entries")
            if "attempts" in fields:
                attempts = int(fields["attempts"])
                if attempts < current.attempts:
                    raise ValueError("attempts can never decrease")
                changes["attempts"] = attempts
            if "error" in fields:
                changes["error"] = fields["error"]
            return changes

        return self._mutate(entry_id, _apply, context="sync_queue.update")

    def mark_as_completed(self, entry_id: str) -> SyncQueueEntry:
        def _apply(current: SyncQueueEntry) -> dict[str, Any]:
            ensure_transition(entry_id, current.status, SyncStatus.COMPLETED)
            return {
                "status": SyncStatus.COMPLETED.value,
                "synced_at": self._now_iso(),
                "error": None,
                "claimed_at": None,
            }

        return self._mutate(entry_id, _apply, context="sync_queue.mark_as_completed")

    def mark_as_failed(self, entry_id: str, error: str, *, count_attempt: bool = True) -> SyncQueueEntry:
        def _apply(current: SyncQueueEntry) -> dict[str, Any]:
            ensure_transition(entry_id, current.status, SyncStatus.FAILED)
            return {
                "status": SyncStatus.FAILED.value,
                "error": error,
                "attempts": current.attempts + 1 if count_attempt else current.attempts,
                "synced_at": None,
                "claimed_at": None,
            }

        return self._mutate(entry_id, _apply, context="sync_queue.mark_as_failed")

    def increment_attempt(self, entry_id: str) -> SyncQueueEntry:
        def _apply(current: SyncQueueEntry) -> dict[str, Any]:
            ensure_transition(entry_id, current.status, SyncStatus.PENDING)
            return {"status": SyncStatus.PENDING.value, "attempts": current.attempts + 1}

        return self._mutate(entry_id, _apply, context="sync_queue.increment_attempt")

    def delete(self, entry_id: str) -> None:
        def _delete() -> None:
            with transaction(self._connection, immediate=True):
                current = self._fetch_for_update(entry_id)
                if current.status != SyncStatus.COMPLETED:
                    raise InvalidTransitionError(entry_id, current.status.value, "deleted")
                self._connection.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))

        self._guarded(_delete, context="sync_queue.delete")

    def delete_completed(self, older_than_days: int = DEFAULT_CLEANUP_DAYS) -> int:
        cutoff = to_db_timestamp(self._now_provider() - timedelta(days=older_than_days))

        def _delete() -> int:
            with transaction(self._connection):
                cursor = self._connection.execute(
                    "DELETE FROM sync_queue WHERE status = ? AND synced_at IS NOT NULL AND synced_at < ?",
                    (SyncStatus.COMPLETED.value, cutoff),
                )
                return cursor.rowcount

        deleted = self._guarded(_delete, context="sync_queue.delete_completed")
        logger.info("sync_queue_cleanup older_than_days=%s deleted=%s", older_than_days, deleted)
        return deleted

    def count_pending(self) -> int:
        return self._count(SyncStatus.PENDING)

    def count_failed(self) -> int:
        return self._count(SyncStatus.FAILED)

    def count_by_status(self) -> dict[str, int]:
        rows = self._guarded(
            lambda: self._connection.execute(
                "SELECT status, COUNT(*) AS total FROM sync_queue GROUP BY status"
            ).fetchall(),
            context="sync_queue.count_by_status",
        )
        counts = {status.value: 0 for status in SyncStatus}
        for row in rows:
            counts[row["status"]] = int(row["total"])
        return counts

    def last_synced_at(self) -> datetime | None:
        row = self._guarded(
            lambda: self._connection.execute(
                "SELECT MAX(synced_at) AS last_synced FROM sync_queue WHERE status = ?",
                (SyncStatus.COMPLETED.value,),
            ).fetchone(),
            context="sync_queue.last_synced_at",
        )
        return from_db_timestamp(row["last_synced"]) if row else None

    def _count(self, status: SyncStatus) -> int:
        row = self._guarded(
            lambda: self._connection.execute(
                "SELECT COUNT(*) AS total FROM sync_queue WHERE status = ?", (status.value,)
            ).fetchone(),
            context=f"sync_queue.count_{status.value}",
        )
        return int(row["total"] if row else 0)

    def _select(
        self,
        where_clause: str,
        params: tuple[object, ...],
        *,
        limit: int | None = None,
        context: str,
    ) -> list[SyncQueueEntry]:
        sql = f"{_SELECT_COLUMNS} {where_clause}"
        if limit is not None:
            sql += " LIMIT ?"
            params = (*params, max(0, int(limit)))
        rows = self._guarded(lambda: self._connection.execute(sql, params).fetchall(), context=context)
        return [_row_to_entry(row) for row in rows]

    def _mutate(
        self,
        entry_id: str,
        apply: Callable[[SyncQueueEntry], dict[str, Any]],
        *,
        context: str,
    ) -> SyncQueueEntry:
        def _run() -> None:
            with transaction(self._connection, immediate=True):
                current = self._fetch_for_update(entry_id)
                changes = apply(current)
                if not changes:
                    return
                assignments = ", ".join(f"{column} = ?" for column in changes)
                self._connection.execute(
                    f"UPDATE sync_queue SET {assignments} WHERE id = ?",
                    (*changes.values(), entry_id),
                )

        self._guarded(_run, context=context)
        return self._require(entry_id)

    def _fetch_for_update(self, entry_id: str) -> SyncQueueEntry:
        row = self._connection.execute(f"{_SELECT_COLUMNS} WHERE id = ?", (entry_id,)).fetchone()
        if row is None:
            raise NotFoundError(entry_id)
        return _row_to_entry(row)

    def _require(self, entry_id: str) -> SyncQueueEntry:
        entry = self.get_by_id(entry_id)
        if entry is None:
            raise NotFoundError(entry_id)
        return entry

    def _now_iso(self) -> str:
        return to_db_timestamp(self._now_provider())

    @staticmethod
    def _guarded(operation: Callable[[], _T], *, context: str) -> _T:
        try:
            return _run_with_locked_retry(operation, context=context)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Sync queue store failure in {context}: {exc}") from exc
