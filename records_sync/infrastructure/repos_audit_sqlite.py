from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Callable

from records_sync.core.errors import PersistenceError
from records_sync.domain.sync_models import AuditRecord
from records_sync.infrastructure.repos_sync_queue_sqlite import to_db_timestamp
from records_sync.infrastructure.sqlite_uow import transaction


def _execute_with_validation(cursor: sqlite3.Cursor, sql: str, params: tuple[object, ...], context: str) -> None:
    expected = sql.count("?")
    actual = len(params)
    if expected != actual:
        raise ValueError(
            f"SQL param mismatch for {context}: expected {expected} placeholders, got {actual} parameters."
        )
    cursor.execute(sql, params)


class SQLiteAuditLogRepository:
    """Append-only audit sink; rows are never updated or deleted."""

    def __init__(
        self,
        connection: sqlite3.Connection,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._connection = connection
        self._connection.row_factory = sqlite3.Row
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))

    def record(self, audit: AuditRecord) -> None:
        try:
            with transaction(self._connection):
                _execute_with_validation(
                    self._connection.cursor(),
                    """
                    INSERT INTO audit_logs (
                        id, entity_type, entity_id, officer_id, action, details_json, success, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(uuid.uuid4()),
                        audit.entity_type,
                        audit.entity_id,
                        audit.officer_id,
                        audit.action,
                        json.dumps(audit.details, ensure_ascii=False, default=str),
                        1 if audit.success else 0,
                        to_db_timestamp(self._now_provider()),
                    ),
                    "audit_logs.insert",
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Audit log write failed: {exc}") from exc

    def list_for_entity(self, entity_type: str, entity_id: str) -> list[AuditRecord]:
        cursor = self._connection.cursor()
        cursor.execute(
            """
            SELECT entity_type, entity_id, officer_id, action, details_json, success
            FROM audit_logs
            WHERE entity_type = ? AND entity_id = ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (entity_type, entity_id),
        )
        return [
            AuditRecord(
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                officer_id=row["officer_id"],
                action=row["action"],
                success=bool(row["success"]),
                details=json.loads(row["details_json"] or "{}"),
            )
            for row in cursor.fetchall()
        ]

    def count(self, *, success: bool | None = None) -> int:
        cursor = self._connection.cursor()
        if success is None:
            cursor.execute("SELECT COUNT(*) AS total FROM audit_logs")
        else:
            cursor.execute("SELECT COUNT(*) AS total FROM audit_logs WHERE success = ?", (1 if success else 0,))
        row = cursor.fetchone()
        return int(row["total"] if row else 0)
