from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable

from records_sync.core.errors import CommitFailureError
from records_sync.domain.sync_models import CommitOutcome, SyncOperation
from records_sync.infrastructure.repos_sync_queue_sqlite import to_db_timestamp
from records_sync.infrastructure.sqlite_uow import transaction

logger = logging.getLogger(__name__)

PROVISIONAL_ID_PREFIXES = ("tmp-", "local-")


def is_provisional_id(entity_id: str) -> bool:
    return str(entity_id).startswith(PROVISIONAL_ID_PREFIXES)


class SQLiteRecordStore:
    """Generic commit collaborator that applies changes to ``authoritative_records``.

    One instance per entity type. A provisional client id on ``create`` is
    replaced by a server id of the form ``<entityType>-<uuid>``; later
    updates and deletes queued under the provisional id still resolve to
    the same record.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        entity_type: str,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._connection = connection
        self._connection.row_factory = sqlite3.Row
        self._entity_type = entity_type
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))

    @property
    def entity_type(self) -> str:
        return self._entity_type

    def commit(self, operation: str, entity_id: str, payload: Any) -> CommitOutcome:
        document = dict(payload) if isinstance(payload, Mapping) else {}
        try:
            if operation == SyncOperation.CREATE.value:
                return self._create(str(entity_id), document)
            if operation == SyncOperation.UPDATE.value:
                return self._update(str(entity_id), document)
            if operation == SyncOperation.DELETE.value:
                return self._delete(str(entity_id))
        except sqlite3.Error as exc:
            raise CommitFailureError(f"{self._entity_type} store unavailable: {exc}") from exc
        raise CommitFailureError(f"Unsupported operation: {operation}")

    def get(self, entity_id: str) -> dict[str, Any] | None:
        row = self._fetch(entity_id)
        if row is None or row["deleted"]:
            return None
        return json.loads(row["payload_json"])

    def resolve_id(self, entity_id: str) -> str | None:
        row = self._fetch(entity_id)
        return row["entity_id"] if row else None

    def _create(self, entity_id: str, document: dict[str, Any]) -> CommitOutcome:
        provisional = is_provisional_id(entity_id)
        with transaction(self._connection, immediate=True):
            existing = self._fetch(entity_id)
            if existing is not None and not existing["deleted"]:
                raise CommitFailureError(f"{self._entity_type} {existing['entity_id']} already exists")
            final_id = f"{self._entity_type}-{uuid.uuid4()}" if provisional else entity_id
            now = to_db_timestamp(self._now_provider())
            self._connection.execute(
                """
                INSERT INTO authoritative_records (
                    entity_type, entity_id, provisional_id, payload_json, deleted, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT (entity_type, entity_id)
                DO UPDATE SET payload_json = excluded.payload_json, deleted = 0, updated_at = excluded.updated_at
                """,
                (
                    self._entity_type,
                    final_id,
                    entity_id if provisional else None,
                    json.dumps(document, ensure_ascii=False),
                    now,
                    now,
                ),
            )
        if final_id != entity_id:
            logger.info(
                "record_store_id_assigned entity_type=%s provisional_id=%s server_id=%s",
                self._entity_type,
                entity_id,
                final_id,
            )
        return CommitOutcome(entity_id=final_id)

    def _update(self, entity_id: str, document: dict[str, Any]) -> CommitOutcome:
        with transaction(self._connection, immediate=True):
            existing = self._require_live(entity_id)
            merged = {**json.loads(existing["payload_json"]), **document}
            self._connection.execute(
                """
                UPDATE authoritative_records
                SET payload_json = ?, updated_at = ?
                WHERE entity_type = ? AND entity_id = ?
                """,
                (
                    json.dumps(merged, ensure_ascii=False),
                    to_db_timestamp(self._now_provider()),
                    self._entity_type,
                    existing["entity_id"],
                ),
            )
        return CommitOutcome(entity_id=existing["entity_id"])

    def _delete(self, entity_id: str) -> CommitOutcome:
        with transaction(self._connection, immediate=True):
            existing = self._require_live(entity_id)
            self._connection.execute(
                """
                UPDATE authoritative_records
                SET deleted = 1, updated_at = ?
                WHERE entity_type = ? AND entity_id = ?
                """,
                (to_db_timestamp(self._now_provider()), self._entity_type, existing["entity_id"]),
            )
        return CommitOutcome(entity_id=existing["entity_id"])

    def _require_live(self, entity_id: str) -> sqlite3.Row:
        row = self._fetch(entity_id)
        if row is None or row["deleted"]:
            raise CommitFailureError(f"{self._entity_type} {entity_id} does not exist")
        return row

    def _fetch(self, entity_id: str) -> sqlite3.Row | None:
        return self._connection.execute(
            """
            SELECT entity_id, payload_json, deleted
            FROM authoritative_records
            WHERE entity_type = ? AND (entity_id = ? OR provisional_id = ?)
            ORDER BY CASE WHEN entity_id = ? THEN 0 ELSE 1 END
            LIMIT 1
            """,
            (self._entity_type, entity_id, entity_id, entity_id),
        ).fetchone()
