from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from records_sync.domain.sync_models import (
    AuditRecord,
    CommitOutcome,
    QuarantineReport,
    SyncQueueEntry,
    SyncStatus,
)


class SyncQueueRepository(Protocol):
    def create(self, entity_type: str, entity_id: str, operation: str, payload: Any) -> SyncQueueEntry:
        ...

    def get_by_id(self, entry_id: str) -> SyncQueueEntry | None:
        ...

    def get_pending_entries(self, limit: int | None = None) -> list[SyncQueueEntry]:
        ...

    def get_failed_entries(self, max_attempts: int = 3, limit: int | None = None) -> list[SyncQueueEntry]:
        ...

    def get_quarantined_entries(self, max_attempts: int = 3) -> list[SyncQueueEntry]:
        ...

    def get_stale_processing(self, older_than: datetime) -> list[SyncQueueEntry]:
        ...

    def get_entries_by_entity(self, entity_type: str, entity_id: str) -> list[SyncQueueEntry]:
        ...

    def claim(self, entry_id: str, expected_status: SyncStatus) -> SyncQueueEntry | None:
        ...

    def claim_for_retry(self, entry_id: str) -> SyncQueueEntry | None:
        ...

    def release_stale_claim(self, entry_id: str, error: str, claimed_before: datetime) -> SyncQueueEntry | None:
        ...

    def update(self, entry_id: str, **fields: Any) -> SyncQueueEntry:
        ...

    def mark_as_completed(self, entry_id: str) -> SyncQueueEntry:
        ...

    def mark_as_failed(self, entry_id: str, error: str, *, count_attempt: bool = True) -> SyncQueueEntry:
        ...

    def increment_attempt(self, entry_id: str) -> SyncQueueEntry:
        ...

    def delete(self, entry_id: str) -> None:
        ...

    def delete_completed(self, older_than_days: int = 7) -> int:
        ...

    def count_pending(self) -> int:
        ...

    def count_failed(self) -> int:
        ...

    def count_by_status(self) -> dict[str, int]:
        ...

    def last_synced_at(self) -> datetime | None:
        ...


class CommitCollaborator(Protocol):
    def commit(self, operation: str, entity_id: str, payload: Any) -> CommitOutcome:
        ...


class AuditSink(Protocol):
    def record(self, audit: AuditRecord) -> None:
        ...


class QuarantineReportRenderer(Protocol):
    def render(self, report: QuarantineReport, destination: Path) -> Path:
        ...
