from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

SYSTEM_OFFICER_ID = "system"
SYNC_AUDIT_ENTITY_TYPE = "syncQueue"
SYNC_AUDIT_ACTION = "sync"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_CLEANUP_DAYS = 7


class EntityType(str, Enum):
    CASE = "case"
    PERSON = "person"
    EVIDENCE = "evidence"
    CASE_PERSON = "casePerson"


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncQueueEntry:
    id: str
    entity_type: str
    entity_id: str
    operation: str
    payload: Any
    status: SyncStatus
    attempts: int
    error: str | None
    created_at: datetime
    synced_at: datetime | None = None
    schema_version: int = 1
    claimed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "operation": self.operation,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "createdAt": _iso_or_none(self.created_at),
            "syncedAt": _iso_or_none(self.synced_at),
            "schemaVersion": self.schema_version,
        }


@dataclass(frozen=True)
class SyncError:
    entry_id: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"entryId": self.entry_id, "error": self.error}


@dataclass(frozen=True)
class SyncResult:
    success: bool
    synced: int
    failed: int
    errors: tuple[SyncError, ...] = ()
    skipped: int = 0

    @classmethod
    def empty(cls) -> "SyncResult":
        return cls(success=True, synced=0, failed=0, errors=())

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "synced": self.synced,
            "failed": self.failed,
            "errors": [error.to_dict() for error in self.errors],
            "skipped": self.skipped,
        }


@dataclass(frozen=True)
class SyncStats:
    pending: int
    failed: int
    last_sync_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "failed": self.failed,
            "lastSyncAt": _iso_or_none(self.last_sync_at),
        }


@dataclass(frozen=True)
class CommitOutcome:
    """Result of applying one change; ``entity_id`` may be server-assigned on create."""

    entity_id: str


@dataclass(frozen=True)
class AuditRecord:
    entity_type: str
    entity_id: str | None
    officer_id: str | None
    action: str
    success: bool
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Alert:
    key: str
    severity: str
    message: str


@dataclass(frozen=True)
class MaintenanceReport:
    generated_at: datetime
    deleted_completed: int
    released_claims: int
    counts_by_status: dict[str, int]
    stats: SyncStats
    quarantined: int
    near_quarantine: int
    alerts: tuple[Alert, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "generatedAt": _iso_or_none(self.generated_at),
            "deletedCompleted": self.deleted_completed,
            "releasedClaims": self.released_claims,
            "countsByStatus": dict(self.counts_by_status),
            "stats": self.stats.to_dict(),
            "quarantined": self.quarantined,
            "nearQuarantine": self.near_quarantine,
            "alerts": [{"key": a.key, "severity": a.severity, "message": a.message} for a in self.alerts],
        }


@dataclass(frozen=True)
class QuarantineReport:
    generated_at: datetime
    max_attempts: int
    entries: tuple[SyncQueueEntry, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.entries


def _iso_or_none(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")
