from __future__ import annotations

from records_sync.core.errors import InvalidTransitionError
from records_sync.domain.sync_models import SyncStatus

ALLOWED_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.PENDING: frozenset({SyncStatus.PROCESSING}),
    SyncStatus.PROCESSING: frozenset({SyncStatus.COMPLETED, SyncStatus.FAILED}),
    SyncStatus.FAILED: frozenset({SyncStatus.PENDING}),
    SyncStatus.COMPLETED: frozenset(),
}


def can_transition(current: SyncStatus, target: SyncStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(entry_id: str, current: SyncStatus, target: SyncStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(entry_id, current.value, target.value)
