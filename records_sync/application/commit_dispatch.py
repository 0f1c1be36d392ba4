from __future__ import annotations

import logging
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError

from records_sync.core.errors import (
    CommitFailureError,
    CommitTimeoutError,
    UnsupportedEntityTypeError,
)
from records_sync.domain.ports import CommitCollaborator
from records_sync.domain.sync_models import CommitOutcome, SyncQueueEntry

logger = logging.getLogger(__name__)


class CommitDispatcher:
    """Routes a queue entry to the collaborator registered for its entity type.

    Each commit is bounded by ``timeout_seconds``. A timed-out commit keeps
    running in its worker thread; only the entry is marked as failed.
    """

    def __init__(
        self,
        collaborators: Mapping[str, CommitCollaborator] | None = None,
        *,
        timeout_seconds: float = 30.0,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError(f"Commit timeout must be positive, got {timeout_seconds!r}")
        self._collaborators: dict[str, CommitCollaborator] = dict(collaborators or {})
        self._timeout_seconds = timeout_seconds

    def register(self, entity_type: str, collaborator: CommitCollaborator) -> None:
        self._collaborators[str(entity_type)] = collaborator

    def registered_entity_types(self) -> tuple[str, ...]:
        return tuple(self._collaborators)

    def commit(self, entry: SyncQueueEntry) -> CommitOutcome:
        collaborator = self._collaborators.get(entry.entity_type)
        if collaborator is None:
            raise UnsupportedEntityTypeError(entry.entity_type)
        return self._run_with_timeout(collaborator, entry, self._timeout_seconds)

    def _run_with_timeout(
        self, collaborator: CommitCollaborator, entry: SyncQueueEntry, timeout_seconds: float
    ) -> CommitOutcome:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync-commit")
        try:
            future = executor.submit(self._invoke, collaborator, entry)
            try:
                return future.result(timeout=timeout_seconds)
            except FuturesTimeoutError as exc:
                logger.warning(
                    "sync_commit_timeout entry_id=%s entity_type=%s timeout_seconds=%s",
                    entry.id,
                    entry.entity_type,
                    timeout_seconds,
                )
                raise CommitTimeoutError(entry.entity_type, timeout_seconds) from exc
        finally:
            executor.shutdown(wait=False)

    @staticmethod
    def _invoke(collaborator: CommitCollaborator, entry: SyncQueueEntry) -> CommitOutcome:
        try:
            outcome = collaborator.commit(entry.operation, entry.entity_id, entry.payload)
        except CommitFailureError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CommitFailureError(str(exc) or type(exc).__name__) from exc
        if outcome is None:
            return CommitOutcome(entity_id=entry.entity_id)
        return outcome
