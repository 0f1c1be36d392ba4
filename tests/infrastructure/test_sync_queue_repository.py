from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from records_sync.core.errors import InvalidTransitionError, NotFoundError, PersistenceError
from records_sync.domain.sync_models import SyncQueueEntry, SyncStatus
from records_sync.infrastructure.repos_sync_queue_sqlite import (
    SyncQueueRepositorySQLite,
    from_db_timestamp,
    to_db_timestamp,
)

CASE_PAYLOAD = {"caseNumber": "C-1", "title": "Theft", "officerId": "off-1"}


def _fail_times(repo: SyncQueueRepositorySQLite, entry: SyncQueueEntry, times: int) -> SyncQueueEntry:
    repo.claim(entry.id, SyncStatus.PENDING)
    current = repo.mark_as_failed(entry.id, "boom #1")
    for attempt in range(2, times + 1):
        repo.increment_attempt(entry.id)
        repo.claim(entry.id, SyncStatus.PENDING)
        current = repo.mark_as_failed(entry.id, f"boom #{attempt}", count_attempt=False)
    return current


def _complete(repo: SyncQueueRepositorySQLite, entry: SyncQueueEntry) -> SyncQueueEntry:
    repo.claim(entry.id, SyncStatus.PENDING)
    return repo.mark_as_completed(entry.id)


def test_create_starts_pending_with_zero_attempts(queue_repo, clock) -> None:
    entry = queue_repo.create("case", "tmp-1", "create", CASE_PAYLOAD)

    assert entry.status == SyncStatus.PENDING
    assert entry.attempts == 0
    assert entry.error is None
    assert entry.synced_at is None
    assert entry.claimed_at is None
    assert entry.created_at == clock()
    assert entry.payload == CASE_PAYLOAD
    assert entry.schema_version == 1


def test_create_accepts_unknown_entity_type(queue_repo) -> None:
    entry = queue_repo.create("vehicle", "v-1", "create", {"plate": "1234ABC"})

    assert entry.entity_type == "vehicle"
    assert entry.schema_version == 1


def test_create_rejects_operation_outside_closed_set(queue_repo) -> None:
    with pytest.raises(PersistenceError):
        queue_repo.create("case", "c-1", "upsert", CASE_PAYLOAD)


def test_create_keeps_payload_verbatim_including_unicode(queue_repo) -> None:
    payload = {"firstName": "Iñaki", "lastName": "Öztürk", "nin": "X1", "tags": [1, None, True]}

    entry = queue_repo.create("person", "p-1", "update", payload)

    assert queue_repo.get_by_id(entry.id).payload == payload


def test_get_by_id_returns_none_for_unknown_entry(queue_repo) -> None:
    assert queue_repo.get_by_id("missing") is None


def test_pending_entries_are_fifo_by_creation_time(queue_repo, clock) -> None:
    clock.advance(minutes=5)
    later = queue_repo.create("case", "c-late", "create", CASE_PAYLOAD)
    clock.advance(minutes=-10)
    earlier = queue_repo.create("case", "c-early", "create", CASE_PAYLOAD)

    assert [entry.id for entry in queue_repo.get_pending_entries()] == [earlier.id, later.id]


def test_pending_entries_with_same_timestamp_keep_enqueue_order(queue_repo) -> None:
    ids = [queue_repo.create("case", f"c-{index}", "create", CASE_PAYLOAD).id for index in range(5)]

    assert [entry.id for entry in queue_repo.get_pending_entries()] == ids
    assert [entry.id for entry in queue_repo.get_pending_entries(limit=2)] == ids[:2]


def test_pending_entries_exclude_other_statuses(queue_repo) -> None:
    pending = queue_repo.create("case", "c-1", "create", CASE_PAYLOAD)
    processing = queue_repo.create("case", "c-2", "create", CASE_PAYLOAD)
    queue_repo.claim(processing.id, SyncStatus.PENDING)
    _complete(queue_repo, queue_repo.create("case", "c-3", "create", CASE_PAYLOAD))
    _fail_times(queue_repo, queue_repo.create("case", "c-4", "create", CASE_PAYLOAD), 1)

    assert [entry.id for entry in queue_repo.get_pending_entries()] == [pending.id]


def test_failed_entries_respect_quarantine_boundary(queue_repo) -> None:
    two = _fail_times(queue_repo, queue_repo.create("case", "c-2", "create", CASE_PAYLOAD), 2)
    three = _fail_times(queue_repo, queue_repo.create("case", "c-3", "create", CASE_PAYLOAD), 3)

    assert two.attempts == 2
    assert three.attempts == 3
    assert [entry.id for entry in queue_repo.get_failed_entries(3)] == [two.id]
    assert [entry.id for entry in queue_repo.get_quarantined_entries(3)] == [three.id]
    assert {entry.id for entry in queue_repo.get_failed_entries(4)} == {two.id, three.id}


def test_mark_as_completed_sets_synced_at_and_clears_error(queue_repo, clock) -> None:
    entry = queue_repo.create("case", "c-1", "create", CASE_PAYLOAD)
    _fail_times(queue_repo, entry, 1)
    queue_repo.increment_attempt(entry.id)
    queue_repo.claim(entry.id, SyncStatus.PENDING)
    clock.advance(seconds=30)

    completed = queue_repo.mark_as_completed(entry.id)

    assert completed.status == SyncStatus.COMPLETED
    assert completed.synced_at == clock()
    assert completed.error is None
    assert completed.claimed_at is None


def test_completing_twice_is_rejected(queue_repo) -> None:
    entry = _complete(queue_repo, queue_repo.create("case", "c-1", "create", CASE_PAYLOAD))

    with pytest.raises(InvalidTransitionError):
        queue_repo.mark_as_completed(entry.id)


def test_pending_entry_cannot_skip_processing(queue_repo) -> None:
    entry = queue_repo.create("case", "c-1", "create", CASE_PAYLOAD)

    with pytest.raises(InvalidTransitionError):
        queue_repo.mark_as_completed(entry.id)
    with pytest.raises(InvalidTransitionError):
        queue_repo.mark_as_failed(entry.id, "nope")

    assert queue_repo.get_by_id(entry.id).status == SyncStatus.PENDING


def test_mark_as_failed_counts_attempt_and_keeps_last_error(queue_repo) -> None:
    entry = queue_repo.create("case", "c-1", "create", CASE_PAYLOAD)

    failed = _fail_times(queue_repo, entry, 2)

    assert failed.status == SyncStatus.FAILED
    assert failed.attempts == 2
    assert failed.error == "boom #2"
    assert failed.synced_at is None


def test_increment_attempt_only_from_failed(queue_repo) -> None:
    entry = queue_repo.create("case", "c-1", "create", CASE_PAYLOAD)
    with pytest.raises(InvalidTransitionError):
        queue_repo.increment_attempt(entry.id)

    _fail_times(queue_repo, entry, 1)
    retried = queue_repo.increment_attempt(entry.id)

    assert retried.status == SyncStatus.PENDING
    assert retried.attempts == 2


@pytest.mark.parametrize(
    "call",
    [
        lambda repo: repo.mark_as_completed("missing"),
        lambda repo: repo.mark_as_failed("missing", "x"),
        lambda repo: repo.increment_attempt("missing"),
        lambda repo: repo.update("missing", error="x"),
        lambda repo: repo.delete("missing"),
        lambda repo: repo.claim("missing", SyncStatus.PENDING),
    ],
)
def test_unknown_entry_raises_not_found(queue_repo, call) -> None:
    with pytest.raises(NotFoundError):
        call(queue_repo)


def test_update_rejects_unknown_fields(queue_repo) -> None:
    entry = queue_repo.create("case", "c-1", "create", CASE_PAYLOAD)

    with pytest.raises(ValueError):
        queue_repo.update(entry.id, payload={"x": 1})


def test_update_never_decreases_attempts(queue_repo) -> None:
    entry = _fail_times(queue_repo, queue_repo.create("case", "c-1", "create", CASE_PAYLOAD), 2)

    with pytest.raises(ValueError):
        queue_repo.update(entry.id, attempts=1)

    assert queue_repo.update(entry.id, attempts=2, error="manual note").error == "manual note"


def test_update_validates_status_transitions(queue_repo) -> None:
    entry = queue_repo.create("case", "c-1", "create", CASE_PAYLOAD)

    with pytest.raises(InvalidTransitionError):
        queue_repo.update(entry.id, status="completed")

    processing = queue_repo.update(entry.id, status="processing")
    completed = queue_repo.update(entry.id, status="completed")

    assert processing.claimed_at is not None
    assert completed.synced_at is not None


def test_update_rejects_synced_at_outside_completed(queue_repo, clock) -> None:
    entry = queue_repo.create("case", "c-1", "create", CASE_PAYLOAD)

    with pytest.raises(ValueError):
        queue_repo.update(entry.id, synced_at=clock())


def test_delete_only_removes_completed_entries(queue_repo) -> None:
    pending = queue_repo.create("case", "c-1", "create", CASE_PAYLOAD)
    completed = _complete(queue_repo, queue_repo.create("case", "c-2", "create", CASE_PAYLOAD))

    with pytest.raises(InvalidTransitionError):
        queue_repo.delete(pending.id)
    queue_repo.delete(completed.id)

    assert queue_repo.get_by_id(completed.id) is None
    assert queue_repo.get_by_id(pending.id) is not None


def test_delete_completed_only_targets_old_completed_entries(queue_repo, clock) -> None:
    old_completed = _complete(queue_repo, queue_repo.create("case", "c-old", "create", CASE_PAYLOAD))
    old_pending = queue_repo.create("case", "c-pending", "create", CASE_PAYLOAD)
    old_failed = _fail_times(queue_repo, queue_repo.create("case", "c-failed", "create", CASE_PAYLOAD), 3)
    clock.advance(days=6)
    recent_completed = _complete(queue_repo, queue_repo.create("case", "c-recent", "create", CASE_PAYLOAD))
    clock.advance(days=2)

    deleted = queue_repo.delete_completed(7)

    assert deleted == 1
    assert queue_repo.get_by_id(old_completed.id) is None
    for survivor in (old_pending, old_failed, recent_completed):
        assert queue_repo.get_by_id(survivor.id) is not None


def test_delete_completed_returns_zero_when_nothing_matches(queue_repo) -> None:
    queue_repo.create("case", "c-1", "create", CASE_PAYLOAD)

    assert queue_repo.delete_completed() == 0


def test_counts_by_status(queue_repo) -> None:
    queue_repo.create("case", "c-1", "create", CASE_PAYLOAD)
    queue_repo.create("case", "c-2", "create", CASE_PAYLOAD)
    _fail_times(queue_repo, queue_repo.create("case", "c-3", "create", CASE_PAYLOAD), 1)
    _complete(queue_repo, queue_repo.create("case", "c-4", "create", CASE_PAYLOAD))

    assert queue_repo.count_pending() == 2
    assert queue_repo.count_failed() == 1
    assert queue_repo.count_by_status() == {"pending": 2, "processing": 0, "completed": 1, "failed": 1}


def test_last_synced_at_is_latest_completion(queue_repo, clock) -> None:
    assert queue_repo.last_synced_at() is None

    _complete(queue_repo, queue_repo.create("case", "c-1", "create", CASE_PAYLOAD))
    clock.advance(hours=1)
    latest = _complete(queue_repo, queue_repo.create("case", "c-2", "create", CASE_PAYLOAD))

    assert queue_repo.last_synced_at() == latest.synced_at


def test_entries_by_entity_are_newest_first(queue_repo, clock) -> None:
    first = queue_repo.create("person", "p-1", "create", {"nin": "1", "firstName": "A", "lastName": "B"})
    clock.advance(seconds=1)
    second = queue_repo.create("person", "p-1", "update", {"nin": "1", "firstName": "A", "lastName": "C"})
    queue_repo.create("person", "p-2", "create", {"nin": "2", "firstName": "D", "lastName": "E"})

    assert [entry.id for entry in queue_repo.get_entries_by_entity("person", "p-1")] == [second.id, first.id]
    assert queue_repo.get_entries_by_entity("person", "nobody") == []


def test_timestamps_round_trip_as_utc_with_z_suffix() -> None:
    value = datetime(2025, 3, 1, 8, 30, 15, 123456, tzinfo=timezone.utc)

    stored = to_db_timestamp(value)

    assert stored == "2025-03-01T08:30:15.123456Z"
    assert from_db_timestamp(stored) == value
    assert from_db_timestamp(None) is None


def test_non_utc_timestamps_are_normalized() -> None:
    madrid = timezone(timedelta(hours=1))

    assert to_db_timestamp(datetime(2025, 3, 1, 9, 0, tzinfo=madrid)) == "2025-03-01T08:00:00.000000Z"
