from __future__ import annotations

import logging
import sqlite3
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from records_sync.application.commit_dispatch import CommitDispatcher
from records_sync.application.sync_service import SyncService
from records_sync.core.metrics import metrics_registry
from records_sync.domain.sync_models import EntityType
from records_sync.infrastructure.migrations import run_migrations
from records_sync.infrastructure.repos_audit_sqlite import SQLiteAuditLogRepository
from records_sync.infrastructure.repos_sync_queue_sqlite import SyncQueueRepositorySQLite
from tests.fakes import BASE_NOW, FakeClock, FakeCommitCollaborator, RecordingAuditSink


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    metrics_registry.reset()
    yield
    metrics_registry.reset()


@pytest.fixture(autouse=True)
def _isolated_log_dir(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECORDS_SYNC_LOG_DIR", str(tmp_path_factory.mktemp("logs")))


@pytest.fixture
def connection() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(BASE_NOW)


@pytest.fixture
def queue_repo(connection: sqlite3.Connection, clock: FakeClock) -> SyncQueueRepositorySQLite:
    return SyncQueueRepositorySQLite(connection, now_provider=clock)


@pytest.fixture
def audit_repo(connection: sqlite3.Connection, clock: FakeClock) -> SQLiteAuditLogRepository:
    return SQLiteAuditLogRepository(connection, now_provider=clock)


@pytest.fixture
def collaborator() -> FakeCommitCollaborator:
    return FakeCommitCollaborator()


@pytest.fixture
def dispatcher(collaborator: FakeCommitCollaborator) -> CommitDispatcher:
    return CommitDispatcher(
        {entity_type.value: collaborator for entity_type in EntityType},
        timeout_seconds=5,
    )


@pytest.fixture
def sync_service(
    queue_repo: SyncQueueRepositorySQLite,
    audit_repo: SQLiteAuditLogRepository,
    dispatcher: CommitDispatcher,
) -> SyncService:
    return SyncService(queue_repo, audit_repo, dispatcher, max_attempts=3)


@pytest.fixture
def recording_audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture(autouse=True)
def _restore_root_logging() -> None:
    root_logger = logging.getLogger()
    original_level = root_logger.level
    yield
    for handler in list(root_logger.handlers):
        if isinstance(handler, RotatingFileHandler):
            root_logger.removeHandler(handler)
            handler.close()
    root_logger.setLevel(original_level)
