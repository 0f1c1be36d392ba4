from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Mapping

from records_sync.application.commit_dispatch import CommitDispatcher
from records_sync.application.maintenance import MaintenanceTask
from records_sync.application.quarantine_report import QuarantineReportService
from records_sync.application.sync_service import SyncService
from records_sync.domain.ports import CommitCollaborator
from records_sync.domain.sync_models import EntityType
from records_sync.infrastructure.db import get_connection
from records_sync.infrastructure.local_config import SyncSettings, SyncSettingsStore
from records_sync.infrastructure.migrations import run_migrations
from records_sync.infrastructure.pdf.quarantine_pdf_reportlab import QuarantinePdfReportlab
from records_sync.infrastructure.record_store_sqlite import SQLiteRecordStore
from records_sync.infrastructure.repos_audit_sqlite import SQLiteAuditLogRepository
from records_sync.infrastructure.repos_sync_queue_sqlite import SyncQueueRepositorySQLite


@dataclass
class AppContainer:
    settings: SyncSettings
    connection: sqlite3.Connection
    queue_repository: SyncQueueRepositorySQLite
    audit_repository: SQLiteAuditLogRepository
    dispatcher: CommitDispatcher
    sync_service: SyncService
    maintenance_task: MaintenanceTask
    quarantine_report_service: QuarantineReportService
    record_stores: dict[str, SQLiteRecordStore] = field(default_factory=dict)

    def close(self) -> None:
        self.connection.close()


ConnectionFactory = Callable[[SyncSettings], sqlite3.Connection]


def _default_connection_factory(settings: SyncSettings) -> sqlite3.Connection:
    return get_connection(settings.db_path)


def build_container(
    settings: SyncSettings | None = None,
    *,
    connection_factory: ConnectionFactory = _default_connection_factory,
    collaborators: Mapping[str, CommitCollaborator] | None = None,
    now_provider: Callable[[], datetime] | None = None,
) -> AppContainer:
    """Wires the queue against one SQLite connection.

    Without explicit ``collaborators`` every known entity type commits to the
    local ``authoritative_records`` table.
    """
    settings = settings or SyncSettingsStore().load()
    connection = connection_factory(settings)
    run_migrations(connection)

    queue_repository = SyncQueueRepositorySQLite(connection, now_provider=now_provider)
    audit_repository = SQLiteAuditLogRepository(connection, now_provider=now_provider)

    record_stores: dict[str, SQLiteRecordStore] = {}
    if collaborators is None:
        record_stores = {
            entity_type.value: SQLiteRecordStore(connection, entity_type.value, now_provider=now_provider)
            for entity_type in EntityType
        }
        collaborators = record_stores
    dispatcher = CommitDispatcher(collaborators, timeout_seconds=settings.commit_timeout_seconds)

    sync_service = SyncService(
        queue_repository,
        audit_repository,
        dispatcher,
        max_attempts=settings.max_attempts,
        batch_limit=settings.batch_limit,
    )
    maintenance_task = MaintenanceTask(
        sync_service,
        queue_repository,
        cleanup_older_than_days=settings.cleanup_older_than_days,
        stale_claim_minutes=settings.stale_claim_minutes,
        backlog_warning_threshold=settings.backlog_warning_threshold,
        now_provider=now_provider,
    )
    quarantine_report_service = QuarantineReportService(
        queue_repository,
        QuarantinePdfReportlab(),
        now_provider=now_provider,
    )

    return AppContainer(
        settings=settings,
        connection=connection,
        queue_repository=queue_repository,
        audit_repository=audit_repository,
        dispatcher=dispatcher,
        sync_service=sync_service,
        maintenance_task=maintenance_task,
        quarantine_report_service=quarantine_report_service,
        record_stores=record_stores,
    )
