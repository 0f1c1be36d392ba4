from __future__ import annotations

from pathlib import Path

from records_sync.bootstrap.container import build_container
from records_sync.domain.sync_models import EntityType, SyncStatus
from records_sync.infrastructure.db import get_connection
from records_sync.infrastructure.local_config import SyncSettings
from tests.fakes import FakeCommitCollaborator


def _settings(tmp_path: Path, **overrides) -> SyncSettings:
    return SyncSettings(db_path=tmp_path / "smoke.db", **overrides)


def test_build_container_smoke(tmp_path: Path) -> None:
    container = build_container(
        _settings(tmp_path),
        connection_factory=lambda settings: get_connection(settings.db_path),
    )
    try:
        assert container.sync_service is not None
        assert container.maintenance_task is not None
        assert container.quarantine_report_service is not None
        assert set(container.record_stores) == {entity_type.value for entity_type in EntityType}
        assert set(container.dispatcher.registered_entity_types()) == set(container.record_stores)
    finally:
        container.close()


def test_default_stores_commit_and_assign_server_ids(tmp_path: Path) -> None:
    container = build_container(
        _settings(tmp_path),
        connection_factory=lambda settings: get_connection(settings.db_path),
    )
    try:
        service = container.sync_service
        entry = service.queue_change(
            "case", "tmp-1", "create", {"caseNumber": "C-1", "title": "Theft", "officerId": "off-1"}
        )

        result = service.process_pending_sync()

        assert result.synced == 1
        assert container.queue_repository.get_by_id(entry.id).status == SyncStatus.COMPLETED
        server_id = container.record_stores["case"].resolve_id("tmp-1")
        assert server_id is not None and server_id.startswith("case-")
        audits = container.audit_repository.list_for_entity("syncQueue", entry.id)
        assert audits[0].details["serverEntityId"] == server_id
    finally:
        container.close()


def test_settings_flow_into_services(tmp_path: Path) -> None:
    collaborator = FakeCommitCollaborator()
    container = build_container(
        _settings(tmp_path, max_attempts=5, batch_limit=1),
        connection_factory=lambda settings: get_connection(settings.db_path),
        collaborators={"case": collaborator},
    )
    try:
        service = container.sync_service
        payload = {"caseNumber": "C-1", "title": "Theft", "officerId": "off-1"}
        service.queue_change("case", "c-1", "create", payload)
        service.queue_change("case", "c-2", "create", payload)

        assert service.max_attempts == 5
        assert service.process_pending_sync().synced == 1
        assert collaborator.committed_ids() == ["c-1"]
        assert container.record_stores == {}
    finally:
        container.close()
