from __future__ import annotations

from pathlib import Path

from records_sync.application.quarantine_report import QuarantineReportService
from records_sync.application.sync_service import SyncService
from records_sync.domain.sync_models import QuarantineReport
from tests.fakes import BASE_NOW

CASE = {"caseNumber": "C-1", "title": "Theft", "officerId": "off-1"}


class _CapturingRenderer:
    def __init__(self) -> None:
        self.reports: list[tuple[QuarantineReport, Path]] = []

    def render(self, report: QuarantineReport, destination: Path) -> Path:
        self.reports.append((report, destination))
        return destination


def _exhaust(sync_service: SyncService, collaborator, entity_id: str) -> None:
    collaborator.fail(entity_id, RuntimeError("rejected"), times=5)
    sync_service.queue_change("case", entity_id, "create", CASE)
    sync_service.process_pending_sync()
    sync_service.retry_failed_sync()
    sync_service.retry_failed_sync()


def test_build_lists_only_exhausted_entries(sync_service: SyncService, queue_repo, clock, collaborator) -> None:
    _exhaust(sync_service, collaborator, "c-1")
    collaborator.fail("c-2", RuntimeError("rejected"))
    sync_service.queue_change("case", "c-2", "create", CASE)
    sync_service.process_pending_sync()

    report = QuarantineReportService(queue_repo, _CapturingRenderer(), now_provider=clock).build(3)

    assert [entry.entity_id for entry in report.entries] == ["c-1"]
    assert report.generated_at == BASE_NOW
    assert report.max_attempts == 3
    assert not report.is_empty


def test_lower_threshold_widens_report(sync_service: SyncService, queue_repo, clock, collaborator) -> None:
    collaborator.fail("c-2", RuntimeError("rejected"))
    sync_service.queue_change("case", "c-2", "create", CASE)
    sync_service.process_pending_sync()
    service = QuarantineReportService(queue_repo, _CapturingRenderer(), now_provider=clock)

    assert service.build(3).is_empty
    assert len(service.build(1).entries) == 1


def test_export_delegates_to_renderer(sync_service: SyncService, queue_repo, clock, collaborator, tmp_path) -> None:
    _exhaust(sync_service, collaborator, "c-1")
    renderer = _CapturingRenderer()
    service = QuarantineReportService(queue_repo, renderer, now_provider=clock)

    path = service.export_pdf(tmp_path / "quarantine.pdf")

    assert path == tmp_path / "quarantine.pdf"
    report, destination = renderer.reports[0]
    assert destination == tmp_path / "quarantine.pdf"
    assert len(report.entries) == 1
