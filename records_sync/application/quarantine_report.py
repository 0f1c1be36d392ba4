from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from records_sync.domain.ports import QuarantineReportRenderer, SyncQueueRepository
from records_sync.domain.sync_models import DEFAULT_MAX_ATTEMPTS, QuarantineReport

logger = logging.getLogger(__name__)


class QuarantineReportService:
    """Collects entries that ran out of attempts so an operator can act on them."""

    def __init__(
        self,
        queue: SyncQueueRepository,
        renderer: QuarantineReportRenderer,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._queue = queue
        self._renderer = renderer
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))

    def build(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> QuarantineReport:
        entries = self._queue.get_quarantined_entries(max_attempts)
        return QuarantineReport(
            generated_at=self._now_provider(),
            max_attempts=max_attempts,
            entries=tuple(entries),
        )

    def export_pdf(self, destination: Path, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> Path:
        report = self.build(max_attempts)
        path = self._renderer.render(report, Path(destination))
        logger.info(
            "quarantine_report_exported path=%s entries=%s max_attempts=%s",
            path,
            len(report.entries),
            max_attempts,
        )
        return path
