from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from records_sync.application.sync_service import SyncService
from records_sync.core.observability import OperationContext, log_event
from records_sync.domain.ports import SyncQueueRepository
from records_sync.domain.sync_models import (
    DEFAULT_CLEANUP_DAYS,
    Alert,
    MaintenanceReport,
)

logger = logging.getLogger(__name__)

STALE_CLAIM_ERROR = "Claim expired before commit finished"
DEFAULT_STALE_CLAIM_MINUTES = 15
DEFAULT_BACKLOG_WARNING_THRESHOLD = 50


class MaintenanceTask:
    """Periodic housekeeping over the queue: stale claims, cleanup and alerts."""

    def __init__(
        self,
        service: SyncService,
        queue: SyncQueueRepository,
        *,
        cleanup_older_than_days: int = DEFAULT_CLEANUP_DAYS,
        stale_claim_minutes: int = DEFAULT_STALE_CLAIM_MINUTES,
        backlog_warning_threshold: int = DEFAULT_BACKLOG_WARNING_THRESHOLD,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._service = service
        self._queue = queue
        self._cleanup_older_than_days = cleanup_older_than_days
        self._stale_claim_minutes = stale_claim_minutes
        self._backlog_warning_threshold = backlog_warning_threshold
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))

    def run(self, now: datetime | None = None) -> MaintenanceReport:
        now = now or self._now_provider()
        with OperationContext("sync_maintenance"):
            released = self._release_stale_claims(now)
            deleted = self._service.cleanup_old_entries(self._cleanup_older_than_days)
            counts = self._queue.count_by_status()
            stats = self._service.get_sync_stats()
            max_attempts = self._service.max_attempts
            quarantined = len(self._queue.get_quarantined_entries(max_attempts))
            near_quarantine = self._count_near_quarantine(max_attempts)
            alerts = self._evaluate_alerts(
                released=released,
                pending=stats.pending,
                quarantined=quarantined,
                near_quarantine=near_quarantine,
            )
            report = MaintenanceReport(
                generated_at=now,
                deleted_completed=deleted,
                released_claims=released,
                counts_by_status=counts,
                stats=stats,
                quarantined=quarantined,
                near_quarantine=near_quarantine,
                alerts=tuple(alerts),
            )
            log_event(logger, "sync_maintenance_finished", report.to_dict())
            return report

    def _release_stale_claims(self, now: datetime) -> int:
        cutoff = now - timedelta(minutes=self._stale_claim_minutes)
        released = 0
        for entry in self._queue.get_stale_processing(cutoff):
            if self._queue.release_stale_claim(entry.id, STALE_CLAIM_ERROR, cutoff) is None:
                # Finished or claimed again since the lookup.
                continue
            released += 1
            logger.warning(
                "sync_stale_claim_released entry_id=%s claimed_at=%s",
                entry.id,
                entry.claimed_at.isoformat() if entry.claimed_at else None,
            )
        return released

    def _count_near_quarantine(self, max_attempts: int) -> int:
        if max_attempts <= 1:
            return 0
        failed = self._queue.get_failed_entries(max_attempts)
        return sum(1 for entry in failed if entry.attempts == max_attempts - 1)

    def _evaluate_alerts(
        self,
        *,
        released: int,
        pending: int,
        quarantined: int,
        near_quarantine: int,
    ) -> list[Alert]:
        alerts: list[Alert] = []
        if quarantined > 0:
            alerts.append(
                Alert(
                    key="quarantined_entries",
                    severity="ERROR",
                    message=f"{quarantined} entries exhausted their attempts and need operator review.",
                )
            )
        if near_quarantine > 0:
            alerts.append(
                Alert(
                    key="near_quarantine",
                    severity="WARN",
                    message=f"{near_quarantine} failed entries have one attempt left.",
                )
            )
        if pending >= self._backlog_warning_threshold:
            alerts.append(
                Alert(
                    key="pending_backlog",
                    severity="WARN",
                    message=f"{pending} changes are waiting to be synchronized.",
                )
            )
        if released > 0:
            alerts.append(
                Alert(
                    key="stale_claims_released",
                    severity="WARN",
                    message=f"{released} entries were stuck in processing and were marked as failed.",
                )
            )
        return alerts
