"""
Consent Lifecycle Manager
=========================
Schedules and runs time-driven consent work:

- deletion of data collected under a withdrawn category, once the
  category's retention period has passed;
- renewal reminders when a subject's consent reaches its region's
  renewal period;
- erasure of everything stored about a subject on request.

Jobs live in the ``lifecycle_jobs`` table with at most one pending job
per (kind, subject, category). Sweeps are single-flight and every job is
safe to run again after a crash: the collaborator call is idempotent and
the job is marked completed together with its audit entry.
"""

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog

from core.interfaces import DataDeleter, NullRenewalNotifier, RenewalNotifier
from core.models import (
    AuditAction,
    AuditEntry,
    ChangeEvent,
    ConsentState,
    JobKind,
    JobStatus,
    LifecycleJob,
    SweepReport,
)
from core.utils import redact, utcnow
from consent.audit_log import AuditLog
from consent.persistence import ConsentDB
from consent.regional import RegionalComplianceResolver
from consent.registry import CategoryRegistry
from consent.store import ConsentStore
from propagation.event_bus import ConsentSubscriber

logger = structlog.get_logger(__name__)


class LifecycleManager(ConsentSubscriber):
    """
    Renewal, deletion and erasure scheduling for consent records.

    Subscribes to the event bus: withdrawals schedule deletions, re-grants
    cancel them, and every change pushes the renewal date out.
    """

    def __init__(
        self,
        db: ConsentDB,
        store: ConsentStore,
        registry: CategoryRegistry,
        resolver: RegionalComplianceResolver,
        audit_log: AuditLog,
        deleter: Optional[DataDeleter] = None,
        notifier: Optional[RenewalNotifier] = None,
        sweep_interval: float = 3600,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the lifecycle manager.

        Args:
            db: Consent database holding the job table.
            store: Consent store (read for current state, erased on request).
            registry: Category registry (retention periods).
            resolver: Regional ruleset resolver (renewal periods).
            audit_log: Audit log for completion entries.
            deleter: Data deletion collaborator. Without one, due deletion
                jobs stay pending and are never reported as completed.
            notifier: Renewal reminder collaborator.
            sweep_interval: Seconds between background sweeps.
            clock: Source of the current time.
        """
        self.db = db
        self.store = store
        self.registry = registry
        self.resolver = resolver
        self.audit_log = audit_log
        self.deleter = deleter
        self.notifier = notifier or NullRenewalNotifier()
        self.sweep_interval = sweep_interval
        self.clock = clock

        self._sweep_lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[SweepReport] = None

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def schedule_renewal(self, subject: str, period: timedelta) -> LifecycleJob:
        """Set the subject's single pending renewal to ``now + period``."""
        due = self.clock() + period
        with self.db.transaction() as conn:
            job = self.db.upsert_pending_job(conn, JobKind.RENEWAL, subject, "", due)
        logger.debug("Renewal scheduled", subject=redact(subject), due_at=job.due_at.isoformat())
        return job

    def on_withdrawal(self, event: ChangeEvent) -> Optional[LifecycleJob]:
        """
        Schedule deletion of the data collected under a withdrawn category.

        Only a granted -> denied transition schedules work. A second
        withdrawal before the job runs keeps one job with the later due time.
        """
        if not event.is_withdrawal:
            return None
        category = self.registry.get(event.category)
        due = self.clock() + category.retention_period
        with self.db.transaction() as conn:
            job = self.db.upsert_pending_job(
                conn, JobKind.DELETION, event.subject, event.category, due, keep_latest=True
            )
        logger.info(
            "Deletion scheduled",
            subject=redact(event.subject),
            category=event.category,
            due_at=job.due_at.isoformat(),
        )
        return job

    def cancel_deletion(self, subject: str, category: str) -> int:
        with self.db.transaction() as conn:
            cancelled = self.db.cancel_pending_jobs(conn, subject, JobKind.DELETION, category)
        if cancelled:
            logger.info("Pending deletion cancelled", subject=redact(subject), category=category)
        return cancelled

    def handle(self, event: ChangeEvent) -> None:
        if event.is_withdrawal:
            self.on_withdrawal(event)
        elif event.is_grant:
            self.cancel_deletion(event.subject, event.category)

        subject_row = self.db.get_subject(event.subject) or {}
        ruleset = self.resolver.resolve(subject_row.get("region"))
        self.schedule_renewal(event.subject, ruleset.renewal_period)

    def pending_jobs(
        self, subject: Optional[str] = None, kind: Optional[JobKind] = None
    ) -> List[LifecycleJob]:
        return self.db.list_jobs(subject=subject, status=JobStatus.PENDING, kind=kind)

    # -------------------------------------------------------------------------
    # Sweep
    # -------------------------------------------------------------------------

    def process_due(self) -> Optional[SweepReport]:
        """
        Run every pending job that is due.

        Returns:
            The sweep report, or None if another sweep is already running.
        """
        if not self._sweep_lock.acquire(blocking=False):
            logger.debug("Sweep already in progress, skipping")
            return None
        try:
            now = self.clock()
            report = SweepReport(started_at=now)
            for job in self.db.list_jobs(status=JobStatus.PENDING, due_before=now):
                try:
                    if job.kind == JobKind.DELETION:
                        if self._run_deletion(job):
                            report.deletions_completed += 1
                    elif self._run_renewal(job):
                        report.renewals_sent += 1
                except Exception as e:
                    report.jobs_failed += 1
                    report.failed_job_ids.append(job.job_id)
                    logger.error(
                        "Lifecycle job failed",
                        job_id=job.job_id,
                        kind=job.kind.value,
                        subject=redact(job.subject),
                        error=str(e),
                    )
            report.finished_at = self.clock()
            self.last_report = report
            logger.info(
                "Lifecycle sweep finished",
                deletions=report.deletions_completed,
                renewals=report.renewals_sent,
                failed=report.jobs_failed,
            )
            return report
        finally:
            self._sweep_lock.release()

    def _run_deletion(self, job: LifecycleJob) -> bool:
        state = self.store.get(job.subject, job.category)
        if state == ConsentState.GRANTED:
            # re-granted after the job was queued
            self.cancel_deletion(job.subject, job.category)
            return False

        if self.deleter is None:
            logger.warning(
                "No data deleter configured, deletion left pending",
                job_id=job.job_id,
                category=job.category,
            )
            return False
        self.deleter.delete_data(job.subject, job.category)
        with self.db.transaction() as conn:
            if not self.db.complete_job(conn, job.job_id):
                return False
            self.audit_log.append(
                AuditEntry(
                    action=AuditAction.DELETION_COMPLETED,
                    subject=job.subject,
                    category=job.category,
                    timestamp=self.clock(),
                    source="lifecycle",
                    details={"job_id": job.job_id, "due_at": job.due_at.isoformat()},
                ),
                conn,
            )
        logger.info("Category data deleted", subject=redact(job.subject), category=job.category)
        return True

    def _run_renewal(self, job: LifecycleJob) -> bool:
        subject_row = self.db.get_subject(job.subject) or {}
        ruleset = self.resolver.resolve(subject_row.get("region"))
        self.notifier.send_renewal_reminder(job.subject, ruleset)
        with self.db.transaction() as conn:
            if not self.db.complete_job(conn, job.job_id):
                return False
            self.audit_log.append(
                AuditEntry(
                    action=AuditAction.RENEWAL_REMINDER_SENT,
                    subject=job.subject,
                    timestamp=self.clock(),
                    source="lifecycle",
                    details={"job_id": job.job_id, "region": ruleset.region},
                ),
                conn,
            )
        return True

    # -------------------------------------------------------------------------
    # Erasure
    # -------------------------------------------------------------------------

    def erase_subject(self, subject: str, reason: str = "erasure_request") -> AuditEntry:
        """
        Erase everything held about a subject.

        Deletes collected data through the deleter, then removes consent
        records and audit history and cancels pending jobs in one
        transaction. The returned tombstone is the only remaining trace.
        """
        if self.deleter is None:
            logger.warning("No data deleter configured, erasing engine records only")
        else:
            self.deleter.delete_data(subject, None)
        with self.db.transaction() as conn:
            self.store.erase_subject(subject, conn)
            tombstone = self.audit_log.erase_subject(subject, reason)
            cancelled = self.db.cancel_pending_jobs(conn, subject)
        self.store.refresh_listeners(subject)
        logger.info(
            "Subject erased",
            subject=redact(subject),
            jobs_cancelled=cancelled,
            reason=reason,
        )
        return tombstone

    # -------------------------------------------------------------------------
    # Background loop
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start periodic sweeps."""
        if self._task is None:
            self._task = asyncio.create_task(self._sweep_loop())
            logger.info("Lifecycle sweeps started", interval=self.sweep_interval)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Lifecycle sweeps stopped")

    async def _sweep_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                await loop.run_in_executor(None, self.process_due)
                await asyncio.sleep(self.sweep_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Lifecycle sweep failed", error=str(e))
                await asyncio.sleep(self.sweep_interval)
