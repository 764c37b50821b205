"""
Compliance Monitor
==================
Periodic self-check of the consent data against the engine's own rules.

Each check contributes a weighted penalty to a 0-100 compliance score:

    consent_validity       30  records without a policy version
    data_retention         20  deletion jobs overdue past the grace window
    consent_integrity      15  record versions without matching audit entries
    processing_lawfulness  10  granted categories the subject's region forbids
    webhook_delivery       10  dead letters awaiting operator action
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from core.models import ConsentState, JobKind, JobStatus
from core.utils import isoformat, utcnow
from consent.audit_log import AuditLog
from consent.persistence import ConsentDB
from consent.regional import RegionalComplianceResolver

logger = structlog.get_logger(__name__)


CHECK_WEIGHTS = {
    "consent_validity": 30,
    "data_retention": 20,
    "consent_integrity": 15,
    "processing_lawfulness": 10,
    "webhook_delivery": 10,
}


class ComplianceIssue(BaseModel):
    """One finding of a compliance check."""

    check: str
    type: str
    description: str
    count: int
    severity: str = Field(..., description="low, medium, high or critical")
    examples: List[str] = Field(default_factory=list)


class ComplianceReport(BaseModel):
    """Outcome of a compliance run."""

    timestamp: datetime
    checks_performed: List[str] = Field(default_factory=list)
    issues: List[ComplianceIssue] = Field(default_factory=list)
    score: int = 100
    status: str = "compliant"

    @property
    def compliant(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": isoformat(self.timestamp),
            "checks_performed": self.checks_performed,
            "issues": [issue.model_dump() for issue in self.issues],
            "score": self.score,
            "status": self.status,
        }


def status_for_score(score: int) -> str:
    if score < 70:
        return "critical"
    if score < 85:
        return "warning"
    if score < 95:
        return "minor_issues"
    return "compliant"


class ComplianceMonitor:
    """Runs the compliance checks over the consent database."""

    def __init__(
        self,
        db: ConsentDB,
        audit_log: AuditLog,
        resolver: RegionalComplianceResolver,
        overdue_grace: timedelta = timedelta(days=1),
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            db: Consent database.
            audit_log: Audit log to reconcile records against.
            resolver: Regional ruleset resolver.
            overdue_grace: How long a due deletion may wait before it is flagged.
            clock: Source of the current time.
        """
        self.db = db
        self.audit_log = audit_log
        self.resolver = resolver
        self.overdue_grace = overdue_grace
        self.clock = clock
        self.last_report: Optional[ComplianceReport] = None

    def run_check(self) -> ComplianceReport:
        report = ComplianceReport(timestamp=self.clock())
        records = self.db.list_records()

        checks = {
            "consent_validity": lambda: self._check_validity(records),
            "data_retention": self._check_retention,
            "consent_integrity": lambda: self._check_integrity(records),
            "processing_lawfulness": lambda: self._check_lawfulness(records),
            "webhook_delivery": self._check_dead_letters,
        }
        for name, check in checks.items():
            report.checks_performed.append(name)
            issue = check()
            if issue is not None:
                report.issues.append(issue)
                report.score -= CHECK_WEIGHTS[name]

        report.status = status_for_score(report.score)
        self.last_report = report

        log = logger.warning if report.issues else logger.info
        log(
            "Compliance check completed",
            score=report.score,
            status=report.status,
            issues=[i.type for i in report.issues],
        )
        return report

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def _check_validity(self, records) -> Optional[ComplianceIssue]:
        missing = [r for r in records if not r.policy_version]
        if not missing:
            return None
        return ComplianceIssue(
            check="consent_validity",
            type="missing_policy_version",
            description="Consent records captured without a policy version",
            count=len(missing),
            severity="medium",
            examples=[f"{r.subject[:8]}:{r.category}" for r in missing[:5]],
        )

    def _check_retention(self) -> Optional[ComplianceIssue]:
        cutoff = self.clock() - self.overdue_grace
        overdue = self.db.list_jobs(
            status=JobStatus.PENDING, kind=JobKind.DELETION, due_before=cutoff
        )
        if not overdue:
            return None
        return ComplianceIssue(
            check="data_retention",
            type="overdue_deletions",
            description="Data kept past its retention period after withdrawal",
            count=len(overdue),
            severity="high",
            examples=[f"job:{job.job_id}" for job in overdue[:5]],
        )

    def _check_integrity(self, records) -> Optional[ComplianceIssue]:
        counts = self.audit_log.change_counts()
        unaudited = [
            r for r in records
            if counts.get((r.subject, r.category), 0) < r.version
        ]
        if not unaudited:
            return None
        return ComplianceIssue(
            check="consent_integrity",
            type="unaudited_changes",
            description="Record versions without a matching audit entry",
            count=len(unaudited),
            severity="medium",
            examples=[f"{r.subject[:8]}:{r.category}" for r in unaudited[:5]],
        )

    def _check_lawfulness(self, records) -> Optional[ComplianceIssue]:
        by_subject: Dict[str, Dict[str, ConsentState]] = defaultdict(dict)
        for record in records:
            by_subject[record.subject][record.category] = record.state

        unlawful = []
        for subject, states in by_subject.items():
            if ConsentState.GRANTED not in states.values():
                continue
            row = self.db.get_subject(subject) or {}
            violations = self.resolver.validate(states, row.get("region"))
            unlawful.extend(
                f"{subject[:8]}:{v.category}"
                for v in violations
                if v.kind == "forbidden_granted"
            )
        if not unlawful:
            return None
        return ComplianceIssue(
            check="processing_lawfulness",
            type="forbidden_processing",
            description="Granted categories that the subject's region forbids",
            count=len(unlawful),
            severity="critical",
            examples=unlawful[:5],
        )

    def _check_dead_letters(self) -> Optional[ComplianceIssue]:
        letters = self.db.list_dead_letters()
        if not letters:
            return None
        return ComplianceIssue(
            check="webhook_delivery",
            type="undelivered_consent_changes",
            description="Consent changes that never reached a subscribed service",
            count=len(letters),
            severity="medium",
            examples=[letter.service_id for letter in letters[:5]],
        )
