"""
Consent Engine Data Models
==========================
Pydantic models for data structures used throughout the consent engine.
Malformed input is rejected when a model is constructed, not when it is used.
"""

import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.utils import (
    compute_hash,
    generate_id,
    hash_identifier,
    isoformat,
    parse_duration,
    to_utc,
    utcnow,
)


NECESSARY_CATEGORY = "necessary"
LEGACY_CATEGORY = "analytics"

_CATEGORY_ID_RE = re.compile(r"^[a-z][a-z0-9_\-]*$")


# =============================================================================
# Enums
# =============================================================================


class ConsentState(str, Enum):
    """Stored consent state of a (subject, category) pair."""

    NOT_SET = "not_set"
    GRANTED = "granted"
    DENIED = "denied"


class RegionRequirement(str, Enum):
    """Per-region requirement attached to a consent category."""

    MANDATORY = "mandatory"
    OPTIONAL = "optional"
    FORBIDDEN = "forbidden"


class ConsentPosture(str, Enum):
    """Default posture of a region."""

    OPT_IN = "opt_in"  # GDPR-style
    OPT_OUT = "opt_out"  # CCPA-style


class UnsetTreatment(str, Enum):
    """How a `not_set` category reads for consumers in a region."""

    DENY = "deny"
    ALLOW = "allow"


class AuditAction(str, Enum):
    """Kinds of audit entries."""

    CONSENT_CHANGED = "consent_changed"
    DELETION_COMPLETED = "deletion_completed"
    RENEWAL_REMINDER_SENT = "renewal_reminder_sent"
    SUBJECT_ERASED = "subject_erased"


class JobKind(str, Enum):
    """Lifecycle job kinds."""

    RENEWAL = "renewal"
    DELETION = "deletion"


class JobStatus(str, Enum):
    """Lifecycle job status."""

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RetryStrategy(str, Enum):
    """Backoff strategies for webhook retries."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


def _normalize_region(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip().upper()


# =============================================================================
# Categories & Regional Rules
# =============================================================================


class ConsentCategory(BaseModel):
    """A named purpose for data processing with its own grant/deny state."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique category identifier")
    label: str = Field(..., min_length=1)
    description: str = Field(default="")
    dependencies: FrozenSet[str] = Field(
        default_factory=frozenset, description="Categories that must be granted first"
    )
    region_requirements: Dict[str, RegionRequirement] = Field(default_factory=dict)
    gated_services: Tuple[str, ...] = Field(
        default=(), description="Service ids enabled only while this category is granted"
    )
    retention_period: timedelta = Field(
        default=timedelta(days=30),
        description="Delay between withdrawal and data deletion",
    )
    legal_basis: str = Field(default="consent")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not _CATEGORY_ID_RE.match(v):
            raise ValueError(f"Invalid category id: {v!r}")
        return v

    @field_validator("retention_period", mode="before")
    @classmethod
    def parse_retention(cls, v: Any) -> timedelta:
        return parse_duration(v)

    @field_validator("region_requirements", mode="before")
    @classmethod
    def normalize_regions(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {_normalize_region(k): req for k, req in v.items()}
        return v

    @model_validator(mode="after")
    def check_self_dependency(self) -> "ConsentCategory":
        if self.id in self.dependencies:
            raise ValueError(f"Category {self.id!r} cannot depend on itself")
        if self.retention_period < timedelta(0):
            raise ValueError("retention_period must not be negative")
        return self

    def requirement_for(self, region: Optional[str]) -> RegionRequirement:
        """Requirement of this category in a region (optional when unlisted)."""
        return self.region_requirements.get(
            _normalize_region(region) or "", RegionRequirement.OPTIONAL
        )


class RegionRequirements(BaseModel):
    """Mandatory/forbidden category sets merged across the registry."""

    model_config = ConfigDict(frozen=True)

    region: Optional[str] = None
    mandatory: FrozenSet[str] = Field(default_factory=frozenset)
    forbidden: FrozenSet[str] = Field(default_factory=frozenset)


class RegionalRuleset(BaseModel):
    """Mandatory/forbidden categories and default posture for a region."""

    model_config = ConfigDict(frozen=True)

    region: str
    mandatory_categories: FrozenSet[str] = Field(default_factory=frozenset)
    forbidden_categories: FrozenSet[str] = Field(default_factory=frozenset)
    default_posture: ConsentPosture = ConsentPosture.OPT_IN
    renewal_period: timedelta = Field(default=timedelta(days=365))
    legal_basis: str = Field(default="consent")
    unset_treatment: UnsetTreatment = Field(
        ..., description="Explicit per-region reading of not_set; never inferred"
    )

    @field_validator("region", mode="before")
    @classmethod
    def normalize_region(cls, v: Any) -> str:
        return _normalize_region(v)

    @field_validator("renewal_period", mode="before")
    @classmethod
    def parse_renewal(cls, v: Any) -> timedelta:
        return parse_duration(v)

    @model_validator(mode="after")
    def check_disjoint(self) -> "RegionalRuleset":
        overlap = self.mandatory_categories & self.forbidden_categories
        if overlap:
            raise ValueError(
                f"Categories both mandatory and forbidden in {self.region}: {sorted(overlap)}"
            )
        if self.renewal_period <= timedelta(0):
            raise ValueError("renewal_period must be positive")
        return self


class ComplianceViolation(BaseModel):
    """A single regional-ruleset violation."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(..., description="missing_mandatory or forbidden_granted")
    category: str
    region: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.category}"

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "category": self.category, "region": self.region}


# =============================================================================
# Consent Records & Events
# =============================================================================


class ConsentMetadata(BaseModel):
    """Context supplied with a mutation. Raw IP/user agent are never stored."""

    policy_version: Optional[str] = None
    method: str = Field(default="api")
    source: str = Field(default="user")
    region: Optional[str] = None
    ip_address: Optional[str] = Field(default=None, repr=False)
    user_agent: Optional[str] = Field(default=None, repr=False)

    @field_validator("region", mode="before")
    @classmethod
    def normalize_region(cls, v: Any) -> Optional[str]:
        return _normalize_region(v)

    def context_hash(self, salt: str) -> Optional[str]:
        """Hash of the hashed IP and user agent."""
        if self.ip_address is None and self.user_agent is None:
            return None
        return compute_hash(
            {
                "ip": hash_identifier(self.ip_address, salt),
                "ua": hash_identifier(self.user_agent, salt),
            }
        )


class ConsentRecord(BaseModel):
    """Current state of one (subject, category) pair."""

    subject: str
    category: str
    state: ConsentState = ConsentState.NOT_SET
    version: int = Field(default=0, ge=0)
    timestamp: Optional[datetime] = None
    policy_version: Optional[str] = None
    method: Optional[str] = None
    context_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "category": self.category,
            "state": self.state.value,
            "version": self.version,
            "timestamp": isoformat(self.timestamp),
            "policy_version": self.policy_version,
            "method": self.method,
        }


class ConsentChange(BaseModel):
    """One entry of a bulk mutation."""

    category: str
    state: ConsentState


class ChangeEvent(BaseModel):
    """A committed consent change, as published on the event bus."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: generate_id("evt"))
    subject: str
    category: str
    previous_state: ConsentState
    new_state: ConsentState
    version: int
    timestamp: datetime = Field(default_factory=utcnow)
    source: str = Field(default="user")

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_utc(v)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.subject, self.category)

    @property
    def is_withdrawal(self) -> bool:
        return (
            self.previous_state == ConsentState.GRANTED
            and self.new_state == ConsentState.DENIED
        )

    @property
    def is_grant(self) -> bool:
        return self.new_state == ConsentState.GRANTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "subject": self.subject,
            "category": self.category,
            "previous_state": self.previous_state.value,
            "new_state": self.new_state.value,
            "version": self.version,
            "timestamp": isoformat(self.timestamp),
            "source": self.source,
        }


class AuditEntry(BaseModel):
    """Immutable audit trail entry."""

    model_config = ConfigDict(frozen=True)

    entry_id: Optional[int] = None
    action: AuditAction = AuditAction.CONSENT_CHANGED
    subject: str
    category: Optional[str] = None
    previous_state: Optional[ConsentState] = None
    new_state: Optional[ConsentState] = None
    version: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)
    source: str = Field(default="user")
    policy_version: Optional[str] = None
    method: Optional[str] = None
    context_hash: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_utc(v)

    @classmethod
    def from_change(
        cls,
        event: ChangeEvent,
        record: ConsentRecord,
        details: Optional[Dict[str, Any]] = None,
    ) -> "AuditEntry":
        """Build the audit entry recording a committed change."""
        return cls(
            action=AuditAction.CONSENT_CHANGED,
            subject=event.subject,
            category=event.category,
            previous_state=event.previous_state,
            new_state=event.new_state,
            version=event.version,
            timestamp=event.timestamp,
            source=event.source,
            policy_version=record.policy_version,
            method=record.method,
            context_hash=record.context_hash,
            details={"event_id": event.event_id, **(details or {})},
        )

    def to_log_entry(self) -> Dict[str, Any]:
        """Convert to a JSON-ready dict."""
        return {
            "entry_id": self.entry_id,
            "action": self.action.value,
            "subject": self.subject,
            "category": self.category,
            "previous_state": self.previous_state.value if self.previous_state else None,
            "new_state": self.new_state.value if self.new_state else None,
            "version": self.version,
            "timestamp": isoformat(self.timestamp),
            "source": self.source,
            "policy_version": self.policy_version,
            "method": self.method,
            "context_hash": self.context_hash,
            "details": self.details,
        }


class SubjectConsent(BaseModel):
    """Snapshot of every category state for a subject."""

    subject: str
    categories: Dict[str, ConsentState] = Field(default_factory=dict)
    versions: Dict[str, int] = Field(default_factory=dict)
    policy_version: Optional[str] = None
    region: Optional[str] = None
    loaded_at: datetime = Field(default_factory=utcnow)
    degraded: bool = Field(default=False, description="True when served fail-closed")

    def state_of(self, category: str) -> ConsentState:
        return self.categories.get(category, ConsentState.NOT_SET)

    def to_response(self) -> Dict[str, Any]:
        return {
            "categories": {k: v.value for k, v in sorted(self.categories.items())},
            "versions": dict(sorted(self.versions.items())),
            "policy_version": self.policy_version,
            "region": self.region,
        }


# =============================================================================
# Propagation Models
# =============================================================================


class RetryPolicy(BaseModel):
    """Retry/backoff policy for webhook delivery."""

    model_config = ConfigDict(frozen=True)

    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    max_attempts: int = Field(default=5, ge=1)
    initial_delay_seconds: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: float = Field(default=300.0, ge=0)

    def get_delay(self, attempts_made: int) -> timedelta:
        """Delay before the next attempt, given how many attempts were made."""
        if self.strategy == RetryStrategy.FIXED:
            seconds = self.initial_delay_seconds
        else:
            seconds = self.initial_delay_seconds * (
                self.multiplier ** max(0, attempts_made - 1)
            )
        return timedelta(seconds=min(seconds, self.max_delay_seconds))


class WebhookSubscription(BaseModel):
    """An external service receiving consent changes for a set of categories."""

    service_id: str = Field(..., min_length=1)
    endpoint: str
    categories: FrozenSet[str] = Field(default_factory=frozenset)
    secret: str = Field(..., min_length=1, repr=False)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout_seconds: float = Field(default=5.0, gt=0)
    active: bool = True
    delivery_cursor: Dict[str, int] = Field(
        default_factory=dict,
        description="Last delivered version per subject/category key",
    )

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Webhook endpoint must be an http(s) URL: {v!r}")
        return v

    def wants(self, category: str) -> bool:
        return self.active and category in self.categories


class DeadLetter(BaseModel):
    """A delivery abandoned after exhausting retries."""

    delivery_id: str
    service_id: str
    endpoint: str
    event: ChangeEvent
    attempt_count: int
    last_error: Optional[str] = None
    dead_lettered_at: datetime = Field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delivery_id": self.delivery_id,
            "service_id": self.service_id,
            "endpoint": self.endpoint,
            "event": self.event.to_dict(),
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "dead_lettered_at": isoformat(self.dead_lettered_at),
        }


# =============================================================================
# Lifecycle Models
# =============================================================================


class LifecycleJob(BaseModel):
    """A pending or finished renewal/deletion job."""

    job_id: Optional[int] = None
    kind: JobKind
    subject: str
    category: str = Field(default="", description="Empty for subject-wide jobs")
    due_at: datetime
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @field_validator("due_at", "created_at")
    @classmethod
    def normalize_times(cls, v: datetime) -> datetime:
        return to_utc(v)


class SweepReport(BaseModel):
    """Outcome of one lifecycle sweep."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    deletions_completed: int = 0
    renewals_sent: int = 0
    jobs_failed: int = 0
    failed_job_ids: List[int] = Field(default_factory=list)
