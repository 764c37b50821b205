"""
Consent Engine Core
===================
Shared data models, exceptions, collaborator interfaces and utilities.
"""

from .models import (
    NECESSARY_CATEGORY,
    AuditAction,
    AuditEntry,
    ChangeEvent,
    ComplianceViolation,
    ConsentCategory,
    ConsentChange,
    ConsentMetadata,
    ConsentPosture,
    ConsentRecord,
    ConsentState,
    DeadLetter,
    JobKind,
    JobStatus,
    LifecycleJob,
    RegionalRuleset,
    RegionRequirement,
    RegionRequirements,
    RetryPolicy,
    RetryStrategy,
    SubjectConsent,
    SweepReport,
    UnsetTreatment,
    WebhookSubscription,
)
from .exceptions import (
    AuditAppendError,
    ConcurrencyConflict,
    ConfigurationError,
    ConsentEngineError,
    DependencyCycleError,
    DependencyViolation,
    DuplicateCategoryError,
    RegionComplianceViolation,
    StorageFailure,
    UnknownDependencyError,
    ValidationError,
    WebhookDeliveryFailure,
)

__all__ = [
    # Models
    "NECESSARY_CATEGORY",
    "AuditAction",
    "AuditEntry",
    "ChangeEvent",
    "ComplianceViolation",
    "ConsentCategory",
    "ConsentChange",
    "ConsentMetadata",
    "ConsentPosture",
    "ConsentRecord",
    "ConsentState",
    "DeadLetter",
    "JobKind",
    "JobStatus",
    "LifecycleJob",
    "RegionalRuleset",
    "RegionRequirement",
    "RegionRequirements",
    "RetryPolicy",
    "RetryStrategy",
    "SubjectConsent",
    "SweepReport",
    "UnsetTreatment",
    "WebhookSubscription",
    # Exceptions
    "AuditAppendError",
    "ConcurrencyConflict",
    "ConfigurationError",
    "ConsentEngineError",
    "DependencyCycleError",
    "DependencyViolation",
    "DuplicateCategoryError",
    "RegionComplianceViolation",
    "StorageFailure",
    "UnknownDependencyError",
    "ValidationError",
    "WebhookDeliveryFailure",
]
