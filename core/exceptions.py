"""
Consent Engine Exceptions
=========================
Typed exception hierarchy for the consent engine. Every error carries a
machine-readable ``error_code`` so callers can branch on kind rather than
on message text.
"""

from typing import Any, List, Optional


class ConsentEngineError(Exception):
    """Base exception for all consent engine errors."""

    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(ConsentEngineError):
    """Exception raised for an unknown category/state or an illegal mutation."""

    status_code = 422

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        error_code: str = "VALIDATION_ERROR",
    ):
        super().__init__(
            message,
            error_code=error_code,
            details={"field": field, "value": value},
        )
        self.field = field
        self.value = value


class DuplicateCategoryError(ValidationError):
    """Exception raised when a category id is registered twice."""

    def __init__(self, category_id: str):
        super().__init__(
            f"Consent category already registered: {category_id}",
            field="id",
            value=category_id,
            error_code="DUPLICATE_CATEGORY",
        )
        self.category_id = category_id


class UnknownDependencyError(ValidationError):
    """Exception raised when a category depends on an unregistered id."""

    def __init__(self, category_id: str, missing: List[str]):
        super().__init__(
            f"Category '{category_id}' depends on unknown categories: {sorted(missing)}",
            field="dependencies",
            value=sorted(missing),
            error_code="UNKNOWN_DEPENDENCY",
        )
        self.category_id = category_id
        self.missing = sorted(missing)


class DependencyCycleError(ValidationError):
    """Exception raised when registering a category would create a cycle."""

    def __init__(self, cycle: List[str]):
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            field="dependencies",
            value=cycle,
            error_code="DEPENDENCY_CYCLE",
        )
        self.cycle = cycle


# =============================================================================
# Mutation Errors
# =============================================================================


class DependencyViolation(ConsentEngineError):
    """Exception raised when granting a category whose prerequisites are not granted."""

    status_code = 409

    def __init__(self, subject: str, category: str, missing: List[str]):
        super().__init__(
            f"Cannot grant '{category}': prerequisites not granted: {sorted(missing)}",
            error_code="DEPENDENCY_VIOLATION",
            details={"category": category, "missing_dependencies": sorted(missing)},
        )
        self.subject = subject
        self.category = category
        self.missing = sorted(missing)


class ConcurrencyConflict(ConsentEngineError):
    """Exception raised when the supplied expected version is not current."""

    status_code = 409

    def __init__(
        self,
        subject: str,
        category: str,
        expected_version: int,
        current_version: int,
    ):
        super().__init__(
            f"Version conflict on '{category}': expected {expected_version}, "
            f"current {current_version}",
            error_code="CONCURRENCY_CONFLICT",
            details={
                "category": category,
                "expected_version": expected_version,
                "current_version": current_version,
            },
        )
        self.subject = subject
        self.category = category
        self.expected_version = expected_version
        self.current_version = current_version


class RegionComplianceViolation(ConsentEngineError):
    """Exception raised when a mutation would violate the regional ruleset."""

    status_code = 422

    def __init__(self, region: str, violations: list):
        summary = "; ".join(str(v) for v in violations)
        super().__init__(
            f"Regional ruleset '{region}' violated: {summary}",
            error_code="REGION_COMPLIANCE_VIOLATION",
            details={
                "region": region,
                "violations": [
                    v.to_dict() if hasattr(v, "to_dict") else str(v)
                    for v in violations
                ],
            },
        )
        self.region = region
        self.violations = list(violations)


# =============================================================================
# Infrastructure Errors
# =============================================================================


class StorageFailure(ConsentEngineError):
    """Exception raised when the consent store or cache cannot be read or written."""

    status_code = 503

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(
            message,
            error_code="STORAGE_FAILURE",
            details={"operation": operation},
        )
        self.operation = operation


class AuditAppendError(StorageFailure):
    """Exception raised when an audit entry cannot be appended."""

    def __init__(self, message: str, entry: Optional[dict] = None):
        super().__init__(message, operation="audit_append")
        self.error_code = "AUDIT_APPEND_ERROR"
        self.details["entry"] = entry


class WebhookDeliveryFailure(ConsentEngineError):
    """Recorded when a webhook delivery exhausts its retry limit."""

    status_code = 502

    def __init__(
        self,
        service_id: str,
        endpoint: str,
        attempt_count: int,
        last_error: Optional[str] = None,
    ):
        super().__init__(
            f"Delivery to {service_id} failed after {attempt_count} attempt(s): {last_error}",
            error_code="WEBHOOK_DELIVERY_FAILURE",
            details={
                "service_id": service_id,
                "endpoint": endpoint,
                "attempt_count": attempt_count,
                "last_error": last_error,
            },
        )
        self.service_id = service_id
        self.endpoint = endpoint
        self.attempt_count = attempt_count
        self.last_error = last_error


class ConfigurationError(ConsentEngineError):
    """Exception raised for configuration errors."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(
            message,
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key},
        )
        self.config_key = config_key
