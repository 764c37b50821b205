"""
Consent API
===========
Transport-agnostic request handlers for the consent engine.

Every handler takes plain Python values (as decoded from a request) and
returns a JSON-ready dict with an HTTP-style ``status``. Engine errors are
turned into typed error bodies (``error_type``, ``error_code``,
``message``, ``details``) instead of propagating to the transport.

    GET    /consent/{subject}           -> get_consent
    POST   /consent/{subject}           -> post_consent
    POST   /consent/{subject}/bulk      -> post_bulk
    POST   /consent/{subject}/withdraw  -> post_withdraw_all
    GET    /consent/{subject}/history   -> get_history
    POST   /consent/{subject}/export    -> post_export
    GET    /exports/{job_id}            -> get_export
    DELETE /consent/{subject}           -> delete_subject
"""

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union

import structlog
from cryptography.fernet import Fernet

from core.exceptions import ConsentEngineError, ValidationError
from core.models import ConsentChange, ConsentMetadata, ConsentState
from core.utils import generate_id, isoformat, parse_timestamp, redact, utcnow
from consent.engine import ConsentEngine

logger = structlog.get_logger(__name__)


MAX_HISTORY_PAGE = 500


@dataclass
class ExportJob:
    """Asynchronous portability export."""

    job_id: str
    subject: str
    status: str = "pending"
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    package: Optional[Dict[str, Any]] = None
    encrypted_package: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "job_id": self.job_id,
            "status": self.status,
            "created_at": isoformat(self.created_at),
            "completed_at": isoformat(self.completed_at),
        }
        if self.package is not None:
            data["package"] = self.package
        if self.encrypted_package is not None:
            data["encrypted_package"] = self.encrypted_package
        if self.error is not None:
            data["error"] = self.error
        return data


class ConsentAPI:
    """Request handlers over a built ConsentEngine."""

    def __init__(
        self,
        engine: ConsentEngine,
        export_key: Optional[Union[str, bytes]] = None,
        export_workers: int = 2,
    ):
        """
        Args:
            engine: Assembled consent engine.
            export_key: Fernet key; export packages are encrypted when set.
                Defaults to the configured privacy.export_key.
            export_workers: Threads building export packages.
        """
        self.engine = engine
        privacy = engine.config.get("privacy", {})
        key = export_key or privacy.get("export_key")
        if key is None and privacy.get("encrypt_exports"):
            key = Fernet.generate_key()
            logger.warning("No export key configured, generated an ephemeral one")
        self._fernet: Optional[Fernet] = Fernet(key) if key else None
        self._executor = ThreadPoolExecutor(max_workers=export_workers, thread_name_prefix="export")
        self._jobs: Dict[str, ExportJob] = {}
        self._jobs_lock = threading.Lock()

    # =========================================================================
    # Reads
    # =========================================================================

    def get_consent(self, subject: str) -> Dict[str, Any]:
        """Current categories, policy version and region of a subject."""
        snapshot = self.engine.cache.get_snapshot(subject)
        body = snapshot.to_response()
        body["degraded"] = snapshot.degraded
        return {"status": 200, **body}

    def get_history(
        self,
        subject: str,
        since: Optional[str] = None,
        until: Optional[str] = None,
        cursor: Optional[int] = None,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """One page of a subject's audit history."""
        try:
            since_dt = self._parse_time(since, "since")
            until_dt = self._parse_time(until, "until")
            if not 1 <= int(limit) <= MAX_HISTORY_PAGE:
                raise ValidationError(
                    f"limit must be between 1 and {MAX_HISTORY_PAGE}", field="limit", value=limit
                )
            entries, next_cursor = self.engine.audit_log.page(
                subject, since_dt, until_dt, cursor=cursor, limit=int(limit)
            )
        except ConsentEngineError as e:
            return self._error(e, subject)
        return {
            "status": 200,
            "entries": [entry.to_log_entry() for entry in entries],
            "next_cursor": next_cursor,
        }

    # =========================================================================
    # Mutations
    # =========================================================================

    def post_consent(self, subject: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Set one category.

        Body: ``{category, state, expected_version, metadata}``.
        """
        try:
            category = self._require(body, "category")
            state = self._parse_state(self._require(body, "state"))
            expected = self._require(body, "expected_version")
            metadata = self._parse_metadata(body.get("metadata"))
            previous, record = self.engine.store.set(
                subject, category, state, expected, metadata
            )
        except ConsentEngineError as e:
            return self._error(e, subject)
        return {
            "status": 200,
            "previous_state": previous.value,
            "record": record.to_dict(),
        }

    def post_bulk(self, subject: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply several changes atomically.

        Body: ``{changes: [{category, state}], expected_versions: [int], metadata}``.
        """
        try:
            raw_changes = self._require(body, "changes")
            expected = self._require(body, "expected_versions")
            if not isinstance(raw_changes, list) or not isinstance(expected, list):
                raise ValidationError(
                    "changes and expected_versions must be lists", field="changes"
                )
            changes = [
                ConsentChange(
                    category=self._require(change, "category"),
                    state=self._parse_state(self._require(change, "state")),
                )
                for change in raw_changes
            ]
            metadata = self._parse_metadata(body.get("metadata"))
            results = self.engine.store.set_bulk(subject, changes, expected, metadata)
        except ConsentEngineError as e:
            return self._error(e, subject)
        return {
            "status": 200,
            "results": {
                category: {"previous_state": previous.value, "record": record.to_dict()}
                for category, (previous, record) in results.items()
            },
        }

    def post_withdraw_all(self, subject: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Withdraw every granted category of a subject."""
        try:
            metadata = self._parse_metadata((body or {}).get("metadata"))
            results = self.engine.store.withdraw_all(subject, metadata)
        except ConsentEngineError as e:
            return self._error(e, subject)
        return {"status": 200, "withdrawn": sorted(results)}

    def delete_subject(self, subject: str, reason: str = "erasure_request") -> Dict[str, Any]:
        """Right to erasure: remove everything held about a subject."""
        try:
            tombstone = self.engine.lifecycle.erase_subject(subject, reason)
        except ConsentEngineError as e:
            return self._error(e, subject)
        return {"status": 200, "tombstone": tombstone.to_log_entry()}

    # =========================================================================
    # Portability export
    # =========================================================================

    def post_export(self, subject: str) -> Dict[str, Any]:
        """Start building a portability package; returns a job handle."""
        job = ExportJob(job_id=generate_id("exp"), subject=subject)
        with self._jobs_lock:
            self._jobs[job.job_id] = job
        self._executor.submit(self._run_export, job)
        logger.info("Export requested", subject=redact(subject), job_id=job.job_id)
        return {"status": 202, "job_id": job.job_id, "state": job.status}

    def get_export(self, job_id: str) -> Dict[str, Any]:
        with self._jobs_lock:
            job = self._jobs.get(job_id)
        if job is None:
            return {
                "status": 404,
                "error_type": "NotFound",
                "error_code": "EXPORT_NOT_FOUND",
                "message": f"Unknown export job: {job_id}",
                "details": {"job_id": job_id},
            }
        status = {"pending": 202, "running": 202, "completed": 200}.get(job.status, 500)
        return {"status": status, **job.to_dict()}

    def wait_for_export(self, job_id: str, timeout: float = 10.0) -> Dict[str, Any]:
        """Block until an export job finishes (for scripts and tests)."""
        deadline = time.monotonic() + timeout
        result = self.get_export(job_id)
        while result["status"] == 202 and time.monotonic() < deadline:
            time.sleep(0.01)
            result = self.get_export(job_id)
        return result

    def decrypt_package(self, token: str) -> Dict[str, Any]:
        if self._fernet is None:
            raise ValidationError("Exports are not encrypted", field="export_key")
        return json.loads(self._fernet.decrypt(token.encode("utf-8")))

    def _run_export(self, job: ExportJob) -> None:
        job.status = "running"
        try:
            package = self.build_export_package(job.subject)
            if self._fernet is not None:
                data = json.dumps(package, default=str).encode("utf-8")
                job.encrypted_package = self._fernet.encrypt(data).decode("utf-8")
            else:
                job.package = package
            job.status = "completed"
        except ConsentEngineError as e:
            job.status = "failed"
            job.error = e.message
            logger.error("Export failed", job_id=job.job_id, **e.to_dict())
        finally:
            job.completed_at = utcnow()

    def build_export_package(self, subject: str) -> Dict[str, Any]:
        """Everything held about a subject, in machine-readable form."""
        engine = self.engine
        snapshot = engine.store.get_all(subject)
        records = [
            engine.store.get_record(subject, category).to_dict()
            for category in engine.registry.ids()
        ]
        return {
            "subject": subject,
            "generated_at": isoformat(utcnow()),
            "consent": snapshot.to_response(),
            "records": records,
            "history": engine.audit_log.export(subject),
            "pending_jobs": [
                {
                    "kind": job.kind.value,
                    "category": job.category or None,
                    "due_at": isoformat(job.due_at),
                }
                for job in engine.lifecycle.pending_jobs(subject)
            ],
        }

    # =========================================================================
    # Operations
    # =========================================================================

    def get_statistics(self) -> Dict[str, Any]:
        return {"status": 200, "categories": self.engine.store.statistics()}

    def get_compliance_report(self) -> Dict[str, Any]:
        return {"status": 200, **self.engine.compliance.run_check().to_dict()}

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _require(body: Any, key: str) -> Any:
        if not isinstance(body, dict) or body.get(key) is None:
            raise ValidationError(f"Missing required field: {key}", field=key)
        return body[key]

    @staticmethod
    def _parse_state(value: Any) -> ConsentState:
        try:
            return ConsentState(value)
        except ValueError as e:
            raise ValidationError(f"Invalid consent state: {value!r}", field="state", value=value) from e

    @staticmethod
    def _parse_metadata(value: Optional[Dict[str, Any]]) -> ConsentMetadata:
        if value is None:
            return ConsentMetadata()
        try:
            return ConsentMetadata(**value)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid metadata: {e}", field="metadata") from e

    @staticmethod
    def _parse_time(value: Optional[str], field_name: str) -> Optional[datetime]:
        try:
            return parse_timestamp(value)
        except ValueError as e:
            raise ValidationError(
                f"Invalid timestamp for {field_name}: {value!r}", field=field_name, value=value
            ) from e

    @staticmethod
    def _error(error: ConsentEngineError, subject: str) -> Dict[str, Any]:
        logger.info(
            "Consent request rejected",
            subject=redact(subject),
            error_type=type(error).__name__,
            error_code=error.error_code,
        )
        return {"status": error.status_code, **error.to_dict()}

