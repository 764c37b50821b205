"""
Consent Store
=============
Authoritative current state of every (subject, category) pair.

Mutations are checked in a fixed order: category and state validation,
optimistic version check, no-op detection, dependency rules, then the
subject's regional ruleset. The record writes and their audit entries are
committed in one SQLite transaction; the cache is refreshed synchronously
before the call returns, and change events are published afterwards.

Withdrawing a category also withdraws every granted category that depends
on it, in the same transaction (source ``cascade``).
"""

import sqlite3
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from core.exceptions import (
    ConcurrencyConflict,
    DependencyViolation,
    RegionComplianceViolation,
    ValidationError,
)
from core.interfaces import RegionLocator
from core.models import (
    LEGACY_CATEGORY,
    NECESSARY_CATEGORY,
    AuditEntry,
    ChangeEvent,
    ConsentChange,
    ConsentMetadata,
    ConsentRecord,
    ConsentState,
    SubjectConsent,
)
from core.utils import redact, utcnow
from consent.audit_log import AuditLog
from consent.persistence import ConsentDB
from consent.registry import CategoryRegistry
from consent.regional import RegionalComplianceResolver

logger = structlog.get_logger(__name__)


CASCADE_SOURCE = "cascade"
LEGACY_SOURCE = "legacy_migration"

# (category, desired state, expected version or None to skip the check)
PlannedChange = Tuple[str, ConsentState, Optional[int]]
CommitListener = Callable[[str, SubjectConsent], None]


class ConsentStore:
    """
    Stores consent state with optimistic concurrency.

    Example:
        >>> store = ConsentStore(db, registry, resolver, audit_log)
        >>> previous, record = store.set("user-1", "analytics", ConsentState.GRANTED, 0)
        >>> store.get("user-1", "analytics")
        <ConsentState.GRANTED: 'granted'>
    """

    def __init__(
        self,
        db: ConsentDB,
        registry: CategoryRegistry,
        resolver: RegionalComplianceResolver,
        audit_log: AuditLog,
        event_bus: Optional[Any] = None,
        region_locator: Optional[RegionLocator] = None,
        default_region: Optional[str] = None,
        hash_salt: str = "",
        clock: Callable = utcnow,
    ):
        """
        Initialize the store.

        Args:
            db: Consent database.
            registry: Category registry.
            resolver: Regional ruleset resolver.
            audit_log: Audit log sharing the same database.
            event_bus: Receives a ChangeEvent for every committed change.
            region_locator: Geolocation collaborator for IP-based regions.
            default_region: Region used when nothing else identifies one.
            hash_salt: Salt for context hashes of IP and user agent.
            clock: Source of the current time.
        """
        self.db = db
        self.registry = registry
        self.resolver = resolver
        self.audit_log = audit_log
        self.event_bus = event_bus
        self.region_locator = region_locator
        self.default_region = default_region
        self.hash_salt = hash_salt
        self.clock = clock
        self._listeners: List[CommitListener] = []
        self._listener_lock = threading.Lock()

    def add_commit_listener(self, listener: CommitListener) -> None:
        """Register a callback run synchronously after every commit."""
        with self._listener_lock:
            self._listeners.append(listener)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, subject: str, category: str) -> ConsentState:
        """
        Current stored state of a pair.

        Raises:
            ValidationError: If the category is unknown.
            StorageFailure: If the store cannot be read.
        """
        self.registry.get(category)
        if category == NECESSARY_CATEGORY:
            return ConsentState.GRANTED
        record = self.db.fetch_records(subject).get(category)
        return record.state if record else ConsentState.NOT_SET

    def get_record(self, subject: str, category: str) -> ConsentRecord:
        """Stored record of a pair; version 0 when never set."""
        self.registry.get(category)
        record = self.db.fetch_records(subject).get(category)
        if record is None:
            state = (
                ConsentState.GRANTED
                if category == NECESSARY_CATEGORY
                else ConsentState.NOT_SET
            )
            return ConsentRecord(subject=subject, category=category, state=state)
        return record

    def get_all(self, subject: str) -> SubjectConsent:
        """Snapshot of every registered category for a subject."""
        records = self.db.fetch_records(subject)
        subject_row = self.db.get_subject(subject)
        return self._snapshot(subject, records, subject_row)

    def versions(self, subject: str) -> Dict[str, int]:
        return self.get_all(subject).versions

    def _snapshot(
        self,
        subject: str,
        records: Dict[str, ConsentRecord],
        subject_row: Optional[Dict[str, Any]],
    ) -> SubjectConsent:
        categories = {}
        versions = {}
        for category_id in self.registry.ids():
            record = records.get(category_id)
            categories[category_id] = record.state if record else ConsentState.NOT_SET
            versions[category_id] = record.version if record else 0
        categories[NECESSARY_CATEGORY] = ConsentState.GRANTED
        row = subject_row or {}
        return SubjectConsent(
            subject=subject,
            categories=categories,
            versions=versions,
            policy_version=row.get("policy_version"),
            region=row.get("region"),
            loaded_at=self.clock(),
        )

    # =========================================================================
    # Mutations
    # =========================================================================

    def set(
        self,
        subject: str,
        category: str,
        desired_state: ConsentState,
        expected_version: int,
        metadata: Optional[ConsentMetadata] = None,
    ) -> Tuple[ConsentState, ConsentRecord]:
        """
        Change the state of one pair.

        Args:
            subject: Subject identifier.
            category: Category id.
            desired_state: granted or denied.
            expected_version: Version the caller last read (0 if never set).
            metadata: Policy version, capture method and request context.

        Returns:
            (previous_state, new_record). Re-asserting the current state is a
            no-op returning the unchanged record.

        Raises:
            ValidationError: Unknown category, bad state, or a change to `necessary`.
            ConcurrencyConflict: `expected_version` is not the stored version.
            DependencyViolation: A prerequisite of a granted category is not granted.
            RegionComplianceViolation: The result violates the regional ruleset.
        """
        try:
            change = ConsentChange(category=category, state=desired_state)
        except ValueError as e:
            raise ValidationError(
                f"Invalid consent state: {desired_state!r}",
                field="state",
                value=str(desired_state),
            ) from e
        results = self.set_bulk(subject, [change], [expected_version], metadata)
        return results[category]

    def set_bulk(
        self,
        subject: str,
        changes: Sequence[ConsentChange],
        expected_versions: Sequence[int],
        metadata: Optional[ConsentMetadata] = None,
    ) -> Dict[str, Tuple[ConsentState, ConsentRecord]]:
        """
        Apply several changes atomically: all succeed or none are stored.

        Returns:
            Category -> (previous_state, record) for every requested change.
        """
        if len(changes) != len(expected_versions):
            raise ValidationError(
                "changes and expected_versions must have the same length",
                field="expected_versions",
                value=len(expected_versions),
            )
        planned: List[PlannedChange] = []
        seen = set()
        for change, version in zip(changes, expected_versions):
            if change.category in seen:
                raise ValidationError(
                    f"Category listed twice in one request: {change.category}",
                    field="category",
                    value=change.category,
                )
            seen.add(change.category)
            if not isinstance(version, int) or version < 0:
                raise ValidationError(
                    "expected_version must be a non-negative integer",
                    field="expected_version",
                    value=version,
                )
            planned.append((change.category, change.state, version))

        return self._apply(subject, lambda current: planned, metadata)

    def withdraw_all(
        self, subject: str, metadata: Optional[ConsentMetadata] = None
    ) -> Dict[str, Tuple[ConsentState, ConsentRecord]]:
        """Withdraw every granted category of a subject in one atomic batch."""

        def plan(current: Dict[str, ConsentRecord]) -> List[PlannedChange]:
            return [
                (category, ConsentState.DENIED, None)
                for category, record in sorted(current.items())
                if record.state == ConsentState.GRANTED and category != NECESSARY_CATEGORY
            ]

        results = self._apply(subject, plan, metadata)
        logger.info("All consent withdrawn", subject=redact(subject), categories=len(results))
        return results

    def migrate_legacy(
        self,
        subject: str,
        binary_value: bool,
        metadata: Optional[ConsentMetadata] = None,
    ) -> Optional[ConsentRecord]:
        """
        Import a historical yes/no consent flag as the `analytics` category.

        Runs once per subject: later calls, or a subject whose analytics
        consent was already captured, leave the store untouched.

        Returns:
            The migrated record, or None if nothing was migrated.
        """
        desired = ConsentState.GRANTED if binary_value else ConsentState.DENIED
        metadata = (metadata or ConsentMetadata(method="legacy")).model_copy(
            update={"source": LEGACY_SOURCE}
        )

        def plan(current: Dict[str, ConsentRecord]) -> List[PlannedChange]:
            record = current.get(LEGACY_CATEGORY)
            if record is not None and record.version > 0:
                return []
            return [(LEGACY_CATEGORY, desired, None)]

        results = self._apply(subject, plan, metadata, legacy=True)
        if LEGACY_CATEGORY not in results:
            return None
        previous, record = results[LEGACY_CATEGORY]
        return record if previous != record.state else None

    def erase_subject(self, subject: str, conn: Optional[sqlite3.Connection] = None) -> int:
        """
        Delete every record of a subject. Only the lifecycle manager calls this.

        When ``conn`` is given the delete joins the caller's transaction and
        listeners are not told; the caller runs :meth:`refresh_listeners`
        once its transaction has committed.

        Returns:
            Number of records removed.
        """
        if conn is not None:
            removed = self.db.delete_records(conn, subject)
        else:
            with self.db.transaction() as own:
                removed = self.db.delete_records(own, subject)
            self.refresh_listeners(subject)
        logger.info("Consent records erased", subject=redact(subject), records=removed)
        return removed

    def refresh_listeners(self, subject: str) -> None:
        """Push the subject's committed state to the commit listeners."""
        self._notify(subject, self.get_all(subject))

    def statistics(self) -> Dict[str, Dict[str, int]]:
        """Per-category counts of granted, denied and stored records."""
        counts = self.db.count_by_category()
        stats = {}
        for category_id in self.registry.ids():
            by_state = counts.get(category_id, {})
            granted = by_state.get(ConsentState.GRANTED.value, 0)
            denied = by_state.get(ConsentState.DENIED.value, 0)
            stats[category_id] = {
                "granted": granted,
                "denied": denied,
                "total": granted + denied,
            }
        return stats

    # =========================================================================
    # Internals
    # =========================================================================

    def _apply(
        self,
        subject: str,
        plan: Callable[[Dict[str, ConsentRecord]], List[PlannedChange]],
        metadata: Optional[ConsentMetadata],
        legacy: bool = False,
    ) -> Dict[str, Tuple[ConsentState, ConsentRecord]]:
        if not subject:
            raise ValidationError("Subject must not be empty", field="subject", value=subject)
        metadata = metadata or ConsentMetadata()
        source = metadata.source
        now = self.clock()

        with self.db.transaction() as conn:
            subject_row = self.db.get_subject(subject, conn)
            if legacy and subject_row and subject_row.get("legacy_migrated_at"):
                return {}

            current = self.db.fetch_records(subject, conn)
            planned = plan(current)
            states = {
                c: (current[c].state if c in current else ConsentState.NOT_SET)
                for c in self.registry.ids()
            }
            states[NECESSARY_CATEGORY] = ConsentState.GRANTED

            results: Dict[str, Tuple[ConsentState, ConsentRecord]] = {}
            changed: Dict[str, str] = {}
            for category, desired, expected in planned:
                self._validate_change(category, desired)
                record = current.get(category) or ConsentRecord(
                    subject=subject, category=category
                )
                if category == NECESSARY_CATEGORY:
                    results[category] = (
                        ConsentState.GRANTED,
                        record.model_copy(update={"state": ConsentState.GRANTED}),
                    )
                    continue
                if expected is not None and expected != record.version:
                    raise ConcurrencyConflict(subject, category, expected, record.version)
                if record.state == desired:
                    results[category] = (record.state, record)
                    continue
                states[category] = desired
                changed[category] = source

            requested_grants = {
                category for category, desired, _ in planned
                if desired == ConsentState.GRANTED and category != NECESSARY_CATEGORY
            }
            for category in list(changed):
                if states[category] == ConsentState.GRANTED:
                    continue
                for dependent in sorted(self.registry.dependents_of(category)):
                    if dependent in requested_grants:
                        raise DependencyViolation(subject, dependent, [category])
                    if dependent in changed:
                        continue
                    stored = current[dependent].state if dependent in current else None
                    if stored == ConsentState.GRANTED:
                        states[dependent] = ConsentState.DENIED
                        changed[dependent] = CASCADE_SOURCE

            self._check_dependencies(subject, changed, states)

            region = self._resolve_region(metadata, subject_row)
            withdrawal_only = all(
                c in current
                and current[c].state == ConsentState.GRANTED
                and states[c] == ConsentState.DENIED
                for c in changed
            )
            if not withdrawal_only and not legacy:
                violations = self.resolver.validate(states, region)
                if violations:
                    ruleset = self.resolver.resolve(region)
                    logger.info(
                        "Mutation rejected by regional ruleset",
                        subject=redact(subject),
                        region=ruleset.region,
                        violations=[str(v) for v in violations],
                    )
                    raise RegionComplianceViolation(ruleset.region, violations)

            if not changed and not legacy:
                return results

            events = []
            context_hash = metadata.context_hash(self.hash_salt)
            for category, change_source in changed.items():
                previous = current.get(category) or ConsentRecord(
                    subject=subject, category=category
                )
                record = ConsentRecord(
                    subject=subject,
                    category=category,
                    state=states[category],
                    version=previous.version + 1,
                    timestamp=now,
                    policy_version=metadata.policy_version or previous.policy_version,
                    method=metadata.method,
                    context_hash=context_hash,
                )
                if previous.version == 0:
                    written = self.db.insert_record(conn, record)
                else:
                    written = self.db.update_record(conn, record, previous.version)
                if not written:
                    raise ConcurrencyConflict(
                        subject, category, previous.version, previous.version + 1
                    )

                event = ChangeEvent(
                    subject=subject,
                    category=category,
                    previous_state=previous.state,
                    new_state=record.state,
                    version=record.version,
                    timestamp=now,
                    source=change_source,
                )
                self.audit_log.append(AuditEntry.from_change(event, record), conn)
                events.append(event)
                results[category] = (previous.state, record)
                current[category] = record

            self.db.upsert_subject(
                conn,
                subject,
                region=region.upper() if region else None,
                policy_version=metadata.policy_version,
                legacy_migrated=legacy,
            )
            snapshot = self._snapshot(
                subject, current, self.db.get_subject(subject, conn)
            )

        self._notify(subject, snapshot)
        for event in events:
            logger.info(
                "Consent changed",
                subject=redact(subject),
                category=event.category,
                state=event.new_state.value,
                version=event.version,
                source=event.source,
            )
            if self.event_bus is not None:
                self.event_bus.publish(event)
        return results

    def _validate_change(self, category: str, desired: ConsentState) -> None:
        self.registry.get(category)
        if not isinstance(desired, ConsentState) or desired == ConsentState.NOT_SET:
            raise ValidationError(
                f"Desired state must be granted or denied, got {desired!r}",
                field="state",
                value=getattr(desired, "value", desired),
            )
        if category == NECESSARY_CATEGORY and desired != ConsentState.GRANTED:
            raise ValidationError(
                "The 'necessary' category is always granted and cannot be changed",
                field="category",
                value=category,
                error_code="NECESSARY_IMMUTABLE",
            )

    def _check_dependencies(
        self,
        subject: str,
        changed: Dict[str, str],
        states: Dict[str, ConsentState],
    ) -> None:
        for category in sorted(changed):
            if states[category] != ConsentState.GRANTED:
                continue
            missing = [
                dep for dep in self.registry.get(category).dependencies
                if states.get(dep) != ConsentState.GRANTED
            ]
            if missing:
                raise DependencyViolation(subject, category, missing)

    def _resolve_region(
        self, metadata: ConsentMetadata, subject_row: Optional[Dict[str, Any]]
    ) -> Optional[str]:
        """Region of a subject: explicit, geolocated, stored, then configured default."""
        if metadata.region:
            return metadata.region
        if metadata.ip_address and self.region_locator is not None:
            try:
                located = self.region_locator.region_for(metadata.ip_address)
            except Exception as e:
                logger.warning("Region lookup failed", error=str(e))
                located = None
            if located:
                return located
        if subject_row and subject_row.get("region"):
            return subject_row["region"]
        return self.default_region

    def _notify(self, subject: str, snapshot: SubjectConsent) -> None:
        with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(subject, snapshot)
