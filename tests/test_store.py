"""
Tests for the Consent Store
===========================
"""

import pytest

from core.exceptions import (
    ConcurrencyConflict,
    DependencyViolation,
    RegionComplianceViolation,
    ValidationError,
)
from core.interfaces import CallableRegionLocator
from core.models import (
    ConsentChange,
    ConsentMetadata,
    ConsentState,
    RegionalRuleset,
)
from consent.regional import RegionalComplianceResolver
from consent.store import CASCADE_SOURCE, LEGACY_SOURCE, ConsentStore
from propagation.event_bus import CallbackSubscriber, EventBus

GRANTED = ConsentState.GRANTED
DENIED = ConsentState.DENIED
NOT_SET = ConsentState.NOT_SET


class TestReads:
    """Reads of never-written and written pairs."""

    def test_unset_pair(self, store):
        """A pair never written reads not_set with version 0."""
        assert store.get("user-1", "analytics") == NOT_SET
        assert store.get_record("user-1", "analytics").version == 0

    def test_necessary_always_granted(self, store):
        assert store.get("user-1", "necessary") == GRANTED
        assert store.get_all("user-1").state_of("necessary") == GRANTED

    def test_unknown_category(self, store):
        """Unknown categories are rejected on read."""
        with pytest.raises(ValidationError):
            store.get("user-1", "telemetry")

    def test_get_all_covers_registry(self, store, eu_meta):
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        snapshot = store.get_all("user-1")
        assert set(snapshot.categories) == {"necessary", "analytics", "marketing", "personalization"}
        assert snapshot.versions["analytics"] == 1
        assert snapshot.policy_version == "v1"
        assert snapshot.region == "EU"


class TestSet:
    """Single-category mutations."""

    def test_grant_from_unset(self, store, eu_meta):
        """First write returns not_set as the previous state and version 1."""
        previous, record = store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        assert previous == NOT_SET
        assert record.state == GRANTED
        assert record.version == 1
        assert record.policy_version == "v1"
        assert store.get("user-1", "analytics") == GRANTED

    def test_versions_increase_by_one(self, store, eu_meta):
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        _, record = store.set("user-1", "analytics", DENIED, 1, eu_meta)
        assert record.version == 2

    def test_stale_version_conflicts(self, store, eu_meta):
        """A write with an outdated version is rejected and leaves state unchanged."""
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        with pytest.raises(ConcurrencyConflict) as exc_info:
            store.set("user-1", "analytics", DENIED, 0, eu_meta)
        assert exc_info.value.current_version == 1
        assert store.get("user-1", "analytics") == GRANTED

    def test_only_one_concurrent_writer_wins(self, store, eu_meta):
        """Two writers reading version 0: exactly one commits."""
        store.set("user-1", "marketing", GRANTED, 0, eu_meta)
        with pytest.raises(ConcurrencyConflict):
            store.set("user-1", "marketing", DENIED, 0, eu_meta)
        assert store.get_record("user-1", "marketing").version == 1

    def test_reassert_is_noop(self, store, audit_log, eu_meta):
        """Re-asserting the current state writes nothing."""
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        previous, record = store.set("user-1", "analytics", GRANTED, 1, eu_meta)
        assert previous == GRANTED
        assert record.version == 1
        assert audit_log.count("user-1") == 1

    def test_version_checked_before_noop(self, store, eu_meta):
        """A no-op with a stale version still conflicts."""
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        store.set("user-1", "analytics", DENIED, 1, eu_meta)
        with pytest.raises(ConcurrencyConflict):
            store.set("user-1", "analytics", DENIED, 1, eu_meta)

    def test_not_set_is_not_a_target_state(self, store):
        with pytest.raises(ValidationError):
            store.set("user-1", "analytics", NOT_SET, 0)

    def test_invalid_state_string(self, store):
        with pytest.raises(ValidationError):
            store.set("user-1", "analytics", "maybe", 0)

    def test_unknown_category_rejected(self, store):
        with pytest.raises(ValidationError):
            store.set("user-1", "telemetry", GRANTED, 0)

    def test_empty_subject_rejected(self, store):
        with pytest.raises(ValidationError):
            store.set("", "analytics", GRANTED, 0)

    def test_necessary_cannot_be_denied(self, store):
        """Denying necessary is refused with a dedicated error code."""
        with pytest.raises(ValidationError) as exc_info:
            store.set("user-1", "necessary", DENIED, 0)
        assert exc_info.value.error_code == "NECESSARY_IMMUTABLE"

    def test_granting_necessary_is_noop(self, store, audit_log):
        previous, record = store.set("user-1", "necessary", GRANTED, 0)
        assert previous == GRANTED
        assert record.state == GRANTED
        assert audit_log.count("user-1") == 0

    def test_context_is_hashed(self, store, db):
        """Raw IP and user agent never reach the stored record."""
        meta = ConsentMetadata(
            policy_version="v1", region="EU", ip_address="203.0.113.7", user_agent="Mozilla"
        )
        _, record = store.set("user-1", "analytics", GRANTED, 0, meta)
        assert record.context_hash is not None
        assert "203.0.113.7" not in record.context_hash
        assert db.fetch_records("user-1")["analytics"].context_hash == record.context_hash


class TestAuditTrail:
    """Every committed change leaves exactly one audit entry."""

    def test_change_is_audited(self, store, audit_log, eu_meta):
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        store.set("user-1", "analytics", DENIED, 1, eu_meta)
        entries = audit_log.query("user-1").to_list()
        assert [(e.previous_state, e.new_state, e.version) for e in entries] == [
            (NOT_SET, GRANTED, 1),
            (GRANTED, DENIED, 2),
        ]
        assert all(e.policy_version == "v1" for e in entries)

    def test_rejected_change_not_audited(self, store, audit_log, eu_meta):
        with pytest.raises(DependencyViolation):
            store.set("user-1", "personalization", GRANTED, 0, eu_meta)
        assert audit_log.count("user-1") == 0


class TestDependencies:
    """Dependency checks and cascading withdrawal."""

    def test_grant_requires_dependencies(self, store, eu_meta):
        """Granting personalization without analytics is refused."""
        with pytest.raises(DependencyViolation) as exc_info:
            store.set("user-1", "personalization", GRANTED, 0, eu_meta)
        assert exc_info.value.missing == ["analytics"]
        assert store.get("user-1", "personalization") == NOT_SET

    def test_denying_dependent_always_allowed(self, store, eu_meta):
        _, record = store.set("user-1", "personalization", DENIED, 0, eu_meta)
        assert record.state == DENIED

    def test_withdrawal_cascades(self, store, audit_log, eu_meta):
        """Withdrawing a prerequisite withdraws granted dependents in the same commit."""
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        store.set("user-1", "personalization", GRANTED, 0, eu_meta)

        results = store.set_bulk(
            "user-1", [ConsentChange(category="analytics", state=DENIED)], [1], eu_meta
        )

        assert set(results) == {"analytics", "personalization"}
        assert store.get("user-1", "personalization") == DENIED
        latest = audit_log.latest("user-1")
        assert latest.category == "personalization"
        assert latest.source == CASCADE_SOURCE

    def test_cascade_skips_ungranted_dependents(self, store, audit_log, eu_meta):
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        store.set("user-1", "analytics", DENIED, 1, eu_meta)
        assert store.get("user-1", "personalization") == NOT_SET
        assert audit_log.count("user-1") == 2


class TestBulk:
    """Atomic multi-category mutations."""

    def test_bulk_grants_with_dependency_in_batch(self, store, eu_meta):
        """A prerequisite granted in the same batch satisfies the dependency."""
        results = store.set_bulk(
            "user-1",
            [
                ConsentChange(category="personalization", state=GRANTED),
                ConsentChange(category="analytics", state=GRANTED),
            ],
            [0, 0],
            eu_meta,
        )
        assert results["personalization"][1].state == GRANTED
        assert results["analytics"][1].state == GRANTED

    def test_bulk_is_all_or_nothing(self, store, audit_log, eu_meta):
        """One stale version rejects the whole batch."""
        with pytest.raises(ConcurrencyConflict):
            store.set_bulk(
                "user-1",
                [
                    ConsentChange(category="analytics", state=GRANTED),
                    ConsentChange(category="marketing", state=GRANTED),
                ],
                [0, 5],
                eu_meta,
            )
        assert store.get("user-1", "analytics") == NOT_SET
        assert store.get("user-1", "marketing") == NOT_SET
        assert audit_log.count("user-1") == 0

    def test_length_mismatch(self, store):
        with pytest.raises(ValidationError):
            store.set_bulk("user-1", [ConsentChange(category="analytics", state=GRANTED)], [])

    def test_duplicate_category(self, store):
        change = ConsentChange(category="analytics", state=GRANTED)
        with pytest.raises(ValidationError):
            store.set_bulk("user-1", [change, change], [0, 0])

    def test_negative_version(self, store):
        with pytest.raises(ValidationError):
            store.set_bulk("user-1", [ConsentChange(category="analytics", state=GRANTED)], [-1])

    def test_grant_with_prerequisite_denied_in_batch(self, store, audit_log, eu_meta):
        """Denying a prerequisite while granting its dependent is refused whole."""
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        store.set("user-1", "personalization", DENIED, 0, eu_meta)

        with pytest.raises(DependencyViolation) as exc_info:
            store.set_bulk(
                "user-1",
                [
                    ConsentChange(category="analytics", state=DENIED),
                    ConsentChange(category="personalization", state=GRANTED),
                ],
                [1, 1],
                eu_meta,
            )

        assert exc_info.value.category == "personalization"
        assert exc_info.value.missing == ["analytics"]
        assert store.get("user-1", "analytics") == GRANTED
        assert store.get_record("user-1", "personalization").version == 1
        assert audit_log.count("user-1") == 2

    def test_denied_dependent_not_rewritten(self, store, audit_log, eu_meta):
        """Withdrawing a prerequisite leaves an already denied dependent untouched."""
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        store.set("user-1", "personalization", DENIED, 0, eu_meta)

        results = store.set_bulk(
            "user-1", [ConsentChange(category="analytics", state=DENIED)], [1], eu_meta
        )

        assert set(results) == {"analytics"}
        assert store.get_record("user-1", "personalization").version == 1
        entries = audit_log.query("user-1").to_list()
        assert not any(e.previous_state == e.new_state for e in entries)
        assert [e.category for e in entries][-1] == "analytics"


class TestWithdrawAll:
    def test_withdraws_every_granted_category(self, store, eu_meta):
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        store.set("user-1", "marketing", GRANTED, 0, eu_meta)
        store.set("user-1", "personalization", GRANTED, 0, eu_meta)

        results = store.withdraw_all("user-1", eu_meta)

        assert set(results) == {"analytics", "marketing", "personalization"}
        snapshot = store.get_all("user-1")
        assert snapshot.state_of("necessary") == GRANTED
        for category in ("analytics", "marketing", "personalization"):
            assert snapshot.state_of(category) == DENIED

    def test_nothing_granted(self, store):
        assert store.withdraw_all("user-1") == {}


class TestRegionalRules:
    """Mutations are checked against the subject's regional ruleset."""

    def test_unknown_region_uses_strict_fallback(self, store):
        """Under the strict fallback a partial grant leaves mandatory categories unset."""
        meta = ConsentMetadata(policy_version="v1", region="XX")
        with pytest.raises(RegionComplianceViolation) as exc_info:
            store.set("user-1", "analytics", GRANTED, 0, meta)
        assert exc_info.value.region == "STRICT_DEFAULT"
        assert store.get("user-1", "analytics") == NOT_SET

    def test_withdrawal_never_blocked(self, store):
        """Withdrawing a grant is accepted even when the ruleset is unsatisfied."""
        store.set("user-1", "analytics", GRANTED, 0, ConsentMetadata(region="US"))
        meta = ConsentMetadata(policy_version="v1", region="XX")
        _, record = store.set("user-1", "analytics", DENIED, 1, meta)
        assert record.state == DENIED

    def test_denial_from_unset_is_checked(self, store):
        """A first denial that leaves mandatory categories unset is refused."""
        meta = ConsentMetadata(policy_version="v1", region="XX")
        with pytest.raises(RegionComplianceViolation):
            store.set("user-1", "marketing", DENIED, 0, meta)
        assert store.get_record("user-1", "marketing").version == 0

    def test_forbidden_category(self, db, registry, audit_log, clock):
        forbidding = RegionalRuleset(
            region="EU", forbidden_categories={"marketing"}, unset_treatment="deny"
        )
        resolver = RegionalComplianceResolver(registry, [forbidding])
        store = ConsentStore(db, registry, resolver, audit_log, default_region="EU", clock=clock)
        with pytest.raises(RegionComplianceViolation):
            store.set("user-1", "marketing", GRANTED, 0)
        store.set("user-1", "analytics", GRANTED, 0)

    def test_region_from_locator(self, db, registry, resolver, audit_log, clock):
        """The IP locator decides the region when the request names none."""
        locator = CallableRegionLocator(lambda ip: "US")
        store = ConsentStore(db, registry, resolver, audit_log, region_locator=locator, clock=clock)
        store.set("user-1", "analytics", GRANTED, 0, ConsentMetadata(ip_address="198.51.100.1"))
        assert store.get_all("user-1").region == "US"

    def test_failing_locator_falls_back(self, db, registry, resolver, audit_log, clock):
        def broken(ip):
            raise RuntimeError("geo service down")

        store = ConsentStore(
            db,
            registry,
            resolver,
            audit_log,
            region_locator=CallableRegionLocator(broken),
            default_region="EU",
            clock=clock,
        )
        store.set("user-1", "analytics", GRANTED, 0, ConsentMetadata(ip_address="198.51.100.1"))
        assert store.get_all("user-1").region == "EU"

    def test_stored_region_reused(self, store):
        store.set("user-1", "analytics", GRANTED, 0, ConsentMetadata(region="US"))
        store.set("user-1", "marketing", GRANTED, 0)
        assert store.get_all("user-1").region == "US"


class TestLegacyMigration:
    """Import of historical yes/no consent flags."""

    def test_migrates_to_analytics(self, store, audit_log):
        record = store.migrate_legacy("user-1", True)
        assert record.state == GRANTED
        assert record.category == "analytics"
        assert audit_log.latest("user-1").source == LEGACY_SOURCE

    def test_runs_once(self, store):
        store.migrate_legacy("user-1", True)
        assert store.migrate_legacy("user-1", False) is None
        assert store.get("user-1", "analytics") == GRANTED

    def test_existing_consent_wins(self, store, eu_meta):
        """A subject who already chose is not overwritten."""
        store.set("user-1", "analytics", DENIED, 0, eu_meta)
        assert store.migrate_legacy("user-1", True) is None
        assert store.get("user-1", "analytics") == DENIED

    def test_not_blocked_by_region(self, store):
        """Migration bypasses the regional check."""
        meta = ConsentMetadata(region="XX")
        assert store.migrate_legacy("user-1", True, meta).state == GRANTED


class TestNotification:
    """Listeners and events after commit."""

    def test_commit_listener_gets_snapshot(self, store, eu_meta):
        seen = []
        store.add_commit_listener(lambda subject, snapshot: seen.append((subject, snapshot)))
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        assert seen[0][0] == "user-1"
        assert seen[0][1].state_of("analytics") == GRANTED

    def test_events_published_per_change(self, db, registry, resolver, audit_log, clock, eu_meta):
        """A cascade publishes one event per changed category."""
        events = []
        bus = EventBus()
        bus.subscribe(CallbackSubscriber(events.append))
        store = ConsentStore(db, registry, resolver, audit_log, event_bus=bus, clock=clock)
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        store.set("user-1", "personalization", GRANTED, 0, eu_meta)
        store.set("user-1", "analytics", DENIED, 1, eu_meta)

        assert [(e.category, e.new_state, e.version) for e in events] == [
            ("analytics", GRANTED, 1),
            ("personalization", GRANTED, 1),
            ("analytics", DENIED, 2),
            ("personalization", DENIED, 2),
        ]
        assert events[-1].is_withdrawal

    def test_noop_publishes_nothing(self, db, registry, resolver, audit_log, clock, eu_meta):
        events = []
        bus = EventBus()
        bus.subscribe(CallbackSubscriber(events.append))
        store = ConsentStore(db, registry, resolver, audit_log, event_bus=bus, clock=clock)
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        store.set("user-1", "analytics", GRANTED, 1, eu_meta)
        assert len(events) == 1


class TestErasureAndStats:
    def test_erase_subject(self, store, eu_meta):
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        store.set("user-1", "marketing", DENIED, 0, eu_meta)
        assert store.erase_subject("user-1") == 2
        snapshot = store.get_all("user-1")
        assert snapshot.state_of("analytics") == NOT_SET
        assert snapshot.region is None

    def test_statistics(self, store, eu_meta):
        store.set("user-1", "analytics", GRANTED, 0, eu_meta)
        store.set("user-2", "analytics", DENIED, 0, eu_meta)
        store.set("user-3", "marketing", GRANTED, 0, eu_meta)
        stats = store.statistics()
        assert stats["analytics"] == {"granted": 1, "denied": 1, "total": 2}
        assert stats["marketing"]["granted"] == 1
        assert stats["personalization"]["total"] == 0
