"""
Tests for the Consent API Handlers
==================================
"""

import pytest
from cryptography.fernet import Fernet

from api.consent_api import ConsentAPI
from core.exceptions import StorageFailure

EU = {"policy_version": "v1", "region": "EU"}


@pytest.fixture
def api(engine):
    api = ConsentAPI(engine)
    yield api
    api.shutdown()


def _grant(api, subject, category, version=0):
    return api.post_consent(
        subject,
        {"category": category, "state": "granted", "expected_version": version, "metadata": EU},
    )


class TestGetConsent:
    def test_fresh_subject(self, api):
        body = api.get_consent("user-1")
        assert body["status"] == 200
        assert body["categories"]["analytics"] == "not_set"
        assert body["categories"]["necessary"] == "granted"
        assert body["versions"]["analytics"] == 0
        assert body["degraded"] is False

    def test_fail_closed(self, api, engine, monkeypatch):
        """An unreadable store answers deny-all, flagged as degraded."""

        def unreadable(subject):
            raise StorageFailure("disk I/O error", operation="fetch_records")

        monkeypatch.setattr(engine.store, "get_all", unreadable)
        body = api.get_consent("user-1")
        assert body["status"] == 200
        assert body["degraded"] is True
        assert body["categories"]["analytics"] == "denied"


class TestPostConsent:
    """Single-category changes and their error bodies."""

    def test_grant(self, api):
        body = _grant(api, "user-1", "analytics")
        assert body["status"] == 200
        assert body["previous_state"] == "not_set"
        assert body["record"]["state"] == "granted"
        assert body["record"]["version"] == 1
        assert api.get_consent("user-1")["categories"]["analytics"] == "granted"

    def test_missing_field(self, api):
        body = api.post_consent("user-1", {"category": "analytics", "state": "granted"})
        assert body["status"] == 422
        assert body["error_code"] == "VALIDATION_ERROR"
        assert body["details"]["field"] == "expected_version"

    def test_invalid_state(self, api):
        body = api.post_consent(
            "user-1", {"category": "analytics", "state": "maybe", "expected_version": 0}
        )
        assert body["status"] == 422
        assert body["details"]["field"] == "state"

    def test_invalid_metadata(self, api):
        body = api.post_consent(
            "user-1",
            {"category": "analytics", "state": "granted", "expected_version": 0, "metadata": "EU"},
        )
        assert body["status"] == 422
        assert body["details"]["field"] == "metadata"

    def test_version_conflict(self, api):
        _grant(api, "user-1", "analytics")
        body = _grant(api, "user-1", "marketing", version=0)
        assert body["status"] == 200
        body = api.post_consent(
            "user-1",
            {"category": "analytics", "state": "denied", "expected_version": 0, "metadata": EU},
        )
        assert body["status"] == 409
        assert body["error_code"] == "CONCURRENCY_CONFLICT"
        assert body["details"]["current_version"] == 1

    def test_dependency_violation(self, api):
        body = _grant(api, "user-1", "personalization")
        assert body["status"] == 409
        assert body["error_type"] == "DependencyViolation"
        assert body["details"]["missing_dependencies"] == ["analytics"]

    def test_region_violation(self, api):
        body = api.post_consent(
            "user-1",
            {
                "category": "analytics",
                "state": "granted",
                "expected_version": 0,
                "metadata": {"policy_version": "v1", "region": "ZZ"},
            },
        )
        assert body["status"] == 422
        assert body["error_code"] == "REGION_COMPLIANCE_VIOLATION"
        kinds = {v["kind"] for v in body["details"]["violations"]}
        assert kinds == {"missing_mandatory"}

    def test_necessary_immutable(self, api):
        body = api.post_consent(
            "user-1", {"category": "necessary", "state": "denied", "expected_version": 0}
        )
        assert body["status"] == 422
        assert body["error_code"] == "NECESSARY_IMMUTABLE"


class TestBulkAndWithdraw:
    def test_bulk(self, api):
        body = api.post_bulk(
            "user-1",
            {
                "changes": [
                    {"category": "analytics", "state": "granted"},
                    {"category": "personalization", "state": "granted"},
                ],
                "expected_versions": [0, 0],
                "metadata": EU,
            },
        )
        assert body["status"] == 200
        assert set(body["results"]) == {"analytics", "personalization"}

    def test_bulk_requires_lists(self, api):
        body = api.post_bulk("user-1", {"changes": {}, "expected_versions": 0})
        assert body["status"] == 422

    def test_withdraw_all(self, api):
        _grant(api, "user-1", "analytics")
        _grant(api, "user-1", "marketing")
        body = api.post_withdraw_all("user-1", {"metadata": EU})
        assert body == {"status": 200, "withdrawn": ["analytics", "marketing"]}


class TestHistory:
    def test_paged_history(self, api):
        _grant(api, "user-1", "analytics")
        _grant(api, "user-1", "marketing")
        _grant(api, "user-1", "personalization")

        first = api.get_history("user-1", limit=2)
        assert first["status"] == 200
        assert [e["category"] for e in first["entries"]] == ["analytics", "marketing"]
        second = api.get_history("user-1", cursor=first["next_cursor"], limit=2)
        assert [e["category"] for e in second["entries"]] == ["personalization"]
        assert second["next_cursor"] is None

    def test_invalid_limit(self, api):
        assert api.get_history("user-1", limit=0)["status"] == 422

    def test_invalid_timestamp(self, api):
        body = api.get_history("user-1", since="yesterday")
        assert body["status"] == 422
        assert body["details"]["field"] == "since"


class TestExport:
    """Asynchronous portability exports."""

    def test_export_package(self, api):
        _grant(api, "user-1", "analytics")
        started = api.post_export("user-1")
        assert started["status"] == 202

        result = api.wait_for_export(started["job_id"])

        assert result["status"] == 200
        package = result["package"]
        assert package["subject"] == "user-1"
        assert package["consent"]["categories"]["analytics"] == "granted"
        assert len(package["history"]) == 1
        assert {r["category"] for r in package["records"]} >= {"analytics", "necessary"}
        assert package["pending_jobs"] == [
            {"kind": "renewal", "category": None, "due_at": package["pending_jobs"][0]["due_at"]}
        ]

    def test_encrypted_export(self, engine):
        api = ConsentAPI(engine, export_key=Fernet.generate_key())
        try:
            job = api.post_export("user-1")
            result = api.wait_for_export(job["job_id"])
            assert "package" not in result
            package = api.decrypt_package(result["encrypted_package"])
            assert package["subject"] == "user-1"
        finally:
            api.shutdown()

    def test_unknown_export(self, api):
        body = api.get_export("exp-missing")
        assert body["status"] == 404
        assert body["error_code"] == "EXPORT_NOT_FOUND"


class TestErasureAndOperations:
    def test_delete_subject(self, api):
        _grant(api, "user-1", "analytics")
        body = api.delete_subject("user-1")
        assert body["status"] == 200
        assert body["tombstone"]["action"] == "subject_erased"
        assert api.get_consent("user-1")["categories"]["analytics"] == "not_set"
        assert api.get_history("user-1")["entries"] == []

    def test_statistics(self, api):
        _grant(api, "user-1", "analytics")
        body = api.get_statistics()
        assert body["categories"]["analytics"]["granted"] == 1

    def test_compliance_report(self, api):
        _grant(api, "user-1", "analytics")
        body = api.get_compliance_report()
        assert body["status"] == 200
        assert body["score"] == 100
