"""Shared fixtures for consent engine tests."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest
import requests

# Ensure project root is on sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.config_loader import reload_config
from core.interfaces import DataDeleter, RenewalNotifier
from core.models import (
    ConsentCategory,
    ConsentMetadata,
    ConsentPosture,
    RegionalRuleset,
    UnsetTreatment,
)
from consent.audit_log import AuditLog
from consent.engine import build_engine
from consent.persistence import ConsentDB
from consent.regional import RegionalComplianceResolver
from consent.registry import CategoryRegistry
from consent.store import ConsentStore
from propagation.webhooks import WebhookTransport


class FakeClock:
    """Controllable clock; call it to read the time."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTransport(WebhookTransport):
    """Records posts; fails the first `failures[endpoint]` attempts."""

    def __init__(self):
        self.calls: List[Tuple[str, bytes, Dict[str, str]]] = []
        self.failures: Dict[str, int] = {}
        self.status_on_failure = None

    def post(self, url, body, headers, timeout):
        self.calls.append((url, body, headers))
        remaining = self.failures.get(url, 0)
        if remaining > 0:
            self.failures[url] = remaining - 1
            if self.status_on_failure is not None:
                return self.status_on_failure
            raise requests.ConnectionError("connection refused")
        return 200

    def calls_to(self, url):
        return [c for c in self.calls if c[0] == url]


class RecordingDeleter(DataDeleter):
    """Records deletion requests without touching any data store."""

    def __init__(self):
        self.calls: List[Tuple[str, Optional[str]]] = []

    def delete_data(self, subject, category):
        self.calls.append((subject, category))


class RecordingNotifier(RenewalNotifier):
    """Records renewal reminders without sending anything."""

    def __init__(self):
        self.sent: List[Tuple[str, str]] = []

    def send_renewal_reminder(self, subject, ruleset):
        self.sent.append((subject, ruleset.region))


TEST_CATEGORIES = [
    {"id": "analytics", "label": "Analytics", "retention_period": "30d"},
    {"id": "marketing", "label": "Marketing", "retention_period": "14d"},
    {
        "id": "personalization",
        "label": "Personalization",
        "dependencies": ["analytics"],
        "gated_services": ["recommendations"],
        "retention_period": "30d",
    },
]

TEST_REGIONS = {
    "EU": {
        "mandatory_categories": ["necessary"],
        "default_posture": "opt_in",
        "renewal_period": "365d",
        "unset_treatment": "deny",
    },
    "US": {
        "mandatory_categories": ["necessary"],
        "default_posture": "opt_out",
        "renewal_period": "730d",
        "unset_treatment": "allow",
    },
}


@pytest.fixture(autouse=True)
def _fresh_config():
    reload_config()
    yield
    reload_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def registry():
    registry = CategoryRegistry()
    registry.register_many(ConsentCategory(**entry) for entry in TEST_CATEGORIES)
    return registry


@pytest.fixture
def eu_ruleset():
    return RegionalRuleset(
        region="EU",
        mandatory_categories=frozenset({"necessary"}),
        default_posture=ConsentPosture.OPT_IN,
        renewal_period=timedelta(days=365),
        unset_treatment=UnsetTreatment.DENY,
    )


@pytest.fixture
def us_ruleset():
    return RegionalRuleset(
        region="US",
        mandatory_categories=frozenset({"necessary"}),
        default_posture=ConsentPosture.OPT_OUT,
        renewal_period=timedelta(days=730),
        unset_treatment=UnsetTreatment.ALLOW,
    )


@pytest.fixture
def resolver(registry, eu_ruleset, us_ruleset):
    return RegionalComplianceResolver(registry, [eu_ruleset, us_ruleset])


@pytest.fixture
def db():
    database = ConsentDB(":memory:")
    yield database
    database.close()


@pytest.fixture
def audit_log(db):
    return AuditLog(db, hash_salt="test-salt")


@pytest.fixture
def store(db, registry, resolver, audit_log, clock):
    return ConsentStore(
        db, registry, resolver, audit_log, default_region="EU", hash_salt="test-salt", clock=clock
    )


@pytest.fixture
def eu_meta():
    return ConsentMetadata(policy_version="v1", region="EU")


@pytest.fixture
def deleter():
    return RecordingDeleter()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(clock, transport, deleter, notifier):
    engine = build_engine(
        config={
            "categories": TEST_CATEGORIES,
            "regions": TEST_REGIONS,
            "lifecycle": {"default_region": "EU"},
            "privacy": {"hash_salt": "test-salt", "export_key": None, "encrypt_exports": False},
            "subscriptions": [],
        },
        db_path=":memory:",
        transport=transport,
        deleter=deleter,
        notifier=notifier,
        clock=clock,
    )
    yield engine
    engine.close()
