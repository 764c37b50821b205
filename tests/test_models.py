"""Tests for core models and helpers."""

from datetime import timedelta

import pytest

from core.models import ChangeEvent, ConsentMetadata, ConsentState, RetryPolicy, WebhookSubscription
from core.utils import parse_duration, redact


class TestParseDuration:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("30d", timedelta(days=30)),
            ("6 hours", timedelta(hours=6)),
            ("12 months", timedelta(days=360)),
            ("2 weeks", timedelta(days=14)),
            (7, timedelta(days=7)),
            (None, None),
        ],
    )
    def test_parses(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["soon", "5 fortnights", True])
    def test_rejects(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


class TestRetryPolicy:
    def test_exponential_backoff(self):
        policy = RetryPolicy(initial_delay_seconds=1.0, multiplier=2.0, max_delay_seconds=5.0)
        delays = [policy.get_delay(n).total_seconds() for n in (1, 2, 3, 4)]
        assert delays == [1.0, 2.0, 4.0, 5.0]

    def test_fixed_backoff(self):
        policy = RetryPolicy(strategy="fixed", initial_delay_seconds=3.0)
        assert policy.get_delay(4) == timedelta(seconds=3)

    def test_max_attempts_positive(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestConsentModels:
    def test_context_hash_hides_raw_values(self):
        meta = ConsentMetadata(ip_address="203.0.113.7", user_agent="Mozilla/5.0")
        digest = meta.context_hash("salt")
        assert digest != ConsentMetadata(ip_address="203.0.113.7").context_hash("salt")
        assert digest != meta.context_hash("other-salt")
        assert ConsentMetadata().context_hash("salt") is None
        assert "203.0.113.7" not in repr(meta)

    def test_withdrawal_detection(self):
        event = ChangeEvent(
            subject="user-1",
            category="analytics",
            previous_state=ConsentState.GRANTED,
            new_state=ConsentState.DENIED,
            version=2,
        )
        assert event.is_withdrawal
        assert not event.is_grant
        assert event.key == ("user-1", "analytics")

    def test_subscription_endpoint_must_be_http(self):
        with pytest.raises(ValueError):
            WebhookSubscription(service_id="crm", endpoint="ftp://crm", secret="x")

    def test_redact(self):
        assert redact("user-123456789") == "user-123..."
        assert redact("short") == "short"
