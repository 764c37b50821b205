"""
Tests for the Consent Cache Layer
=================================
"""

import threading

import pytest

from core.exceptions import StorageFailure
from core.models import ConsentMetadata, ConsentState
from consent.cache import CacheLayer


@pytest.fixture
def cache(store, resolver, clock):
    return CacheLayer(store, resolver=resolver, ttl_seconds=60, max_size=3, clock=clock)


def _break_store(monkeypatch, store):
    def unreadable(subject):
        raise StorageFailure("database is locked", operation="fetch_records")

    monkeypatch.setattr(store, "get_all", unreadable)


class TestReadThrough:
    """Cache misses load from the store, hits do not."""

    def test_miss_then_hit(self, cache):
        cache.get("user-1")
        cache.get("user-1")
        stats = cache.stats()
        assert stats.misses == 1
        assert stats.hits == 1
        assert stats.hit_rate == 0.5

    def test_ttl_expiry(self, cache, clock):
        """Entries older than the TTL are reloaded."""
        cache.get("user-1")
        clock.advance(seconds=61)
        cache.get("user-1")
        assert cache.stats().misses == 2

    def test_lru_eviction(self, cache):
        """The least recently used subject is evicted at capacity."""
        for subject in ("a", "b", "c"):
            cache.get(subject)
        cache.get("a")
        cache.get("d")
        assert len(cache) == 3
        assert cache.stats().evictions == 1
        cache.get("b")
        assert cache.stats().misses == 5

    def test_len_waits_for_writers(self, cache):
        """Size reads take the cache lock like every other accessor."""
        cache.get("user-1")
        sizes = []
        reader = threading.Thread(target=lambda: sizes.append(len(cache)))
        with cache._lock:
            reader.start()
            reader.join(timeout=0.2)
            assert reader.is_alive()
        reader.join(timeout=5)
        assert sizes == [1]


class TestWriteThrough:
    """Committed changes are visible before the mutation returns."""

    def test_read_after_write(self, cache, store, eu_meta):
        cache.get("user-1")
        store.set("user-1", "analytics", ConsentState.GRANTED, 0, eu_meta)
        assert cache.get_state("user-1", "analytics") == ConsentState.GRANTED
        assert cache.stats().write_throughs == 1

    def test_stale_load_does_not_overwrite(self, cache, store, eu_meta, monkeypatch):
        """A load that started before a commit does not replace the committed snapshot."""
        original = store.get_all

        def slow_get_all(subject):
            stale = original(subject)
            store.set(subject, "analytics", ConsentState.GRANTED, 0, eu_meta)
            return stale

        monkeypatch.setattr(store, "get_all", slow_get_all)
        returned = cache.get("user-1")
        monkeypatch.setattr(store, "get_all", original)

        assert returned.state_of("analytics") == ConsentState.NOT_SET
        assert cache.get("user-1").state_of("analytics") == ConsentState.GRANTED

    def test_invalidate(self, cache):
        cache.get("user-1")
        cache.invalidate("user-1")
        assert len(cache) == 0

    def test_erasure_refreshes_cache(self, cache, store, eu_meta):
        store.set("user-1", "analytics", ConsentState.GRANTED, 0, eu_meta)
        store.erase_subject("user-1")
        assert cache.get_state("user-1", "analytics") == ConsentState.NOT_SET


class TestFailClosed:
    """An unreadable store never reads as consent."""

    def test_snapshot_degraded(self, cache, store, monkeypatch):
        _break_store(monkeypatch, store)
        snapshot = cache.get_snapshot("user-1")
        assert snapshot.degraded
        assert snapshot.state_of("necessary") == ConsentState.GRANTED
        assert snapshot.state_of("analytics") == ConsentState.DENIED
        assert cache.stats().storage_failures == 1

    def test_get_raises(self, cache, store, monkeypatch):
        _break_store(monkeypatch, store)
        with pytest.raises(StorageFailure):
            cache.get("user-1")

    def test_is_granted_false_on_failure(self, cache, store, monkeypatch):
        _break_store(monkeypatch, store)
        assert cache.is_granted("user-1", "analytics") is False
        assert cache.is_granted("user-1", "necessary") is True
        assert cache.get_state("user-1", "marketing") == ConsentState.DENIED


class TestIsGranted:
    """Effective reads apply the regional unset treatment."""

    def test_unset_denied_in_eu(self, cache, store):
        """A subject with no recorded region gets the strict reading of not_set."""
        assert cache.is_granted("user-1", "analytics") is False

    def test_unset_allowed_in_us(self, cache, store):
        store.set("user-1", "analytics", ConsentState.GRANTED, 0, ConsentMetadata(region="US"))
        assert cache.is_granted("user-1", "marketing") is True

    def test_unknown_category(self, cache):
        assert cache.is_granted("user-1", "telemetry") is False
