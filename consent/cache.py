"""
Consent Cache Layer
===================
Read-through LRU cache of per-subject consent snapshots with a bounded TTL.

The store pushes every committed snapshot into the cache before its
mutation returns (write-through), so a read never sees state older than
the last commit. A per-subject generation counter stops a slow miss that
started before a commit from overwriting the newer entry.

Reads are fail-closed: when the store cannot be read, every category
except ``necessary`` is reported as denied.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import structlog

from core.exceptions import StorageFailure
from core.models import NECESSARY_CATEGORY, ConsentState, SubjectConsent
from core.utils import isoformat, redact, utcnow
from consent.regional import RegionalComplianceResolver
from consent.store import ConsentStore

logger = structlog.get_logger(__name__)


@dataclass
class CacheEntry:
    """Cached snapshot with its expiry."""

    snapshot: SubjectConsent
    expires_at: datetime
    cached_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class CacheStats:
    """Statistics for the consent cache."""

    size: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    write_throughs: int = 0
    storage_failures: int = 0
    last_failure: Optional[datetime] = None

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 3),
            "evictions": self.evictions,
            "write_throughs": self.write_throughs,
            "storage_failures": self.storage_failures,
            "last_failure": isoformat(self.last_failure),
        }


class CacheLayer:
    """
    Read-through, write-through cache in front of the ConsentStore.

    Example:
        >>> cache = CacheLayer(store, ttl_seconds=300)
        >>> cache.is_granted("user-1", "analytics")
        False
    """

    def __init__(
        self,
        store: ConsentStore,
        resolver: Optional[RegionalComplianceResolver] = None,
        ttl_seconds: float = 300,
        max_size: int = 10000,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the cache and register it for commit notifications.

        Args:
            store: Authoritative consent store.
            resolver: When given, `not_set` is read through the subject's
                regional `unset_treatment` by `is_granted`.
            ttl_seconds: Entry time-to-live in seconds.
            max_size: Maximum number of cached subjects.
            clock: Source of the current time.
        """
        self.store = store
        self.resolver = resolver
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_size = max_size
        self.clock = clock

        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._generations: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._stats = CacheStats()

        store.add_commit_listener(self.on_commit)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, subject: str) -> SubjectConsent:
        """
        Snapshot of a subject, served from cache when fresh.

        Raises:
            StorageFailure: If the snapshot is not cached and the store is unreadable.
        """
        now = self.clock()
        with self._lock:
            entry = self._cache.get(subject)
            if entry is not None and not entry.is_expired(now):
                self._cache.move_to_end(subject)
                self._stats.hits += 1
                return entry.snapshot
            if entry is not None:
                del self._cache[subject]
            self._stats.misses += 1
            generation = self._generations.get(subject, 0)

        snapshot = self.store.get_all(subject)

        with self._lock:
            # a commit during the load has already installed a newer snapshot
            if self._generations.get(subject, 0) == generation:
                self._put(subject, snapshot)
        return snapshot

    def get_snapshot(self, subject: str) -> SubjectConsent:
        """Like `get`, but answers a degraded deny-all snapshot on StorageFailure."""
        try:
            return self.get(subject)
        except StorageFailure as e:
            self._record_failure(subject, e)
            return self._fail_closed(subject)

    def get_state(self, subject: str, category: str) -> ConsentState:
        """Stored state of a pair; denied when the store cannot be read."""
        if category == NECESSARY_CATEGORY:
            return ConsentState.GRANTED
        try:
            snapshot = self.get(subject)
        except StorageFailure as e:
            self._record_failure(subject, e)
            return ConsentState.DENIED
        return snapshot.state_of(category)

    def is_granted(self, subject: str, category: str) -> bool:
        """
        Whether processing under a category may run for a subject.

        `not_set` is read through the subject's regional ruleset when a
        resolver is configured, and as denied otherwise.
        """
        if category == NECESSARY_CATEGORY:
            return True
        snapshot = self.get_snapshot(subject)
        if category not in snapshot.categories:
            return False
        state = snapshot.state_of(category)
        if state == ConsentState.NOT_SET and self.resolver is not None:
            state = self.resolver.effective_state(state, self.resolver.resolve(snapshot.region))
        return state == ConsentState.GRANTED

    # -------------------------------------------------------------------------
    # Write-through
    # -------------------------------------------------------------------------

    def on_commit(self, subject: str, snapshot: SubjectConsent) -> None:
        """Install the committed snapshot of a subject."""
        with self._lock:
            self._generations[subject] = self._generations.get(subject, 0) + 1
            self._put(subject, snapshot)
            self._stats.write_throughs += 1

    def invalidate(self, subject: str) -> None:
        with self._lock:
            self._generations[subject] = self._generations.get(subject, 0) + 1
            self._cache.pop(subject, None)
            self._stats.size = len(self._cache)

    def clear(self) -> None:
        """Clear the cache (forces fresh reads for every subject)."""
        with self._lock:
            for subject in self._cache:
                self._generations[subject] = self._generations.get(subject, 0) + 1
            self._cache.clear()
            self._stats.size = 0
        logger.info("Consent cache cleared")

    def stats(self) -> CacheStats:
        with self._lock:
            self._stats.size = len(self._cache)
            return self._stats

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _put(self, subject: str, snapshot: SubjectConsent) -> None:
        self._cache.pop(subject, None)
        while len(self._cache) >= self.max_size:
            evicted, _ = self._cache.popitem(last=False)
            self._stats.evictions += 1
            logger.debug("Cache eviction", subject=redact(evicted))
        now = self.clock()
        self._cache[subject] = CacheEntry(
            snapshot=snapshot, expires_at=now + self.ttl, cached_at=now
        )
        self._stats.size = len(self._cache)

    def _record_failure(self, subject: str, error: StorageFailure) -> None:
        with self._lock:
            self._stats.storage_failures += 1
            self._stats.last_failure = self.clock()
        logger.warning(
            "Consent store unreadable, failing closed",
            subject=redact(subject),
            operation=error.operation,
            error=error.message,
        )

    def _fail_closed(self, subject: str) -> SubjectConsent:
        categories = {
            category_id: ConsentState.DENIED for category_id in self.store.registry.ids()
        }
        categories[NECESSARY_CATEGORY] = ConsentState.GRANTED
        return SubjectConsent(
            subject=subject,
            categories=categories,
            versions={},
            loaded_at=self.clock(),
            degraded=True,
        )
