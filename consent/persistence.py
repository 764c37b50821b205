"""
SQLite persistence backend for the consent engine.

Provides durable storage for consent records, subject metadata, the audit
log, lifecycle jobs, pending webhook deliveries and dead letters. Uses WAL journal mode for
concurrent read/write access and thread-local connections for thread
safety; an in-memory database is shared by all threads behind a lock.

Writes go through :meth:`ConsentDB.transaction`, which opens a
``BEGIN IMMEDIATE`` transaction so a record change and its audit entry
commit or roll back together.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import structlog

from core.exceptions import ConsentEngineError, StorageFailure
from core.models import (
    ChangeEvent,
    ConsentRecord,
    ConsentState,
    DeadLetter,
    JobKind,
    JobStatus,
    LifecycleJob,
)
from core.utils import isoformat, parse_timestamp, utcnow

logger = structlog.get_logger(__name__)


DEFAULT_DB_PATH = Path("data/consent.db")

SCHEMA = """
    CREATE TABLE IF NOT EXISTS consent_records (
        subject TEXT NOT NULL,
        category TEXT NOT NULL,
        state TEXT NOT NULL,
        version INTEGER NOT NULL,
        timestamp TEXT NOT NULL,
        policy_version TEXT,
        method TEXT,
        context_hash TEXT,
        PRIMARY KEY (subject, category)
    );
    CREATE INDEX IF NOT EXISTS idx_records_category_state
        ON consent_records(category, state);

    CREATE TABLE IF NOT EXISTS subjects (
        subject TEXT PRIMARY KEY,
        region TEXT,
        policy_version TEXT,
        legacy_migrated_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS audit_log (
        entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
        action TEXT NOT NULL,
        subject TEXT NOT NULL,
        category TEXT,
        previous_state TEXT,
        new_state TEXT,
        version INTEGER,
        timestamp TEXT NOT NULL,
        source TEXT NOT NULL,
        policy_version TEXT,
        method TEXT,
        context_hash TEXT,
        details TEXT DEFAULT '{}'
    );
    CREATE INDEX IF NOT EXISTS idx_audit_subject_time
        ON audit_log(subject, timestamp);

    CREATE TABLE IF NOT EXISTS lifecycle_jobs (
        job_id INTEGER PRIMARY KEY AUTOINCREMENT,
        kind TEXT NOT NULL,
        subject TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT '',
        due_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL,
        completed_at TEXT
    );
    CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_single_pending
        ON lifecycle_jobs(kind, subject, category) WHERE status = 'pending';
    CREATE INDEX IF NOT EXISTS idx_jobs_due
        ON lifecycle_jobs(status, due_at);

    CREATE TABLE IF NOT EXISTS dead_letters (
        delivery_id TEXT PRIMARY KEY,
        service_id TEXT NOT NULL,
        endpoint TEXT NOT NULL,
        event TEXT NOT NULL,
        attempt_count INTEGER NOT NULL,
        last_error TEXT,
        dead_lettered_at TEXT NOT NULL,
        resolved INTEGER DEFAULT 0
    );
    CREATE INDEX IF NOT EXISTS idx_dead_letters_service
        ON dead_letters(service_id);

    CREATE TABLE IF NOT EXISTS webhook_deliveries (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        delivery_id TEXT NOT NULL UNIQUE,
        service_id TEXT NOT NULL,
        event TEXT NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        next_attempt_at TEXT,
        last_error TEXT,
        enqueued_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_deliveries_service
        ON webhook_deliveries(service_id, seq);

    CREATE TABLE IF NOT EXISTS webhook_cursors (
        service_id TEXT NOT NULL,
        pair_key TEXT NOT NULL,
        version INTEGER NOT NULL,
        PRIMARY KEY (service_id, pair_key)
    );
"""


class ConsentDB:
    """Thread-safe SQLite backend for consent data."""

    def __init__(self, db_path: Optional[str] = None, busy_timeout: float = 5.0):
        """
        Initialize consent database.

        Args:
            db_path: Path to SQLite database file. Use ':memory:' for testing.
                     Defaults to 'data/consent.db'.
            busy_timeout: Seconds to wait for a competing writer's lock.
        """
        self.busy_timeout = busy_timeout
        self._local = threading.local()
        self._shared: Optional[sqlite3.Connection] = None
        self._lock: Optional[threading.RLock] = None

        if db_path == ":memory:":
            self.db_path = ":memory:"
            # every thread must see the same in-memory database
            self._lock = threading.RLock()
        else:
            self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    @property
    def in_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=not self.in_memory,
        )
        conn.row_factory = sqlite3.Row
        if not self.in_memory:
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _get_conn(self) -> sqlite3.Connection:
        """Get the connection for the calling thread."""
        if self.in_memory:
            if self._shared is None:
                self._shared = self._connect()
            return self._shared
        if getattr(self._local, "conn", None) is None:
            self._local.conn = self._connect()
        return self._local.conn

    def _guard(self):
        return self._lock if self._lock is not None else nullcontext()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with self._guard():
            self._get_conn().executescript(SCHEMA)

    def close(self):
        """Close the calling thread's connection (or the shared one)."""
        with self._guard():
            if self._shared is not None:
                self._shared.close()
                self._shared = None
            if getattr(self._local, "conn", None) is not None:
                self._local.conn.close()
                self._local.conn = None

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block of writes as one atomic unit.

        Nested use joins the outer transaction. Engine errors raised inside
        the block roll back and propagate unchanged; SQLite errors roll back
        and surface as StorageFailure.
        """
        with self._guard():
            conn = self._get_conn()
            if conn.in_transaction:
                yield conn
                return
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageFailure(f"Could not begin transaction: {e}", "begin") from e
            try:
                yield conn
                conn.execute("COMMIT")
            except ConsentEngineError:
                conn.execute("ROLLBACK")
                raise
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StorageFailure(f"Transaction failed: {e}", "commit") from e
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    @contextmanager
    def reading(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Connection for reads; SQLite errors surface as StorageFailure."""
        with self._guard():
            try:
                yield self._get_conn()
            except sqlite3.Error as e:
                raise StorageFailure(f"Read failed: {e}", operation) from e

    # =========================================================================
    # CONSENT RECORDS
    # =========================================================================

    def fetch_records(
        self, subject: str, conn: Optional[sqlite3.Connection] = None
    ) -> Dict[str, ConsentRecord]:
        """All stored records of a subject, keyed by category."""
        query = "SELECT * FROM consent_records WHERE subject = ?"
        if conn is not None:
            rows = conn.execute(query, (subject,)).fetchall()
        else:
            with self.reading("fetch_records") as c:
                rows = c.execute(query, (subject,)).fetchall()
        return {row["category"]: self._row_to_record(row) for row in rows}

    def insert_record(self, conn: sqlite3.Connection, record: ConsentRecord) -> bool:
        """Insert a first record for a pair; False if one already exists."""
        cursor = conn.execute(
            """INSERT OR IGNORE INTO consent_records
               (subject, category, state, version, timestamp,
                policy_version, method, context_hash)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            self._record_params(record),
        )
        return cursor.rowcount == 1

    def update_record(
        self, conn: sqlite3.Connection, record: ConsentRecord, expected_version: int
    ) -> bool:
        """Conditionally update a record; False if its version moved on."""
        cursor = conn.execute(
            """UPDATE consent_records
               SET state = ?, version = ?, timestamp = ?,
                   policy_version = ?, method = ?, context_hash = ?
               WHERE subject = ? AND category = ? AND version = ?""",
            (
                record.state.value,
                record.version,
                isoformat(record.timestamp),
                record.policy_version,
                record.method,
                record.context_hash,
                record.subject,
                record.category,
                expected_version,
            ),
        )
        return cursor.rowcount == 1

    def delete_records(self, conn: sqlite3.Connection, subject: str) -> int:
        cursor = conn.execute("DELETE FROM consent_records WHERE subject = ?", (subject,))
        conn.execute("DELETE FROM subjects WHERE subject = ?", (subject,))
        return cursor.rowcount

    def list_records(self, state: Optional[ConsentState] = None) -> List[ConsentRecord]:
        """All records, optionally filtered by state."""
        with self.reading("list_records") as conn:
            if state is None:
                rows = conn.execute(
                    "SELECT * FROM consent_records ORDER BY subject, category"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM consent_records WHERE state = ? ORDER BY subject, category",
                    (state.value,),
                ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count_by_category(self) -> Dict[str, Dict[str, int]]:
        """Per-category counts of each stored state."""
        with self.reading("count_by_category") as conn:
            rows = conn.execute(
                """SELECT category, state, COUNT(*) AS n FROM consent_records
                   GROUP BY category, state"""
            ).fetchall()
        counts: Dict[str, Dict[str, int]] = {}
        for row in rows:
            counts.setdefault(row["category"], {})[row["state"]] = row["n"]
        return counts

    @staticmethod
    def _record_params(record: ConsentRecord) -> tuple:
        return (
            record.subject,
            record.category,
            record.state.value,
            record.version,
            isoformat(record.timestamp),
            record.policy_version,
            record.method,
            record.context_hash,
        )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ConsentRecord:
        return ConsentRecord(
            subject=row["subject"],
            category=row["category"],
            state=ConsentState(row["state"]),
            version=row["version"],
            timestamp=parse_timestamp(row["timestamp"]),
            policy_version=row["policy_version"],
            method=row["method"],
            context_hash=row["context_hash"],
        )

    # =========================================================================
    # SUBJECTS
    # =========================================================================

    def get_subject(
        self, subject: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Dict[str, Any]]:
        query = "SELECT * FROM subjects WHERE subject = ?"
        if conn is not None:
            row = conn.execute(query, (subject,)).fetchone()
        else:
            with self.reading("get_subject") as c:
                row = c.execute(query, (subject,)).fetchone()
        return dict(row) if row else None

    def upsert_subject(
        self,
        conn: sqlite3.Connection,
        subject: str,
        region: Optional[str] = None,
        policy_version: Optional[str] = None,
        legacy_migrated: bool = False,
    ) -> None:
        """Create or update a subject row; None arguments keep stored values."""
        now = isoformat(utcnow())
        conn.execute(
            """INSERT INTO subjects
               (subject, region, policy_version, legacy_migrated_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(subject) DO UPDATE SET
                   region = COALESCE(excluded.region, subjects.region),
                   policy_version = COALESCE(excluded.policy_version, subjects.policy_version),
                   legacy_migrated_at = COALESCE(subjects.legacy_migrated_at,
                                                 excluded.legacy_migrated_at),
                   updated_at = excluded.updated_at""",
            (
                subject,
                region,
                policy_version,
                now if legacy_migrated else None,
                now,
                now,
            ),
        )

    # =========================================================================
    # LIFECYCLE JOBS
    # =========================================================================

    def upsert_pending_job(
        self,
        conn: sqlite3.Connection,
        kind: JobKind,
        subject: str,
        category: str,
        due_at: datetime,
        keep_latest: bool = False,
    ) -> LifecycleJob:
        """
        Schedule the single pending job for (kind, subject, category).

        Args:
            keep_latest: Keep whichever due time is later instead of overwriting.
        """
        existing = conn.execute(
            """SELECT * FROM lifecycle_jobs
               WHERE kind = ? AND subject = ? AND category = ? AND status = 'pending'""",
            (kind.value, subject, category),
        ).fetchone()
        due = isoformat(due_at)
        if existing is None:
            cursor = conn.execute(
                """INSERT INTO lifecycle_jobs (kind, subject, category, due_at, status, created_at)
                   VALUES (?, ?, ?, ?, 'pending', ?)""",
                (kind.value, subject, category, due, isoformat(utcnow())),
            )
            job_id = cursor.lastrowid
        else:
            job_id = existing["job_id"]
            if keep_latest and existing["due_at"] >= due:
                due = existing["due_at"]
            conn.execute(
                "UPDATE lifecycle_jobs SET due_at = ? WHERE job_id = ?", (due, job_id)
            )
        row = conn.execute(
            "SELECT * FROM lifecycle_jobs WHERE job_id = ?", (job_id,)
        ).fetchone()
        return self._row_to_job(row)

    def cancel_pending_jobs(
        self,
        conn: sqlite3.Connection,
        subject: str,
        kind: Optional[JobKind] = None,
        category: Optional[str] = None,
    ) -> int:
        clauses = ["subject = ?", "status = 'pending'"]
        params: List[Any] = [subject]
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind.value)
        if category is not None:
            clauses.append("category = ?")
            params.append(category)
        cursor = conn.execute(
            f"UPDATE lifecycle_jobs SET status = 'cancelled', completed_at = ? "
            f"WHERE {' AND '.join(clauses)}",
            [isoformat(utcnow())] + params,
        )
        return cursor.rowcount

    def complete_job(self, conn: sqlite3.Connection, job_id: int) -> bool:
        """Mark a pending job completed; False if it was no longer pending."""
        cursor = conn.execute(
            """UPDATE lifecycle_jobs SET status = 'completed', completed_at = ?
               WHERE job_id = ? AND status = 'pending'""",
            (isoformat(utcnow()), job_id),
        )
        return cursor.rowcount == 1

    def get_job(self, job_id: int) -> Optional[LifecycleJob]:
        with self.reading("get_job") as conn:
            row = conn.execute(
                "SELECT * FROM lifecycle_jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(
        self,
        subject: Optional[str] = None,
        status: Optional[JobStatus] = JobStatus.PENDING,
        kind: Optional[JobKind] = None,
        due_before: Optional[datetime] = None,
    ) -> List[LifecycleJob]:
        clauses, params = [], []
        if subject is not None:
            clauses.append("subject = ?")
            params.append(subject)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind.value)
        if due_before is not None:
            clauses.append("due_at <= ?")
            params.append(isoformat(due_before))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.reading("list_jobs") as conn:
            rows = conn.execute(
                f"SELECT * FROM lifecycle_jobs {where} ORDER BY due_at, job_id", params
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> LifecycleJob:
        return LifecycleJob(
            job_id=row["job_id"],
            kind=JobKind(row["kind"]),
            subject=row["subject"],
            category=row["category"],
            due_at=parse_timestamp(row["due_at"]),
            status=JobStatus(row["status"]),
            created_at=parse_timestamp(row["created_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
        )

    # =========================================================================
    # DEAD LETTERS
    # =========================================================================

    def save_dead_letter(self, letter: DeadLetter) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO dead_letters
                   (delivery_id, service_id, endpoint, event, attempt_count,
                    last_error, dead_lettered_at, resolved)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 0)""",
                (
                    letter.delivery_id,
                    letter.service_id,
                    letter.endpoint,
                    json.dumps(letter.event.to_dict()),
                    letter.attempt_count,
                    letter.last_error,
                    isoformat(letter.dead_lettered_at),
                ),
            )
        logger.warning(
            "Webhook delivery dead-lettered",
            delivery_id=letter.delivery_id,
            service_id=letter.service_id,
            attempts=letter.attempt_count,
        )

    def list_dead_letters(
        self, service_id: Optional[str] = None, include_resolved: bool = False
    ) -> List[DeadLetter]:
        clauses, params = [], []
        if service_id is not None:
            clauses.append("service_id = ?")
            params.append(service_id)
        if not include_resolved:
            clauses.append("resolved = 0")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.reading("list_dead_letters") as conn:
            rows = conn.execute(
                f"SELECT * FROM dead_letters {where} ORDER BY dead_lettered_at", params
            ).fetchall()
        return [self._row_to_dead_letter(row) for row in rows]

    def resolve_dead_letter(self, delivery_id: str) -> bool:
        """Mark a dead letter as handled by an operator."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE dead_letters SET resolved = 1 WHERE delivery_id = ?",
                (delivery_id,),
            )
        return cursor.rowcount == 1

    @staticmethod
    def _row_to_dead_letter(row: sqlite3.Row) -> DeadLetter:
        return DeadLetter(
            delivery_id=row["delivery_id"],
            service_id=row["service_id"],
            endpoint=row["endpoint"],
            event=json.loads(row["event"]),
            attempt_count=row["attempt_count"],
            last_error=row["last_error"],
            dead_lettered_at=parse_timestamp(row["dead_lettered_at"]),
        )

    # =========================================================================
    # PENDING WEBHOOK DELIVERIES
    # =========================================================================

    def save_delivery(
        self,
        delivery_id: str,
        service_id: str,
        event: ChangeEvent,
        attempt_count: int = 0,
        next_attempt_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
        enqueued_at: Optional[datetime] = None,
    ) -> None:
        """Insert a queued delivery, or update its retry state; queue order is kept."""
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO webhook_deliveries
                   (delivery_id, service_id, event, attempt_count,
                    next_attempt_at, last_error, enqueued_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(delivery_id) DO UPDATE SET
                       attempt_count = excluded.attempt_count,
                       next_attempt_at = excluded.next_attempt_at,
                       last_error = excluded.last_error""",
                (
                    delivery_id,
                    service_id,
                    json.dumps(event.to_dict()),
                    attempt_count,
                    isoformat(next_attempt_at),
                    last_error,
                    isoformat(enqueued_at or utcnow()),
                ),
            )

    def delete_delivery(self, delivery_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM webhook_deliveries WHERE delivery_id = ?", (delivery_id,)
            )
        return cursor.rowcount == 1

    def delete_deliveries(self, service_id: str) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM webhook_deliveries WHERE service_id = ?", (service_id,)
            )
        return cursor.rowcount

    def list_deliveries(self, service_id: str) -> List[Dict[str, Any]]:
        """Queued deliveries of a subscriber, oldest first."""
        with self.reading("list_deliveries") as conn:
            rows = conn.execute(
                "SELECT * FROM webhook_deliveries WHERE service_id = ? ORDER BY seq",
                (service_id,),
            ).fetchall()
        return [
            {
                "delivery_id": row["delivery_id"],
                "service_id": row["service_id"],
                "event": ChangeEvent.model_validate(json.loads(row["event"])),
                "attempt_count": row["attempt_count"],
                "next_attempt_at": parse_timestamp(row["next_attempt_at"]),
                "last_error": row["last_error"],
                "enqueued_at": parse_timestamp(row["enqueued_at"]),
            }
            for row in rows
        ]

    def save_cursor(self, service_id: str, pair_key: str, version: int) -> None:
        """Record the last version delivered to a subscriber; never moves back."""
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO webhook_cursors (service_id, pair_key, version)
                   VALUES (?, ?, ?)
                   ON CONFLICT(service_id, pair_key) DO UPDATE SET
                       version = MAX(version, excluded.version)""",
                (service_id, pair_key, version),
            )

    def load_cursors(self, service_id: str) -> Dict[str, int]:
        with self.reading("load_cursors") as conn:
            rows = conn.execute(
                "SELECT pair_key, version FROM webhook_cursors WHERE service_id = ?",
                (service_id,),
            ).fetchall()
        return {row["pair_key"]: row["version"] for row in rows}
