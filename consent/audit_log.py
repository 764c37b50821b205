"""
Consent Audit Log
=================
Append-only, per-subject history of consent changes and lifecycle actions.

Entries are appended inside the caller's transaction, so a consent change
and its audit entry are committed together or not at all. The only
deletion path is :meth:`AuditLog.erase_subject`, which leaves a tombstone
entry recording that the erasure happened.
"""

import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import structlog

from core.exceptions import AuditAppendError
from core.models import AuditAction, AuditEntry, ConsentState
from core.utils import hash_identifier, isoformat, parse_timestamp, redact
from consent.persistence import ConsentDB

logger = structlog.get_logger(__name__)


class AuditLog:
    """
    Append-only audit trail stored in the ``audit_log`` table.

    Example:
        >>> log = AuditLog(ConsentDB(":memory:"))
        >>> with log.db.transaction() as conn:
        ...     log.append(entry, conn)
        >>> [e.category for e in log.query("user-1")]
    """

    def __init__(self, db: ConsentDB, hash_salt: str = "", batch_size: int = 500):
        """
        Args:
            db: Consent database.
            hash_salt: Salt for hashing erased subject identifiers.
            batch_size: Rows fetched per page when iterating a query.
        """
        self.db = db
        self.hash_salt = hash_salt
        self.batch_size = batch_size

    # =========================================================================
    # Writes
    # =========================================================================

    def append(self, entry: AuditEntry, conn: sqlite3.Connection) -> AuditEntry:
        """
        Append an entry inside an open transaction.

        Returns:
            The entry with its assigned ``entry_id``.

        Raises:
            AuditAppendError: If the insert fails; the caller's transaction
                must then be rolled back.
        """
        data = entry.to_log_entry()
        try:
            cursor = conn.execute(
                """INSERT INTO audit_log
                   (action, subject, category, previous_state, new_state, version,
                    timestamp, source, policy_version, method, context_hash, details)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    data["action"],
                    data["subject"],
                    data["category"],
                    data["previous_state"],
                    data["new_state"],
                    data["version"],
                    data["timestamp"],
                    data["source"],
                    data["policy_version"],
                    data["method"],
                    data["context_hash"],
                    json.dumps(data["details"], default=str),
                ),
            )
        except sqlite3.Error as e:
            logger.error(
                "Audit append failed",
                subject=redact(entry.subject),
                action=data["action"],
                error=str(e),
            )
            raise AuditAppendError(f"Could not append audit entry: {e}", data) from e
        return entry.model_copy(update={"entry_id": cursor.lastrowid})

    def erase_subject(self, subject: str, reason: str = "erasure_request") -> AuditEntry:
        """
        Remove a subject's history, leaving a single tombstone entry.

        The tombstone stores the subject as a salted hash, so it proves the
        erasure without keeping the identifier.
        """
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM audit_log WHERE subject = ?", (subject,))
            removed = cursor.rowcount
            tombstone = self.append(
                AuditEntry(
                    action=AuditAction.SUBJECT_ERASED,
                    subject=hash_identifier(subject, self.hash_salt),
                    source="lifecycle",
                    details={"reason": reason, "entries_removed": removed},
                ),
                conn,
            )
        logger.info(
            "Audit history erased",
            subject=redact(subject),
            entries_removed=removed,
            reason=reason,
        )
        return tombstone

    # =========================================================================
    # Reads
    # =========================================================================

    def query(
        self,
        subject: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> "AuditQuery":
        """
        Entries of a subject in append order, bounded by ``[since, until]``.

        The result is lazy and can be iterated more than once; each pass
        reads the table again in pages.
        """
        return AuditQuery(self, subject, since, until)

    def page(
        self,
        subject: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        cursor: Optional[int] = None,
        limit: int = 50,
    ) -> Tuple[List[AuditEntry], Optional[int]]:
        """
        One page of history.

        Args:
            cursor: ``entry_id`` of the last entry of the previous page.
            limit: Maximum entries per page.

        Returns:
            (entries, next_cursor); next_cursor is None on the last page.
        """
        limit = max(1, limit)
        rows = self._fetch(subject, since, until, after_id=cursor, limit=limit + 1)
        entries = [self._row_to_entry(row) for row in rows[:limit]]
        next_cursor = entries[-1].entry_id if len(rows) > limit else None
        return entries, next_cursor

    def export(self, subject: str) -> List[Dict[str, Any]]:
        """Full history of a subject as JSON-ready dicts."""
        return [entry.to_log_entry() for entry in self.query(subject)]

    def count(self, subject: Optional[str] = None) -> int:
        with self.db.reading("audit_count") as conn:
            if subject is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM audit_log").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM audit_log WHERE subject = ?", (subject,)
                ).fetchone()
        return row["n"]

    def change_counts(self) -> Dict[Tuple[str, str], int]:
        """Number of consent-change entries per (subject, category)."""
        with self.db.reading("audit_change_counts") as conn:
            rows = conn.execute(
                """SELECT subject, category, COUNT(*) AS n FROM audit_log
                   WHERE action = ? GROUP BY subject, category""",
                (AuditAction.CONSENT_CHANGED.value,),
            ).fetchall()
        return {(row["subject"], row["category"]): row["n"] for row in rows}

    def latest(self, subject: str) -> Optional[AuditEntry]:
        with self.db.reading("audit_latest") as conn:
            row = conn.execute(
                "SELECT * FROM audit_log WHERE subject = ? ORDER BY entry_id DESC LIMIT 1",
                (subject,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def _fetch(
        self,
        subject: str,
        since: Optional[datetime],
        until: Optional[datetime],
        after_id: Optional[int],
        limit: int,
    ) -> List[sqlite3.Row]:
        query = "SELECT * FROM audit_log WHERE subject = ?"
        params: list = [subject]
        if since is not None:
            query += " AND timestamp >= ?"
            params.append(isoformat(since))
        if until is not None:
            query += " AND timestamp <= ?"
            params.append(isoformat(until))
        if after_id is not None:
            query += " AND entry_id > ?"
            params.append(after_id)
        query += " ORDER BY entry_id LIMIT ?"
        params.append(limit)
        with self.db.reading("audit_query") as conn:
            return conn.execute(query, params).fetchall()

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> AuditEntry:
        return AuditEntry(
            entry_id=row["entry_id"],
            action=AuditAction(row["action"]),
            subject=row["subject"],
            category=row["category"],
            previous_state=ConsentState(row["previous_state"]) if row["previous_state"] else None,
            new_state=ConsentState(row["new_state"]) if row["new_state"] else None,
            version=row["version"],
            timestamp=parse_timestamp(row["timestamp"]),
            source=row["source"],
            policy_version=row["policy_version"],
            method=row["method"],
            context_hash=row["context_hash"],
            details=json.loads(row["details"]) if row["details"] else {},
        )


class AuditQuery:
    """Restartable lazy view over a subject's audit entries."""

    def __init__(
        self,
        log: AuditLog,
        subject: str,
        since: Optional[datetime],
        until: Optional[datetime],
    ):
        self._log = log
        self.subject = subject
        self.since = since
        self.until = until

    def __iter__(self) -> Iterator[AuditEntry]:
        after_id = None
        while True:
            rows = self._log._fetch(
                self.subject, self.since, self.until, after_id, self._log.batch_size
            )
            for row in rows:
                yield self._log._row_to_entry(row)
            if len(rows) < self._log.batch_size:
                return
            after_id = rows[-1]["entry_id"]

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def to_list(self) -> List[AuditEntry]:
        return list(self)


