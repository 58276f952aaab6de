"""Append RemediationAttempt rows to the audit store and read them back."""

import logging
import sqlite3
from pathlib import Path

from audit_recovery.monitor.models import AnomalyKind, RemediationAttempt
from audit_recovery.store.models import RemediationAttemptRecord
from audit_recovery.store.sqlite_store import SqliteAuditStore, init_schema

logger = logging.getLogger(__name__)


class SqliteRemediationLog:
    def __init__(self, store: SqliteAuditStore) -> None:
        self._store = store

    def record(self, attempt: RemediationAttempt) -> int:
        """Persist one attempt. Returns the new row ID (0 if the write failed)."""
        try:
            conn = self._store.connection
            cursor = conn.execute(
                """INSERT INTO remediation_attempts
                   (anomaly_kind, action, attempt, started_at, finished_at, outcome, error)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    attempt.anomaly_kind.value,
                    attempt.action,
                    attempt.attempt,
                    attempt.started_at.isoformat(),
                    attempt.finished_at.isoformat(),
                    attempt.outcome.value,
                    attempt.error,
                ),
            )
            conn.commit()
        except sqlite3.Error:
            # History must never block remediation of a broken store.
            logger.exception("Failed to record remediation attempt for %s", attempt.action)
            return 0
        return cursor.lastrowid or 0

    def get_history(
        self,
        *,
        kind: AnomalyKind | None = None,
        limit: int = 50,
    ) -> list[RemediationAttemptRecord]:
        """Most recent attempts first, optionally filtered by anomaly kind."""
        conn = self._store.connection
        if kind is not None:
            rows = conn.execute(
                "SELECT * FROM remediation_attempts WHERE anomaly_kind = ? ORDER BY id DESC LIMIT ?",
                (kind.value, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM remediation_attempts ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [_row_to_attempt(r) for r in rows]


def _row_to_attempt(row: sqlite3.Row) -> RemediationAttemptRecord:
    return RemediationAttemptRecord(
        id=row["id"],
        anomaly_kind=row["anomaly_kind"],
        action=row["action"],
        attempt=row["attempt"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        outcome=row["outcome"],
        error=row["error"],
    )


def carry_over_history(live_db: Path, restored_db: Path) -> int:
    """Copy remediation rows the restored copy lacks from the live database into it.

    A backup only holds the history up to when it was taken, so rows newer
    than its latest entry are appended before the swap.  Returns the number
    of rows copied; an unreadable live history copies nothing.
    """
    if not live_db.exists():
        return 0
    conn = sqlite3.connect(restored_db)
    try:
        init_schema(conn)
        conn.execute("ATTACH DATABASE ? AS live", (str(live_db),))
        cursor = conn.execute(
            """INSERT INTO main.remediation_attempts
               (anomaly_kind, action, attempt, started_at, finished_at, outcome, error)
               SELECT anomaly_kind, action, attempt, started_at, finished_at, outcome, error
               FROM live.remediation_attempts
               WHERE started_at > COALESCE((SELECT MAX(started_at) FROM main.remediation_attempts), '')
               ORDER BY id"""
        )
        conn.commit()
        copied = cursor.rowcount
    except sqlite3.Error as exc:
        logger.warning("Could not carry remediation history over from %s: %s", live_db, exc)
        return 0
    finally:
        conn.close()
    logger.info("Carried %d remediation attempt(s) over to the restored database", copied)
    return copied
