"""SQLite-backed audit store with health checks and remediation primitives.

All data statements use parameterized queries.  Table names come from
configuration and are validated as plain identifiers before being interpolated
into administrative statements (REINDEX, archival), which SQLite cannot
parameterize.  The connection is opened lazily with check_same_thread=False so
blocking calls can be pushed to worker threads via asyncio.to_thread.
"""

import logging
import os
import re
import shutil
import sqlite3
import threading
import time
from collections import deque
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

from audit_recovery.monitor.models import (
    DATABASE_CONNECTIVITY,
    DISK_HEADROOM,
    HEALTH_CHECK_NAMES,
    INDEX_INTEGRITY,
    HealthCheckResult,
    HealthStatus,
)
from audit_recovery.observability.metrics import ACTIVE_CONNECTIONS, QUERIES_TOTAL, QUERY_DURATION, QUERY_ERRORS_TOTAL
from audit_recovery.store.cache import QueryCache

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS remediation_attempts (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    anomaly_kind  TEXT NOT NULL,
    action        TEXT NOT NULL,
    attempt       INTEGER NOT NULL DEFAULT 1,
    started_at    TEXT NOT NULL,
    finished_at   TEXT NOT NULL,
    outcome       TEXT NOT NULL,
    error         TEXT
);
CREATE INDEX IF NOT EXISTS idx_remediation_started ON remediation_attempts(started_at);
CREATE INDEX IF NOT EXISTS idx_remediation_kind ON remediation_attempts(anomaly_kind);
"""


def get_connection(db_path: str) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode for concurrent reads.

    Args:
        db_path: Path to the database file. Pass ":memory:" for in-memory databases (tests).

    Raises:
        ValueError: If the db path is empty.
    """
    if not db_path:
        msg = "Audit store not configured (AUDIT_DB_PATH is empty)"
        raise ValueError(msg)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Create the remediation history table and indexes if they don't exist (idempotent)."""
    conn.executescript(_SCHEMA_SQL)


def validate_identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        msg = f"Invalid SQL identifier: {name!r}"
        raise ValueError(msg)
    return name


class SqliteAuditStore:
    """Audit store adapter used by the monitor for health checks and remediation."""

    def __init__(
        self,
        db_path: str,
        *,
        tables: Sequence[str] = (),
        cache: QueryCache | None = None,
        min_disk_headroom_bytes: int = 512 * 1024 * 1024,
        latency_window: int = 500,
    ) -> None:
        self.db_path = db_path
        self.tables = [validate_identifier(t) for t in tables]
        self.cache = cache or QueryCache()
        self.min_disk_headroom_bytes = min_disk_headroom_bytes
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._durations_ms: deque[float] = deque(maxlen=latency_window)
        self._outcomes: deque[bool] = deque(maxlen=latency_window)
        self._writes_at_rebuild = 0
        self._closed_changes = 0
        self.baseline_read_latency_ms: float | None = None
        self.last_rebuild_at: datetime | None = None

    # -----------------------------------------------------------------------
    # Connection lifecycle
    # -----------------------------------------------------------------------

    @property
    def connection(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                self._conn = get_connection(self.db_path)
                init_schema(self._conn)
                ACTIVE_CONNECTIONS.set(1)
            return self._conn

    @property
    def active_connections(self) -> int:
        return 1 if self._conn is not None else 0

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._closed_changes += self._conn.total_changes
                self._conn.close()
                self._conn = None
                ACTIVE_CONNECTIONS.set(0)
                logger.debug("Audit store connection closed")

    def reset_connections(self) -> None:
        """Close and reopen the connection, dropping the prepared-statement cache."""
        self.close()
        _ = self.connection
        logger.info("Audit store connections reset")

    # -----------------------------------------------------------------------
    # Instrumented statements
    # -----------------------------------------------------------------------

    def _timed(self, sql: str, params: Sequence[object]) -> list[sqlite3.Row]:
        start = time.perf_counter()
        QUERIES_TOTAL.inc()
        try:
            with self._lock:
                rows = self.connection.execute(sql, params).fetchall()
        except sqlite3.Error:
            QUERY_ERRORS_TOTAL.inc()
            self._outcomes.append(False)
            raise
        elapsed = time.perf_counter() - start
        QUERY_DURATION.observe(elapsed)
        self._durations_ms.append(elapsed * 1000)
        self._outcomes.append(True)
        return rows

    def query(self, sql: str, params: Sequence[object] = (), *, cache_key: str | None = None) -> list[sqlite3.Row]:
        """Run a read query, serving it from the result cache when a key is given."""
        if cache_key is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached  # type: ignore[return-value]
        rows = self._timed(sql, params)
        if cache_key is not None:
            self.cache.set(cache_key, rows)
        return rows

    def exec(self, statement: str, params: Sequence[object] = ()) -> None:
        """Run an administrative or write statement and commit."""
        self._timed(statement, params)
        with self._lock:
            self.connection.commit()

    # -----------------------------------------------------------------------
    # Observations
    # -----------------------------------------------------------------------

    def latency_p95_ms(self) -> float:
        if not self._durations_ms:
            return 0.0
        ordered = sorted(self._durations_ms)
        index = max(0, int(round(0.95 * len(ordered))) - 1)
        return ordered[index]

    def error_rate(self) -> float:
        if not self._outcomes:
            return 0.0
        return sum(1 for ok in self._outcomes if not ok) / len(self._outcomes)

    def reset_statistics(self) -> None:
        self._durations_ms.clear()
        self._outcomes.clear()

    def db_size_bytes(self) -> int:
        if self.db_path == ":memory:":
            return 0
        total = 0
        for suffix in ("", "-wal"):
            path = f"{self.db_path}{suffix}"
            if os.path.exists(path):
                total += os.path.getsize(path)
        return total

    def writes_since_rebuild(self) -> int:
        with self._lock:
            current = self._closed_changes + (self._conn.total_changes if self._conn is not None else 0)
        return max(0, current - self._writes_at_rebuild)

    def measure_read_latency_ms(self) -> float:
        """Time a representative read against the first configured table."""
        if self.tables and self._table_exists(self.tables[0]):
            liveness_sql = f"SELECT COUNT(*) FROM {self.tables[0]}"
        else:
            liveness_sql = "SELECT COUNT(*) FROM sqlite_master"
        start = time.perf_counter()
        self._timed(liveness_sql, ())
        return (time.perf_counter() - start) * 1000

    def _table_exists(self, table: str) -> bool:
        row = self.connection.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (table,)
        ).fetchone()
        return row is not None

    # -----------------------------------------------------------------------
    # Health checks
    # -----------------------------------------------------------------------

    def health_check(self, name: str) -> HealthCheckResult:
        """Run one named health check. Failures are reported, never raised."""
        if name not in HEALTH_CHECK_NAMES:
            msg = f"Unknown health check: {name}"
            raise ValueError(msg)
        try:
            if name == DATABASE_CONNECTIVITY:
                return self._check_connectivity()
            if name == INDEX_INTEGRITY:
                return self._check_index_integrity()
            return self._check_disk_headroom()
        except (sqlite3.Error, OSError) as exc:
            logger.warning("Health check %s failed: %s", name, exc)
            return HealthCheckResult(name=name, status=HealthStatus.UNHEALTHY, message=str(exc))

    def _check_connectivity(self) -> HealthCheckResult:
        with self._lock:
            conn = self.connection
            conn.execute("SELECT 1").fetchone()
            # Exercise the transaction machinery, not just the read path.
            conn.execute("BEGIN")
            conn.execute("COMMIT")
        return HealthCheckResult(name=DATABASE_CONNECTIVITY, status=HealthStatus.HEALTHY)

    def _check_index_integrity(self) -> HealthCheckResult:
        with self._lock:
            rows = self.connection.execute("PRAGMA integrity_check").fetchall()
        problems = [str(r[0]) for r in rows if str(r[0]) != "ok"]
        if problems:
            return HealthCheckResult(
                name=INDEX_INTEGRITY,
                status=HealthStatus.UNHEALTHY,
                message="; ".join(problems[:5]),
            )
        return HealthCheckResult(name=INDEX_INTEGRITY, status=HealthStatus.HEALTHY)

    def _check_disk_headroom(self) -> HealthCheckResult:
        directory = Path(self.db_path).resolve().parent if self.db_path != ":memory:" else Path.cwd()
        free = shutil.disk_usage(directory).free
        if free < self.min_disk_headroom_bytes:
            status = HealthStatus.UNHEALTHY
        elif free < 2 * self.min_disk_headroom_bytes:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        return HealthCheckResult(name=DISK_HEADROOM, status=status, message=f"{free} bytes free")

    def run_all_health_checks(self) -> list[HealthCheckResult]:
        return [self.health_check(name) for name in HEALTH_CHECK_NAMES]

    # -----------------------------------------------------------------------
    # Remediation primitives
    # -----------------------------------------------------------------------

    def clear_cache(self) -> int:
        return self.cache.flush()

    def reset_query_plans(self) -> None:
        """Refresh planner statistics and drop prepared statements."""
        self.exec("ANALYZE")
        self.exec("PRAGMA optimize")
        self.reset_connections()

    def rebuild_indexes(self) -> None:
        tables = [t for t in self.tables if self._table_exists(t)]
        if not tables:
            self.exec("REINDEX")
        for table in tables:
            self.exec(f"REINDEX {table}")
        with self._lock:
            self._writes_at_rebuild = self._closed_changes + self.connection.total_changes
        self.baseline_read_latency_ms = self.measure_read_latency_ms()
        self.last_rebuild_at = datetime.now(UTC)
        logger.info("Indexes rebuilt for %s", ", ".join(tables) or "all tables")

    def shrink_memory(self) -> None:
        with self._lock:
            self.connection.execute("PRAGMA shrink_memory")

    def vacuum(self) -> None:
        with self._lock:
            self.connection.execute("VACUUM")

    def archive_old_records(self, older_than_days: int) -> int:
        """Move audit rows older than the cutoff into ``<table>_archive``.

        Copy and delete happen in one transaction per table. Tables without a
        ``timestamp`` column are left alone. Returns the number of rows moved.
        """
        cutoff = (datetime.now(UTC) - timedelta(days=older_than_days)).isoformat()
        moved = 0
        with self._lock:
            conn = self.connection
            for table in self.tables:
                if not self._table_exists(table):
                    continue
                columns = {r["name"] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()}
                if "timestamp" not in columns:
                    logger.debug("Skipping archival for %s (no timestamp column)", table)
                    continue
                archive = f"{table}_archive"
                with conn:
                    conn.execute(f"CREATE TABLE IF NOT EXISTS {archive} AS SELECT * FROM {table} WHERE 0")
                    conn.execute(f"INSERT INTO {archive} SELECT * FROM {table} WHERE timestamp < ?", (cutoff,))
                    cursor = conn.execute(f"DELETE FROM {table} WHERE timestamp < ?", (cutoff,))
                    moved += cursor.rowcount
        logger.info("Archived %d audit rows older than %s", moved, cutoff)
        return moved
