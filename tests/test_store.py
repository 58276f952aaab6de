"""Unit tests for the SQLite audit store, query cache and remediation history."""

import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from audit_recovery.monitor.models import (
    DATABASE_CONNECTIVITY,
    DISK_HEADROOM,
    INDEX_INTEGRITY,
    AnomalyKind,
    AttemptOutcome,
    HealthStatus,
    RemediationAttempt,
)
from audit_recovery.store.cache import QueryCache
from audit_recovery.store.history import SqliteRemediationLog
from audit_recovery.store.sqlite_store import SqliteAuditStore, get_connection, init_schema, validate_identifier

MIB = 1024 * 1024


@pytest.fixture
def store(tmp_path: Path) -> SqliteAuditStore:
    s = SqliteAuditStore(
        str(tmp_path / "audit.sqlite"),
        tables=["permission_audit", "audit_metrics"],
        min_disk_headroom_bytes=1,
    )
    s.exec("CREATE TABLE permission_audit (id INTEGER PRIMARY KEY, user TEXT, timestamp TEXT)")
    s.exec("CREATE INDEX idx_permission_audit_user ON permission_audit(user)")
    s.exec("CREATE TABLE audit_metrics (name TEXT, value REAL)")
    s.reset_statistics()
    yield s  # type: ignore[misc]
    s.close()


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_get_connection_requires_path(self) -> None:
        with pytest.raises(ValueError, match="AUDIT_DB_PATH"):
            get_connection("")

    def test_creates_history_table_and_indexes(self) -> None:
        conn = get_connection(":memory:")
        init_schema(conn)
        init_schema(conn)  # idempotent
        names = {r["name"] for r in conn.execute("SELECT name FROM sqlite_master").fetchall()}
        assert {"remediation_attempts", "idx_remediation_started", "idx_remediation_kind"} <= names

    @pytest.mark.parametrize("name", ["permission_audit", "_t1", "AuditMetrics"])
    def test_valid_identifiers(self, name: str) -> None:
        assert validate_identifier(name) == name

    @pytest.mark.parametrize("name", ["", "1abc", "audit; DROP TABLE x", "a-b", "a.b"])
    def test_invalid_identifiers(self, name: str) -> None:
        with pytest.raises(ValueError, match="Invalid SQL identifier"):
            validate_identifier(name)


# ---------------------------------------------------------------------------
# Query cache
# ---------------------------------------------------------------------------


class TestQueryCache:
    def test_get_set(self) -> None:
        cache = QueryCache()
        cache.set("k", [1, 2])
        assert cache.get("k") == [1, 2]
        assert cache.get("missing") is None
        assert cache.hit_ratio == 0.5

    def test_ttl_expiry(self) -> None:
        clock = _Clock()
        cache = QueryCache(ttl_seconds=10, clock=clock)
        cache.set("k", "v")
        clock.now = 9.9
        assert cache.get("k") == "v"
        clock.now = 10.0
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_lru_eviction(self) -> None:
        cache = QueryCache(max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.get("b") is None
        assert cache.get("a") == 1

    def test_flush(self) -> None:
        cache = QueryCache()
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("missing")
        assert cache.flush() == 2
        assert len(cache) == 0
        assert cache.hit_ratio == 1.0

    def test_empty_hit_ratio(self) -> None:
        assert QueryCache().hit_ratio == 1.0


# ---------------------------------------------------------------------------
# Instrumentation
# ---------------------------------------------------------------------------


class TestInstrumentation:
    def test_latency_recorded(self, store: SqliteAuditStore) -> None:
        assert store.latency_p95_ms() == 0.0
        store.query("SELECT * FROM permission_audit")
        assert store.latency_p95_ms() >= 0.0
        assert store.error_rate() == 0.0

    def test_error_rate(self, store: SqliteAuditStore) -> None:
        store.query("SELECT 1")
        with pytest.raises(sqlite3.OperationalError):
            store.query("SELECT * FROM no_such_table")
        assert store.error_rate() == 0.5

    def test_cached_query(self, store: SqliteAuditStore) -> None:
        store.exec("INSERT INTO permission_audit (user, timestamp) VALUES (?, ?)", ("alice", "2026-01-01"))
        first = store.query("SELECT user FROM permission_audit", cache_key="users")
        store.exec("INSERT INTO permission_audit (user, timestamp) VALUES (?, ?)", ("bob", "2026-01-01"))
        second = store.query("SELECT user FROM permission_audit", cache_key="users")
        assert [r["user"] for r in second] == [r["user"] for r in first] == ["alice"]
        assert store.clear_cache() == 1
        third = store.query("SELECT user FROM permission_audit", cache_key="users")
        assert len(third) == 2

    def test_db_size(self, store: SqliteAuditStore) -> None:
        assert store.db_size_bytes() > 0

    def test_memory_db_size_is_zero(self) -> None:
        assert SqliteAuditStore(":memory:").db_size_bytes() == 0

    def test_connection_lifecycle(self, store: SqliteAuditStore) -> None:
        assert store.active_connections == 1
        store.close()
        assert store.active_connections == 0
        store.reset_connections()
        assert store.active_connections == 1


# ---------------------------------------------------------------------------
# Health checks
# ---------------------------------------------------------------------------


class TestHealthChecks:
    def test_all_healthy(self, store: SqliteAuditStore) -> None:
        results = store.run_all_health_checks()
        assert [r.name for r in results] == [DATABASE_CONNECTIVITY, INDEX_INTEGRITY, DISK_HEADROOM]
        assert all(r.status == HealthStatus.HEALTHY for r in results)

    def test_unknown_check(self, store: SqliteAuditStore) -> None:
        with pytest.raises(ValueError, match="Unknown health check"):
            store.health_check("bogus")

    def test_unreachable_database_is_unhealthy(self, tmp_path: Path) -> None:
        broken = SqliteAuditStore(str(tmp_path / "missing-dir" / "audit.sqlite"))
        result = broken.health_check(DATABASE_CONNECTIVITY)
        assert result.status == HealthStatus.UNHEALTHY
        assert result.message

    @pytest.mark.parametrize(
        ("free", "expected"),
        [
            (10 * MIB, HealthStatus.HEALTHY),
            (3 * MIB, HealthStatus.DEGRADED),
            (1 * MIB, HealthStatus.UNHEALTHY),
        ],
    )
    def test_disk_headroom(self, tmp_path: Path, free: int, expected: HealthStatus) -> None:
        s = SqliteAuditStore(str(tmp_path / "audit.sqlite"), min_disk_headroom_bytes=2 * MIB)
        with patch("audit_recovery.store.sqlite_store.shutil.disk_usage", return_value=SimpleNamespace(free=free)):
            result = s.health_check(DISK_HEADROOM)
        assert result.status == expected

    def test_disk_usage_error_is_unhealthy(self, store: SqliteAuditStore) -> None:
        with patch("audit_recovery.store.sqlite_store.shutil.disk_usage", side_effect=OSError("no device")):
            result = store.health_check(DISK_HEADROOM)
        assert result.status == HealthStatus.UNHEALTHY
        assert result.message == "no device"


# ---------------------------------------------------------------------------
# Remediation primitives
# ---------------------------------------------------------------------------


class TestRemediationPrimitives:
    def test_rebuild_resets_write_counter(self, store: SqliteAuditStore) -> None:
        for user in ("a", "b", "c"):
            store.exec("INSERT INTO permission_audit (user, timestamp) VALUES (?, ?)", (user, "2026-01-01"))
        assert store.writes_since_rebuild() >= 3

        store.rebuild_indexes()

        assert store.writes_since_rebuild() == 0
        assert store.baseline_read_latency_ms is not None
        assert store.last_rebuild_at is not None

    def test_writes_survive_reconnect(self, store: SqliteAuditStore) -> None:
        store.rebuild_indexes()
        store.exec("INSERT INTO permission_audit (user, timestamp) VALUES (?, ?)", ("a", "2026-01-01"))
        store.reset_connections()
        store.exec("INSERT INTO permission_audit (user, timestamp) VALUES (?, ?)", ("b", "2026-01-01"))
        assert store.writes_since_rebuild() == 2

    def test_reset_query_plans(self, store: SqliteAuditStore) -> None:
        store.reset_query_plans()
        assert store.health_check(DATABASE_CONNECTIVITY).status == HealthStatus.HEALTHY

    def test_shrink_and_vacuum(self, store: SqliteAuditStore) -> None:
        store.shrink_memory()
        store.vacuum()
        assert store.health_check(INDEX_INTEGRITY).status == HealthStatus.HEALTHY

    def test_archive_old_records(self, store: SqliteAuditStore) -> None:
        old = (datetime.now(UTC) - timedelta(days=400)).isoformat()
        recent = datetime.now(UTC).isoformat()
        store.exec("INSERT INTO permission_audit (user, timestamp) VALUES (?, ?)", ("old", old))
        store.exec("INSERT INTO permission_audit (user, timestamp) VALUES (?, ?)", ("new", recent))
        store.exec("INSERT INTO audit_metrics (name, value) VALUES (?, ?)", ("x", 1.0))

        moved = store.archive_old_records(365)

        assert moved == 1
        assert [r["user"] for r in store.query("SELECT user FROM permission_audit")] == ["new"]
        assert [r["user"] for r in store.query("SELECT user FROM permission_audit_archive")] == ["old"]
        # No timestamp column: left alone, no archive table created.
        assert len(store.query("SELECT * FROM audit_metrics")) == 1
        tables = {r["name"] for r in store.query("SELECT name FROM sqlite_master WHERE type='table'")}
        assert "audit_metrics_archive" not in tables

    def test_configured_tables_validated(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="Invalid SQL identifier"):
            SqliteAuditStore(str(tmp_path / "a.sqlite"), tables=["ok", "bad name"])


# ---------------------------------------------------------------------------
# Remediation history
# ---------------------------------------------------------------------------


def _attempt(kind: AnomalyKind, action: str, outcome: AttemptOutcome, minute: int) -> RemediationAttempt:
    started = datetime(2026, 3, 1, 12, minute, tzinfo=UTC)
    return RemediationAttempt(
        anomaly_kind=kind,
        action=action,
        started_at=started,
        finished_at=started + timedelta(seconds=1),
        outcome=outcome,
        error="boom" if outcome == AttemptOutcome.FAILURE else None,
    )


class TestRemediationLog:
    def test_record_and_history(self, store: SqliteAuditStore) -> None:
        log = SqliteRemediationLog(store)
        first = log.record(_attempt(AnomalyKind.SLOW_QUERIES, "clear_cache", AttemptOutcome.FAILURE, 0))
        second = log.record(_attempt(AnomalyKind.SLOW_QUERIES, "reset_query_plans", AttemptOutcome.SUCCESS, 1))
        log.record(_attempt(AnomalyKind.DATABASE_ERROR, "reset_connections", AttemptOutcome.SUCCESS, 2))
        assert second > first > 0

        history = log.get_history()
        assert [h["action"] for h in history] == ["reset_connections", "reset_query_plans", "clear_cache"]
        assert history[2]["error"] == "boom"

        slow = log.get_history(kind=AnomalyKind.SLOW_QUERIES, limit=1)
        assert [h["action"] for h in slow] == ["reset_query_plans"]

    def test_record_failure_does_not_raise(self, tmp_path: Path) -> None:
        broken = SqliteAuditStore(str(tmp_path / "a.sqlite"))
        log = SqliteRemediationLog(broken)
        broken.connection.execute("DROP TABLE remediation_attempts")
        assert log.record(_attempt(AnomalyKind.SLOW_QUERIES, "clear_cache", AttemptOutcome.SUCCESS, 0)) == 0
        broken.close()
