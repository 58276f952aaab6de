"""Shared pytest configuration and fixtures."""

import sqlite3
from collections.abc import Awaitable, Callable, Generator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import patch

import pytest

from audit_recovery.config import Settings, get_settings
from audit_recovery.monitor.actions import ActionContext
from audit_recovery.monitor.backup import BackupRestoreCoordinator
from audit_recovery.monitor.dispatcher import RemediationDispatcher, RetryPolicy
from audit_recovery.monitor.models import (
    HEALTH_CHECK_NAMES,
    AnomalyEvent,
    AnomalyKind,
    BackupManifestEntry,
    HealthCheckResult,
    HealthStatus,
    MetricSnapshot,
    Notification,
    RemediationAttempt,
    Severity,
)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run e2e tests that need real services (requires .env with valid settings)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="Need --run-e2e flag to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _no_dotenv(request: pytest.FixtureRequest) -> Generator[None]:
    """Block .env loading so a developer's local .env never leaks into unit tests."""
    if "e2e" in request.keywords:
        yield
        return

    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings(tmp_path: Any) -> Generator[Any]:
    """Provide fake settings so tests don't need a .env file.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = Settings(
        audit_db_path=str(tmp_path / "audit.sqlite"),
        backup_dir=str(tmp_path / "backups"),
        min_disk_headroom_bytes=1,
        monitor_interval_seconds=3600,
        index_check_interval_seconds=3600,
        shutdown_deadline_seconds=5,
        remediation_backoff_base_seconds=0,
        prometheus_url="",
        # SMTP / Email
        smtp_host="smtp.test.com",
        smtp_port=587,
        smtp_username="test@test.com",
        smtp_password="test-password",
        alert_recipient_email="oncall@test.com",
    )
    with (
        patch("audit_recovery.config.get_settings", return_value=fake_settings),
        patch("audit_recovery.notify.email.get_settings", return_value=fake_settings),
        patch("audit_recovery.monitor.factory.get_settings", return_value=fake_settings),
        patch("audit_recovery.api.main.get_settings", return_value=fake_settings),
    ):
        yield fake_settings


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeStore:
    """In-memory stand-in for SqliteAuditStore.

    ``health`` controls what each health check reports; ``fail(name, times)``
    makes a method raise sqlite3.OperationalError for its next ``times`` calls;
    ``calls`` records every remediation primitive invoked, in order.
    """

    def __init__(self) -> None:
        self.health: dict[str, HealthStatus] = {name: HealthStatus.HEALTHY for name in HEALTH_CHECK_NAMES}
        self.failures: dict[str, int] = {}
        self.calls: list[str] = []
        self.baseline_read_latency_ms: float | None = None
        self.writes = 0
        self.read_latency_ms = 1.0

    def fail(self, name: str, times: int = 1_000) -> None:
        self.failures[name] = times

    def _call(self, name: str) -> None:
        self.calls.append(name)
        remaining = self.failures.get(name, 0)
        if remaining > 0:
            self.failures[name] = remaining - 1
            msg = f"{name} failed"
            raise sqlite3.OperationalError(msg)

    def health_check(self, name: str) -> HealthCheckResult:
        return HealthCheckResult(name=name, status=self.health[name])

    def exec(self, statement: str, params: Any = ()) -> None:
        self._call("exec")

    def reset_connections(self) -> None:
        self._call("reset_connections")

    def close(self) -> None:
        self._call("close")

    def clear_cache(self) -> int:
        self._call("clear_cache")
        return 0

    def reset_query_plans(self) -> None:
        self._call("reset_query_plans")

    def rebuild_indexes(self) -> None:
        self._call("rebuild_indexes")

    def shrink_memory(self) -> None:
        self._call("shrink_memory")

    def vacuum(self) -> None:
        self._call("vacuum")

    def archive_old_records(self, older_than_days: int) -> int:
        self._call("archive_old_records")
        return 0

    def writes_since_rebuild(self) -> int:
        return self.writes

    def measure_read_latency_ms(self) -> float:
        return self.read_latency_ms


class RecordingSink:
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    @property
    def titles(self) -> list[str]:
        return [n.title for n in self.sent]


class FakeArchive:
    def __init__(self) -> None:
        self.entries: list[BackupManifestEntry] = []
        self.non_viable: set[str] = set()
        self.restored: list[str] = []
        self.restore_error: Exception | None = None

    def list(self) -> list[BackupManifestEntry]:
        return list(self.entries)

    def is_viable(self, entry: BackupManifestEntry) -> bool:
        return entry.path not in self.non_viable

    def restore(self, entry: BackupManifestEntry) -> None:
        if self.restore_error is not None:
            raise self.restore_error
        self.restored.append(entry.path)


class FakeRestarter:
    def __init__(self) -> None:
        self.restarts = 0

    def restart(self) -> None:
        self.restarts += 1


class FakeSource:
    """Returns ``snapshot`` (or raises ``error``) on every sample."""

    def __init__(self) -> None:
        self.snapshot = MetricSnapshot()
        self.error: Exception | None = None
        self.samples = 0

    async def sample(self) -> MetricSnapshot:
        self.samples += 1
        if self.error is not None:
            raise self.error
        return self.snapshot


class MemoryLog:
    def __init__(self) -> None:
        self.attempts: list[RemediationAttempt] = []

    def record(self, attempt: RemediationAttempt) -> int:
        self.attempts.append(attempt)
        return len(self.attempts)

    def get_history(self, *, kind: AnomalyKind | None = None, limit: int = 50) -> list[dict[str, object]]:
        rows = [a.model_dump(mode="json") for a in reversed(self.attempts) if kind is None or a.anomaly_kind == kind]
        return rows[:limit]


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def fake_archive() -> FakeArchive:
    return FakeArchive()


@pytest.fixture
def restarter() -> FakeRestarter:
    return FakeRestarter()


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def remediation_log() -> MemoryLog:
    return MemoryLog()


@pytest.fixture
def coordinator(fake_archive: FakeArchive, fake_store: FakeStore) -> BackupRestoreCoordinator:
    return BackupRestoreCoordinator(fake_archive, fake_store)


@pytest.fixture
def action_context(
    fake_store: FakeStore,
    coordinator: BackupRestoreCoordinator,
    restarter: FakeRestarter,
) -> ActionContext:
    return ActionContext(store=fake_store, coordinator=coordinator, restarter=restarter)


@pytest.fixture
def dispatcher(action_context: ActionContext, remediation_log: MemoryLog) -> RemediationDispatcher:
    return RemediationDispatcher(
        action_context,
        history=remediation_log,
        retry=RetryPolicy(max_attempts=3, backoff="fixed", base_delay_seconds=0),
        sleep=_no_sleep,
    )


@pytest.fixture
def make_event() -> Callable[..., AnomalyEvent]:
    def _make(
        kind: AnomalyKind = AnomalyKind.SLOW_QUERIES,
        severity: Severity = Severity.MEDIUM,
        observed: float = 1500.0,
        threshold: float = 1000.0,
        source_metric: str = "query_latency_p95_ms",
        detected_at: datetime | None = None,
    ) -> AnomalyEvent:
        return AnomalyEvent(
            kind=kind,
            severity=severity,
            source_metric=source_metric,
            observed_value=observed,
            threshold=threshold,
            detected_at=detected_at or datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
        )

    return _make


@pytest.fixture
def no_sleep() -> Callable[[float], Awaitable[None]]:
    return _no_sleep


def make_backup(path: str, created_at: datetime, size_bytes: int = 1024) -> BackupManifestEntry:
    return BackupManifestEntry(path=path, created_at=created_at, size_bytes=size_bytes)


@pytest.fixture
def backup_entry() -> Callable[..., BackupManifestEntry]:
    return make_backup
