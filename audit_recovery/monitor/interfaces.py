"""Boundaries of the collaborators the monitor is a client of."""

from collections.abc import Mapping, Sequence
from typing import Protocol

from audit_recovery.monitor.models import (
    AnomalyKind,
    BackupManifestEntry,
    HealthCheckResult,
    MetricSnapshot,
    RemediationAttempt,
)


class MetricsSource(Protocol):
    async def sample(self) -> MetricSnapshot: ...


class AuditStore(Protocol):
    baseline_read_latency_ms: float | None

    def health_check(self, name: str) -> HealthCheckResult: ...

    def exec(self, statement: str, params: Sequence[object] = ()) -> None: ...

    def reset_connections(self) -> None: ...

    def close(self) -> None: ...

    def clear_cache(self) -> int: ...

    def reset_query_plans(self) -> None: ...

    def rebuild_indexes(self) -> None: ...

    def shrink_memory(self) -> None: ...

    def vacuum(self) -> None: ...

    def archive_old_records(self, older_than_days: int) -> int: ...

    def writes_since_rebuild(self) -> int: ...

    def measure_read_latency_ms(self) -> float: ...


class BackupArchive(Protocol):
    def list(self) -> list[BackupManifestEntry]: ...

    def is_viable(self, entry: BackupManifestEntry) -> bool: ...

    def restore(self, entry: BackupManifestEntry) -> None: ...


class RemediationLog(Protocol):
    def record(self, attempt: RemediationAttempt) -> int: ...

    def get_history(self, *, kind: AnomalyKind | None = None, limit: int = 50) -> Sequence[Mapping[str, object]]: ...


class ServiceRestarter(Protocol):
    def restart(self) -> None: ...
