"""Pydantic models and enums shared by the monitor components."""

from datetime import UTC, datetime
from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class AnomalyKind(StrEnum):
    SLOW_QUERIES = "SlowQueries"
    HIGH_ERROR_RATE = "HighErrorRate"
    HIGH_MEMORY_USAGE = "HighMemoryUsage"
    DATABASE_ERROR = "DatabaseError"
    CORRUPTED_INDEX = "CorruptedIndex"
    DATABASE_TOO_LARGE = "DatabaseTooLarge"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AlertState(StrEnum):
    OPEN = "open"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class AttemptOutcome(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class PlanOutcome(StrEnum):
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"
    DEFERRED = "deferred"


# Names of the health checks run against the audit store every tick.
DATABASE_CONNECTIVITY = "database_connectivity"
INDEX_INTEGRITY = "index_integrity"
DISK_HEADROOM = "disk_headroom"
HEALTH_CHECK_NAMES = (DATABASE_CONNECTIVITY, INDEX_INTEGRITY, DISK_HEADROOM)


# ---------------------------------------------------------------------------
# Observations
# ---------------------------------------------------------------------------


class MetricSnapshot(BaseModel):
    """Point-in-time view of the operational metrics, produced once per tick."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    query_latency_p95_ms: float = 0.0
    error_rate: float = 0.0
    cache_hit_ratio: float = 1.0
    active_connections: int = 0
    db_size_bytes: int = 0
    memory_used_bytes: int = 0
    memory_total_bytes: int = 0

    @property
    def memory_usage_ratio(self) -> float:
        if self.memory_total_bytes <= 0:
            return 0.0
        return self.memory_used_bytes / self.memory_total_bytes


class HealthCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    status: HealthStatus
    message: str | None = None
    observed_at: datetime = Field(default_factory=utcnow)


class AnomalyEvent(BaseModel):
    """A classified deviation of one metric or health check from its threshold."""

    model_config = ConfigDict(frozen=True)

    kind: AnomalyKind
    severity: Severity
    source_metric: str
    observed_value: float
    threshold: float
    detected_at: datetime = Field(default_factory=utcnow)


class AlertThresholds(BaseModel):
    query_latency_p95_ms: float = Field(default=1000.0, gt=0)
    error_rate: float = Field(default=0.05, gt=0)
    memory_usage_ratio: float = Field(default=0.85, gt=0)
    db_size_bytes: int = Field(default=1024 * 1024 * 1024, gt=0)


# ---------------------------------------------------------------------------
# Remediation bookkeeping
# ---------------------------------------------------------------------------


class ActionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    detail: str = ""


class RemediationAttempt(BaseModel):
    """One invocation of one remediation action. Never mutated after completion."""

    model_config = ConfigDict(frozen=True)

    anomaly_kind: AnomalyKind
    action: str
    attempt: int = 1
    started_at: datetime
    finished_at: datetime
    outcome: AttemptOutcome
    error: str | None = None


class PlanResult(BaseModel):
    kind: AnomalyKind
    outcome: PlanOutcome
    attempts: list[RemediationAttempt] = Field(default_factory=list)
    resolved_by: str | None = None


class AlertRecord(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    anomaly_kind: AnomalyKind
    severity: Severity
    first_seen_at: datetime
    last_seen_at: datetime
    occurrence_count: int = 1
    state: AlertState = AlertState.OPEN
    suppressed_until: datetime | None = None
    resolved_at: datetime | None = None


class Notification(BaseModel):
    """Payload handed to a notification sink."""

    severity: Severity
    title: str
    message: str
    details: dict[str, object] = Field(default_factory=dict)


class BackupManifestEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    created_at: datetime
    size_bytes: int
    checksum: str | None = None


class RecoveryResult(BaseModel):
    success: bool
    message: str
    recovery_time_ms: float | None = None
