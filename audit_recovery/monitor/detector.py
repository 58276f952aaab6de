"""Classify one observation into zero or more anomalies.

Pure functions only: no I/O and no clock reads beyond the snapshot's own
timestamp, so every case can be tested with literal inputs.
"""

from collections.abc import Sequence

from audit_recovery.monitor.models import (
    DATABASE_CONNECTIVITY,
    DISK_HEADROOM,
    INDEX_INTEGRITY,
    AlertThresholds,
    AnomalyEvent,
    AnomalyKind,
    HealthCheckResult,
    HealthStatus,
    MetricSnapshot,
    Severity,
)

# Observed values beyond this multiple of the threshold are always critical.
CRITICAL_MULTIPLIER = 2.0

BASE_SEVERITY: dict[AnomalyKind, Severity] = {
    AnomalyKind.SLOW_QUERIES: Severity.MEDIUM,
    AnomalyKind.HIGH_ERROR_RATE: Severity.HIGH,
    AnomalyKind.HIGH_MEMORY_USAGE: Severity.MEDIUM,
    AnomalyKind.DATABASE_ERROR: Severity.HIGH,
    AnomalyKind.CORRUPTED_INDEX: Severity.HIGH,
    AnomalyKind.DATABASE_TOO_LARGE: Severity.LOW,
}

# Health checks whose unhealthy status maps directly onto an anomaly kind and severity.
HEALTH_CHECK_ANOMALIES: dict[str, tuple[AnomalyKind, Severity]] = {
    DATABASE_CONNECTIVITY: (AnomalyKind.DATABASE_ERROR, Severity.HIGH),
    INDEX_INTEGRITY: (AnomalyKind.CORRUPTED_INDEX, Severity.HIGH),
    DISK_HEADROOM: (AnomalyKind.DATABASE_TOO_LARGE, Severity.MEDIUM),
}


def classify_severity(kind: AnomalyKind, observed: float, threshold: float) -> Severity:
    if observed > threshold * CRITICAL_MULTIPLIER:
        return Severity.CRITICAL
    return BASE_SEVERITY[kind]


def _threshold_event(
    kind: AnomalyKind,
    source_metric: str,
    observed: float,
    threshold: float,
    snapshot: MetricSnapshot,
) -> AnomalyEvent | None:
    if not observed > threshold:
        return None
    return AnomalyEvent(
        kind=kind,
        severity=classify_severity(kind, observed, threshold),
        source_metric=source_metric,
        observed_value=observed,
        threshold=threshold,
        detected_at=snapshot.timestamp,
    )


def detect_anomalies(
    snapshot: MetricSnapshot,
    health: Sequence[HealthCheckResult],
    thresholds: AlertThresholds,
) -> list[AnomalyEvent]:
    """Compare a snapshot and health-check results against thresholds.

    At most one event per kind is returned; when a kind fires from both a
    metric and a health check, the more severe event wins. Events come back
    in AnomalyKind declaration order.
    """
    candidates: list[AnomalyEvent | None] = [
        _threshold_event(
            AnomalyKind.SLOW_QUERIES,
            "query_latency_p95_ms",
            snapshot.query_latency_p95_ms,
            thresholds.query_latency_p95_ms,
            snapshot,
        ),
        _threshold_event(
            AnomalyKind.HIGH_ERROR_RATE,
            "error_rate",
            snapshot.error_rate,
            thresholds.error_rate,
            snapshot,
        ),
        _threshold_event(
            AnomalyKind.HIGH_MEMORY_USAGE,
            "memory_usage_ratio",
            snapshot.memory_usage_ratio,
            thresholds.memory_usage_ratio,
            snapshot,
        ),
        _threshold_event(
            AnomalyKind.DATABASE_TOO_LARGE,
            "db_size_bytes",
            float(snapshot.db_size_bytes),
            float(thresholds.db_size_bytes),
            snapshot,
        ),
    ]

    for result in health:
        mapping = HEALTH_CHECK_ANOMALIES.get(result.name)
        if mapping is None or result.status != HealthStatus.UNHEALTHY:
            continue
        kind, severity = mapping
        candidates.append(
            AnomalyEvent(
                kind=kind,
                severity=severity,
                source_metric=result.name,
                observed_value=1.0,
                threshold=0.0,
                detected_at=result.observed_at,
            )
        )

    by_kind: dict[AnomalyKind, AnomalyEvent] = {}
    for event in candidates:
        if event is None:
            continue
        current = by_kind.get(event.kind)
        if current is None or event.severity.rank > current.severity.rank:
            by_kind[event.kind] = event

    return [by_kind[kind] for kind in AnomalyKind if kind in by_kind]


def observation_failure_event() -> AnomalyEvent:
    """The anomaly reported when metrics or health checks could not be gathered at all."""
    return AnomalyEvent(
        kind=AnomalyKind.DATABASE_ERROR,
        severity=Severity.HIGH,
        source_metric="observation",
        observed_value=1.0,
        threshold=0.0,
    )
