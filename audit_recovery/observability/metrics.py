"""Prometheus metric definitions for recovery-monitor self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

CYCLE_DURATION_BUCKETS = (0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0)
ACTION_DURATION_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 15.0, 60.0)
QUERY_DURATION_BUCKETS = (0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)

# ---------------------------------------------------------------------------
# Monitor loop metrics
# ---------------------------------------------------------------------------

TICKS_TOTAL = Counter(
    "audit_recovery_ticks_total",
    "Total number of monitor ticks",
    labelnames=["outcome"],
)

CYCLE_DURATION = Histogram(
    "audit_recovery_cycle_duration_seconds",
    "Duration of a detect/remediate cycle in seconds",
    buckets=CYCLE_DURATION_BUCKETS,
)

RECOVERY_IN_PROGRESS = Gauge(
    "audit_recovery_in_progress",
    "Whether a recovery sequence is currently running (1=yes, 0=no)",
)

ANOMALIES_TOTAL = Counter(
    "audit_recovery_anomalies_total",
    "Total number of detected anomalies",
    labelnames=["kind", "severity"],
)

# ---------------------------------------------------------------------------
# Remediation metrics
# ---------------------------------------------------------------------------

REMEDIATION_ATTEMPTS_TOTAL = Counter(
    "audit_recovery_remediation_attempts_total",
    "Total number of remediation action attempts",
    labelnames=["action", "outcome"],
)

REMEDIATION_DURATION = Histogram(
    "audit_recovery_remediation_duration_seconds",
    "Duration of individual remediation action attempts in seconds",
    labelnames=["action"],
    buckets=ACTION_DURATION_BUCKETS,
)

PLAN_OUTCOMES_TOTAL = Counter(
    "audit_recovery_plan_outcomes_total",
    "Total number of remediation plan outcomes",
    labelnames=["kind", "outcome"],
)

# ---------------------------------------------------------------------------
# Alerting metrics
# ---------------------------------------------------------------------------

NOTIFICATIONS_TOTAL = Counter(
    "audit_recovery_notifications_total",
    "Total number of operator notifications",
    labelnames=["kind", "reason"],
)

ACTIVE_ALERTS = Gauge(
    "audit_recovery_active_alerts",
    "Number of open or escalated alerts",
)

# ---------------------------------------------------------------------------
# Audit store metrics (populated by SqliteAuditStore)
# ---------------------------------------------------------------------------

QUERY_DURATION = Histogram(
    "audit_query_duration_seconds",
    "Duration of audit store queries in seconds",
    buckets=QUERY_DURATION_BUCKETS,
)

QUERIES_TOTAL = Counter(
    "audit_queries_total",
    "Total number of audit store queries",
)

QUERY_ERRORS_TOTAL = Counter(
    "audit_query_errors_total",
    "Total number of failed audit store queries",
)

ACTIVE_CONNECTIONS = Gauge(
    "audit_active_connections",
    "Number of open audit store connections",
)

CACHE_HIT_RATIO = Gauge(
    "audit_cache_hit_ratio",
    "Hit ratio of the audit query-result cache",
)

# ---------------------------------------------------------------------------
# Health / info metrics
# ---------------------------------------------------------------------------

COMPONENT_HEALTHY = Gauge(
    "audit_recovery_component_healthy",
    "Whether a health check passes (1=healthy, 0.5=degraded, 0=unhealthy)",
    labelnames=["component"],
)

APP_INFO = Info(
    "audit_recovery",
    "Audit recovery monitor build information",
)

# ---------------------------------------------------------------------------
# HTTP API metrics
# ---------------------------------------------------------------------------

REQUESTS_TOTAL = Counter(
    "audit_recovery_requests_total",
    "Total number of API requests",
    labelnames=["endpoint", "status"],
)

REQUEST_DURATION = Histogram(
    "audit_recovery_request_duration_seconds",
    "API request duration in seconds",
    labelnames=["endpoint"],
    buckets=CYCLE_DURATION_BUCKETS,
)
