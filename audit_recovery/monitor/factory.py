"""Build a fully wired HealthMonitor from application settings."""

import logging
from datetime import timedelta

from audit_recovery.config import Settings, get_settings
from audit_recovery.monitor.actions import ActionContext, ProcessRestarter, build_plans
from audit_recovery.monitor.alerts import AlertStateTracker
from audit_recovery.monitor.backup import BackupRestoreCoordinator, FileBackupArchive
from audit_recovery.monitor.dispatcher import RemediationDispatcher, RetryPolicy
from audit_recovery.monitor.interfaces import MetricsSource
from audit_recovery.monitor.loop import HealthMonitor
from audit_recovery.monitor.models import AlertThresholds
from audit_recovery.monitor.sources import LocalMetricsSource, PrometheusMetricsSource
from audit_recovery.notify.sinks import CompositeNotificationSink, EmailNotificationSink, LogNotificationSink
from audit_recovery.store.cache import QueryCache
from audit_recovery.store.history import SqliteRemediationLog
from audit_recovery.store.sqlite_store import SqliteAuditStore

logger = logging.getLogger(__name__)


def _split(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def thresholds_from_settings(settings: Settings) -> AlertThresholds:
    return AlertThresholds(
        query_latency_p95_ms=settings.threshold_query_latency_p95_ms,
        error_rate=settings.threshold_error_rate,
        memory_usage_ratio=settings.threshold_memory_usage_ratio,
        db_size_bytes=settings.threshold_db_size_bytes,
    )


def build_monitor(settings: Settings | None = None) -> HealthMonitor:
    settings = settings or get_settings()

    store = SqliteAuditStore(
        settings.audit_db_path,
        tables=_split(settings.audit_tables),
        cache=QueryCache(ttl_seconds=settings.cache_ttl_seconds, max_entries=settings.cache_max_entries),
        min_disk_headroom_bytes=settings.min_disk_headroom_bytes,
    )
    sink = CompositeNotificationSink([LogNotificationSink(), EmailNotificationSink()])
    archive = FileBackupArchive(settings.backup_dir, settings.audit_db_path, _split(settings.backup_glob))
    coordinator = BackupRestoreCoordinator(archive, store)
    history = SqliteRemediationLog(store)

    source: MetricsSource
    if settings.prometheus_url:
        source = PrometheusMetricsSource(
            settings.prometheus_url,
            store,
            latency_query=settings.prometheus_latency_query,
            error_rate_query=settings.prometheus_error_rate_query,
            cache_hit_query=settings.prometheus_cache_hit_query,
            connections_query=settings.prometheus_connections_query,
        )
        logger.info("Sampling metrics from Prometheus at %s", settings.prometheus_url)
    else:
        source = LocalMetricsSource(store)
        logger.info("Sampling metrics locally from the audit store")

    dispatcher = RemediationDispatcher(
        ActionContext(
            store=store,
            coordinator=coordinator,
            restarter=ProcessRestarter(),
            archive_after_days=settings.archive_after_days,
        ),
        history=history,
        retry=RetryPolicy(
            max_attempts=settings.remediation_max_attempts,
            backoff=settings.remediation_backoff,
            base_delay_seconds=settings.remediation_backoff_base_seconds,
            max_delay_seconds=settings.remediation_backoff_max_seconds,
        ),
        plans=build_plans(settings.slow_query_rebuild_passes),
    )
    tracker = AlertStateTracker(
        dedup_window=timedelta(seconds=settings.dedup_window_seconds),
        escalation_threshold=settings.escalation_threshold,
        escalation_window=timedelta(seconds=settings.escalation_window_seconds),
        resolved_grace_period=timedelta(seconds=settings.resolved_grace_period_seconds),
    )

    monitor = HealthMonitor(
        source=source,
        store=store,
        tracker=tracker,
        dispatcher=dispatcher,
        sink=sink,
        history=history,
        thresholds=thresholds_from_settings(settings),
        interval_seconds=settings.monitor_interval_seconds,
        index_check_interval_seconds=settings.index_check_interval_seconds,
        shutdown_deadline_seconds=settings.shutdown_deadline_seconds,
        index_rebuild_min_writes=settings.index_rebuild_min_writes,
        index_rebuild_latency_drift=settings.index_rebuild_latency_drift,
    )
    dispatcher.verifier = monitor.verify
    return monitor
