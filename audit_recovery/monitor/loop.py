"""Health monitor loop — the control loop tying observation, alerting and remediation together.

Each tick samples the metrics source, runs the store health checks, feeds the
results to the detector and then, under the recovery guard, walks every
anomaly through the alert tracker and the remediation dispatcher.  At most
one recovery sequence is in flight at a time; a tick that finds one running
is skipped, never queued.

Scheduling uses APScheduler's AsyncIOScheduler with two interval jobs: the
main tick and the periodic index-optimization check.
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from audit_recovery.monitor.alerts import AlertStateTracker, attach_outcome
from audit_recovery.monitor.detector import detect_anomalies, observation_failure_event
from audit_recovery.monitor.dispatcher import RemediationDispatcher
from audit_recovery.monitor.interfaces import AuditStore, MetricsSource, RemediationLog
from audit_recovery.monitor.models import (
    DATABASE_CONNECTIVITY,
    DISK_HEADROOM,
    HEALTH_CHECK_NAMES,
    INDEX_INTEGRITY,
    AlertRecord,
    AlertThresholds,
    AnomalyEvent,
    AnomalyKind,
    HealthCheckResult,
    HealthStatus,
    Notification,
    PlanOutcome,
    PlanResult,
    RecoveryResult,
)
from audit_recovery.notify.sinks import NotificationSink
from audit_recovery.observability.metrics import (
    ANOMALIES_TOTAL,
    COMPONENT_HEALTHY,
    CYCLE_DURATION,
    NOTIFICATIONS_TOTAL,
    RECOVERY_IN_PROGRESS,
    REMEDIATION_ATTEMPTS_TOTAL,
    TICKS_TOTAL,
)

logger = logging.getLogger(__name__)

_HEALTH_GAUGE_VALUES = {
    HealthStatus.HEALTHY: 1.0,
    HealthStatus.DEGRADED: 0.5,
    HealthStatus.UNHEALTHY: 0.0,
}


def needs_index_rebuild(
    writes_since_rebuild: int,
    current_latency_ms: float,
    baseline_latency_ms: float | None,
    *,
    min_writes: int,
    latency_drift: float,
) -> bool:
    """Write volume and read-latency drift must both cross their limits."""
    if baseline_latency_ms is None or baseline_latency_ms <= 0:
        return False
    return writes_since_rebuild >= min_writes and current_latency_ms / baseline_latency_ms >= latency_drift


@dataclass
class CycleReport:
    """What one detect/remediate cycle saw and did."""

    skipped: bool = False
    observed: bool = True
    events: list[AnomalyEvent] = field(default_factory=list)
    results: list[PlanResult] = field(default_factory=list)


class HealthMonitor:
    def __init__(
        self,
        *,
        source: MetricsSource,
        store: AuditStore,
        tracker: AlertStateTracker,
        dispatcher: RemediationDispatcher,
        sink: NotificationSink,
        history: RemediationLog | None = None,
        thresholds: AlertThresholds | None = None,
        interval_seconds: float = 60.0,
        index_check_interval_seconds: float = 3600.0,
        shutdown_deadline_seconds: float = 600.0,
        index_rebuild_min_writes: int = 10_000,
        index_rebuild_latency_drift: float = 1.5,
    ) -> None:
        self.source = source
        self.store = store
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.sink = sink
        self.history = history
        self.thresholds = thresholds or AlertThresholds()
        self.interval_seconds = interval_seconds
        self.index_check_interval_seconds = index_check_interval_seconds
        self.shutdown_deadline_seconds = shutdown_deadline_seconds
        self.index_rebuild_min_writes = index_rebuild_min_writes
        self.index_rebuild_latency_drift = index_rebuild_latency_drift

        self.last_tick_at: datetime | None = None

        self._guard = asyncio.Lock()
        self._scheduler: AsyncIOScheduler | None = None
        self._inflight: set[asyncio.Task[CycleReport]] = set()
        self._last_health: dict[str, HealthStatus] = {}

    @property
    def is_recovering(self) -> bool:
        return self._guard.locked()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    # -----------------------------------------------------------------------
    # Scheduling
    # -----------------------------------------------------------------------

    def start_monitoring(self, interval_seconds: float | None = None) -> None:
        """Begin ticking on the running event loop. Idempotent while running."""
        if self._scheduler is not None:
            logger.debug("Health monitor already running")
            return
        if interval_seconds is not None:
            self.interval_seconds = interval_seconds

        scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="audit_health_tick",
            name="Audit health check",
            next_run_time=datetime.now(UTC),
            # The recovery guard, not the scheduler, decides whether an overlapping tick runs.
            max_instances=2,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self.check_index_optimization,
            trigger=IntervalTrigger(seconds=self.index_check_interval_seconds),
            id="audit_index_optimization",
            name="Audit index optimization check",
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Health monitor started (interval=%ss, index check every %ss)",
            self.interval_seconds,
            self.index_check_interval_seconds,
        )

    async def stop_monitoring(self) -> bool:
        """Stop scheduling and wait for every in-flight cycle up to the shutdown deadline.

        Returns False when a cycle was still running at the deadline; it is
        abandoned, not cancelled.
        """
        if self._scheduler is not None:
            with contextlib.suppress(Exception):
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Health monitor scheduling stopped")

        pending = [t for t in self._inflight if not t.done()]
        if not pending:
            return True
        # asyncio.wait leaves unfinished tasks running when it times out.
        _, still_running = await asyncio.wait(pending, timeout=self.shutdown_deadline_seconds)
        if still_running:
            logger.error(
                "%d monitor cycle(s) still running after %ss shutdown deadline; abandoned as incomplete",
                len(still_running),
                self.shutdown_deadline_seconds,
            )
            return False
        return True

    # -----------------------------------------------------------------------
    # Ticking
    # -----------------------------------------------------------------------

    async def tick(self) -> None:
        """One scheduled pass. Never raises."""
        if self.is_recovering:
            TICKS_TOTAL.labels(outcome="skipped").inc()
            logger.info("Recovery in progress; skipping health check tick")
            return
        try:
            report = await self._run_cycle()
        except Exception:
            TICKS_TOTAL.labels(outcome="error").inc()
            logger.exception("Health monitor tick failed")
            return
        finally:
            self.last_tick_at = datetime.now(UTC)
        if report.skipped:
            outcome = "skipped"
        elif not report.observed:
            outcome = "observation_failed"
        elif report.events:
            outcome = "anomalies"
        else:
            outcome = "healthy"
        TICKS_TOTAL.labels(outcome=outcome).inc()

    async def _run_cycle(self) -> CycleReport:
        # The cycle runs as its own task so stop_monitoring() can wait on it
        # without cancelling it.
        task = asyncio.create_task(self._cycle())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _cycle(self) -> CycleReport:
        start = time.monotonic()
        report = CycleReport()
        try:
            try:
                snapshot = await self.source.sample()
                health = await self.run_health_checks()
            except Exception as exc:
                logger.error("Failed to gather observations: %s", exc, exc_info=True)
                report.observed = False
                report.events = [observation_failure_event()]
            else:
                self._record_health(health)
                report.events = detect_anomalies(snapshot, health, self.thresholds)

            # Alert and plan state change only under the guard, healthy passes included.
            if self._guard.locked():
                logger.info("Recovery started during observation; skipping the rest of this tick")
                report.skipped = True
                return report
            async with self._guard:
                if report.events:
                    RECOVERY_IN_PROGRESS.set(1)
                try:
                    self.dispatcher.observe_pass((e.kind for e in report.events), complete=report.observed)
                    for event in report.events:
                        report.results.append(await self._handle(event))

                    # A pass that could not observe cannot tell that anything went away.
                    if report.observed:
                        for notification in self.tracker.resolve_absent(e.kind for e in report.events):
                            await self._notify(notification)
                    self.tracker.collect_garbage()
                finally:
                    RECOVERY_IN_PROGRESS.set(0)
            return report
        finally:
            CYCLE_DURATION.observe(time.monotonic() - start)

    async def run_health_checks(self) -> list[HealthCheckResult]:
        return [await asyncio.to_thread(self.store.health_check, name) for name in HEALTH_CHECK_NAMES]

    def _record_health(self, health: Sequence[HealthCheckResult]) -> None:
        for result in health:
            COMPONENT_HEALTHY.labels(component=result.name).set(_HEALTH_GAUGE_VALUES[result.status])
            previous = self._last_health.get(result.name)
            self._last_health[result.name] = result.status
            if previous is None or previous == result.status:
                continue
            if result.status == HealthStatus.HEALTHY:
                logger.info("Health check %s recovered (%s -> %s)", result.name, previous, result.status)
            else:
                logger.warning(
                    "Health check %s changed %s -> %s: %s",
                    result.name,
                    previous,
                    result.status,
                    result.message or "",
                )

    async def _handle(self, event: AnomalyEvent) -> PlanResult:
        """Track the anomaly, run its plan, then send at most one notification carrying both."""
        ANOMALIES_TOTAL.labels(kind=event.kind.value, severity=event.severity.value).inc()
        notification = self.tracker.observe(event)
        try:
            result = await self.dispatcher.dispatch(event)
        except Exception:
            logger.exception("Remediation plan for %s failed", event.kind)
            result = PlanResult(kind=event.kind, outcome=PlanOutcome.EXHAUSTED)
        if notification is not None:
            await self._notify(attach_outcome(notification, result))
        return result

    async def _notify(self, notification: Notification) -> None:
        NOTIFICATIONS_TOTAL.labels(
            kind=str(notification.details.get("kind", "")),
            reason=str(notification.details.get("reason", "")),
        ).inc()
        try:
            await self.sink.send(notification)
        except Exception:
            logger.exception("Failed to deliver notification %r", notification.title)

    # -----------------------------------------------------------------------
    # Remediation verification
    # -----------------------------------------------------------------------

    async def verify(self, event: AnomalyEvent) -> bool:
        """Re-check an anomaly right after a remediation step. True while it persists.

        Windowed metrics (latency P95, error rate) cannot be re-measured
        immediately; those kinds are judged on the next pass instead.
        """
        try:
            if event.source_metric == "observation":
                await self.source.sample()
                results = await self.run_health_checks()
                return any(r.status == HealthStatus.UNHEALTHY for r in results)
            if event.kind == AnomalyKind.DATABASE_ERROR:
                return await self._check_unhealthy(DATABASE_CONNECTIVITY)
            if event.kind == AnomalyKind.CORRUPTED_INDEX:
                return await self._check_unhealthy(INDEX_INTEGRITY)
            if event.kind == AnomalyKind.DATABASE_TOO_LARGE:
                if event.source_metric == DISK_HEADROOM:
                    return await self._check_unhealthy(DISK_HEADROOM)
                snapshot = await self.source.sample()
                return snapshot.db_size_bytes > self.thresholds.db_size_bytes
            if event.kind == AnomalyKind.HIGH_MEMORY_USAGE:
                snapshot = await self.source.sample()
                return snapshot.memory_usage_ratio > self.thresholds.memory_usage_ratio
        except Exception as exc:
            logger.warning("Could not verify %s after remediation: %s", event.kind, exc)
            return True
        return False

    async def _check_unhealthy(self, name: str) -> bool:
        result = await asyncio.to_thread(self.store.health_check, name)
        return result.status == HealthStatus.UNHEALTHY

    # -----------------------------------------------------------------------
    # Periodic index optimization
    # -----------------------------------------------------------------------

    async def check_index_optimization(self) -> bool:
        """Rebuild indexes when write volume and read-latency drift both call for it.

        Returns True if a rebuild ran. Never raises.
        """
        if self.is_recovering:
            logger.info("Recovery in progress; skipping index optimization check")
            return False
        async with self._guard:
            try:
                writes = await asyncio.to_thread(self.store.writes_since_rebuild)
                current = await asyncio.to_thread(self.store.measure_read_latency_ms)
                baseline = self.store.baseline_read_latency_ms
                if baseline is None:
                    self.store.baseline_read_latency_ms = current
                    logger.info("Recorded index read-latency baseline of %.2fms", current)
                    return False
                if not needs_index_rebuild(
                    writes,
                    current,
                    baseline,
                    min_writes=self.index_rebuild_min_writes,
                    latency_drift=self.index_rebuild_latency_drift,
                ):
                    logger.debug(
                        "Index rebuild not needed (%d writes, latency %.2fms vs baseline %.2fms)",
                        writes,
                        current,
                        baseline,
                    )
                    return False
                logger.info(
                    "Rebuilding indexes after %d writes (latency %.2fms vs baseline %.2fms)",
                    writes,
                    current,
                    baseline,
                )
                await asyncio.to_thread(self.store.rebuild_indexes)
            except Exception:
                REMEDIATION_ATTEMPTS_TOTAL.labels(action="rebuild_indexes", outcome="failure").inc()
                logger.exception("Periodic index optimization failed")
                return False
        REMEDIATION_ATTEMPTS_TOTAL.labels(action="rebuild_indexes", outcome="success").inc()
        return True

    # -----------------------------------------------------------------------
    # Operator surface
    # -----------------------------------------------------------------------

    def get_active_alerts(self) -> list[AlertRecord]:
        return self.tracker.get_active_alerts()

    def update_alert_thresholds(self, thresholds: AlertThresholds) -> None:
        self.thresholds = thresholds
        logger.info("Alert thresholds updated: %s", thresholds.model_dump())

    async def get_remediation_history(self, kind: AnomalyKind | None = None, limit: int = 50) -> list[dict[str, object]]:
        if self.history is None:
            return []
        rows = await asyncio.to_thread(self.history.get_history, kind=kind, limit=limit)
        return [dict(row) for row in rows]

    async def run_recovery(self) -> RecoveryResult:
        """Run one detect/remediate cycle on demand and summarize it. Never raises."""
        start = time.monotonic()
        if self.is_recovering:
            return RecoveryResult(success=False, message="Recovery already in progress")

        try:
            report = await self._run_cycle()
        except Exception as exc:
            logger.exception("On-demand recovery failed")
            return RecoveryResult(
                success=False,
                message=f"Recovery failed: {exc}",
                recovery_time_ms=(time.monotonic() - start) * 1000,
            )
        elapsed_ms = (time.monotonic() - start) * 1000

        if report.skipped:
            return RecoveryResult(success=False, message="Recovery already in progress", recovery_time_ms=elapsed_ms)
        if not report.events:
            return RecoveryResult(success=True, message="No anomalies detected", recovery_time_ms=elapsed_ms)

        unresolved = [r for r in report.results if r.outcome != PlanOutcome.RESOLVED]
        if not unresolved:
            fixed = ", ".join(f"{r.kind.value} ({r.resolved_by})" for r in report.results)
            return RecoveryResult(success=True, message=f"Recovered: {fixed}", recovery_time_ms=elapsed_ms)
        failed = ", ".join(f"{r.kind.value} ({r.outcome.value})" for r in unresolved)
        return RecoveryResult(success=False, message=f"Unresolved anomalies: {failed}", recovery_time_ms=elapsed_ms)
