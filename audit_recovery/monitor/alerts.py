"""Alert state tracking: deduplication, escalation and resolution.

One AlertRecord per anomaly kind while it is open or escalated.  The tracker
never sends anything itself: every method returns the notifications the
caller should deliver, which keeps the dedup rules testable without a sink.
The tracker is only mutated from inside a guarded monitor cycle, so it holds
no lock of its own.

Remediation outcomes never reach the sink on their own.  The monitor folds a
plan's outcome into the alert notification for the same pass with
``attach_outcome``, so a suppressed pass stays silent whatever its plan did.
"""

import logging
from collections import deque
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from audit_recovery.monitor.actions import ActionName
from audit_recovery.monitor.models import (
    AlertRecord,
    AlertState,
    AnomalyEvent,
    AnomalyKind,
    AttemptOutcome,
    Notification,
    PlanOutcome,
    PlanResult,
    Severity,
    utcnow,
)
from audit_recovery.observability.metrics import ACTIVE_ALERTS

logger = logging.getLogger(__name__)

_ACTIVE_STATES = (AlertState.OPEN, AlertState.ESCALATED)


def escalate_severity(severity: Severity) -> Severity:
    """One rank higher, never below HIGH, capped at CRITICAL."""
    ordered = list(Severity)
    bumped = ordered[min(severity.rank + 1, len(ordered) - 1)]
    return bumped if bumped.rank >= Severity.HIGH.rank else Severity.HIGH


def attach_outcome(notification: Notification, result: PlanResult) -> Notification:
    """Return the alert notification with the pass's remediation outcome folded in.

    An exhausted plan or a failed backup restore raises the notification to
    critical; both require manual intervention.
    """
    executed = [a for a in result.attempts if a.outcome != AttemptOutcome.SKIPPED]
    restore_errors = [
        a.error for a in executed if a.action == ActionName.RESTORE_BACKUP and a.outcome == AttemptOutcome.FAILURE
    ]

    if result.outcome == PlanOutcome.RESOLVED and result.resolved_by == ActionName.NOTIFY_OPERATOR:
        summary = "Automatic cleanup did not help; operator attention required. Nothing is deleted automatically."
    elif result.outcome == PlanOutcome.RESOLVED:
        summary = f"Remediation resolved by {result.resolved_by}."
    elif result.outcome == PlanOutcome.DEFERRED:
        summary = "Remediation deferred until the anomaly persists for more passes."
    else:
        errors = [a.error for a in executed if a.error]
        summary = "No remediation step succeeded; manual intervention required."
        if errors:
            summary += f" Last error: {errors[-1]}"
    if restore_errors:
        summary += f" Backup restore failed ({restore_errors[-1]}); manual intervention required."

    critical = result.outcome == PlanOutcome.EXHAUSTED or bool(restore_errors)
    return notification.model_copy(
        update={
            "severity": Severity.CRITICAL if critical else notification.severity,
            "message": f"{notification.message} {summary}",
            "details": {
                **notification.details,
                "outcome": result.outcome.value,
                "actions": [f"{a.action}#{a.attempt}:{a.outcome.value}" for a in executed],
            },
        }
    )


class AlertStateTracker:
    def __init__(
        self,
        *,
        dedup_window: timedelta = timedelta(minutes=5),
        escalation_threshold: int = 3,
        escalation_window: timedelta = timedelta(minutes=15),
        resolved_grace_period: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.dedup_window = dedup_window
        self.escalation_threshold = escalation_threshold
        self.escalation_window = escalation_window
        self.resolved_grace_period = resolved_grace_period
        self._clock = clock
        self._alerts: dict[AnomalyKind, AlertRecord] = {}
        self._occurrences: dict[AnomalyKind, deque[datetime]] = {}

    # -----------------------------------------------------------------------
    # Detector pass handling
    # -----------------------------------------------------------------------

    def observe(self, event: AnomalyEvent, now: datetime | None = None) -> Notification | None:
        """Register one occurrence of an anomaly. Returns a notification or None if suppressed."""
        now = now or self._clock()
        record = self._alerts.get(event.kind)

        if record is None or record.state == AlertState.RESOLVED:
            record = AlertRecord(
                anomaly_kind=event.kind,
                severity=event.severity,
                first_seen_at=now,
                last_seen_at=now,
                suppressed_until=now + self.dedup_window,
            )
            self._alerts[event.kind] = record
            self._occurrences[event.kind] = deque([now])
            self._update_gauge()
            logger.info("Alert opened for %s (severity=%s)", event.kind, event.severity)
            return self._notification(record, event, reason="opened", severity=event.severity)

        record.occurrence_count += 1
        record.last_seen_at = now
        if event.severity.rank > record.severity.rank:
            record.severity = event.severity

        occurrences = self._occurrences.setdefault(event.kind, deque())
        occurrences.append(now)
        while occurrences and occurrences[0] < now - self.escalation_window:
            occurrences.popleft()

        if record.state == AlertState.OPEN and len(occurrences) >= self.escalation_threshold:
            # Escalation breaks suppression exactly once.
            record.state = AlertState.ESCALATED
            record.suppressed_until = now + self.dedup_window
            logger.warning(
                "Alert for %s escalated after %d occurrences within %s",
                event.kind,
                len(occurrences),
                self.escalation_window,
            )
            return self._notification(record, event, reason="escalated", severity=escalate_severity(record.severity))

        if record.suppressed_until is not None and now < record.suppressed_until:
            logger.debug("Alert for %s suppressed until %s", event.kind, record.suppressed_until)
            return None

        record.suppressed_until = now + self.dedup_window
        severity = escalate_severity(record.severity) if record.state == AlertState.ESCALATED else record.severity
        return self._notification(record, event, reason="repeated", severity=severity)

    def resolve_absent(self, active_kinds: Iterable[AnomalyKind], now: datetime | None = None) -> list[Notification]:
        """Resolve every open/escalated alert whose kind was not reported by this pass."""
        now = now or self._clock()
        still_active = set(active_kinds)
        notifications: list[Notification] = []
        for kind, record in self._alerts.items():
            if record.state not in _ACTIVE_STATES or kind in still_active:
                continue
            record.state = AlertState.RESOLVED
            record.resolved_at = now
            record.suppressed_until = None
            self._occurrences.pop(kind, None)
            logger.info("Alert for %s resolved after %d occurrence(s)", kind, record.occurrence_count)
            notifications.append(
                Notification(
                    severity=Severity.LOW,
                    title=f"Resolved: {kind.value}",
                    message=f"{kind.value} is back under threshold.",
                    details={
                        "alert_id": record.id,
                        "kind": kind.value,
                        "reason": "resolved",
                        "occurrence_count": record.occurrence_count,
                        "first_seen_at": record.first_seen_at.isoformat(),
                    },
                )
            )
        self._update_gauge()
        return notifications

    def collect_garbage(self, now: datetime | None = None) -> int:
        """Forget resolved alerts that have been quiet for the grace period."""
        now = now or self._clock()
        expired = [
            kind
            for kind, record in self._alerts.items()
            if record.state == AlertState.RESOLVED
            and record.resolved_at is not None
            and now - record.resolved_at >= self.resolved_grace_period
        ]
        for kind in expired:
            del self._alerts[kind]
        return len(expired)

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def get_active_alerts(self) -> list[AlertRecord]:
        return [r.model_copy() for r in self._alerts.values() if r.state in _ACTIVE_STATES]

    def get(self, kind: AnomalyKind) -> AlertRecord | None:
        record = self._alerts.get(kind)
        return record.model_copy() if record is not None else None

    def _update_gauge(self) -> None:
        ACTIVE_ALERTS.set(sum(1 for r in self._alerts.values() if r.state in _ACTIVE_STATES))

    @staticmethod
    def _notification(record: AlertRecord, event: AnomalyEvent, *, reason: str, severity: Severity) -> Notification:
        prefix = {"opened": "", "repeated": "Still active: ", "escalated": "Escalated: "}[reason]
        return Notification(
            severity=severity,
            title=f"{prefix}{event.kind.value}",
            message=(
                f"{event.source_metric} observed {event.observed_value:g} "
                f"(threshold {event.threshold:g}); seen {record.occurrence_count} time(s)."
            ),
            details={
                "alert_id": record.id,
                "kind": event.kind.value,
                "reason": reason,
                "occurrence_count": record.occurrence_count,
                "first_seen_at": record.first_seen_at.isoformat(),
            },
        )
