"""Run the ordered remediation plan for one anomaly.

Plan semantics:

- Steps run strictly in order and the plan stops at the first step that
  succeeds.  A step succeeds when its action executes without error and, if a
  verifier is configured, the anomaly no longer reproduces afterwards.
- Each step is retried per the RetryPolicy; every attempt is recorded.
  Verification failures and non-retryable actions are not retried.
- A destructive step runs only when every earlier step of the plan was
  attempted and failed during this pass.  Otherwise it is recorded as skipped.
- A step that "succeeded" on the previous pass while the same anomaly is
  reported again on this pass was ineffective; it is recorded as skipped and
  counts as failed, so consecutive passes walk down the plan.
- A gated step whose consecutive-pass requirement is not met is skipped and
  the plan ends ``deferred`` instead of ``exhausted``.

The dispatcher only returns the PlanResult.  The monitor reports it through
the alert tracker so outcome reports obey the same dedup window as alerts.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Literal

from pydantic import BaseModel, Field

from audit_recovery.monitor.actions import ActionContext, PlanStep, RemediationAction, build_plans
from audit_recovery.monitor.errors import RemediationActionFailure
from audit_recovery.monitor.interfaces import RemediationLog
from audit_recovery.monitor.models import (
    AnomalyEvent,
    AnomalyKind,
    AttemptOutcome,
    PlanOutcome,
    PlanResult,
    RemediationAttempt,
    utcnow,
)
from audit_recovery.observability.metrics import (
    PLAN_OUTCOMES_TOTAL,
    REMEDIATION_ATTEMPTS_TOTAL,
    REMEDIATION_DURATION,
)

logger = logging.getLogger(__name__)

# Returns True while the anomaly still reproduces.
Verifier = Callable[[AnomalyEvent], Awaitable[bool]]


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff: Literal["fixed", "exponential"] = "exponential"
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)

    def delay(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        if self.backoff == "fixed":
            return min(self.base_delay_seconds, self.max_delay_seconds)
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)


class RemediationDispatcher:
    def __init__(
        self,
        context: ActionContext,
        *,
        history: RemediationLog | None = None,
        retry: RetryPolicy | None = None,
        plans: dict[AnomalyKind, tuple[PlanStep, ...]] | None = None,
        verifier: Verifier | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.context = context
        self.history = history
        self.retry = retry or RetryPolicy()
        self.plans = plans or build_plans()
        self.verifier = verifier
        self._sleep = sleep
        self._consecutive: dict[AnomalyKind, int] = {}
        self._last_resolved_step: dict[AnomalyKind, int] = {}

    # -----------------------------------------------------------------------
    # Cross-pass state
    # -----------------------------------------------------------------------

    def observe_pass(self, kinds: Iterable[AnomalyKind], *, complete: bool = True) -> None:
        """Record which kinds fired on a detector pass (call once per pass, before dispatch).

        An incomplete pass (observation failed) only counts the kinds it
        reported; it cannot tell that any other kind went away.
        """
        present = set(kinds)
        for kind in AnomalyKind:
            if kind in present:
                self._consecutive[kind] = self._consecutive.get(kind, 0) + 1
            elif complete:
                self._consecutive.pop(kind, None)
                self._last_resolved_step.pop(kind, None)

    def consecutive_passes(self, kind: AnomalyKind) -> int:
        return self._consecutive.get(kind, 0)

    # -----------------------------------------------------------------------
    # Plan execution
    # -----------------------------------------------------------------------

    async def dispatch(self, event: AnomalyEvent) -> PlanResult:
        kind = event.kind
        steps = self.plans[kind]
        attempts: list[RemediationAttempt] = []
        all_prior_failed = True
        deferred = False
        ineffective_through = self._last_resolved_step.get(kind, -1) if self.consecutive_passes(kind) > 1 else -1
        outcome = PlanOutcome.EXHAUSTED
        resolved_by: str | None = None

        logger.info("Dispatching remediation plan for %s (%d step(s))", kind, len(steps))
        for index, step in enumerate(steps):
            action = step.action

            if index <= ineffective_through:
                await self._record_skip(attempts, kind, action, "ineffective on previous pass")
                continue

            passes = self.consecutive_passes(kind)
            if step.min_consecutive_passes and passes < step.min_consecutive_passes:
                await self._record_skip(
                    attempts, kind, action, f"requires {step.min_consecutive_passes} consecutive passes (seen {passes})"
                )
                deferred = True
                all_prior_failed = False
                continue

            if action.is_destructive and not all_prior_failed:
                await self._record_skip(attempts, kind, action, "earlier non-destructive steps did not all fail")
                continue

            if await self._run_action(action, event, attempts):
                self._last_resolved_step[kind] = index
                outcome = PlanOutcome.RESOLVED
                resolved_by = action.name.value
                break
        else:
            outcome = PlanOutcome.DEFERRED if deferred else PlanOutcome.EXHAUSTED

        result = PlanResult(kind=kind, outcome=outcome, attempts=attempts, resolved_by=resolved_by)

        PLAN_OUTCOMES_TOTAL.labels(kind=kind.value, outcome=result.outcome.value).inc()
        if result.outcome == PlanOutcome.EXHAUSTED:
            logger.error("Remediation plan for %s exhausted after %d attempt(s)", kind, len(attempts))
        else:
            logger.info("Remediation plan for %s finished: %s", kind, result.outcome)
        return result

    async def _run_action(
        self,
        action: RemediationAction,
        event: AnomalyEvent,
        attempts: list[RemediationAttempt],
    ) -> bool:
        budget = self.retry.max_attempts if action.retryable else 1
        for attempt_no in range(1, budget + 1):
            started_at = utcnow()
            start = time.monotonic()
            try:
                outcome = await action.execute(self.context, event)
                if not outcome.success:
                    raise RemediationActionFailure(action.name.value, outcome.detail or "reported failure")
            except Exception as exc:
                REMEDIATION_DURATION.labels(action=action.name.value).observe(time.monotonic() - start)
                logger.warning(
                    "Remediation %s for %s failed (attempt %d/%d): %s",
                    action.name,
                    event.kind,
                    attempt_no,
                    budget,
                    exc,
                )
                await self._record(
                    attempts,
                    RemediationAttempt(
                        anomaly_kind=event.kind,
                        action=action.name.value,
                        attempt=attempt_no,
                        started_at=started_at,
                        finished_at=utcnow(),
                        outcome=AttemptOutcome.FAILURE,
                        error=str(exc),
                    ),
                )
                if attempt_no == budget:
                    return False
                await self._sleep(self.retry.delay(attempt_no))
                continue

            REMEDIATION_DURATION.labels(action=action.name.value).observe(time.monotonic() - start)
            persists = await self.verifier(event) if self.verifier is not None else False
            await self._record(
                attempts,
                RemediationAttempt(
                    anomaly_kind=event.kind,
                    action=action.name.value,
                    attempt=attempt_no,
                    started_at=started_at,
                    finished_at=utcnow(),
                    outcome=AttemptOutcome.FAILURE if persists else AttemptOutcome.SUCCESS,
                    error=f"{event.kind.value} persists after {action.name.value}" if persists else None,
                ),
            )
            if persists:
                logger.info("%s still reproduces after %s", event.kind, action.name)
            return not persists
        return False

    async def _record_skip(
        self,
        attempts: list[RemediationAttempt],
        kind: AnomalyKind,
        action: RemediationAction,
        reason: str,
    ) -> None:
        logger.info("Skipping %s for %s: %s", action.name, kind, reason)
        now = utcnow()
        await self._record(
            attempts,
            RemediationAttempt(
                anomaly_kind=kind,
                action=action.name.value,
                started_at=now,
                finished_at=now,
                outcome=AttemptOutcome.SKIPPED,
                error=reason,
            ),
        )

    async def _record(self, attempts: list[RemediationAttempt], attempt: RemediationAttempt) -> None:
        attempts.append(attempt)
        REMEDIATION_ATTEMPTS_TOTAL.labels(action=attempt.action, outcome=attempt.outcome.value).inc()
        if self.history is not None:
            await asyncio.to_thread(self.history.record, attempt)
