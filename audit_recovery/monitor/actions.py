"""Remediation actions and the static anomaly → plan table.

Each action is a stateless value: a name, a destructive flag, and a coroutine
that performs the step against the collaborators in an ActionContext.  Blocking
store calls are pushed to a worker thread but still run one at a time.
"""

import asyncio
import gc
import logging
import os
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

from audit_recovery.monitor.backup import BackupRestoreCoordinator
from audit_recovery.monitor.interfaces import AuditStore, ServiceRestarter
from audit_recovery.monitor.models import ActionResult, AnomalyEvent, AnomalyKind

logger = logging.getLogger(__name__)


class ActionName(StrEnum):
    CLEAR_CACHE = "clear_cache"
    RESET_QUERY_PLANS = "reset_query_plans"
    RESET_CONNECTIONS = "reset_connections"
    REBUILD_INDEXES = "rebuild_indexes"
    SHRINK_POOLS = "shrink_pools"
    ARCHIVE_AND_VACUUM = "archive_and_vacuum"
    NOTIFY_OPERATOR = "notify_operator"
    RESTORE_BACKUP = "restore_backup"
    RESTART_SERVICE = "restart_service"


@dataclass
class ActionContext:
    """Collaborators available to remediation actions."""

    store: AuditStore
    coordinator: BackupRestoreCoordinator
    restarter: ServiceRestarter
    archive_after_days: int = 365


ActionFn = Callable[[ActionContext, AnomalyEvent], Awaitable[ActionResult]]


@dataclass(frozen=True)
class RemediationAction:
    name: ActionName
    run: ActionFn
    is_destructive: bool = False
    retryable: bool = True

    async def execute(self, context: ActionContext, event: AnomalyEvent) -> ActionResult:
        return await self.run(context, event)


@dataclass(frozen=True)
class PlanStep:
    action: RemediationAction
    # Step only runs once the anomaly has been reported on this many consecutive passes.
    min_consecutive_passes: int = 0


class ProcessRestarter:
    """Restarts the service by re-executing the current interpreter with the same argv."""

    def restart(self) -> None:
        logger.critical("Restarting service: %s %s", sys.executable, " ".join(sys.argv))
        logging.shutdown()
        os.execv(sys.executable, [sys.executable, *sys.argv])


# ---------------------------------------------------------------------------
# Action implementations
# ---------------------------------------------------------------------------


async def _clear_cache(ctx: ActionContext, event: AnomalyEvent) -> ActionResult:
    evicted = await asyncio.to_thread(ctx.store.clear_cache)
    return ActionResult(success=True, detail=f"evicted {evicted} cache entries")


async def _reset_query_plans(ctx: ActionContext, event: AnomalyEvent) -> ActionResult:
    await asyncio.to_thread(ctx.store.reset_query_plans)
    return ActionResult(success=True, detail="planner statistics refreshed")


async def _reset_connections(ctx: ActionContext, event: AnomalyEvent) -> ActionResult:
    await asyncio.to_thread(ctx.store.reset_connections)
    return ActionResult(success=True, detail="connections reopened")


async def _rebuild_indexes(ctx: ActionContext, event: AnomalyEvent) -> ActionResult:
    await asyncio.to_thread(ctx.store.rebuild_indexes)
    return ActionResult(success=True, detail="indexes rebuilt")


async def _shrink_pools(ctx: ActionContext, event: AnomalyEvent) -> ActionResult:
    collected = gc.collect()
    await asyncio.to_thread(ctx.store.shrink_memory)
    return ActionResult(success=True, detail=f"gc collected {collected} objects")


async def _archive_and_vacuum(ctx: ActionContext, event: AnomalyEvent) -> ActionResult:
    moved = await asyncio.to_thread(ctx.store.archive_old_records, ctx.archive_after_days)
    await asyncio.to_thread(ctx.store.vacuum)
    return ActionResult(success=True, detail=f"archived {moved} rows and vacuumed")


async def _notify_operator(ctx: ActionContext, event: AnomalyEvent) -> ActionResult:
    # The handover rides on the alert notification for this pass.
    logger.warning(
        "%s needs operator attention: %s is %g (threshold %g) after archival",
        event.kind,
        event.source_metric,
        event.observed_value,
        event.threshold,
    )
    return ActionResult(success=True, detail="operator attention requested")


async def _restore_backup(ctx: ActionContext, event: AnomalyEvent) -> ActionResult:
    entry = await ctx.coordinator.restore_latest()
    return ActionResult(success=True, detail=f"restored from {entry.path}")


async def _restart_service(ctx: ActionContext, event: AnomalyEvent) -> ActionResult:
    await asyncio.to_thread(ctx.store.close)
    await asyncio.to_thread(ctx.restarter.restart)
    return ActionResult(success=True, detail="service restart requested")


CLEAR_CACHE = RemediationAction(ActionName.CLEAR_CACHE, _clear_cache)
RESET_QUERY_PLANS = RemediationAction(ActionName.RESET_QUERY_PLANS, _reset_query_plans)
RESET_CONNECTIONS = RemediationAction(ActionName.RESET_CONNECTIONS, _reset_connections)
REBUILD_INDEXES = RemediationAction(ActionName.REBUILD_INDEXES, _rebuild_indexes)
SHRINK_POOLS = RemediationAction(ActionName.SHRINK_POOLS, _shrink_pools)
ARCHIVE_AND_VACUUM = RemediationAction(ActionName.ARCHIVE_AND_VACUUM, _archive_and_vacuum)
NOTIFY_OPERATOR = RemediationAction(ActionName.NOTIFY_OPERATOR, _notify_operator)
RESTORE_BACKUP = RemediationAction(ActionName.RESTORE_BACKUP, _restore_backup, is_destructive=True, retryable=False)
RESTART_SERVICE = RemediationAction(ActionName.RESTART_SERVICE, _restart_service, is_destructive=True, retryable=False)


def build_plans(slow_query_rebuild_passes: int = 3) -> dict[AnomalyKind, tuple[PlanStep, ...]]:
    """Ordered remediation plan per anomaly kind."""
    plans: dict[AnomalyKind, tuple[PlanStep, ...]] = {
        AnomalyKind.SLOW_QUERIES: (
            PlanStep(CLEAR_CACHE),
            PlanStep(RESET_QUERY_PLANS),
            PlanStep(REBUILD_INDEXES, min_consecutive_passes=slow_query_rebuild_passes),
        ),
        AnomalyKind.HIGH_ERROR_RATE: (
            PlanStep(RESET_CONNECTIONS),
            PlanStep(RESTART_SERVICE),
        ),
        AnomalyKind.HIGH_MEMORY_USAGE: (
            PlanStep(CLEAR_CACHE),
            PlanStep(SHRINK_POOLS),
        ),
        AnomalyKind.DATABASE_ERROR: (
            PlanStep(RESET_CONNECTIONS),
            PlanStep(RESTORE_BACKUP),
            PlanStep(RESTART_SERVICE),
        ),
        AnomalyKind.CORRUPTED_INDEX: (
            PlanStep(REBUILD_INDEXES),
            PlanStep(RESTORE_BACKUP),
        ),
        AnomalyKind.DATABASE_TOO_LARGE: (
            PlanStep(ARCHIVE_AND_VACUUM),
            PlanStep(NOTIFY_OPERATOR),
        ),
    }
    missing = set(AnomalyKind) - plans.keys()
    if missing:
        msg = f"No remediation plan for: {sorted(missing)}"
        raise RuntimeError(msg)
    return plans
