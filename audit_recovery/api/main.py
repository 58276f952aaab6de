"""FastAPI surface for the audit recovery monitor.

The monitor is built once in the lifespan, started on the app's event loop
and stopped (with its shutdown deadline) when the app shuts down.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field, ValidationError

from audit_recovery.config import get_settings
from audit_recovery.monitor.factory import build_monitor
from audit_recovery.monitor.loop import HealthMonitor
from audit_recovery.monitor.models import AlertRecord, AlertThresholds, AnomalyKind, RecoveryResult
from audit_recovery.observability.metrics import APP_INFO, REQUEST_DURATION, REQUESTS_TOTAL

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class ThresholdsUpdate(BaseModel):
    """Request body for PUT /thresholds. Omitted fields keep their current value."""

    query_latency_p95_ms: float | None = None
    error_rate: float | None = None
    memory_usage_ratio: float | None = None
    db_size_bytes: int | None = None


class ComponentHealth(BaseModel):
    """Health status of a single monitored component."""

    name: str
    status: str
    detail: str | None = None


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    monitoring: bool
    recovering: bool
    last_tick_at: datetime | None = None
    components: list[ComponentHealth]


class RemediationHistoryResponse(BaseModel):
    attempts: list[dict[str, object]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build and start the monitor at startup, stop it on shutdown."""
    APP_INFO.info({"version": VERSION})

    logger.info("Building audit recovery monitor...")
    try:
        monitor = build_monitor()
    except Exception:
        logger.exception("Failed to build monitor at startup")
        raise
    app.state.monitor = monitor

    monitor.start_monitoring()
    yield
    finished = await monitor.stop_monitoring()
    if not finished:
        logger.warning("Shut down with a recovery cycle still in flight")
    await asyncio.to_thread(monitor.store.close)
    logger.info("Shutting down audit recovery monitor")


app = FastAPI(title="Audit Recovery Monitor", lifespan=lifespan)


def _monitor(request: Request) -> HealthMonitor:
    return request.app.state.monitor  # type: ignore[no-any-return]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Run the store health checks (and query Prometheus when configured)."""
    settings = get_settings()
    monitor = _monitor(request)
    components: list[ComponentHealth] = []

    for result in await monitor.run_health_checks():
        components.append(ComponentHealth(name=result.name, status=result.status.value, detail=result.message))

    # --- Prometheus (optional) ---
    if settings.prometheus_url:
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{settings.prometheus_url}/-/healthy")
                if resp.status_code == 200:
                    components.append(ComponentHealth(name="prometheus", status="healthy"))
                else:
                    components.append(
                        ComponentHealth(
                            name="prometheus",
                            status="unhealthy",
                            detail=f"HTTP {resp.status_code}",
                        )
                    )
        except httpx.HTTPError as exc:
            components.append(ComponentHealth(name="prometheus", status="unhealthy", detail=str(exc)))

    # --- Overall status ---
    healthy_count = sum(1 for c in components if c.status == "healthy")
    if healthy_count == len(components):
        overall = "healthy"
    elif healthy_count == 0:
        overall = "unhealthy"
    else:
        overall = "degraded"

    return HealthResponse(
        status=overall,
        monitoring=monitor.is_running,
        recovering=monitor.is_recovering,
        last_tick_at=monitor.last_tick_at,
        components=components,
    )


@app.get("/alerts", response_model=list[AlertRecord])
async def alerts(request: Request) -> list[AlertRecord]:
    """Open and escalated alerts."""
    return _monitor(request).get_active_alerts()


@app.put("/thresholds", response_model=AlertThresholds)
async def update_thresholds(request: Request, body: ThresholdsUpdate) -> AlertThresholds:
    """Update alert thresholds at runtime."""
    monitor = _monitor(request)
    merged = monitor.thresholds.model_dump() | body.model_dump(exclude_none=True)
    try:
        thresholds = AlertThresholds.model_validate(merged)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc
    monitor.update_alert_thresholds(thresholds)
    return thresholds


@app.post("/recovery", response_model=RecoveryResult)
async def recovery(request: Request) -> RecoveryResult:
    """Run one detect/remediate cycle on demand."""
    start = time.monotonic()
    result = await _monitor(request).run_recovery()
    REQUESTS_TOTAL.labels(endpoint="/recovery", status="success" if result.success else "failure").inc()
    REQUEST_DURATION.labels(endpoint="/recovery").observe(time.monotonic() - start)
    if not result.success and result.message == "Recovery already in progress":
        raise HTTPException(status_code=409, detail=result.message)
    return result


@app.get("/remediations", response_model=RemediationHistoryResponse)
async def remediations(request: Request, kind: AnomalyKind | None = None, limit: int = 50) -> RemediationHistoryResponse:
    """Most recent remediation attempts, newest first."""
    if limit < 1 or limit > 1000:
        raise HTTPException(status_code=422, detail="limit must be between 1 and 1000")
    attempts = await _monitor(request).get_remediation_history(kind=kind, limit=limit)
    return RemediationHistoryResponse(attempts=attempts)
