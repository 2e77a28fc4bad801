"""Health check endpoints for SamaySetu API v1.

Provides liveness and readiness probes for Kubernetes / Cloud Run
deployments.  The readiness check verifies the state store and that
reference data (holiday calendars, timeline rules) is loaded.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    """Readiness check response with individual component statuses."""

    status: str
    checks: dict[str, str]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe.

    Returns 200 if the application process is running.  Does *not*
    check downstream dependencies.
    """
    start_time: float = getattr(request.app.state, "start_time", time.time())
    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(time.time() - start_time, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """Readiness probe.

    Only a fully initialised instance (store reachable, calendars and
    timeline rules loaded) should receive traffic.
    """
    checks: dict[str, str] = {}
    all_ok = True

    # -- State store -------------------------------------------------------
    store = getattr(request.app.state, "store", None)
    if store is None:
        checks["store"] = "not_initialised"
        all_ok = False
    else:
        ping = getattr(store, "ping", None)
        if ping is None:
            checks["store"] = "ok (in-memory)"
        elif await ping():
            checks["store"] = "ok"
        else:
            checks["store"] = "unreachable"
            all_ok = False

    # -- Reference data ----------------------------------------------------
    core = getattr(request.app.state, "core", None)
    if core is None:
        checks["core"] = "not_initialised"
        all_ok = False
    else:
        checks["core"] = "ok"
        calendar_version = core.calendar.catalog.version
        timeline_version = core.timelines.version
        checks["calendars"] = f"ok (catalog v{calendar_version})" if calendar_version else "no_data"
        checks["timeline_rules"] = f"ok (catalog v{timeline_version})" if timeline_version else "no_data"
        if not calendar_version or not timeline_version:
            all_ok = False

    # -- Retention sweeper -------------------------------------------------
    sweeper = getattr(request.app.state, "sweeper", None)
    if sweeper is not None:
        checks["retention_sweeper"] = "running" if sweeper.is_running else "stopped"

    status = "ready" if all_ok else "degraded"
    logger.info("health.readiness_check", status=status, checks=checks)
    return ReadinessResponse(status=status, checks=checks)
