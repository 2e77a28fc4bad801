"""SamaySetu FastAPI application entry point.

Creates the FastAPI app, configures middleware, includes routers, and
manages the lifecycle of all backend services (state store, reference
catalogs, collaborators, registry, workflow, retention sweeper).
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from config.settings import settings
from src.api.router import api_router
from src.middleware.privacy import DPDPAMiddleware, redact_pii
from src.models.errors import (
    AccountabilityError,
    CalendarDataMissing,
    CollaboratorUnavailable,
    ConcurrencyConflict,
    ExtractionLowConfidence,
    InputError,
    InvalidTransition,
    OwnershipViolation,
    RecordNotFound,
    TimelineRuleNotFound,
    UnclearInput,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_pii,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.stdlib.NAME_TO_LEVEL[settings.log_level.lower()],
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of all SamaySetu services.

    On startup:
      1. Connect the state store (Redis, or in-memory fallback)
      2. Load holiday calendars, timeline rules and scheme rules
      3. Wire the external collaborators
      4. Build registry, land records, sessions, matcher and workflow
      5. Create the AccountabilityCore
      6. Start the retention sweeper
      7. Store everything on ``app.state``

    On shutdown:
      - Stop the retention sweeper.
      - Close collaborator HTTP clients and the store.
    """
    _configure_logging()
    logger.info("app.startup", env=settings.env, timezone=settings.timezone)

    app.state.start_time = time.time()

    # -- 1. State store ------------------------------------------------------
    from src.services.store import build_state_store

    store = await build_state_store(settings.redis_url or None, namespace=settings.store_namespace)
    app.state.store = store
    logger.info("app.store_initialised", backend=type(store).__name__)

    # -- 2. Reference data -----------------------------------------------------
    from src.data.seed import load_scheme_rules, seed_catalogs
    from src.services.calendar_service import CalendarService, HolidayCatalog
    from src.services.timeline_catalog import TimelineRuleCatalog

    holidays = HolidayCatalog()
    timelines = TimelineRuleCatalog()
    try:
        seed_catalogs(holidays, timelines)
    except (FileNotFoundError, ValueError):
        logger.error("app.reference_data_failed", exc_info=True)
    try:
        schemes = load_scheme_rules()
    except (FileNotFoundError, ValueError):
        logger.error("app.scheme_data_failed", exc_info=True)
        schemes = []
    calendar = CalendarService(holidays, regional_fallback=settings.regional_calendar_fallback)

    # -- 3. Collaborators ------------------------------------------------------
    from src.services.providers import build_gateway, close_gateway

    gateway = build_gateway(settings, timelines=timelines, schemes=schemes)

    # -- 4. Domain services ----------------------------------------------------
    from src.pipeline.workflow import WorkflowStateMachine
    from src.services.eligibility import EligibilityMatcher
    from src.services.grievance import GrievanceDrafter
    from src.services.land_records import LandRecordStore
    from src.services.registry import ApplicationRegistry
    from src.services.retention import OwnerDataEraser, RetentionSweeper
    from src.services.sessions import SessionRepository

    retries = settings.concurrency_max_retries
    registry = ApplicationRegistry(
        store, calendar, timelines, timezone=settings.timezone, max_retries=retries
    )
    land = LandRecordStore(store, max_retries=retries)
    sessions = SessionRepository(store, max_retries=retries)
    matcher = EligibilityMatcher()
    workflow = WorkflowStateMachine(
        sessions,
        registry,
        land,
        matcher,
        gateway,
        GrievanceDrafter(gateway),
        timezone=settings.timezone,
        silence_window_seconds=settings.silence_window_seconds,
        max_input_attempts=settings.max_input_attempts,
        max_retries=retries,
        extraction_confidence_threshold=settings.extraction_confidence_threshold,
        speech_confidence_threshold=settings.speech_confidence_threshold,
    )
    eraser = OwnerDataEraser(store, registry, land, sessions, sla_hours=settings.deletion_sla_hours)

    # -- 5. Core ---------------------------------------------------------------
    from src.pipeline.orchestrator import AccountabilityCore

    app.state.core = AccountabilityCore(
        sessions=sessions,
        registry=registry,
        land=land,
        matcher=matcher,
        workflow=workflow,
        eraser=eraser,
        gateway=gateway,
        calendar=calendar,
        timelines=timelines,
        schemes=schemes,
        timezone=settings.timezone,
    )
    logger.info("app.core_initialised", schemes=len(schemes))

    # -- 6. Retention sweeper --------------------------------------------------
    sweeper = RetentionSweeper(sessions, eraser, settings)
    sweeper.start()
    app.state.sweeper = sweeper

    logger.info("app.startup_complete")

    yield

    # -- Shutdown -----------------------------------------------------------
    logger.info("app.shutdown_start")
    await sweeper.stop()
    await close_gateway(gateway)
    close = getattr(store, "close", None)
    if close is not None:
        await close()
    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SamaySetu API",
    description=(
        "SamaySetu (समयसेतु) -- accountability core for citizen services in India. "
        "Tracks statutory service deadlines, detects breaches, and matches land "
        "holdings to schemes."
    ),
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

# -- CORS middleware --------------------------------------------------------
_CORS_HEADERS = ["Content-Type", "Accept", "X-DPDPA-Consent", "X-Channel-Key", "X-Owner-Id"]
if settings.is_production:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=_CORS_HEADERS,
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8000", "http://127.0.0.1:8000"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS", "HEAD"],
        allow_headers=_CORS_HEADERS,
    )

app.add_middleware(DPDPAMiddleware)


# -- Domain errors ----------------------------------------------------------

_STATUS_BY_ERROR: tuple[tuple[type[AccountabilityError], int], ...] = (
    (InputError, 422),
    (UnclearInput, 422),
    (ExtractionLowConfidence, 422),
    (OwnershipViolation, 403),
    (RecordNotFound, 404),
    (TimelineRuleNotFound, 404),
    (ConcurrencyConflict, 409),
    (InvalidTransition, 409),
    (CalendarDataMissing, 409),
    (CollaboratorUnavailable, 503),
)


def status_for(exc: AccountabilityError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


@app.exception_handler(AccountabilityError)
async def accountability_error_handler(request: Request, exc: AccountabilityError) -> ORJSONResponse:
    status = status_for(exc)
    log = logger.warning if status < 500 else logger.error
    log("api.domain_error", path=request.url.path, code=exc.code, status=status, detail=str(exc))
    return ORJSONResponse(status_code=status, content=exc.to_user_error().model_dump())


# -- Include routers -------------------------------------------------------
app.include_router(api_router)


@app.get("/api", response_class=ORJSONResponse)
async def api_info() -> dict:
    """API information endpoint."""
    return {
        "name": "SamaySetu API",
        "description": "Service deadline accountability for citizens",
        "version": app.version,
        "docs": "/docs",
        "health": "/api/v1/health",
        "endpoints": {
            "sessions": "/api/v1/sessions",
            "applications": "/api/v1/applications",
            "eligibility": "/api/v1/eligibility",
            "owner_data": "/api/v1/owners/me",
        },
    }
