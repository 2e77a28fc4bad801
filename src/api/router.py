"""Main API router combining all v1 route modules.

Aggregates all routers under the ``/api/v1`` prefix so the
FastAPI application only needs to include a single router.

Includes:
    * Sessions: start, resume and drive conversational workflows
    * Applications: register, list by urgency, mark completed
    * Eligibility: land-linked scheme matching
    * Owners: deletion of all data held for a citizen
    * Health: liveness and readiness probes
"""

from __future__ import annotations

from fastapi import APIRouter

from src.api.v1 import applications, eligibility, health, owners, sessions

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(sessions.router)
api_router.include_router(applications.router)
api_router.include_router(eligibility.router)
api_router.include_router(owners.router)
api_router.include_router(health.router)
