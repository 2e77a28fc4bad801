"""Tracked application endpoints."""

from __future__ import annotations

from datetime import date

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from src.middleware.auth import require_owner
from src.models.application import ApplicationRecord
from src.pipeline.orchestrator import AccountabilityCore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/applications", tags=["applications"])


class SubmitApplicationRequest(BaseModel):
    session_id: str
    service_identifier: str = Field(..., min_length=1, max_length=200)
    jurisdiction: str = Field(..., min_length=2, max_length=16, description="e.g. IN, IN-KA")
    submission_date: date


def _core(request: Request) -> AccountabilityCore:
    core = getattr(request.app.state, "core", None)
    if core is None:
        raise HTTPException(status_code=503, detail="Accountability core not available")
    return core


@router.post("", response_model=ApplicationRecord, status_code=201)
async def submit_application(
    body: SubmitApplicationRequest,
    request: Request,
    owner_id: str = Depends(require_owner),
) -> ApplicationRecord:
    """Register an application and compute its statutory deadline."""
    core = _core(request)
    await core.get_session(body.session_id, owner_id=owner_id)
    return await core.submit_application_facts(
        body.session_id,
        body.service_identifier.strip(),
        body.jurisdiction.strip().upper(),
        body.submission_date,
    )


@router.get("", response_model=list[ApplicationRecord])
async def list_applications(
    request: Request,
    owner_id: str = Depends(require_owner),
) -> list[ApplicationRecord]:
    """All of the caller's applications, re-evaluated, most urgent first."""
    return await _core(request).list_applications(owner_id)


@router.post("/{record_id}/complete", response_model=ApplicationRecord)
async def complete_application(
    record_id: str,
    request: Request,
    owner_id: str = Depends(require_owner),
) -> ApplicationRecord:
    """Mark an application as delivered; it is no longer checked for breach."""
    return await _core(request).complete_application(owner_id, record_id)
