"""Land-linked scheme eligibility endpoint."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from src.middleware.auth import require_owner
from src.models.enums import AreaUnit, LandCategory
from src.models.land import LandParcel
from src.pipeline.orchestrator import AccountabilityCore
from src.services.eligibility import EligibilityReport

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/eligibility", tags=["eligibility"])


class ParcelInput(BaseModel):
    survey_number: str = Field(..., min_length=1, max_length=64)
    area: float = Field(..., ge=0)
    area_unit: AreaUnit = AreaUnit.ACRE
    category: LandCategory


class EligibilityRequest(BaseModel):
    session_id: str
    parcels: list[ParcelInput] = Field(default_factory=list)
    jurisdiction: str | None = Field(default=None, max_length=16)
    facts: dict[str, Any] = Field(default_factory=dict)


@router.post("", response_model=EligibilityReport)
async def request_eligibility(
    body: EligibilityRequest,
    request: Request,
    owner_id: str = Depends(require_owner),
) -> EligibilityReport:
    """Store the declared parcels and rank schemes for the whole holding.

    Excluded schemes (no condition met) are never returned.
    """
    core: AccountabilityCore | None = getattr(request.app.state, "core", None)
    if core is None:
        raise HTTPException(status_code=503, detail="Accountability core not available")

    await core.get_session(body.session_id, owner_id=owner_id)
    parcels = [LandParcel(owner_id=owner_id, **p.model_dump()) for p in body.parcels]
    return await core.request_eligibility(
        body.session_id,
        parcels,
        jurisdiction=body.jurisdiction.strip().upper() if body.jurisdiction else None,
        facts=body.facts,
    )
