"""Data-principal rights: erase everything held for the caller."""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from src.middleware.auth import require_channel_key, require_owner
from src.pipeline.orchestrator import AccountabilityCore
from src.services.retention import DeletionReceipt

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/owners", tags=["data-rights"])


class DeletionReceiptResponse(BaseModel):
    request_id: str
    owner_ref: str
    status: str
    requested_at: datetime
    due_by: datetime
    completed_at: datetime | None = None
    removed: dict[str, int]

    @classmethod
    def from_receipt(cls, receipt: DeletionReceipt) -> DeletionReceiptResponse:
        # owner_id never leaves the service.
        return cls(**receipt.model_dump(exclude={"owner_id", "attempts", "version"}))


def _core(request: Request) -> AccountabilityCore:
    core = getattr(request.app.state, "core", None)
    if core is None:
        raise HTTPException(status_code=503, detail="Accountability core not available")
    return core


@router.delete("/me", response_model=DeletionReceiptResponse, status_code=202)
async def delete_my_data(
    request: Request,
    owner_id: str = Depends(require_owner),
) -> DeletionReceiptResponse:
    """Delete all applications, land parcels and sessions of the caller.

    Returns ``202`` with a receipt; ``status`` is ``completed`` when the
    deletion already went through and ``pending`` when it will be retried
    before ``due_by``.
    """
    receipt = await _core(request).delete_owner_data(owner_id)
    return DeletionReceiptResponse.from_receipt(receipt)


@router.get(
    "/deletions/{request_id}",
    response_model=DeletionReceiptResponse,
    dependencies=[Depends(require_channel_key)],
)
async def deletion_status(request_id: str, request: Request) -> DeletionReceiptResponse:
    receipt = await _core(request).deletion_status(request_id)
    if receipt is None:
        raise HTTPException(status_code=404, detail="Deletion request not found")
    return DeletionReceiptResponse.from_receipt(receipt)
