"""Workflow session endpoints.

A session is started once per conversation and then driven entirely by
events: ``start_flow`` picks a flow, text/voice/document events answer
the current prompt, ``timer_elapsed`` reports silence, ``resume`` picks
a conversation back up after a dropped connection.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from src.middleware.auth import require_owner
from src.models.enums import LanguageCode
from src.models.session import WorkflowEvent, WorkflowSession
from src.pipeline.orchestrator import AccountabilityCore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


class StartSessionRequest(BaseModel):
    language: LanguageCode = LanguageCode.hi


def _core(request: Request) -> AccountabilityCore:
    core = getattr(request.app.state, "core", None)
    if core is None:
        raise HTTPException(status_code=503, detail="Accountability core not available")
    return core


@router.post("", response_model=WorkflowSession, status_code=201)
async def start_session(
    body: StartSessionRequest,
    request: Request,
    owner_id: str = Depends(require_owner),
) -> WorkflowSession:
    """Create an idle session for the calling citizen."""
    return await _core(request).start_session(owner_id, body.language)


@router.get("/{session_id}", response_model=WorkflowSession)
async def get_session(
    session_id: str,
    request: Request,
    owner_id: str = Depends(require_owner),
) -> WorkflowSession:
    """Return the session exactly as last saved (used to resume)."""
    return await _core(request).get_session(session_id, owner_id=owner_id)


@router.post("/{session_id}/events", response_model=WorkflowSession)
async def advance_session(
    session_id: str,
    event: WorkflowEvent,
    request: Request,
    owner_id: str = Depends(require_owner),
) -> WorkflowSession:
    """Feed one event to the session's state machine."""
    core = _core(request)
    await core.get_session(session_id, owner_id=owner_id)
    return await core.advance_workflow(session_id, event)
