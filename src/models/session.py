"""Workflow session models.

A session's position is the pair ``(current_flow, current_step)``.  Each
flow has its own step enum and step values are namespaced by flow, so
the pair behaves as a tagged variant: a step can only ever be paired
with the flow that owns it (enforced by ``_check_step_matches_flow``).
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Final
from uuid import uuid4

from pydantic import Base64Bytes, BaseModel, Field, model_validator

from src.models.enums import (
    Capability,
    EventType,
    InputType,
    LanguageCode,
    NextActionType,
    WorkflowFlow,
    WorkflowState,
)
from src.models.errors import UserFacingError


# ---------------------------------------------------------------------------
# Per-flow steps (declaration order is the forward order)
# ---------------------------------------------------------------------------


class DeadlineStep(StrEnum):
    __slots__ = ()

    SERVICE_DETAILS = "deadline.service_details"
    SUBMISSION_DATE = "deadline.submission_date"
    RULE_LOOKUP = "deadline.rule_lookup"
    MANUAL_TIMELINE = "deadline.manual_timeline"
    EVALUATION = "deadline.evaluation"
    COMPLETE = "deadline.complete"


class EligibilityStep(StrEnum):
    __slots__ = ()

    LAND_DETAILS = "eligibility.land_details"
    SCHEME_LOOKUP = "eligibility.scheme_lookup"
    MATCHING = "eligibility.matching"
    COMPLETE = "eligibility.complete"


class DocumentStep(StrEnum):
    __slots__ = ()

    DOCUMENT_UPLOAD = "document.upload"
    EXTRACTION = "document.extraction"
    MANUAL_FACTS = "document.manual_facts"
    EXPLANATION = "document.explanation"
    COMPLETE = "document.complete"


class GrievanceStep(StrEnum):
    __slots__ = ()

    SELECT_APPLICATION = "grievance.select_application"
    COMPLAINANT_DETAILS = "grievance.complainant_details"
    DRAFTING = "grievance.drafting"
    COMPLETE = "grievance.complete"


WorkflowStep = DeadlineStep | EligibilityStep | DocumentStep | GrievanceStep

FLOW_STEPS: Final[dict[WorkflowFlow, tuple[WorkflowStep, ...]]] = {
    WorkflowFlow.DEADLINE_CHECK: tuple(DeadlineStep),
    WorkflowFlow.ELIGIBILITY_CHECK: tuple(EligibilityStep),
    WorkflowFlow.DOCUMENT_EXPLANATION: tuple(DocumentStep),
    WorkflowFlow.GRIEVANCE_DRAFT: tuple(GrievanceStep),
}


def step_index(flow: WorkflowFlow, step: WorkflowStep) -> int:
    return FLOW_STEPS[flow].index(step)


# ---------------------------------------------------------------------------
# Session payload pieces
# ---------------------------------------------------------------------------


class Prompt(BaseModel):
    """What the session is currently asking the citizen for."""

    key: str
    text: str
    input_type: InputType
    repeat_count: int = 0
    issued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PendingExternalCall(BaseModel):
    """A collaborator request issued while the session lock was released."""

    request_id: str = Field(default_factory=lambda: uuid4().hex)
    capability: Capability
    operation: str
    issued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class NextAction(BaseModel):
    type: NextActionType
    label: str


class FlowResult(BaseModel):
    """Output contract of a completed flow instance."""

    flow: WorkflowFlow
    flow_instance_id: str
    summary: dict[str, Any] = Field(default_factory=dict)
    message: str
    next_actions: list[NextAction] = Field(default_factory=list, min_length=1, max_length=4)
    completed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class WorkflowSession(BaseModel):
    session_id: str = Field(default_factory=lambda: uuid4().hex)
    owner_id: str
    language_preference: LanguageCode = LanguageCode.hi
    state: WorkflowState = WorkflowState.IDLE
    current_flow: WorkflowFlow | None = None
    current_step: WorkflowStep | None = None
    flow_instance_id: str | None = None
    awaiting_input: bool = False
    expected_input: InputType | None = None
    input_attempts: int = 0
    prompt: Prompt | None = None
    pending_external: PendingExternalCall | None = None
    last_result: FlowResult | None = None
    last_error: UserFacingError | None = None
    saved_context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_activity_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    version: int = 0

    @model_validator(mode="after")
    def _check_step_matches_flow(self) -> WorkflowSession:
        if self.current_step is None:
            return self
        if self.current_flow is None or self.current_step not in FLOW_STEPS[self.current_flow]:
            raise ValueError(
                f"step {self.current_step!s} does not belong to flow {self.current_flow!s}"
            )
        return self


class WorkflowEvent(BaseModel):
    """Structured event fed to the workflow state machine."""

    event_type: EventType
    flow: WorkflowFlow | None = None
    input_type: InputType | None = None
    text: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)
    document_ref: str | None = None
    audio: Base64Bytes | None = None
    silence_seconds: float | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
