"""Workflow state machine for citizen sessions.

A session moves through ``idle -> awaiting_input -> processing ->
(completed | error_recoverable | error_fatal)`` while working through one
of four flows: deadline check, eligibility check, document explanation
and grievance drafting.  Its position inside a flow is the tagged pair
``(current_flow, current_step)``; dispatch is an exhaustive ``match`` on
the flow and then on the flow's own step enum.

Persistence contract
    Every transition is saved (with an optimistic version check) before
    :meth:`WorkflowStateMachine.advance` yields control.  A crash after
    any save leaves the session exactly as saved.

External calls
    Calls to extraction, retrieval or generation never run under the
    session lock.  The machine saves the session in ``processing`` with
    a :class:`PendingExternalCall`, releases the lock, makes the call,
    then re-locks and applies the result only if the pending request id
    still matches.  A ``resume`` event re-issues a pending call that was
    lost to a restart.

Input handling
    Input of the wrong type, or input that fails validation, is not a
    transition: the prompt is re-issued with a field-level reason.  After
    ``max_input_attempts`` rejections the session moves to
    ``error_recoverable`` at the same step and still accepts input.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime
from typing import Any, Final, assert_never
from uuid import uuid4

import structlog
from pydantic import ValidationError

from src.models.application import ApplicationRecord
from src.models.enums import (
    ApplicationStatus,
    Capability,
    DurationUnit,
    EventType,
    InputType,
    NextActionType,
    WorkflowFlow,
    WorkflowState,
)
from src.models.errors import (
    AccountabilityError,
    CalendarDataMissing,
    CollaboratorUnavailable,
    ConcurrencyConflict,
    ExtractionLowConfidence,
    FutureSubmissionDate,
    InputError,
    InvalidRule,
    InvalidTransition,
    MissingField,
    UnclearInput,
    UnexpectedInput,
    UserFacingError,
)
from src.models.land import LandParcel
from src.models.session import (
    FLOW_STEPS,
    DeadlineStep,
    DocumentStep,
    EligibilityStep,
    FlowResult,
    GrievanceStep,
    NextAction,
    PendingExternalCall,
    Prompt,
    WorkflowEvent,
    WorkflowSession,
    WorkflowStep,
    step_index,
)
from src.models.timeline import MANUAL_SOURCE_VERSION, TimelineRule
from src.services.breach import BreachVerdict, evaluate
from src.services.calendar_service import local_today
from src.services.collaborators import CollaboratorGateway, ExtractionResult
from src.services.deadline import validate_rule
from src.services.eligibility import EligibilityMatcher, EligibilityReport
from src.services.grievance import GrievanceDraft, GrievanceDrafter, GrievanceRequest
from src.services.land_records import LandRecordStore
from src.services.registry import ApplicationRegistry
from src.services.sessions import SessionRepository
from src.services.store import KeyedLocks

logger = structlog.get_logger(__name__)

Transition = tuple[WorkflowSession, PendingExternalCall | None]

# Collaborator operations that can be pending on a session.
_OP_TIMELINE: Final[str] = "retrieve_timeline_rule"
_OP_SCHEMES: Final[str] = "retrieve_scheme_rules"
_OP_EXTRACT: Final[str] = "extract"
_OP_EXPLAIN: Final[str] = "explain"
_OP_GRIEVANCE: Final[str] = "draft_grievance"

_PENDING_ARGS: Final[str] = "_pending_args"


# ---------------------------------------------------------------------------
# Citizen-facing text
# ---------------------------------------------------------------------------

_TEXTS: Final[dict[str, dict[str, str]]] = {
    "deadline.service_details": {
        "en": "Which service did you apply for, and in which state? For example: income certificate, IN-KA.",
        "hi": "आपने किस सेवा के लिए आवेदन किया था, और किस राज्य में? जैसे: आय प्रमाण पत्र, IN-KA.",
    },
    "deadline.submission_date": {
        "en": "On what date did you submit the application? Please give it as DD/MM/YYYY.",
        "hi": "आपने आवेदन किस तारीख को जमा किया था? कृपया DD/MM/YYYY में बताएं.",
    },
    "deadline.manual_timeline": {
        "en": "We could not find the official time limit. If you know it, tell us the number of days, for example: 15 working days.",
        "hi": "हमें आधिकारिक समय-सीमा नहीं मिली. अगर आपको पता है तो दिनों की संख्या बताएं, जैसे: 15 कार्य दिवस.",
    },
    "eligibility.land_details": {
        "en": "Please give the survey number, area and type of each of your land parcels.",
        "hi": "कृपया अपनी हर ज़मीन का सर्वे नंबर, रकबा और प्रकार बताएं.",
    },
    "eligibility.retry": {
        "en": "Scheme information is not available right now. Say yes when you want us to try again.",
        "hi": "योजना की जानकारी अभी उपलब्ध नहीं है. जब आप दोबारा कोशिश करना चाहें तो हाँ कहें.",
    },
    "document.upload": {
        "en": "Please upload a photo or PDF of your document.",
        "hi": "कृपया अपने दस्तावेज़ की फोटो या PDF भेजें.",
    },
    "document.manual_facts": {
        "en": "Some details could not be read clearly. Please type: {fields}.",
        "hi": "कुछ जानकारी साफ़ नहीं पढ़ी जा सकी. कृपया लिखें: {fields}.",
    },
    "grievance.select_application": {
        "en": "Which application do you want to complain about?\n{choices}",
        "hi": "आप किस आवेदन के बारे में शिकायत करना चाहते हैं?\n{choices}",
    },
    "grievance.complainant_details": {
        "en": "In whose name should the complaint be filed?",
        "hi": "शिकायत किसके नाम से दर्ज की जाए?",
    },
    "result.deadline_breached": {
        "en": "Application {application_id} was due on {deadline}. It is {overdue_days} days overdue.",
        "hi": "आवेदन {application_id} की अंतिम तिथि {deadline} थी. इसमें {overdue_days} दिन की देरी हो चुकी है.",
    },
    "result.deadline_pending": {
        "en": "Application {application_id} is due by {deadline}. {days_remaining} days remain.",
        "hi": "आवेदन {application_id} की अंतिम तिथि {deadline} है. {days_remaining} दिन बाकी हैं.",
    },
    "result.eligibility": {
        "en": "You qualify for {eligible_count} schemes and nearly qualify for {near_miss_count} more.",
        "hi": "आप {eligible_count} योजनाओं के पात्र हैं और {near_miss_count} और योजनाओं के लगभग पात्र हैं.",
    },
    "result.document": {
        "en": "Your document contains: {field_list}.",
        "hi": "आपके दस्तावेज़ में यह जानकारी है: {field_list}.",
    },
    "result.no_breached": {
        "en": "None of your applications is past its deadline, so there is nothing to complain about yet.",
        "hi": "आपका कोई भी आवेदन अंतिम तिथि से आगे नहीं है, इसलिए अभी शिकायत की ज़रूरत नहीं है.",
    },
    "result.grievance": {
        "en": "Your complaint is ready. File it on {portal}.",
        "hi": "आपकी शिकायत तैयार है. इसे {portal} पर दर्ज करें.",
    },
    "action.check_deadline": {"en": "Check another application", "hi": "दूसरा आवेदन जांचें"},
    "action.check_eligibility": {"en": "Check land scheme eligibility", "hi": "ज़मीन योजना पात्रता जांचें"},
    "action.explain_document": {"en": "Explain another document", "hi": "दूसरा दस्तावेज़ समझें"},
    "action.draft_grievance": {"en": "Draft a complaint", "hi": "शिकायत तैयार करें"},
    "action.list_applications": {"en": "See all my applications", "hi": "मेरे सभी आवेदन देखें"},
    "action.call_helpline": {"en": "Call the helpline", "hi": "हेल्पलाइन पर कॉल करें"},
    "action.visit_csc": {"en": "Visit the nearest CSC", "hi": "नज़दीकी CSC जाएं"},
    "action.end_session": {"en": "Finish", "hi": "समाप्त करें"},
}


def _text(key: str, language: str, **values: Any) -> str:
    variants = _TEXTS[key]
    return variants.get(language, variants["en"]).format(**values)


# Prompt key and expected input for every step that waits on the citizen.
_STEP_INPUT: Final[dict[WorkflowStep, tuple[str, InputType]]] = {
    DeadlineStep.SERVICE_DETAILS: ("deadline.service_details", InputType.SERVICE_DETAILS),
    DeadlineStep.SUBMISSION_DATE: ("deadline.submission_date", InputType.DATE),
    DeadlineStep.MANUAL_TIMELINE: ("deadline.manual_timeline", InputType.TIMELINE),
    EligibilityStep.LAND_DETAILS: ("eligibility.land_details", InputType.LAND_PARCELS),
    EligibilityStep.SCHEME_LOOKUP: ("eligibility.retry", InputType.CONFIRMATION),
    DocumentStep.DOCUMENT_UPLOAD: ("document.upload", InputType.DOCUMENT),
    DocumentStep.MANUAL_FACTS: ("document.manual_facts", InputType.FREE_TEXT),
    GrievanceStep.SELECT_APPLICATION: ("grievance.select_application", InputType.CHOICE),
    GrievanceStep.COMPLAINANT_DETAILS: ("grievance.complainant_details", InputType.FREE_TEXT),
}

# Steps an error may roll a session back to.
_SAFE_STEPS: Final[frozenset[WorkflowStep]] = frozenset({
    DeadlineStep.SUBMISSION_DATE,
    DeadlineStep.MANUAL_TIMELINE,
    EligibilityStep.LAND_DETAILS,
    EligibilityStep.SCHEME_LOOKUP,
    DocumentStep.DOCUMENT_UPLOAD,
    GrievanceStep.SELECT_APPLICATION,
})

_NEGATIVE_ANSWERS: Final[frozenset[str]] = frozenset({"no", "nahi", "nahin", "नहीं", "cancel"})


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------

_DATE_FORMATS: Final[tuple[str, ...]] = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y")
_TIMELINE_RE = re.compile(r"(-?\d+)\s*(working|business|calendar)?", re.IGNORECASE)


def _field_or_text(event: WorkflowEvent, key: str) -> Any:
    if event.fields.get(key) not in (None, ""):
        return event.fields[key]
    return event.text


def _parse_date(raw: Any, *, field: str) -> date:
    if raw is None or not str(raw).strip():
        raise MissingField(field)
    text = str(raw).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise InputError(field, "please use the format DD/MM/YYYY")


def _parse_service_details(event: WorkflowEvent) -> tuple[str, str]:
    service = event.fields.get("service_identifier")
    jurisdiction = event.fields.get("jurisdiction")
    if (not service or not jurisdiction) and event.text:
        parts = [p.strip() for p in event.text.split(",") if p.strip()]
        if len(parts) >= 2:
            service = service or parts[0]
            jurisdiction = jurisdiction or parts[-1]
    if not service:
        raise MissingField("service_identifier")
    if not jurisdiction:
        raise MissingField("jurisdiction")
    return str(service).strip(), str(jurisdiction).strip().upper()


def _parse_timeline(event: WorkflowEvent) -> tuple[int, DurationUnit]:
    units: Any = event.fields.get("duration_units")
    unit: Any = event.fields.get("unit")
    if units is None and event.text:
        match = _TIMELINE_RE.search(event.text)
        if match:
            units = match.group(1)
            if unit is None and (match.group(2) or "").lower() == "calendar":
                unit = DurationUnit.CALENDAR_DAYS
    if units is None:
        raise MissingField("duration_units")
    try:
        count = int(units)
    except (TypeError, ValueError):
        raise InputError("duration_units", "must be a whole number of days") from None
    try:
        # Right to Service notifications count working days unless stated otherwise.
        duration_unit = DurationUnit(unit or DurationUnit.WORKING_DAYS)
    except ValueError:
        raise InputError("unit", "must be working_days or calendar_days") from None
    if count <= 0:
        raise InvalidRule(f"must be positive, got {count}")
    return count, duration_unit


def _parse_land_details(event: WorkflowEvent, owner_id: str) -> tuple[list[LandParcel], str, dict[str, Any]]:
    raw = event.fields.get("parcels")
    if not raw:
        raise MissingField("parcels")
    if not isinstance(raw, list):
        raise InputError("parcels", "expected a list of land parcels")
    try:
        # Parcels always belong to the session owner, whatever the payload says.
        parcels = [LandParcel.model_validate({**item, "owner_id": owner_id}) for item in raw]
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise InputError("parcels", f"{where}: {first.get('msg', 'invalid value')}") from None
    except TypeError:
        raise InputError("parcels", "each parcel needs survey_number, area and category") from None
    jurisdiction = str(event.fields.get("jurisdiction") or "IN").strip().upper()
    facts = event.fields.get("facts") or {}
    if not isinstance(facts, dict):
        raise InputError("facts", "expected named facts")
    return parcels, jurisdiction, facts


def _parse_confirmation(event: WorkflowEvent) -> bool:
    value = event.fields.get("confirm")
    if value is not None:
        return bool(value)
    if event.text:
        return event.text.strip().lower() not in _NEGATIVE_ANSWERS
    return True


def _received_type(event: WorkflowEvent, expected: InputType | None) -> InputType:
    if event.event_type == EventType.DOCUMENT_SUBMITTED:
        return InputType.DOCUMENT
    if event.input_type is not None:
        return event.input_type
    if expected is None or expected == InputType.DOCUMENT:
        # Text can never satisfy a document request.
        return InputType.FREE_TEXT
    return expected


def _json_native(value: Any) -> Any:
    if value is None or isinstance(value, str | int | float | bool):
        return value
    return str(value)


# ---------------------------------------------------------------------------
# Result summaries (JSON-native so sessions round-trip exactly)
# ---------------------------------------------------------------------------


def _deadline_summary(record: ApplicationRecord, verdict: BreachVerdict) -> dict[str, Any]:
    return {
        "application_id": record.id,
        "service": record.rule.service_name or record.service_identifier,
        "jurisdiction": record.jurisdiction,
        "submission_date": record.submission_date.isoformat(),
        "deadline": record.computed_deadline.isoformat(),
        "status": str(record.status),
        "breached": verdict.breached,
        "overdue_days": verdict.overdue_days,
        "days_remaining": verdict.days_remaining,
        "rule_source_version": record.rule.source_version,
        "calendar_basis": str(record.calendar_basis),
    }


def _eligibility_summary(report: EligibilityReport) -> dict[str, Any]:
    return {
        "total_area_acres": report.holding.total_area_acres,
        "parcel_count": report.holding.parcel_count,
        "eligible": [
            {
                "scheme_id": m.scheme.id,
                "name": m.scheme.name,
                "benefit_amount": m.scheme.benefit_amount,
                "helpline": m.scheme.helpline,
            }
            for m in report.eligible
        ],
        "near_miss": [
            {
                "scheme_id": m.scheme.id,
                "name": m.scheme.name,
                "score": round(m.score, 4),
                "unmatched": list(m.unmatched_conditions),
            }
            for m in report.near_miss
        ],
    }


def _grievance_summary(draft: GrievanceDraft) -> dict[str, Any]:
    return {
        "grievance_id": draft.grievance_id,
        "application_id": draft.application_id,
        "portal": draft.recommended_portal,
        "portal_url": draft.portal_url,
        "helpline": draft.helpline,
        "complaint": draft.formatted_complaint,
        "filing_steps": list(draft.filing_steps),
        "escalation_levels": list(draft.escalation_levels),
        "facts": {k: _json_native(v) for k, v in draft.facts.items()},
    }


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class WorkflowStateMachine:
    """Drives sessions through their flows.

    Parameters
    ----------
    sessions:
        Versioned session persistence.
    registry, land, matcher, grievances:
        Domain services the flows call.
    gateway:
        External collaborators (extraction, speech, retrieval, generation).
    silence_window_seconds:
        Silence at least this long while awaiting input re-issues the prompt.
    max_input_attempts:
        Rejected inputs tolerated at one step before ``error_recoverable``.
    max_retries:
        Optimistic-concurrency reapply bound per transition.
    """

    __slots__ = (
        "_extraction_threshold",
        "_gateway",
        "_grievances",
        "_land",
        "_locks",
        "_matcher",
        "_max_input_attempts",
        "_max_retries",
        "_registry",
        "_sessions",
        "_silence_window",
        "_speech_threshold",
        "_timezone",
    )

    def __init__(
        self,
        sessions: SessionRepository,
        registry: ApplicationRegistry,
        land: LandRecordStore,
        matcher: EligibilityMatcher,
        gateway: CollaboratorGateway,
        grievances: GrievanceDrafter,
        *,
        timezone: str = "Asia/Kolkata",
        silence_window_seconds: float = 10.0,
        max_input_attempts: int = 3,
        max_retries: int = 3,
        extraction_confidence_threshold: float = 0.75,
        speech_confidence_threshold: float = 0.6,
    ) -> None:
        self._sessions = sessions
        self._registry = registry
        self._land = land
        self._matcher = matcher
        self._gateway = gateway
        self._grievances = grievances
        self._timezone = timezone
        self._silence_window = silence_window_seconds
        self._max_input_attempts = max_input_attempts
        self._max_retries = max_retries
        self._extraction_threshold = extraction_confidence_threshold
        self._speech_threshold = speech_confidence_threshold
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def advance(self, session_id: str, event: WorkflowEvent) -> WorkflowSession:
        """Apply ``event`` and return the session as persisted afterwards."""
        if event.event_type == EventType.VOICE_INPUT:
            try:
                event = await self._transcribe(session_id, event)
            except (UnclearInput, CollaboratorUnavailable) as exc:
                logger.info("workflow.voice_rejected", session_id=session_id, reason=exc.code)
                rejected, _ = await self._transact(
                    session_id, lambda s: self._reject_input(s, exc, event.occurred_at)
                )
                return rejected

        session, call = await self._transact(session_id, lambda s: self._on_event(s, event))
        while call is not None:
            outcome = await self._execute(session, call)
            session, call = await self._transact(
                session_id,
                lambda s, c=call, o=outcome: self._on_external(s, c, o),
            )
        return session

    # ------------------------------------------------------------------
    # Persistence loop
    # ------------------------------------------------------------------

    async def _transact(
        self,
        session_id: str,
        step: Callable[[WorkflowSession], Awaitable[Transition]],
    ) -> Transition:
        """Load, transition and save under the session lock.

        A stale save re-reads and re-applies ``step`` up to
        ``max_retries`` times; then :class:`ConcurrencyConflict` escapes.
        """
        async with self._locks.hold(session_id):
            for attempt in range(1, self._max_retries + 1):
                session = await self._sessions.load(session_id)
                updated, call = await step(session)
                if updated is session:
                    return session, call
                try:
                    saved = await self._sessions.save(updated)
                except ConcurrencyConflict:
                    logger.info("workflow.conflict_retry", session_id=session_id, attempt=attempt)
                    continue
                logger.info(
                    "workflow.transition",
                    session_id=session_id,
                    flow=saved.current_flow,
                    from_state=session.state,
                    to_state=saved.state,
                    from_step=session.current_step,
                    to_step=saved.current_step,
                    version=saved.version,
                )
                return saved, call
        raise ConcurrencyConflict("session", session_id, f"gave up after {self._max_retries} attempts")

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    async def _on_event(self, session: WorkflowSession, event: WorkflowEvent) -> Transition:
        now = event.occurred_at
        match event.event_type:
            case EventType.START_FLOW:
                return await self._start_flow(session, event, now)
            case EventType.CANCEL:
                return self._cancel(session, now), None
            case EventType.TIMER_ELAPSED:
                return self._on_silence(session, event), None
            case EventType.RESUME:
                return self._resume(session, now)
            case EventType.TEXT_INPUT | EventType.DOCUMENT_SUBMITTED | EventType.VOICE_INPUT:
                return await self._on_input(session, event, now)
            case _ as unreachable:
                assert_never(unreachable)

    async def _start_flow(self, session: WorkflowSession, event: WorkflowEvent, now: datetime) -> Transition:
        if event.flow is None:
            raise MissingField("flow")
        if session.state not in (WorkflowState.IDLE, WorkflowState.COMPLETED, WorkflowState.ERROR_FATAL):
            raise InvalidTransition(f"cannot start {event.flow} while {session.state}")

        fresh = session.model_copy(
            update={
                "state": WorkflowState.IDLE,
                "current_flow": event.flow,
                "current_step": None,
                "flow_instance_id": uuid4().hex,
                "saved_context": {},
                "input_attempts": 0,
                "pending_external": None,
                "last_error": None,
            }
        )
        logger.info("workflow.flow_started", session_id=session.session_id, flow=event.flow)

        match event.flow:
            case WorkflowFlow.DEADLINE_CHECK:
                return self._await_input(fresh, DeadlineStep.SERVICE_DETAILS, now), None
            case WorkflowFlow.ELIGIBILITY_CHECK:
                return self._await_input(fresh, EligibilityStep.LAND_DETAILS, now), None
            case WorkflowFlow.DOCUMENT_EXPLANATION:
                return self._await_input(fresh, DocumentStep.DOCUMENT_UPLOAD, now), None
            case WorkflowFlow.GRIEVANCE_DRAFT:
                return await self._start_grievance(fresh, now), None
            case _ as unreachable:
                assert_never(unreachable)

    async def _on_input(self, session: WorkflowSession, event: WorkflowEvent, now: datetime) -> Transition:
        if not session.awaiting_input or session.state not in (
            WorkflowState.AWAITING_INPUT,
            WorkflowState.ERROR_RECOVERABLE,
        ):
            raise InvalidTransition(f"input received while {session.state}")

        expected = session.expected_input
        received = _received_type(event, expected)
        if expected is None or received != expected:
            return await self._reject_input(session, UnexpectedInput(str(expected), str(received)), now)

        try:
            match session.current_flow:
                case WorkflowFlow.DEADLINE_CHECK:
                    return await self._deadline_input(session, event, now)
                case WorkflowFlow.ELIGIBILITY_CHECK:
                    return await self._eligibility_input(session, event, now)
                case WorkflowFlow.DOCUMENT_EXPLANATION:
                    return self._document_input(session, event, now)
                case WorkflowFlow.GRIEVANCE_DRAFT:
                    return self._grievance_input(session, event, now)
                case None:
                    raise InvalidTransition("no active flow")
                case _ as unreachable:
                    assert_never(unreachable)
        except InputError as exc:
            return await self._reject_input(session, exc, now)
        except CalendarDataMissing as exc:
            return self._fatal(session, exc, now), None

    async def _on_external(
        self,
        session: WorkflowSession,
        call: PendingExternalCall,
        outcome: Any,
    ) -> Transition:
        pending = session.pending_external
        if pending is None or pending.request_id != call.request_id:
            logger.info(
                "workflow.stale_external_result",
                session_id=session.session_id,
                operation=call.operation,
            )
            return session, None

        now = datetime.now(UTC)
        context = {k: v for k, v in session.saved_context.items() if k != _PENDING_ARGS}
        cleared = session.model_copy(update={"pending_external": None, "saved_context": context})

        try:
            match cleared.current_flow:
                case WorkflowFlow.DEADLINE_CHECK:
                    return await self._deadline_external(cleared, call, outcome, now)
                case WorkflowFlow.ELIGIBILITY_CHECK:
                    return await self._eligibility_external(cleared, call, outcome, now)
                case WorkflowFlow.DOCUMENT_EXPLANATION:
                    return self._document_external(cleared, call, outcome, now)
                case WorkflowFlow.GRIEVANCE_DRAFT:
                    return await self._grievance_external(cleared, call, outcome, now)
                case None:
                    return session, None
                case _ as unreachable:
                    assert_never(unreachable)
        except CalendarDataMissing as exc:
            return self._fatal(cleared, exc, now), None

    # ------------------------------------------------------------------
    # Flow-independent events
    # ------------------------------------------------------------------

    def _cancel(self, session: WorkflowSession, now: datetime) -> WorkflowSession:
        if session.state == WorkflowState.IDLE and session.current_flow is None:
            return session
        return session.model_copy(
            update={
                "state": WorkflowState.IDLE,
                "current_flow": None,
                "current_step": None,
                "flow_instance_id": None,
                "awaiting_input": False,
                "expected_input": None,
                "input_attempts": 0,
                "prompt": None,
                "pending_external": None,
                "last_error": None,
                "saved_context": {},
                "last_activity_at": now,
            }
        )

    def _on_silence(self, session: WorkflowSession, event: WorkflowEvent) -> WorkflowSession:
        silence = event.silence_seconds or 0.0
        if not session.awaiting_input or session.prompt is None or silence < self._silence_window:
            return session
        # Not a transition: step, state and last_activity_at stay as they are.
        prompt = session.prompt.model_copy(
            update={"repeat_count": session.prompt.repeat_count + 1, "issued_at": event.occurred_at}
        )
        logger.info(
            "workflow.prompt_repeated",
            session_id=session.session_id,
            step=session.current_step,
            repeat_count=prompt.repeat_count,
        )
        return session.model_copy(update={"prompt": prompt})

    def _resume(self, session: WorkflowSession, now: datetime) -> Transition:
        pending = session.pending_external
        if pending is None:
            return session, None
        reissued = PendingExternalCall(capability=pending.capability, operation=pending.operation, issued_at=now)
        logger.info(
            "workflow.external_reissued",
            session_id=session.session_id,
            operation=pending.operation,
        )
        return session.model_copy(update={"pending_external": reissued, "last_activity_at": now}), reissued

    async def _reject_input(
        self,
        session: WorkflowSession,
        error: AccountabilityError,
        now: datetime,
    ) -> Transition:
        if not session.awaiting_input:
            raise InvalidTransition(f"input received while {session.state}")
        attempts = session.input_attempts + 1
        prompt = (
            session.prompt.model_copy(update={"repeat_count": session.prompt.repeat_count + 1, "issued_at": now})
            if session.prompt is not None
            else None
        )
        user_error = error.to_user_error()
        update: dict[str, Any] = {
            "prompt": prompt,
            "input_attempts": attempts,
            "last_error": user_error,
            "last_activity_at": now,
        }
        if attempts >= self._max_input_attempts:
            logger.info(
                "workflow.input_attempts_exhausted",
                session_id=session.session_id,
                step=session.current_step,
                code=error.code,
            )
            update["state"] = WorkflowState.ERROR_RECOVERABLE
            update["input_attempts"] = 0
            update["last_error"] = user_error.model_copy(
                update={
                    "next_step": f"{user_error.next_step} You can also get help at your nearest Common Service Centre (CSC)."
                }
            )
        return session.model_copy(update=update), None

    # ------------------------------------------------------------------
    # Step bookkeeping
    # ------------------------------------------------------------------

    def _check_step(self, session: WorkflowSession, step: WorkflowStep, *, rollback: bool = False) -> None:
        flow = session.current_flow
        if flow is None or step not in FLOW_STEPS[flow]:
            raise InvalidTransition(f"step {step} is not part of flow {flow}")
        if session.current_step is None:
            return
        if step_index(flow, step) < step_index(flow, session.current_step) and not (
            rollback and step in _SAFE_STEPS
        ):
            raise InvalidTransition(f"cannot move back from {session.current_step} to {step}")

    def _await_input(
        self,
        session: WorkflowSession,
        step: WorkflowStep,
        now: datetime,
        *,
        context: dict[str, Any] | None = None,
        error: UserFacingError | None = None,
        state: WorkflowState = WorkflowState.AWAITING_INPUT,
        rollback: bool = False,
        prompt_values: dict[str, Any] | None = None,
    ) -> WorkflowSession:
        self._check_step(session, step, rollback=rollback)
        key, input_type = _STEP_INPUT[step]
        prompt = Prompt(
            key=key,
            text=_text(key, str(session.language_preference), **(prompt_values or {})),
            input_type=input_type,
            issued_at=now,
        )
        return session.model_copy(
            update={
                "state": state,
                "current_step": step,
                "awaiting_input": True,
                "expected_input": input_type,
                "input_attempts": 0,
                "prompt": prompt,
                "pending_external": None,
                "last_error": error,
                "saved_context": session.saved_context if context is None else context,
                "last_activity_at": now,
            }
        )

    def _recoverable(
        self,
        session: WorkflowSession,
        step: WorkflowStep,
        error: AccountabilityError,
        now: datetime,
        *,
        context: dict[str, Any] | None = None,
        prompt_values: dict[str, Any] | None = None,
    ) -> WorkflowSession:
        logger.info(
            "workflow.recoverable_error",
            session_id=session.session_id,
            step=step,
            code=error.code,
        )
        return self._await_input(
            session,
            step,
            now,
            context=context,
            error=error.to_user_error(),
            state=WorkflowState.ERROR_RECOVERABLE,
            rollback=True,
            prompt_values=prompt_values,
        )

    def _fatal(self, session: WorkflowSession, error: AccountabilityError, now: datetime) -> WorkflowSession:
        logger.warning(
            "workflow.fatal_error",
            session_id=session.session_id,
            step=session.current_step,
            code=error.code,
        )
        return session.model_copy(
            update={
                "state": WorkflowState.ERROR_FATAL,
                "awaiting_input": False,
                "expected_input": None,
                "prompt": None,
                "pending_external": None,
                "last_error": error.to_user_error(),
                "last_activity_at": now,
            }
        )

    def _begin_external(
        self,
        session: WorkflowSession,
        step: WorkflowStep,
        capability: Capability,
        operation: str,
        args: dict[str, Any],
        now: datetime,
        *,
        context: dict[str, Any] | None = None,
    ) -> Transition:
        self._check_step(session, step)
        call = PendingExternalCall(capability=capability, operation=operation, issued_at=now)
        saved_context = dict(session.saved_context if context is None else context)
        saved_context[_PENDING_ARGS] = args
        updated = session.model_copy(
            update={
                "state": WorkflowState.PROCESSING,
                "current_step": step,
                "awaiting_input": False,
                "expected_input": None,
                "input_attempts": 0,
                "prompt": None,
                "pending_external": call,
                "last_error": None,
                "saved_context": saved_context,
                "last_activity_at": now,
            }
        )
        return updated, call

    def _complete(
        self,
        session: WorkflowSession,
        summary: dict[str, Any],
        message: str,
        actions: list[NextActionType],
        now: datetime,
    ) -> WorkflowSession:
        flow = session.current_flow
        if flow is None or session.flow_instance_id is None:
            raise InvalidTransition(f"no flow to complete while {session.state}")
        final_step = FLOW_STEPS[flow][-1]
        self._check_step(session, final_step)
        language = str(session.language_preference)
        result = FlowResult(
            flow=flow,
            flow_instance_id=session.flow_instance_id,
            summary=summary,
            message=message,
            next_actions=[NextAction(type=a, label=_text(f"action.{a}", language)) for a in actions[:4]],
            completed_at=now,
        )
        logger.info("workflow.flow_completed", session_id=session.session_id, flow=flow)
        return session.model_copy(
            update={
                "state": WorkflowState.COMPLETED,
                "current_step": final_step,
                "awaiting_input": False,
                "expected_input": None,
                "input_attempts": 0,
                "prompt": None,
                "pending_external": None,
                "last_result": result,
                "last_error": None,
                "saved_context": {},
                "last_activity_at": now,
            }
        )

    # ------------------------------------------------------------------
    # External calls (run outside the session lock)
    # ------------------------------------------------------------------

    async def _transcribe(self, session_id: str, event: WorkflowEvent) -> WorkflowEvent:
        session = await self._sessions.load(session_id)
        if not event.audio:
            raise UnclearInput("empty audio")
        result = await self._gateway.transcribe(event.audio, str(session.language_preference))
        if result.confidence < self._speech_threshold or not result.text.strip():
            raise UnclearInput(f"transcript confidence {result.confidence:.2f}")
        return event.model_copy(update={"event_type": EventType.TEXT_INPUT, "text": result.text.strip(), "audio": None})

    async def _execute(self, session: WorkflowSession, call: PendingExternalCall) -> Any:
        """Perform ``call``; failures are returned, not raised."""
        args: dict[str, Any] = session.saved_context.get(_PENDING_ARGS, {})
        language = str(session.language_preference)
        try:
            match call.operation:
                case "retrieve_timeline_rule":
                    return await self._gateway.retrieve_timeline_rule(args["service_identifier"], args["jurisdiction"])
                case "retrieve_scheme_rules":
                    return await self._gateway.retrieve_scheme_rules(args["jurisdiction"])
                case "extract":
                    return await self._gateway.extract(args["document_ref"])
                case "explain":
                    return await self._gateway.generate(args["facts"], language)
                case "draft_grievance":
                    instant = datetime.fromisoformat(args["as_of"]) if "as_of" in args else datetime.now(UTC)
                    record = await self._registry.reevaluate(
                        args["application_id"], instant, owner_id=session.owner_id
                    )
                    verdict = evaluate(
                        record.submission_date,
                        record.computed_deadline,
                        local_today(instant, self._timezone),
                    )
                    return await self._grievances.draft(
                        GrievanceRequest(
                            complainant_name=args["complainant_name"],
                            record=record,
                            verdict=verdict,
                            details=args.get("details", ""),
                            district=args.get("district", ""),
                        ),
                        language=language,
                    )
                case _:
                    raise InvalidTransition(f"unknown operation {call.operation}")
        except AccountabilityError as exc:
            return exc

    # ------------------------------------------------------------------
    # Deadline check
    # ------------------------------------------------------------------

    async def _deadline_input(self, session: WorkflowSession, event: WorkflowEvent, now: datetime) -> Transition:
        context = dict(session.saved_context)
        match session.current_step:
            case DeadlineStep.SERVICE_DETAILS:
                service, jurisdiction = _parse_service_details(event)
                context.update(service_identifier=service, jurisdiction=jurisdiction)
                return self._await_input(session, DeadlineStep.SUBMISSION_DATE, now, context=context), None
            case DeadlineStep.SUBMISSION_DATE:
                submitted = _parse_date(_field_or_text(event, "submission_date"), field="submission_date")
                today = local_today(now, self._timezone)
                if submitted > today:
                    raise FutureSubmissionDate(submitted, today)
                context["submission_date"] = submitted.isoformat()
                return self._begin_external(
                    session,
                    DeadlineStep.RULE_LOOKUP,
                    Capability.RETRIEVAL,
                    _OP_TIMELINE,
                    {"service_identifier": context["service_identifier"], "jurisdiction": context["jurisdiction"]},
                    now,
                    context=context,
                )
            case DeadlineStep.MANUAL_TIMELINE:
                units, unit = _parse_timeline(event)
                rule = TimelineRule(
                    service_identifier=context["service_identifier"],
                    jurisdiction=context["jurisdiction"],
                    duration_units=units,
                    unit=unit,
                    effective_from=date.fromisoformat(context["submission_date"]),
                    source_version=MANUAL_SOURCE_VERSION,
                )
                validate_rule(rule)
                context["rule"] = rule.model_dump(mode="json")
                return await self._evaluate_deadline(session, context, now)
            case _:
                raise InvalidTransition(f"no input expected at {session.current_step}")

    async def _evaluate_deadline(
        self,
        session: WorkflowSession,
        context: dict[str, Any],
        now: datetime,
    ) -> Transition:
        rule = TimelineRule.model_validate(context["rule"])
        if session.flow_instance_id is None:
            raise InvalidTransition("deadline evaluation outside a flow instance")
        try:
            record = await self._registry.create(
                session.owner_id,
                context["service_identifier"],
                context["jurisdiction"],
                date.fromisoformat(context["submission_date"]),
                now=now,
                rule=rule,
                # Derived from the flow instance so a re-applied transition
                # finds the record it already created.
                record_id=f"APP-{session.flow_instance_id[:12].upper()}",
            )
            record = await self._registry.reevaluate(record.id, now, owner_id=session.owner_id)
        except InputError as exc:
            return self._recoverable(session, DeadlineStep.SUBMISSION_DATE, exc, now, context=context), None
        verdict = evaluate(record.submission_date, record.computed_deadline, local_today(now, self._timezone))
        summary = _deadline_summary(record, verdict)
        context["summary"] = summary
        return self._begin_external(
            session,
            DeadlineStep.EVALUATION,
            Capability.GENERATION,
            _OP_EXPLAIN,
            {"facts": {**summary, "purpose": "deadline_explanation"}},
            now,
            context=context,
        )

    async def _deadline_external(
        self,
        session: WorkflowSession,
        call: PendingExternalCall,
        outcome: Any,
        now: datetime,
    ) -> Transition:
        context = dict(session.saved_context)
        match call.operation:
            case "retrieve_timeline_rule":
                if isinstance(outcome, CollaboratorUnavailable):
                    return self._recoverable(session, DeadlineStep.MANUAL_TIMELINE, outcome, now, context=context), None
                if not isinstance(outcome, TimelineRule):
                    logger.info("workflow.timeline_not_found", session_id=session.session_id)
                    return self._await_input(session, DeadlineStep.MANUAL_TIMELINE, now, context=context), None
                context["rule"] = outcome.model_dump(mode="json")
                return await self._evaluate_deadline(session, context, now)
            case "explain":
                summary = context["summary"]
                language = str(session.language_preference)
                if isinstance(outcome, str) and outcome.strip():
                    message = outcome.strip()
                elif summary["breached"]:
                    message = _text("result.deadline_breached", language, **summary)
                else:
                    message = _text("result.deadline_pending", language, **summary)
                actions = (
                    [
                        NextActionType.DRAFT_GRIEVANCE,
                        NextActionType.LIST_APPLICATIONS,
                        NextActionType.CALL_HELPLINE,
                        NextActionType.END_SESSION,
                    ]
                    if summary["breached"]
                    else [
                        NextActionType.LIST_APPLICATIONS,
                        NextActionType.CHECK_DEADLINE,
                        NextActionType.CHECK_ELIGIBILITY,
                        NextActionType.END_SESSION,
                    ]
                )
                return self._complete(session, summary, message, actions, now), None
            case _:
                raise InvalidTransition(f"unexpected result for {call.operation}")

    # ------------------------------------------------------------------
    # Eligibility check
    # ------------------------------------------------------------------

    async def _eligibility_input(self, session: WorkflowSession, event: WorkflowEvent, now: datetime) -> Transition:
        context = dict(session.saved_context)
        match session.current_step:
            case EligibilityStep.LAND_DETAILS:
                parcels, jurisdiction, facts = _parse_land_details(event, session.owner_id)
                await self._land.save_parcels(session.owner_id, parcels)
                context.update(jurisdiction=jurisdiction, facts=facts)
            case EligibilityStep.SCHEME_LOOKUP:
                if not _parse_confirmation(event):
                    return self._cancel(session, now), None
            case _:
                raise InvalidTransition(f"no input expected at {session.current_step}")
        return self._begin_external(
            session,
            EligibilityStep.SCHEME_LOOKUP,
            Capability.RETRIEVAL,
            _OP_SCHEMES,
            {"jurisdiction": context["jurisdiction"]},
            now,
            context=context,
        )

    async def _eligibility_external(
        self,
        session: WorkflowSession,
        call: PendingExternalCall,
        outcome: Any,
        now: datetime,
    ) -> Transition:
        context = dict(session.saved_context)
        match call.operation:
            case "retrieve_scheme_rules":
                if isinstance(outcome, AccountabilityError):
                    # No manual substitute for scheme rules: offer a retry later.
                    return self._recoverable(session, EligibilityStep.SCHEME_LOOKUP, outcome, now, context=context), None
                parcels = await self._land.list_by_owner(session.owner_id)
                report = self._matcher.match(
                    parcels,
                    outcome,
                    owner_id=session.owner_id,
                    jurisdiction=context["jurisdiction"],
                    facts=context.get("facts"),
                )
                summary = _eligibility_summary(report)
                context["summary"] = summary
                return self._begin_external(
                    session,
                    EligibilityStep.MATCHING,
                    Capability.GENERATION,
                    _OP_EXPLAIN,
                    {"facts": {**summary, "purpose": "eligibility_explanation"}},
                    now,
                    context=context,
                )
            case "explain":
                summary = context["summary"]
                if isinstance(outcome, str) and outcome.strip():
                    message = outcome.strip()
                else:
                    message = _text(
                        "result.eligibility",
                        str(session.language_preference),
                        eligible_count=len(summary["eligible"]),
                        near_miss_count=len(summary["near_miss"]),
                    )
                actions = (
                    [NextActionType.CALL_HELPLINE, NextActionType.VISIT_CSC]
                    if summary["eligible"]
                    else [NextActionType.VISIT_CSC]
                )
                actions += [NextActionType.CHECK_DEADLINE, NextActionType.END_SESSION]
                return self._complete(session, summary, message, actions, now), None
            case _:
                raise InvalidTransition(f"unexpected result for {call.operation}")

    # ------------------------------------------------------------------
    # Document explanation
    # ------------------------------------------------------------------

    def _explain_document(self, session: WorkflowSession, context: dict[str, Any], now: datetime) -> Transition:
        return self._begin_external(
            session,
            DocumentStep.EXPLANATION,
            Capability.GENERATION,
            _OP_EXPLAIN,
            {
                "facts": {
                    "fields": context["fields"],
                    "service_name_hint": context.get("service_name_hint"),
                    "purpose": "document_explanation",
                }
            },
            now,
            context=context,
        )

    def _document_input(self, session: WorkflowSession, event: WorkflowEvent, now: datetime) -> Transition:
        context = dict(session.saved_context)
        match session.current_step:
            case DocumentStep.DOCUMENT_UPLOAD:
                if not event.document_ref:
                    raise MissingField("document_ref")
                return self._begin_external(
                    session,
                    DocumentStep.EXTRACTION,
                    Capability.EXTRACTION,
                    _OP_EXTRACT,
                    {"document_ref": event.document_ref},
                    now,
                    context=context,
                )
            case DocumentStep.MANUAL_FACTS:
                missing: list[str] = list(context.get("missing_fields", []))
                provided = dict(event.fields)
                if event.text and len(missing) == 1 and missing[0] not in provided:
                    provided[missing[0]] = event.text.strip()
                fields = dict(context.get("fields", {}))
                for name in missing:
                    if provided.get(name) not in (None, ""):
                        fields[name] = _json_native(provided[name])
                still_missing = [name for name in missing if name not in fields]
                if still_missing:
                    raise MissingField(still_missing[0])
                context["fields"] = fields
                context.pop("missing_fields", None)
                return self._explain_document(session, context, now)
            case _:
                raise InvalidTransition(f"no input expected at {session.current_step}")

    def _document_external(
        self,
        session: WorkflowSession,
        call: PendingExternalCall,
        outcome: Any,
        now: datetime,
    ) -> Transition:
        context = dict(session.saved_context)
        match call.operation:
            case "extract":
                if not isinstance(outcome, ExtractionResult):
                    error = outcome if isinstance(outcome, AccountabilityError) else CollaboratorUnavailable("extraction")
                    return self._recoverable(session, DocumentStep.DOCUMENT_UPLOAD, error, now, context=context), None
                trusted, rejected = outcome.split_by_confidence(self._extraction_threshold)
                context["fields"] = {k: _json_native(v) for k, v in trusted.items()}
                context["service_name_hint"] = outcome.service_name_hint
                if rejected:
                    low = ExtractionLowConfidence(rejected)
                    logger.info("workflow.extraction_low_confidence", session_id=session.session_id, fields=low.fields)
                    context["missing_fields"] = rejected
                    return self._await_input(
                        session,
                        DocumentStep.MANUAL_FACTS,
                        now,
                        context=context,
                        prompt_values={"fields": ", ".join(f.replace("_", " ") for f in rejected)},
                    ), None
                return self._explain_document(session, context, now)
            case "explain":
                fields: dict[str, Any] = context.get("fields", {})
                summary = {"fields": fields, "service_name_hint": context.get("service_name_hint")}
                if isinstance(outcome, str) and outcome.strip():
                    message = outcome.strip()
                else:
                    field_list = "; ".join(f"{k.replace('_', ' ')}: {v}" for k, v in fields.items()) or "-"
                    message = _text("result.document", str(session.language_preference), field_list=field_list)
                actions = [NextActionType.CHECK_DEADLINE] if summary["service_name_hint"] else []
                actions += [NextActionType.EXPLAIN_DOCUMENT, NextActionType.VISIT_CSC, NextActionType.END_SESSION]
                return self._complete(session, summary, message, actions, now), None
            case _:
                raise InvalidTransition(f"unexpected result for {call.operation}")

    # ------------------------------------------------------------------
    # Grievance drafting
    # ------------------------------------------------------------------

    async def _breached_choices(self, owner_id: str, now: datetime) -> tuple[dict[str, Any], str] | None:
        """Candidate context and numbered choice list, or ``None`` when nothing is breached."""
        records = await self._registry.reevaluate_owner(owner_id, now)
        breached = [r for r in records if r.status == ApplicationStatus.BREACHED]
        if not breached:
            return None
        choices = "\n".join(
            f"{i}. {r.id} ({r.rule.service_name or r.service_identifier}, {r.overdue_days} days overdue)"
            for i, r in enumerate(breached, 1)
        )
        # The draft quotes figures as of the instant the citizen chose from.
        context = {"candidates": [r.id for r in breached], "as_of": now.isoformat()}
        return context, choices

    def _no_breached(self, session: WorkflowSession, now: datetime) -> WorkflowSession:
        return self._complete(
            session,
            {"breached_applications": 0},
            _text("result.no_breached", str(session.language_preference)),
            [NextActionType.CHECK_DEADLINE, NextActionType.LIST_APPLICATIONS, NextActionType.END_SESSION],
            now,
        )

    async def _start_grievance(self, session: WorkflowSession, now: datetime) -> WorkflowSession:
        found = await self._breached_choices(session.owner_id, now)
        if found is None:
            return self._no_breached(session, now)
        context, choices = found
        return self._await_input(
            session,
            GrievanceStep.SELECT_APPLICATION,
            now,
            context=context,
            prompt_values={"choices": choices},
        )

    def _grievance_input(self, session: WorkflowSession, event: WorkflowEvent, now: datetime) -> Transition:
        context = dict(session.saved_context)
        match session.current_step:
            case GrievanceStep.SELECT_APPLICATION:
                candidates: list[str] = context.get("candidates", [])
                choice = str(_field_or_text(event, "application_id") or "").strip()
                if choice.isdigit() and 1 <= int(choice) <= len(candidates):
                    choice = candidates[int(choice) - 1]
                if choice.upper() not in candidates:
                    raise InputError("application_id", "please choose one of the listed applications")
                context["application_id"] = choice.upper()
                return self._await_input(session, GrievanceStep.COMPLAINANT_DETAILS, now, context=context), None
            case GrievanceStep.COMPLAINANT_DETAILS:
                name = str(_field_or_text(event, "complainant_name") or "").strip()
                if not name:
                    raise MissingField("complainant_name")
                args = {
                    "application_id": context["application_id"],
                    "as_of": context.get("as_of") or now.isoformat(),
                    "complainant_name": name,
                    "details": str(event.fields.get("details") or ""),
                    "district": str(event.fields.get("district") or ""),
                }
                return self._begin_external(
                    session, GrievanceStep.DRAFTING, Capability.GENERATION, _OP_GRIEVANCE, args, now, context=context
                )
            case _:
                raise InvalidTransition(f"no input expected at {session.current_step}")

    async def _grievance_external(
        self,
        session: WorkflowSession,
        call: PendingExternalCall,
        outcome: Any,
        now: datetime,
    ) -> Transition:
        if call.operation != _OP_GRIEVANCE:
            raise InvalidTransition(f"unexpected result for {call.operation}")
        if isinstance(outcome, CalendarDataMissing):
            return self._fatal(session, outcome, now), None
        if not isinstance(outcome, GrievanceDraft):
            error = outcome if isinstance(outcome, AccountabilityError) else CollaboratorUnavailable("generation")
            # The chosen record may have been completed or deleted meanwhile.
            found = await self._breached_choices(session.owner_id, now)
            if found is None:
                return self._no_breached(session, now), None
            context, choices = found
            return (
                self._recoverable(
                    session,
                    GrievanceStep.SELECT_APPLICATION,
                    error,
                    now,
                    context=context,
                    prompt_values={"choices": choices},
                ),
                None,
            )
        summary = _grievance_summary(outcome)
        message = _text("result.grievance", str(session.language_preference), portal=outcome.recommended_portal)
        actions = [
            NextActionType.LIST_APPLICATIONS,
            NextActionType.CALL_HELPLINE,
            NextActionType.VISIT_CSC,
            NextActionType.END_SESSION,
        ]
        return self._complete(session, summary, message, actions, now), None
