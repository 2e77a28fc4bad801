"""Accountability core boundary.

:class:`AccountabilityCore` is the single entry point used by the HTTP
layer and by any other front end (IVR, WhatsApp, kiosk).  It exposes six
operations:

* ``start_session``
* ``submit_application_facts``
* ``request_eligibility``
* ``advance_workflow``
* ``list_applications``
* ``delete_owner_data``

Everything returned from here is a domain model; failures are
:class:`~src.models.errors.AccountabilityError` subclasses whose
``to_user_error()`` is safe to show to a citizen.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import TYPE_CHECKING

import structlog

from src.models.enums import LanguageCode
from src.models.errors import TimelineRuleNotFound

if TYPE_CHECKING:
    from src.models.application import ApplicationRecord
    from src.models.land import LandParcel
    from src.models.scheme import SchemeRule
    from src.models.session import WorkflowEvent, WorkflowSession
    from src.pipeline.workflow import WorkflowStateMachine
    from src.services.calendar_service import CalendarService
    from src.services.collaborators import CollaboratorGateway
    from src.services.eligibility import EligibilityMatcher, EligibilityReport
    from src.services.land_records import LandRecordStore
    from src.services.registry import ApplicationRegistry
    from src.services.retention import DeletionReceipt, OwnerDataEraser
    from src.services.sessions import SessionRepository
    from src.services.timeline_catalog import TimelineRuleCatalog

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class AccountabilityCore:
    """Deadline, breach and eligibility operations for citizens."""

    __slots__ = (
        "_calendar",
        "_eraser",
        "_gateway",
        "_land",
        "_matcher",
        "_registry",
        "_schemes",
        "_sessions",
        "_timelines",
        "_timezone",
        "_workflow",
    )

    def __init__(
        self,
        *,
        sessions: SessionRepository,
        registry: ApplicationRegistry,
        land: LandRecordStore,
        matcher: EligibilityMatcher,
        workflow: WorkflowStateMachine,
        eraser: OwnerDataEraser,
        gateway: CollaboratorGateway,
        calendar: CalendarService,
        timelines: TimelineRuleCatalog,
        schemes: list[SchemeRule],
        timezone: str = "Asia/Kolkata",
    ) -> None:
        self._sessions = sessions
        self._registry = registry
        self._land = land
        self._matcher = matcher
        self._workflow = workflow
        self._eraser = eraser
        self._gateway = gateway
        self._calendar = calendar
        self._timelines = timelines
        self._schemes = list(schemes)
        self._timezone = timezone

    @property
    def calendar(self) -> CalendarService:
        return self._calendar

    @property
    def timelines(self) -> TimelineRuleCatalog:
        return self._timelines

    @property
    def registry(self) -> ApplicationRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_session(
        self, owner_id: str, language: LanguageCode = LanguageCode.hi
    ) -> WorkflowSession:
        """Create an idle session for ``owner_id``."""
        return await self._sessions.create(owner_id, language)

    async def get_session(self, session_id: str, *, owner_id: str | None = None) -> WorkflowSession:
        return await self._sessions.load(session_id, owner_id=owner_id)

    async def _touch(self, session_id: str, now: datetime) -> WorkflowSession:
        async def mutate(session: WorkflowSession) -> WorkflowSession:
            return session.model_copy(update={"last_activity_at": now})

        return await self._sessions.update(session_id, mutate)

    async def advance_workflow(self, session_id: str, event: WorkflowEvent) -> WorkflowSession:
        """Feed ``event`` to the session's state machine."""
        return await self._workflow.advance(session_id, event)

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    async def submit_application_facts(
        self,
        session_id: str,
        service_identifier: str,
        jurisdiction: str,
        submission_date: date,
        *,
        now: datetime | None = None,
    ) -> ApplicationRecord:
        """Register an application on behalf of the session's owner.

        The timeline rule comes from the local catalog; when the catalog
        has none, the retrieval provider is asked.

        Raises
        ------
        FutureSubmissionDate
            ``submission_date`` is after today.
        TimelineRuleNotFound
            Neither the catalog nor the retrieval provider knows the service.
        CollaboratorUnavailable
            The retrieval provider failed after retries.
        CalendarDataMissing
            No holiday calendar covers the deadline computation.
        """
        instant = now or datetime.now(UTC)
        session = await self._sessions.load(session_id)
        log = logger.bind(session_id=session_id, service=service_identifier, jurisdiction=jurisdiction)

        try:
            record = await self._registry.create(
                session.owner_id, service_identifier, jurisdiction, submission_date, now=instant
            )
        except TimelineRuleNotFound:
            log.info("core.timeline_from_retrieval")
            rule = await self._gateway.retrieve_timeline_rule(service_identifier, jurisdiction)
            if rule is None:
                raise
            record = await self._registry.create(
                session.owner_id, service_identifier, jurisdiction, submission_date, now=instant, rule=rule
            )

        record = await self._registry.reevaluate(record.id, instant, owner_id=session.owner_id)
        await self._touch(session_id, instant)
        log.info("core.application_submitted", record_id=record.id, status=record.status)
        return record

    async def list_applications(self, owner_id: str, now: datetime | None = None) -> list[ApplicationRecord]:
        """Re-evaluate and return the owner's applications, most urgent first."""
        return await self._registry.reevaluate_owner(owner_id, now)

    async def complete_application(self, owner_id: str, record_id: str) -> ApplicationRecord:
        return await self._registry.mark_completed(owner_id, record_id)

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    async def request_eligibility(
        self,
        session_id: str,
        parcels: list[LandParcel],
        *,
        jurisdiction: str | None = None,
        facts: dict | None = None,
    ) -> EligibilityReport:
        """Store ``parcels`` and rank schemes against the owner's full holding.

        With a ``jurisdiction`` the rules are retrieved (and scoped) for it;
        without one every locally known rule is scored.
        """
        session = await self._sessions.load(session_id)
        held = await self._land.save_parcels(session.owner_id, parcels)

        if jurisdiction:
            rules = await self._gateway.retrieve_scheme_rules(jurisdiction)
        else:
            rules = self._schemes

        report = self._matcher.match(
            held,
            rules,
            owner_id=session.owner_id,
            jurisdiction=jurisdiction,
            facts=facts,
        )
        await self._touch(session_id, datetime.now(UTC))
        return report

    # ------------------------------------------------------------------
    # Data rights
    # ------------------------------------------------------------------

    async def delete_owner_data(self, owner_id: str, now: datetime | None = None) -> DeletionReceipt:
        """Erase every record held for ``owner_id`` and return the receipt."""
        return await self._eraser.erase(owner_id, now)

    async def deletion_status(self, request_id: str) -> DeletionReceipt | None:
        return await self._eraser.get(request_id)
