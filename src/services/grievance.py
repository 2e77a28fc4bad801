"""Grievance drafting for applications that have breached their deadline.

Given a breached :class:`ApplicationRecord`, this service:

1. **Collects the facts** to be quoted (deadline, days overdue, rule
   source) from the deterministic breach verdict only.
2. **Identifies the portal**: the state Right to Service / CM grievance
   portal when the application belongs to a state with one, otherwise
   CPGRAMS.
3. **Drafts the complaint text** through the generation provider, with a
   fixed template when generation is unavailable.
4. **Maps the escalation path** for service delays.

Portal data sources:
    * CPGRAMS: https://pgportal.gov.in
    * State Right to Service Acts (Sakala, Aaple Sarkar, MP Lok Sewa)
    * State CM grievance portals
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Final
from uuid import uuid4

import structlog

from src.models.application import ApplicationRecord
from src.models.enums import ApplicationStatus
from src.models.errors import CollaboratorUnavailable, InputError
from src.services.breach import BreachVerdict
from src.services.calendar_service import national_of
from src.services.collaborators import CollaboratorGateway

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Data objects
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class GrievanceRequest:
    complainant_name: str
    record: ApplicationRecord
    verdict: BreachVerdict
    details: str = ""
    district: str = ""


@dataclass(slots=True)
class GrievanceDraft:
    """Draft grievance ready for filing on the recommended portal."""

    grievance_id: str
    application_id: str
    formatted_complaint: str
    recommended_portal: str
    portal_url: str
    helpline: str
    filing_steps: list[str]
    escalation_levels: list[str]
    facts: dict[str, Any] = field(default_factory=dict)
    generated: bool = False


@dataclass(slots=True, frozen=True)
class _PortalEntry:
    name: str
    url: str
    helpline: str
    filing_steps: tuple[str, ...]


# ---------------------------------------------------------------------------
# Portal database
# ---------------------------------------------------------------------------

_CPGRAMS: Final[_PortalEntry] = _PortalEntry(
    name="CPGRAMS (Centralised Public Grievance Redress and Monitoring System)",
    url="https://pgportal.gov.in",
    helpline="1800-11-1800",
    filing_steps=(
        "Visit https://pgportal.gov.in and click 'Lodge Public Grievance'.",
        "Register with your mobile number.",
        "Select the department that is handling your application.",
        "Paste the complaint text below and attach your application receipt.",
        "Submit and note down the registration number.",
    ),
)

# Keyed by jurisdiction code.
_STATE_PORTALS: Final[dict[str, _PortalEntry]] = {
    "IN-KA": _PortalEntry(
        name="Sakala (Karnataka Guarantee of Services to Citizens)",
        url="https://sakala.kar.nic.in",
        helpline="080-44554455",
        filing_steps=(
            "Visit https://sakala.kar.nic.in and open 'Know your application status'.",
            "Enter your Sakala GSC number to confirm the delay.",
            "Choose 'File appeal' against the designated officer.",
            "Paste the complaint text below and submit.",
        ),
    ),
    "IN-MH": _PortalEntry(
        name="Aaple Sarkar (Maharashtra Right to Public Services)",
        url="https://aaplesarkar.mahaonline.gov.in",
        helpline="1800-120-8040",
        filing_steps=(
            "Log in at https://aaplesarkar.mahaonline.gov.in.",
            "Open 'Track your application' and select the delayed application.",
            "Choose 'First appeal' and paste the complaint text below.",
            "Submit and save the appeal number.",
        ),
    ),
    "IN-MP": _PortalEntry(
        name="MP Lok Sewa Guarantee / CM Helpline",
        url="https://cmhelpline.mp.gov.in",
        helpline="181",
        filing_steps=(
            "Call 181 or visit https://cmhelpline.mp.gov.in.",
            "Give your Lok Sewa application number.",
            "Ask for a complaint under the Lok Sewa Guarantee Act for delay.",
            "Note down the complaint number.",
        ),
    ),
    "IN-UP": _PortalEntry(
        name="UP Jansunwai Portal",
        url="https://jansunwai.up.nic.in",
        helpline="1076",
        filing_steps=(
            "Visit https://jansunwai.up.nic.in and register with your mobile number.",
            "Click 'Lodge Complaint' and select the department and district.",
            "Paste the complaint text below and upload your application receipt.",
            "Submit and note the complaint ID.",
        ),
    ),
}

_DELAY_ESCALATION: Final[tuple[str, ...]] = (
    "Designated Officer for the service",
    "First Appellate Authority (under the Right to Service Act)",
    "Second Appellate Authority / Commission",
    "District Magistrate / Collector",
    "State grievance portal or CPGRAMS",
)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


def grievance_facts(record: ApplicationRecord, verdict: BreachVerdict) -> dict[str, Any]:
    """Facts quoted in a grievance; JSON-native and fully deterministic."""
    return {
        "application_id": record.id,
        "service": record.rule.service_name or record.service_identifier,
        "jurisdiction": record.jurisdiction,
        "submission_date": record.submission_date.isoformat(),
        "deadline": record.computed_deadline.isoformat(),
        "promised_duration": f"{record.rule.duration_units} {record.rule.unit.replace('_', ' ')}",
        "overdue_days": verdict.overdue_days,
        "rule_source_version": record.rule.source_version,
        "designated_officer": record.rule.designated_officer,
        "calendar_basis": str(record.calendar_basis),
    }


def resolve_portal(jurisdiction: str) -> _PortalEntry:
    portal = _STATE_PORTALS.get(jurisdiction)
    if portal is None and national_of(jurisdiction) != jurisdiction:
        logger.debug("grievance.no_state_portal", jurisdiction=jurisdiction)
    return portal or _CPGRAMS


def _template_complaint(request: GrievanceRequest, facts: dict[str, Any]) -> str:
    officer = facts["designated_officer"] or "the Designated Officer"
    lines = [
        f"Subject: Delay in {facts['service']} (Application {facts['application_id']})",
        "",
        "Respected Sir/Madam,",
        "",
        f"I, {request.complainant_name}, applied for {facts['service']} on "
        f"{facts['submission_date']}. The notified time limit is "
        f"{facts['promised_duration']}, so the application was due by "
        f"{facts['deadline']}. It is now {facts['overdue_days']} days overdue.",
    ]
    if request.details:
        lines += ["", request.details.strip()]
    lines += [
        "",
        f"I request that {officer} decide my application without further delay "
        "and that action be taken under the applicable Right to Service rules.",
        "",
        "Thanking you,",
        request.complainant_name,
    ]
    return "\n".join(lines)


class GrievanceDrafter:
    """Drafts delay grievances for breached applications.

    Parameters
    ----------
    gateway:
        Collaborator gateway used for complaint wording.  Its output is
        presentation-only and never parsed.
    """

    __slots__ = ("_gateway",)

    def __init__(self, gateway: CollaboratorGateway) -> None:
        self._gateway = gateway

    async def draft(self, request: GrievanceRequest, *, language: str = "en") -> GrievanceDraft:
        record = request.record
        if record.status != ApplicationStatus.BREACHED or not request.verdict.breached:
            raise InputError("application_id", "this application is not past its deadline")

        grievance_id = f"GRV-{uuid4().hex[:12].upper()}"
        log = logger.bind(grievance_id=grievance_id, application_id=record.id)
        log.info("grievance.create.started")

        facts = grievance_facts(record, request.verdict)
        portal = resolve_portal(record.jurisdiction)

        generated = False
        try:
            text = await self._gateway.generate(
                {**facts, "purpose": "delay_grievance", "complainant_name": request.complainant_name},
                language,
            )
            generated = bool(text.strip())
        except CollaboratorUnavailable:
            log.warning("grievance.generation_unavailable_using_template")
            text = ""
        if not generated:
            text = _template_complaint(request, facts)

        draft = GrievanceDraft(
            grievance_id=grievance_id,
            application_id=record.id,
            formatted_complaint=text.strip(),
            recommended_portal=portal.name,
            portal_url=portal.url,
            helpline=portal.helpline,
            filing_steps=list(portal.filing_steps),
            escalation_levels=list(_DELAY_ESCALATION),
            facts=facts,
            generated=generated,
        )
        log.info("grievance.create.completed", portal=portal.name, generated=generated)
        return draft
