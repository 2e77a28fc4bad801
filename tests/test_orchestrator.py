"""Tests for the AccountabilityCore boundary operations."""

from __future__ import annotations

from datetime import UTC, date, datetime
from unittest.mock import AsyncMock

import pytest

from src.models.enums import ApplicationStatus, LandCategory, LanguageCode, WorkflowState
from src.models.errors import CollaboratorUnavailable, FutureSubmissionDate, TimelineRuleNotFound
from src.models.scheme import SchemeRule
from src.pipeline.orchestrator import AccountabilityCore
from src.services.eligibility import EligibilityMatcher
from src.services.retention import OwnerDataEraser
from tests.factories import make_parcel, make_rule

OWNER = "citizen-1"
NOW = datetime(2024, 2, 5, 6, 30, tzinfo=UTC)

LOCAL_SCHEMES = [
    SchemeRule(id="national_scheme", name="National", jurisdiction="IN", min_area=1.0, benefit_amount=6000),
    SchemeRule(id="mh_scheme", name="Maharashtra", jurisdiction="IN-MH", benefit_amount=12000),
]


@pytest.fixture
def core(store, sessions, registry, land, machine, gateway, calendar, timelines) -> AccountabilityCore:
    return AccountabilityCore(
        sessions=sessions,
        registry=registry,
        land=land,
        matcher=EligibilityMatcher(),
        workflow=machine,
        eraser=OwnerDataEraser(store, registry, land, sessions),
        gateway=gateway,
        calendar=calendar,
        timelines=timelines,
        schemes=LOCAL_SCHEMES,
    )


class TestStartSession:
    async def test_start_session(self, core: AccountabilityCore) -> None:
        session = await core.start_session(OWNER, LanguageCode.ta)
        assert session.state == WorkflowState.IDLE
        loaded = await core.get_session(session.session_id, owner_id=OWNER)
        assert loaded.language_preference == LanguageCode.ta


class TestSubmitApplicationFacts:
    async def test_catalog_rule_used(self, core: AccountabilityCore, retrieval: AsyncMock) -> None:
        session = await core.start_session(OWNER)
        record = await core.submit_application_facts(
            session.session_id, "income_certificate", "IN", date(2024, 1, 10), now=NOW
        )
        assert record.status == ApplicationStatus.BREACHED
        assert record.overdue_days == 9
        retrieval.retrieve_timeline_rule.assert_not_awaited()

        touched = await core.get_session(session.session_id)
        assert touched.last_activity_at == NOW

    async def test_retrieval_consulted_when_catalog_has_no_rule(
        self, core: AccountabilityCore, retrieval: AsyncMock
    ) -> None:
        retrieval.retrieve_timeline_rule.return_value = make_rule(
            "domicile_certificate", jurisdiction="IN-KA", units=10, source_version="retrieved"
        )
        session = await core.start_session(OWNER)
        record = await core.submit_application_facts(
            session.session_id, "domicile_certificate", "IN-KA", date(2024, 1, 10), now=NOW
        )
        assert record.computed_deadline == date(2024, 1, 23), "the IN-KA holiday on the 15th is skipped"
        assert record.rule_source_version == "retrieved"

    async def test_unknown_everywhere(self, core: AccountabilityCore, retrieval: AsyncMock) -> None:
        retrieval.retrieve_timeline_rule.return_value = None
        session = await core.start_session(OWNER)
        with pytest.raises(TimelineRuleNotFound):
            await core.submit_application_facts(session.session_id, "passport", "IN", date(2024, 1, 10), now=NOW)

    async def test_retrieval_down(self, core: AccountabilityCore, retrieval: AsyncMock) -> None:
        retrieval.retrieve_timeline_rule.side_effect = ConnectionError("refused")
        session = await core.start_session(OWNER)
        with pytest.raises(CollaboratorUnavailable):
            await core.submit_application_facts(session.session_id, "passport", "IN", date(2024, 1, 10), now=NOW)

    async def test_future_date(self, core: AccountabilityCore) -> None:
        session = await core.start_session(OWNER)
        with pytest.raises(FutureSubmissionDate):
            await core.submit_application_facts(
                session.session_id, "income_certificate", "IN", date(2024, 2, 6), now=NOW
            )


class TestListAndComplete:
    async def test_list_reevaluates(self, core: AccountabilityCore) -> None:
        session = await core.start_session(OWNER)
        await core.submit_application_facts(session.session_id, "rti_response", "IN", date(2024, 1, 20), now=NOW)
        records = await core.list_applications(OWNER, datetime(2024, 3, 1, tzinfo=UTC))
        assert records[0].status == ApplicationStatus.BREACHED
        assert records[0].overdue_days == 11

    async def test_complete_application(self, core: AccountabilityCore) -> None:
        session = await core.start_session(OWNER)
        record = await core.submit_application_facts(
            session.session_id, "income_certificate", "IN", date(2024, 1, 10), now=NOW
        )
        done = await core.complete_application(OWNER, record.id)
        assert done.status == ApplicationStatus.COMPLETED
        assert done.overdue_days == 0


class TestRequestEligibility:
    async def test_without_jurisdiction_uses_local_rules(self, core: AccountabilityCore) -> None:
        session = await core.start_session(OWNER)
        report = await core.request_eligibility(
            session.session_id,
            [make_parcel("1", 2.0, LandCategory.DRY, owner_id=OWNER)],
        )
        assert [m.scheme.id for m in report.eligible] == ["mh_scheme", "national_scheme"]

    async def test_holding_accumulates_across_requests(self, core: AccountabilityCore) -> None:
        session = await core.start_session(OWNER)
        await core.request_eligibility(session.session_id, [make_parcel("1", 0.6, LandCategory.DRY, owner_id=OWNER)])
        report = await core.request_eligibility(
            session.session_id, [make_parcel("2", 0.6, LandCategory.DRY, owner_id=OWNER)]
        )
        assert report.holding.parcel_count == 2
        assert "national_scheme" in {m.scheme.id for m in report.eligible}

    async def test_with_jurisdiction_uses_retrieval(self, core: AccountabilityCore, retrieval: AsyncMock) -> None:
        retrieval.retrieve_scheme_rules.return_value = LOCAL_SCHEMES
        session = await core.start_session(OWNER)
        report = await core.request_eligibility(
            session.session_id,
            [make_parcel("1", 2.0, LandCategory.DRY, owner_id=OWNER)],
            jurisdiction="IN-KA",
        )
        retrieval.retrieve_scheme_rules.assert_awaited_once_with("IN-KA")
        assert [m.scheme.id for m in report.eligible] == ["national_scheme"]
        assert report.skipped_out_of_jurisdiction == 1


class TestDeleteOwnerData:
    async def test_delete_and_status(self, core: AccountabilityCore) -> None:
        session = await core.start_session(OWNER)
        await core.submit_application_facts(session.session_id, "income_certificate", "IN", date(2024, 1, 10), now=NOW)
        receipt = await core.delete_owner_data(OWNER, NOW)
        assert receipt.status == "completed"
        assert receipt.removed["applications"] == 1
        assert receipt.removed["sessions"] == 1
        assert (await core.deletion_status(receipt.request_id)).status == "completed"
        assert await core.list_applications(OWNER) == []
