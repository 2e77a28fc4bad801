"""Tests for the collaborator gateway, local providers and grievance drafting."""

from __future__ import annotations

import asyncio
from datetime import date
from unittest.mock import AsyncMock

import pytest

from src.models.application import ApplicationRecord
from src.models.enums import ApplicationStatus, Capability, LandCategory
from src.models.errors import CollaboratorUnavailable, InputError
from src.models.scheme import SchemeRule
from src.services.breach import evaluate
from src.services.collaborators import CollaboratorGateway, ExtractionResult
from src.services.grievance import GrievanceDrafter, GrievanceRequest, resolve_portal
from src.services.providers import CatalogRetrievalProvider
from src.services.timeline_catalog import TimelineRuleCatalog
from tests.factories import make_rule


def gateway_with(**providers) -> CollaboratorGateway:
    return CollaboratorGateway(
        max_retries=3, timeout_seconds=0.05, backoff_min_seconds=0, backoff_max_seconds=0, **providers
    )


def breached_record(jurisdiction: str = "IN-KA") -> ApplicationRecord:
    rule = make_rule(jurisdiction=jurisdiction, units=15)
    return ApplicationRecord(
        id="APP-TEST00000001",
        owner_id="citizen-1",
        service_identifier="income_certificate",
        jurisdiction=jurisdiction,
        submission_date=date(2024, 1, 10),
        computed_deadline=date(2024, 1, 27),
        status=ApplicationStatus.BREACHED,
        overdue_days=9,
        rule=rule,
    )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class TestCollaboratorGateway:
    async def test_success_passes_result_through(self) -> None:
        generation = AsyncMock()
        generation.generate.return_value = "explained"
        gateway = gateway_with(generation=generation)
        assert await gateway.generate({"a": 1}, "hi") == "explained"
        generation.generate.assert_awaited_once_with({"a": 1}, "hi")

    async def test_transient_failure_retried(self) -> None:
        generation = AsyncMock()
        generation.generate.side_effect = [ConnectionError("reset"), "second time lucky"]
        gateway = gateway_with(generation=generation)
        assert await gateway.generate({}, "en") == "second time lucky"
        assert generation.generate.await_count == 2

    async def test_exhausted_retries_raise_unavailable(self) -> None:
        retrieval = AsyncMock()
        retrieval.retrieve_scheme_rules.side_effect = ConnectionError("refused")
        gateway = gateway_with(retrieval=retrieval)
        with pytest.raises(CollaboratorUnavailable) as excinfo:
            await gateway.retrieve_scheme_rules("IN")
        assert excinfo.value.capability == "retrieval"
        assert excinfo.value.recoverable is True
        assert retrieval.retrieve_scheme_rules.await_count == 4, "one call plus three retries"

    async def test_zero_retries_makes_a_single_attempt(self) -> None:
        retrieval = AsyncMock()
        retrieval.retrieve_scheme_rules.side_effect = ConnectionError("refused")
        gateway = CollaboratorGateway(retrieval=retrieval, max_retries=0, backoff_min_seconds=0, backoff_max_seconds=0)
        with pytest.raises(CollaboratorUnavailable):
            await gateway.retrieve_scheme_rules("IN")
        assert retrieval.retrieve_scheme_rules.await_count == 1

    async def test_slow_call_times_out(self) -> None:
        async def never_finishes(document_ref: str) -> ExtractionResult:
            await asyncio.sleep(5)
            raise AssertionError("unreachable")

        extraction = AsyncMock()
        extraction.extract.side_effect = never_finishes
        gateway = gateway_with(extraction=extraction)
        with pytest.raises(CollaboratorUnavailable):
            await gateway.extract("doc-1")

    async def test_unconfigured_capability_fails_immediately(self) -> None:
        gateway = gateway_with()
        assert gateway.available(Capability.SPEECH) is False
        with pytest.raises(CollaboratorUnavailable, match="not configured"):
            await gateway.transcribe(b"audio", "hi")


class TestExtractionResult:
    def test_split_by_confidence(self) -> None:
        result = ExtractionResult(
            fields={"name": "Ravi", "date": "10/01/2024", "amount": "500"},
            confidence=0.8,
            field_confidence={"date": 0.5, "amount": 0.3},
        )
        trusted, rejected = result.split_by_confidence(0.75)
        assert trusted == {"name": "Ravi"}, "a field without its own score inherits the overall one"
        assert rejected == ["amount", "date"]


# ---------------------------------------------------------------------------
# Local catalog retrieval
# ---------------------------------------------------------------------------


class TestCatalogRetrievalProvider:
    @pytest.fixture
    def provider(self, timelines: TimelineRuleCatalog) -> CatalogRetrievalProvider:
        schemes = [
            SchemeRule(id="national", name="National", jurisdiction="IN"),
            SchemeRule(id="ka_only", name="Karnataka", jurisdiction="IN-KA"),
            SchemeRule(
                id="mh_only",
                name="Maharashtra",
                jurisdiction="IN-MH",
                allowed_categories=frozenset({LandCategory.DRY}),
            ),
        ]
        return CatalogRetrievalProvider(timelines, schemes)

    async def test_regional_request_falls_back_to_national_rule(self, provider: CatalogRetrievalProvider) -> None:
        rule = await provider.retrieve_timeline_rule("income_certificate", "IN-KA")
        assert rule is not None
        assert rule.jurisdiction == "IN"

    async def test_unknown_service(self, provider: CatalogRetrievalProvider) -> None:
        assert await provider.retrieve_timeline_rule("passport", "IN-KA") is None

    async def test_scheme_rules_scoped_to_jurisdiction(self, provider: CatalogRetrievalProvider) -> None:
        rules = await provider.retrieve_scheme_rules("IN-KA")
        assert sorted(r.id for r in rules) == ["ka_only", "national"]


# ---------------------------------------------------------------------------
# Grievance drafting
# ---------------------------------------------------------------------------


class TestGrievanceDrafter:
    def _request(self, record: ApplicationRecord | None = None) -> GrievanceRequest:
        record = record or breached_record()
        verdict = evaluate(record.submission_date, record.computed_deadline, date(2024, 2, 5))
        return GrievanceRequest(complainant_name="Lakshmi Devi", record=record, verdict=verdict, district="Mandya")

    async def test_template_used_without_generation(self) -> None:
        draft = await GrievanceDrafter(gateway_with()).draft(self._request())
        assert draft.generated is False
        assert "Lakshmi Devi" in draft.formatted_complaint
        assert "9 days overdue" in draft.formatted_complaint
        assert "2024-01-27" in draft.formatted_complaint
        assert draft.recommended_portal.startswith("Sakala")
        assert draft.grievance_id.startswith("GRV-")
        assert draft.facts["overdue_days"] == 9

    async def test_generated_text_preferred(self) -> None:
        generation = AsyncMock()
        generation.generate.return_value = "  Formal complaint text.  "
        draft = await GrievanceDrafter(gateway_with(generation=generation)).draft(self._request(), language="kn")
        assert draft.generated is True
        assert draft.formatted_complaint == "Formal complaint text."
        facts, language = generation.generate.await_args.args
        assert facts["overdue_days"] == 9
        assert language == "kn"

    async def test_blank_generation_falls_back_to_template(self) -> None:
        generation = AsyncMock()
        generation.generate.return_value = "   "
        draft = await GrievanceDrafter(gateway_with(generation=generation)).draft(self._request())
        assert draft.generated is False
        assert "Lakshmi Devi" in draft.formatted_complaint

    async def test_pending_record_rejected(self) -> None:
        record = breached_record().model_copy(update={"status": ApplicationStatus.PENDING, "overdue_days": 0})
        with pytest.raises(InputError):
            await GrievanceDrafter(gateway_with()).draft(self._request(record))

    @pytest.mark.parametrize(
        ("jurisdiction", "prefix"),
        [
            ("IN-KA", "Sakala"),
            ("IN-MH", "Aaple Sarkar"),
            ("IN-UP", "UP Jansunwai"),
            ("IN-TN", "CPGRAMS"),
            ("IN", "CPGRAMS"),
        ],
    )
    def test_portal_resolution(self, jurisdiction: str, prefix: str) -> None:
        assert resolve_portal(jurisdiction).name.startswith(prefix)
