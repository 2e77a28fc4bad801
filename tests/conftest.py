"""Shared fixtures: an in-memory world with small, hand-checkable calendars.

The national calendar for 2024 and 2025 has no holidays and Sunday as the
weekly rest day, so working-day arithmetic can be verified by counting
on a wall calendar.  ``IN-KA`` adds one regional holiday (2024-01-15).
"""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock

import pytest

from src.models.enums import DurationUnit, HolidayKind
from src.pipeline.workflow import WorkflowStateMachine
from src.services.calendar_service import CalendarService, HolidayCatalog
from src.services.collaborators import CollaboratorGateway
from src.services.eligibility import EligibilityMatcher
from src.services.grievance import GrievanceDrafter
from src.services.land_records import LandRecordStore
from src.services.registry import ApplicationRegistry
from src.services.sessions import SessionRepository
from src.services.store import InMemoryStateStore
from src.services.timeline_catalog import TimelineRuleCatalog
from tests.factories import make_calendar, make_rule


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def holidays() -> HolidayCatalog:
    catalog = HolidayCatalog()
    catalog.publish(make_calendar("IN", 2024))
    catalog.publish(make_calendar("IN", 2025))
    catalog.publish(make_calendar("IN-KA", 2024, date(2024, 1, 15), kind=HolidayKind.REGIONAL))
    return catalog


@pytest.fixture
def calendar(holidays: HolidayCatalog) -> CalendarService:
    return CalendarService(holidays)


@pytest.fixture
def timelines() -> TimelineRuleCatalog:
    catalog = TimelineRuleCatalog()
    catalog.publish(make_rule())
    catalog.publish(make_rule("rti_response", units=30, unit=DurationUnit.CALENDAR_DAYS, source_version="rti-act"))
    return catalog


@pytest.fixture
def registry(store, calendar, timelines) -> ApplicationRegistry:
    return ApplicationRegistry(store, calendar, timelines)


@pytest.fixture
def sessions(store) -> SessionRepository:
    return SessionRepository(store)


@pytest.fixture
def land(store) -> LandRecordStore:
    return LandRecordStore(store)


@pytest.fixture
def retrieval() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def gateway(retrieval: AsyncMock) -> CollaboratorGateway:
    """Gateway with a mocked retrieval provider and no generation.

    Zero backoff keeps retry tests fast.
    """
    return CollaboratorGateway(
        retrieval=retrieval,
        max_retries=1,
        timeout_seconds=1.0,
        backoff_min_seconds=0,
        backoff_max_seconds=0,
    )


@pytest.fixture
def machine(sessions, registry, land, gateway) -> WorkflowStateMachine:
    return WorkflowStateMachine(
        sessions,
        registry,
        land,
        EligibilityMatcher(),
        gateway,
        GrievanceDrafter(gateway),
        silence_window_seconds=10.0,
        max_input_attempts=3,
    )
