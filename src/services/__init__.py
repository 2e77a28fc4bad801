"""SamaySetu service layer -- calendars, deadlines, registry, eligibility and storage.

Everything here depends only on pydantic, structlog and the state store;
HTTP collaborators live in ``src.services.providers`` and are wired at
startup.
"""

from __future__ import annotations

from src.services.breach import BreachVerdict, evaluate
from src.services.calendar_service import CalendarService, HolidayCatalog
from src.services.deadline import compute_deadline
from src.services.eligibility import EligibilityMatcher, EligibilityReport
from src.services.registry import ApplicationRegistry
from src.services.store import InMemoryStateStore, RedisStateStore, StateStore, build_state_store
from src.services.timeline_catalog import TimelineRuleCatalog

__all__ = [
    "ApplicationRegistry",
    "BreachVerdict",
    "CalendarService",
    "EligibilityMatcher",
    "EligibilityReport",
    "HolidayCatalog",
    "InMemoryStateStore",
    "RedisStateStore",
    "StateStore",
    "TimelineRuleCatalog",
    "build_state_store",
    "compute_deadline",
    "evaluate",
]
