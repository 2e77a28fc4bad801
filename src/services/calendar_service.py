"""Calendar service: which dates are working days in a jurisdiction.

A day is non-working when it falls on the jurisdiction's weekly rest day
or appears in the published holiday set for that year.  Missing holiday
data is never treated as "no holidays": the service raises
:class:`CalendarDataMissing` and the caller decides what to do.

Holiday calendars live in an append-only :class:`HolidayCatalog`.
Publishing a calendar for an existing ``(jurisdiction, year)`` adds a new
version that replaces the whole set; old versions are retained.  Every
computation binds to a :class:`CalendarSnapshot` taken once, so an
administrative update in the middle of a deadline calculation is never
observed half-way.

Regional jurisdictions are written ``<national>-<region>`` (e.g.
``IN-KA``).  Their holiday set is the union of the national and regional
calendars.  When the regional calendar for a year is absent, the
``regional_fallback`` policy decides between the national set
(``"national"``, recorded as :attr:`CalendarBasis.NATIONAL_FALLBACK`) and
failing (``"strict"``).
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from types import MappingProxyType
from typing import Literal
from zoneinfo import ZoneInfo

import structlog

from src.models.calendar import HolidayCalendar
from src.models.enums import CalendarBasis, Weekday
from src.models.errors import CalendarDataMissing, InvalidDateRange

logger = structlog.get_logger(__name__)

RegionalFallback = Literal["national", "strict"]


def national_of(jurisdiction: str) -> str:
    """``"IN-KA"`` -> ``"IN"``; a national code maps to itself."""
    return jurisdiction.split("-", 1)[0]


def local_today(now: datetime | None = None, tz: str = "Asia/Kolkata") -> date:
    """Convert an instant to the local calendar date used for deadlines."""
    instant = now or datetime.now(UTC)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)
    return instant.astimezone(ZoneInfo(tz)).date()


def calendar_days_between(start: date, end: date) -> int:
    return (end - start).days


# ---------------------------------------------------------------------------
# Resolved per-year view
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ResolvedYear:
    jurisdiction: str
    year: int
    weekly_rest_day: Weekday
    non_working: frozenset[date]
    basis: CalendarBasis

    def is_working_day(self, day: date) -> bool:
        return day.weekday() != self.weekly_rest_day and day not in self.non_working


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


class CalendarSnapshot:
    """Immutable view of the catalog at one instant."""

    __slots__ = ("_calendars", "_regional_fallback", "_resolved", "version")

    def __init__(
        self,
        calendars: MappingProxyType[tuple[str, int], HolidayCalendar],
        *,
        version: int,
        regional_fallback: RegionalFallback = "national",
    ) -> None:
        self._calendars = calendars
        self._regional_fallback = regional_fallback
        self._resolved: dict[tuple[str, int], ResolvedYear] = {}
        self.version = version

    def resolve(self, jurisdiction: str, year: int) -> ResolvedYear:
        cache_key = (jurisdiction, year)
        cached = self._resolved.get(cache_key)
        if cached is not None:
            return cached

        national = national_of(jurisdiction)
        own = self._calendars.get((jurisdiction, year))
        parent = self._calendars.get((national, year)) if national != jurisdiction else None

        if own is None:
            if parent is None or self._regional_fallback == "strict":
                raise CalendarDataMissing(jurisdiction, year)
            logger.warning(
                "calendar.regional_missing_using_national",
                jurisdiction=jurisdiction,
                year=year,
                national=national,
            )
            resolved = ResolvedYear(
                jurisdiction, year, parent.weekly_rest_day, parent.dates, CalendarBasis.NATIONAL_FALLBACK
            )
        else:
            dates = own.dates | parent.dates if parent is not None else own.dates
            resolved = ResolvedYear(jurisdiction, year, own.weekly_rest_day, dates, CalendarBasis.JURISDICTION)

        self._resolved[cache_key] = resolved
        return resolved

    def is_working_day(self, day: date, jurisdiction: str) -> bool:
        return self.resolve(jurisdiction, day.year).is_working_day(day)

    def count_working_days(self, start: date, end: date, jurisdiction: str) -> int:
        """Count working days in the half-open interval ``(start, end]``."""
        if end < start:
            raise InvalidDateRange(start, end)
        count = 0
        day = start
        while day < end:
            day += timedelta(days=1)
            if self.is_working_day(day, jurisdiction):
                count += 1
        return count

    def basis_for(self, jurisdiction: str, start: date, end: date) -> CalendarBasis:
        """Weakest basis used over the years spanned by ``start..end``."""
        bases = {self.resolve(jurisdiction, year).basis for year in range(start.year, end.year + 1)}
        if CalendarBasis.NATIONAL_FALLBACK in bases:
            return CalendarBasis.NATIONAL_FALLBACK
        return CalendarBasis.JURISDICTION


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class HolidayCatalog:
    """Append-only store of published holiday calendars."""

    __slots__ = ("_current", "_history", "_lock", "_version")

    def __init__(self) -> None:
        self._history: dict[tuple[str, int], list[HolidayCalendar]] = defaultdict(list)
        self._current: MappingProxyType[tuple[str, int], HolidayCalendar] = MappingProxyType({})
        self._version = 0
        self._lock = threading.Lock()

    def publish(self, calendar: HolidayCalendar) -> int:
        """Publish ``calendar`` as the current set for its key."""
        with self._lock:
            self._history[calendar.key].append(calendar)
            current = dict(self._current)
            current[calendar.key] = calendar
            # Swap in a fresh mapping; existing snapshots keep the old one.
            self._current = MappingProxyType(current)
            self._version += 1
            version = self._version
        logger.info(
            "calendar.published",
            jurisdiction=calendar.jurisdiction,
            year=calendar.year,
            holidays=len(calendar.holidays),
            source_version=calendar.source_version,
            catalog_version=version,
        )
        return version

    def history(self, jurisdiction: str, year: int) -> list[HolidayCalendar]:
        with self._lock:
            return list(self._history.get((jurisdiction, year), []))

    def snapshot(self, *, regional_fallback: RegionalFallback = "national") -> CalendarSnapshot:
        with self._lock:
            return CalendarSnapshot(self._current, version=self._version, regional_fallback=regional_fallback)

    @property
    def version(self) -> int:
        return self._version


class CalendarService:
    """Convenience facade binding a catalog to a fallback policy."""

    __slots__ = ("_catalog", "_regional_fallback")

    def __init__(self, catalog: HolidayCatalog, *, regional_fallback: RegionalFallback = "national") -> None:
        self._catalog = catalog
        self._regional_fallback = regional_fallback

    @property
    def catalog(self) -> HolidayCatalog:
        return self._catalog

    def snapshot(self) -> CalendarSnapshot:
        return self._catalog.snapshot(regional_fallback=self._regional_fallback)

    def is_working_day(self, day: date, jurisdiction: str) -> bool:
        return self.snapshot().is_working_day(day, jurisdiction)

    def count_working_days(self, start: date, end: date, jurisdiction: str) -> int:
        return self.snapshot().count_working_days(start, end, jurisdiction)
