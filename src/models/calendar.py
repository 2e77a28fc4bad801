"""Holiday calendar models.

A :class:`HolidayCalendar` is published per ``(jurisdiction, year)`` and is
immutable once published.  A correction is made by publishing a whole new
calendar for the same key; the catalog keeps every version for audit.
"""

from __future__ import annotations

from datetime import UTC, date, datetime

from pydantic import BaseModel, Field, model_validator

from src.models.enums import HolidayKind, Weekday


class Holiday(BaseModel):
    model_config = {"frozen": True}

    day: date
    name: str
    kind: HolidayKind = HolidayKind.NATIONAL


class HolidayCalendar(BaseModel):
    """Ordered set of non-working dates for one jurisdiction and year."""

    model_config = {"frozen": True}

    jurisdiction: str
    year: int
    weekly_rest_day: Weekday = Weekday.SUNDAY
    holidays: tuple[Holiday, ...] = ()
    source_version: str = "unversioned"
    published_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _check_year_and_order(self) -> HolidayCalendar:
        for holiday in self.holidays:
            if holiday.day.year != self.year:
                raise ValueError(
                    f"holiday {holiday.day.isoformat()} is outside calendar year {self.year}"
                )
        # Ordered and de-duplicated by date; the first tag for a date wins.
        seen: dict[date, Holiday] = {}
        for holiday in sorted(self.holidays, key=lambda h: h.day):
            seen.setdefault(holiday.day, holiday)
        object.__setattr__(self, "holidays", tuple(seen.values()))
        return self

    @property
    def key(self) -> tuple[str, int]:
        return (self.jurisdiction, self.year)

    @property
    def dates(self) -> frozenset[date]:
        return frozenset(h.day for h in self.holidays)
