"""Tests for the holiday catalog and working-day calendar service."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest
from pydantic import ValidationError

from src.models.calendar import Holiday, HolidayCalendar
from src.models.enums import CalendarBasis, HolidayKind, Weekday
from src.models.errors import CalendarDataMissing, InvalidDateRange
from src.services.calendar_service import (
    CalendarService,
    HolidayCatalog,
    local_today,
    national_of,
)
from tests.factories import make_calendar


# -----------------------------------------------------------------------
# Holiday calendar model
# -----------------------------------------------------------------------


class TestHolidayCalendar:
    def test_holidays_sorted_and_deduplicated(self) -> None:
        cal = HolidayCalendar(
            jurisdiction="IN",
            year=2024,
            holidays=(
                Holiday(day=date(2024, 8, 15), name="Independence Day"),
                Holiday(day=date(2024, 1, 26), name="Republic Day"),
                Holiday(day=date(2024, 1, 26), name="Duplicate"),
            ),
        )
        assert [h.day for h in cal.holidays] == [date(2024, 1, 26), date(2024, 8, 15)], (
            "holidays should be ordered by date with duplicates dropped"
        )
        assert cal.holidays[0].name == "Republic Day", "first tag for a date should win"

    def test_holiday_outside_year_rejected(self) -> None:
        with pytest.raises(ValidationError):
            HolidayCalendar(
                jurisdiction="IN",
                year=2024,
                holidays=(Holiday(day=date(2025, 1, 26), name="Republic Day"),),
            )

    def test_key(self) -> None:
        assert make_calendar("IN-KA", 2024).key == ("IN-KA", 2024)


# -----------------------------------------------------------------------
# Working-day resolution
# -----------------------------------------------------------------------


class TestWorkingDays:
    def test_weekly_rest_day_is_non_working(self, calendar: CalendarService) -> None:
        assert calendar.is_working_day(date(2024, 1, 13), "IN") is True, "Saturday is a working day"
        assert calendar.is_working_day(date(2024, 1, 14), "IN") is False, "Sunday is the rest day"

    def test_custom_rest_day(self) -> None:
        catalog = HolidayCatalog()
        catalog.publish(make_calendar("IN", 2024, rest_day=Weekday.FRIDAY))
        service = CalendarService(catalog)
        assert service.is_working_day(date(2024, 1, 12), "IN") is False, "Friday should be the rest day"
        assert service.is_working_day(date(2024, 1, 14), "IN") is True, "Sunday should then be working"

    def test_regional_is_union_of_national_and_regional(self) -> None:
        catalog = HolidayCatalog()
        catalog.publish(make_calendar("IN", 2024, date(2024, 1, 26)))
        catalog.publish(make_calendar("IN-KA", 2024, date(2024, 1, 15), kind=HolidayKind.REGIONAL))
        service = CalendarService(catalog)

        assert service.is_working_day(date(2024, 1, 26), "IN-KA") is False, "national holiday applies to states"
        assert service.is_working_day(date(2024, 1, 15), "IN-KA") is False, "regional holiday applies"
        assert service.is_working_day(date(2024, 1, 15), "IN") is True, "regional holiday not national"

    def test_optional_holiday_is_non_working(self) -> None:
        catalog = HolidayCatalog()
        catalog.publish(make_calendar("IN", 2024, date(2024, 3, 8), kind=HolidayKind.OPTIONAL))
        assert CalendarService(catalog).is_working_day(date(2024, 3, 8), "IN") is False

    def test_missing_regional_falls_back_to_national(self, calendar: CalendarService) -> None:
        snapshot = calendar.snapshot()
        resolved = snapshot.resolve("IN-MH", 2024)
        assert resolved.basis == CalendarBasis.NATIONAL_FALLBACK, "fallback must be recorded"
        assert snapshot.is_working_day(date(2024, 1, 15), "IN-MH") is True

    def test_strict_policy_raises_for_missing_regional(self, holidays: HolidayCatalog) -> None:
        strict = CalendarService(holidays, regional_fallback="strict")
        with pytest.raises(CalendarDataMissing) as excinfo:
            strict.is_working_day(date(2024, 1, 15), "IN-MH")
        assert excinfo.value.jurisdiction == "IN-MH"
        assert excinfo.value.year == 2024

    def test_missing_year_is_never_treated_as_no_holidays(self, calendar: CalendarService) -> None:
        with pytest.raises(CalendarDataMissing):
            calendar.is_working_day(date(2030, 6, 3), "IN")

    def test_jurisdiction_basis(self, calendar: CalendarService) -> None:
        snapshot = calendar.snapshot()
        assert snapshot.basis_for("IN-KA", date(2024, 1, 1), date(2024, 2, 1)) == CalendarBasis.JURISDICTION


# -----------------------------------------------------------------------
# Counting
# -----------------------------------------------------------------------


class TestCountWorkingDays:
    def test_interval_excludes_start_includes_end(self, calendar: CalendarService) -> None:
        # Wed 10 Jan -> Thu 11 Jan: only the 11th is counted.
        assert calendar.count_working_days(date(2024, 1, 10), date(2024, 1, 11), "IN") == 1

    def test_same_day_counts_zero(self, calendar: CalendarService) -> None:
        assert calendar.count_working_days(date(2024, 1, 10), date(2024, 1, 10), "IN") == 0

    def test_rest_day_not_counted(self, calendar: CalendarService) -> None:
        # Sat 13 -> Mon 15: Sunday skipped, Monday counted.
        assert calendar.count_working_days(date(2024, 1, 13), date(2024, 1, 15), "IN") == 1

    def test_regional_holiday_not_counted(self, calendar: CalendarService) -> None:
        assert calendar.count_working_days(date(2024, 1, 13), date(2024, 1, 16), "IN-KA") == 1, (
            "Sunday 14th and the regional holiday on the 15th should be skipped"
        )

    def test_reversed_range_rejected(self, calendar: CalendarService) -> None:
        with pytest.raises(InvalidDateRange):
            calendar.count_working_days(date(2024, 2, 1), date(2024, 1, 1), "IN")

    @pytest.mark.parametrize("span", [1, 6, 7, 30, 120])
    def test_never_exceeds_calendar_days(self, calendar: CalendarService, span: int) -> None:
        start = date(2024, 1, 10)
        end = start + timedelta(days=span)
        working = calendar.count_working_days(start, end, "IN-KA")
        assert 0 <= working <= span, f"{working} working days cannot exceed {span} calendar days"

    def test_spans_year_boundary(self, calendar: CalendarService) -> None:
        # 2024-12-30 Mon .. 2025-01-06 Mon: 7 days, one Sunday (5 Jan).
        assert calendar.count_working_days(date(2024, 12, 30), date(2025, 1, 6), "IN") == 6


# -----------------------------------------------------------------------
# Catalog versioning
# -----------------------------------------------------------------------


class TestHolidayCatalog:
    def test_publish_replaces_whole_set_and_keeps_history(self, holidays: HolidayCatalog) -> None:
        before = holidays.version
        holidays.publish(make_calendar("IN", 2024, date(2024, 1, 11), source_version="corrected"))
        assert holidays.version == before + 1
        assert len(holidays.history("IN", 2024)) == 2, "old version must be retained"
        service = CalendarService(holidays)
        assert service.is_working_day(date(2024, 1, 11), "IN") is False

    def test_snapshot_is_isolated_from_later_publication(self, holidays: HolidayCatalog) -> None:
        service = CalendarService(holidays)
        snapshot = service.snapshot()
        holidays.publish(make_calendar("IN", 2024, date(2024, 1, 11)))
        assert snapshot.is_working_day(date(2024, 1, 11), "IN") is True, (
            "a snapshot taken before the update must not observe it"
        )
        assert service.snapshot().is_working_day(date(2024, 1, 11), "IN") is False


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------


class TestHelpers:
    def test_national_of(self) -> None:
        assert national_of("IN-KA") == "IN"
        assert national_of("IN") == "IN"

    def test_local_today_uses_ist(self) -> None:
        # 20:00 UTC is already the next day in India (+05:30).
        assert local_today(datetime(2024, 1, 10, 20, 0, tzinfo=UTC)) == date(2024, 1, 11)
