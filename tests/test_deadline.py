"""Tests for deadline computation and breach detection."""

from __future__ import annotations

from datetime import date

import pytest

from src.models.enums import CalendarBasis, DurationUnit
from src.models.errors import (
    CalendarDataMissing,
    FutureSubmissionDate,
    InvalidDateRange,
    InvalidRule,
)
from src.services.breach import evaluate
from src.services.calendar_service import CalendarService, HolidayCatalog
from src.services.deadline import compute_deadline
from tests.factories import make_rule

TODAY = date(2024, 2, 5)


# -----------------------------------------------------------------------
# Deadline computation
# -----------------------------------------------------------------------


class TestComputeDeadline:
    def test_working_days_skip_rest_days(self, calendar: CalendarService) -> None:
        result = compute_deadline(
            date(2024, 1, 10), make_rule(units=15), "IN", calendar=calendar.snapshot(), today=TODAY
        )
        # Two Sundays (14th, 21st) fall inside the window.
        assert result.deadline == date(2024, 1, 27), f"unexpected deadline {result.deadline}"
        assert result.basis == CalendarBasis.JURISDICTION

    def test_working_day_count_equals_duration(self, calendar: CalendarService) -> None:
        snapshot = calendar.snapshot()
        for units in (1, 5, 15, 21, 45):
            result = compute_deadline(
                date(2024, 1, 10), make_rule(units=units), "IN-KA", calendar=snapshot, today=TODAY
            )
            counted = snapshot.count_working_days(date(2024, 1, 10), result.deadline, "IN-KA")
            assert counted == units, f"{units} working days produced a window of {counted}"
            assert snapshot.is_working_day(result.deadline, "IN-KA"), "deadline must be a working day"

    def test_regional_holiday_pushes_deadline(self, calendar: CalendarService) -> None:
        snapshot = calendar.snapshot()
        national = compute_deadline(date(2024, 1, 10), make_rule(units=10), "IN", calendar=snapshot, today=TODAY)
        regional = compute_deadline(date(2024, 1, 10), make_rule(units=10), "IN-KA", calendar=snapshot, today=TODAY)
        assert national.deadline == date(2024, 1, 22)
        assert regional.deadline == date(2024, 1, 23), "IN-KA loses a day to its holiday on the 15th"

    def test_calendar_days_is_plain_addition(self, calendar: CalendarService) -> None:
        rule = make_rule("rti_response", units=30, unit=DurationUnit.CALENDAR_DAYS)
        result = compute_deadline(date(2024, 1, 10), rule, "IN", calendar=calendar.snapshot(), today=TODAY)
        assert result.deadline == date(2024, 2, 9)
        assert result.basis == CalendarBasis.NOT_APPLICABLE

    def test_calendar_days_need_no_holiday_data(self) -> None:
        empty = CalendarService(HolidayCatalog()).snapshot()
        rule = make_rule(units=30, unit=DurationUnit.CALENDAR_DAYS)
        result = compute_deadline(date(2024, 1, 10), rule, "IN", calendar=empty, today=TODAY)
        assert result.deadline == date(2024, 2, 9)

    @pytest.mark.parametrize("units", [0, -3])
    def test_non_positive_duration_rejected(self, calendar: CalendarService, units: int) -> None:
        with pytest.raises(InvalidRule):
            compute_deadline(date(2024, 1, 10), make_rule(units=units), "IN", calendar=calendar.snapshot(), today=TODAY)

    def test_future_submission_rejected(self, calendar: CalendarService) -> None:
        with pytest.raises(FutureSubmissionDate):
            compute_deadline(date(2024, 3, 1), make_rule(), "IN", calendar=calendar.snapshot(), today=TODAY)

    def test_submission_today_is_accepted(self, calendar: CalendarService) -> None:
        result = compute_deadline(TODAY, make_rule(units=1), "IN", calendar=calendar.snapshot(), today=TODAY)
        assert result.deadline == date(2024, 2, 6)

    def test_crossing_into_year_without_regional_data_falls_back(self, calendar: CalendarService) -> None:
        result = compute_deadline(
            date(2024, 12, 20), make_rule(units=21), "IN-KA", calendar=calendar.snapshot(), today=date(2024, 12, 31)
        )
        assert result.deadline.year == 2025
        assert result.basis == CalendarBasis.NATIONAL_FALLBACK, "the 2025 part used national data only"

    def test_crossing_into_year_without_regional_data_strict(self, holidays: HolidayCatalog) -> None:
        strict = CalendarService(holidays, regional_fallback="strict").snapshot()
        with pytest.raises(CalendarDataMissing):
            compute_deadline(date(2024, 12, 20), make_rule(units=21), "IN-KA", calendar=strict, today=date(2024, 12, 31))

    def test_crossing_into_year_without_any_data(self, calendar: CalendarService) -> None:
        with pytest.raises(CalendarDataMissing):
            compute_deadline(
                date(2025, 12, 20), make_rule(units=21), "IN", calendar=calendar.snapshot(), today=date(2025, 12, 31)
            )

    def test_deterministic(self, calendar: CalendarService) -> None:
        snapshot = calendar.snapshot()
        first = compute_deadline(date(2024, 1, 10), make_rule(units=21), "IN-KA", calendar=snapshot, today=TODAY)
        second = compute_deadline(date(2024, 1, 10), make_rule(units=21), "IN-KA", calendar=snapshot, today=TODAY)
        assert first == second


# -----------------------------------------------------------------------
# Breach detection
# -----------------------------------------------------------------------


class TestEvaluateBreach:
    def test_overdue(self) -> None:
        verdict = evaluate(date(2024, 1, 10), date(2024, 1, 27), date(2024, 2, 5))
        assert verdict.breached is True
        assert verdict.overdue_days == 9, f"expected 9 overdue days, got {verdict.overdue_days}"
        assert verdict.days_remaining == 0

    def test_on_deadline_day_not_breached(self) -> None:
        verdict = evaluate(date(2024, 1, 10), date(2024, 1, 27), date(2024, 1, 27))
        assert verdict.breached is False
        assert verdict.overdue_days == 0

    def test_day_after_deadline_is_one_day_overdue(self) -> None:
        verdict = evaluate(date(2024, 1, 10), date(2024, 1, 27), date(2024, 1, 28))
        assert verdict.breached is True
        assert verdict.overdue_days == 1

    def test_pending_reports_days_remaining(self) -> None:
        verdict = evaluate(date(2024, 1, 10), date(2024, 1, 27), date(2024, 1, 20))
        assert verdict.breached is False
        assert verdict.days_remaining == 7

    def test_deadline_before_submission_rejected(self) -> None:
        with pytest.raises(InvalidDateRange):
            evaluate(date(2024, 1, 10), date(2024, 1, 9), date(2024, 1, 20))

    def test_breached_iff_overdue_positive(self) -> None:
        for day in range(1, 29):
            verdict = evaluate(date(2024, 1, 10), date(2024, 1, 27), date(2024, 2, day))
            assert verdict.breached == (verdict.overdue_days > 0)
