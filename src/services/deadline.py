"""Deadline calculation for service timeline rules.

Calendar-day rules are plain date arithmetic.  Working-day rules are
counted forward one day at a time against the holiday calendar: holiday
density is irregular, so there is no closed-form shortcut.  The
submission date itself is never counted; the deadline is the day on
which the working-day counter reaches the rule's duration, which makes
``count_working_days(submission, deadline) == duration_units`` hold
exactly.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

import structlog

from src.models.enums import CalendarBasis, DurationUnit
from src.models.errors import FutureSubmissionDate, InvalidRule
from src.models.timeline import TimelineRule
from src.services.calendar_service import CalendarSnapshot

logger = structlog.get_logger(__name__)

# Guard against a calendar that marks every day non-working.
_MAX_SCAN_DAYS = 3_660


@dataclass(frozen=True, slots=True)
class DeadlineComputation:
    deadline: date
    basis: CalendarBasis


def validate_rule(rule: TimelineRule) -> None:
    if rule.duration_units <= 0:
        raise InvalidRule(f"must be positive, got {rule.duration_units}")


def compute_deadline(
    submission_date: date,
    rule: TimelineRule,
    jurisdiction: str,
    *,
    calendar: CalendarSnapshot,
    today: date,
) -> DeadlineComputation:
    """Compute the deadline for ``submission_date`` under ``rule``.

    Raises
    ------
    InvalidRule
        ``duration_units`` is zero or negative.
    FutureSubmissionDate
        ``submission_date`` is after ``today``.
    CalendarDataMissing
        A working-day rule crosses a year with no holiday data.
    """
    validate_rule(rule)
    if submission_date > today:
        raise FutureSubmissionDate(submission_date, today)

    if rule.unit == DurationUnit.CALENDAR_DAYS:
        return DeadlineComputation(
            submission_date + timedelta(days=rule.duration_units),
            CalendarBasis.NOT_APPLICABLE,
        )

    counted = 0
    day = submission_date
    for _ in range(_MAX_SCAN_DAYS):
        day += timedelta(days=1)
        if calendar.is_working_day(day, jurisdiction):
            counted += 1
            if counted == rule.duration_units:
                basis = calendar.basis_for(jurisdiction, submission_date, day)
                logger.debug(
                    "deadline.computed",
                    submission_date=submission_date.isoformat(),
                    deadline=day.isoformat(),
                    working_days=rule.duration_units,
                    jurisdiction=jurisdiction,
                    calendar_version=calendar.version,
                )
                return DeadlineComputation(day, basis)
    raise InvalidRule(
        f"no {rule.duration_units} working days within {_MAX_SCAN_DAYS} days of submission"
    )
