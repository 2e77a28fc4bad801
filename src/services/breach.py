"""Breach detection.

:func:`evaluate` is a pure function of its three dates.  The figure it
returns can end up quoted in a legal grievance, so it must come out the
same every time it is recomputed from the same inputs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from src.models.errors import InvalidDateRange
from src.services.calendar_service import calendar_days_between


@dataclass(frozen=True, slots=True)
class BreachVerdict:
    breached: bool
    overdue_days: int
    days_remaining: int


def evaluate(submission_date: date, deadline: date, now: date) -> BreachVerdict:
    """Compare ``now`` against ``deadline``.

    ``overdue_days = max(0, deadline -> now)`` and ``breached = now > deadline``.
    ``days_remaining`` is the mirror image for pending applications.
    """
    if deadline < submission_date:
        raise InvalidDateRange(submission_date, deadline)
    delta = calendar_days_between(deadline, now)
    return BreachVerdict(
        breached=now > deadline,
        overdue_days=max(0, delta),
        days_remaining=max(0, -delta),
    )
