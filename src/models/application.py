"""Tracked citizen applications."""

from __future__ import annotations

from datetime import UTC, date, datetime
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from src.models.enums import ApplicationStatus, CalendarBasis
from src.models.timeline import TimelineRule


class ApplicationRecord(BaseModel):
    """One citizen submission whose processing deadline is being monitored.

    ``computed_deadline`` is always derived from ``rule`` and
    ``submission_date``; callers never supply it.  ``overdue_days`` is
    zero exactly when ``status`` is not ``breached``.
    """

    id: str = Field(default_factory=lambda: f"APP-{uuid4().hex[:12].upper()}")
    owner_id: str
    service_identifier: str
    jurisdiction: str
    submission_date: date
    computed_deadline: date
    status: ApplicationStatus = ApplicationStatus.PENDING
    overdue_days: int = Field(default=0, ge=0)
    last_evaluated_at: datetime | None = None
    rule: TimelineRule
    calendar_basis: CalendarBasis = CalendarBasis.NOT_APPLICABLE
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    version: int = 0

    @model_validator(mode="after")
    def _check_overdue_consistency(self) -> ApplicationRecord:
        breached = self.status == ApplicationStatus.BREACHED
        if breached != (self.overdue_days > 0):
            raise ValueError(
                f"overdue_days={self.overdue_days} is inconsistent with status={self.status}"
            )
        return self

    @property
    def rule_source_version(self) -> str:
        return self.rule.source_version
