"""Service timeline rules (Right to Service / Citizen Charter limits)."""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel

from src.models.enums import DurationUnit

MANUAL_SOURCE_VERSION = "manual"


class TimelineRule(BaseModel):
    """Promised processing time for a service in one jurisdiction.

    Several rules may exist for the same ``(service_identifier,
    jurisdiction)``; the one with the latest ``effective_from`` not after
    "now" governs.  Superseded rules stay in the catalog for audit.
    """

    model_config = {"frozen": True}

    service_identifier: str
    jurisdiction: str
    duration_units: int
    unit: DurationUnit
    effective_from: date
    source_version: str
    service_name: str | None = None
    designated_officer: str | None = None

    @property
    def is_manual(self) -> bool:
        return self.source_version == MANUAL_SOURCE_VERSION
