from __future__ import annotations

import re

from pydantic import BaseModel, Field, field_validator

from src.models.enums import LandCategory

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    return _SLUG_RE.sub("_", text.strip().lower()).strip("_")


class SchemeCondition(BaseModel):
    """A declared eligibility condition beyond area and land category.

    Evaluated against facts the citizen has declared, e.g.
    ``{"key": "has_kisan_credit_card", "expected": True}``.
    """

    model_config = {"frozen": True}

    key: str
    description: str = ""
    expected: bool | str | float = True


class SchemeRule(BaseModel):
    """Eligibility rule for a land-linked scheme.  Read-only to the core."""

    model_config = {"frozen": True, "populate_by_name": True}

    id: str
    name: str
    jurisdiction: str
    min_area: float | None = Field(default=None, ge=0)  # acres
    max_area: float | None = Field(default=None, ge=0)  # acres
    allowed_categories: frozenset[LandCategory] | None = None
    benefit_amount: float = Field(default=0.0, ge=0)
    other_conditions: tuple[SchemeCondition, ...] = ()
    helpline: str | None = None
    website: str | None = None

    @field_validator("other_conditions", mode="before")
    @classmethod
    def _coerce_conditions(cls, value: object) -> object:
        # Free-text conditions become boolean facts keyed by their slug.
        if isinstance(value, list | tuple):
            return tuple(
                SchemeCondition(key=slugify(item), description=item) if isinstance(item, str) else item
                for item in value
            )
        return value

    @property
    def declared_condition_count(self) -> int:
        count = len(self.other_conditions)
        if self.min_area is not None:
            count += 1
        if self.max_area is not None:
            count += 1
        if self.allowed_categories:
            count += 1
        return count
