"""Land-linked scheme eligibility matcher.

Scores one owner's aggregated land holding against a catalog of
:class:`SchemeRule` objects and ranks the result.

Architecture:
    * Parcels are aggregated once per call (total area in acres, set of
      distinct categories).
    * Each present condition of a rule (``min_area``, ``max_area``,
      ``allowed_categories``, each entry of ``other_conditions``) is
      evaluated independently and recorded as matched or unmatched.
    * ``score = matched / declared``; a rule with no declared conditions
      scores 1.0.
    * Results are partitioned into *eligible* (score 1.0) and *near-miss*
      (0 < score < 1).  Rules scoring 0 are never returned.

Complexity: O(r * c) where r = number of rules and c = conditions per
rule.  The matcher holds no state between calls.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any, Final

import structlog
from pydantic import BaseModel, Field

from src.models.errors import InputError
from src.models.land import LandHolding, LandParcel
from src.models.scheme import SchemeCondition, SchemeRule
from src.services.calendar_service import national_of

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class EligibilityMatch(BaseModel):
    """Derived match of one holding against one scheme.  Never persisted."""

    scheme: SchemeRule
    score: float = Field(..., ge=0.0, le=1.0)
    matched_conditions: list[str] = Field(default_factory=list)
    unmatched_conditions: list[str] = Field(default_factory=list)

    @property
    def eligible(self) -> bool:
        return self.score == 1.0


class EligibilityReport(BaseModel):
    owner_id: str
    holding: LandHolding
    eligible: list[EligibilityMatch] = Field(default_factory=list)
    near_miss: list[EligibilityMatch] = Field(default_factory=list)
    skipped_out_of_jurisdiction: int = 0
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def ranked(self) -> list[EligibilityMatch]:
        """Eligible matches first, then near-misses, each in rank order."""
        return [*self.eligible, *self.near_miss]


# ---------------------------------------------------------------------------
# Condition evaluation
# ---------------------------------------------------------------------------


# Spoken and typed answers accepted for yes/no facts (English, Hindi).
_TRUE_WORDS: Final[frozenset[str]] = frozenset({"true", "yes", "y", "1", "haan", "han", "ha", "haa"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"false", "no", "n", "0", "nahi", "nahin", "na"})


def _as_bool(value: Any) -> bool | None:
    """Read a yes/no fact; ``None`` when the value is not recognisably either."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return None


def _fact_satisfies(condition: SchemeCondition, facts: Mapping[str, Any]) -> bool:
    """Evaluate one declared condition against citizen-declared facts.

    Boolean and string expectations are equality checks (strings compare
    case-insensitively).  A numeric expectation is a lower bound.  A
    missing fact, or a yes/no fact that is neither, never satisfies a
    condition.
    """
    if condition.key not in facts:
        return False
    value = facts[condition.key]
    expected = condition.expected
    if isinstance(expected, bool):
        declared = _as_bool(value)
        if declared is None:
            logger.info("eligibility.unrecognised_fact", key=condition.key)
            return False
        return declared is expected
    if isinstance(expected, str):
        return str(value).strip().lower() == expected.strip().lower()
    try:
        return float(value) >= float(expected)
    except (TypeError, ValueError):
        return False


def _evaluate_rule(
    rule: SchemeRule,
    holding: LandHolding,
    facts: Mapping[str, Any],
) -> EligibilityMatch:
    matched: list[str] = []
    unmatched: list[str] = []

    def record(label: str, ok: bool) -> None:
        (matched if ok else unmatched).append(label)

    if rule.min_area is not None:
        record(f"min_area>={rule.min_area:g}", holding.total_area_acres >= rule.min_area)
    if rule.max_area is not None:
        record(f"max_area<={rule.max_area:g}", holding.total_area_acres <= rule.max_area)
    if rule.allowed_categories:
        allowed = ",".join(sorted(rule.allowed_categories))
        record(f"category in [{allowed}]", bool(holding.categories & rule.allowed_categories))
    for condition in rule.other_conditions:
        record(condition.key, _fact_satisfies(condition, facts))

    total = len(matched) + len(unmatched)
    score = 1.0 if total == 0 else len(matched) / total
    return EligibilityMatch(
        scheme=rule,
        score=score,
        matched_conditions=matched,
        unmatched_conditions=unmatched,
    )


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------


class EligibilityMatcher:
    """Stateless scorer; safe to share across sessions."""

    __slots__ = ()

    def aggregate(self, parcels: Iterable[LandParcel], *, owner_id: str | None = None) -> LandHolding:
        parcel_list = list(parcels)
        owners = {p.owner_id for p in parcel_list}
        if owner_id is not None:
            owners.add(owner_id)
        if len(owners) > 1:
            raise InputError("parcels", "all parcels must belong to the same owner")
        resolved_owner = owner_id or (next(iter(owners)) if owners else "")
        return LandHolding.aggregate(resolved_owner, parcel_list)

    def match(
        self,
        parcels: Iterable[LandParcel],
        rules: Iterable[SchemeRule],
        *,
        owner_id: str | None = None,
        jurisdiction: str | None = None,
        facts: Mapping[str, Any] | None = None,
    ) -> EligibilityReport:
        """Score ``parcels`` against ``rules``.

        Parameters
        ----------
        parcels:
            One owner's land parcels.
        rules:
            Candidate scheme rules.
        jurisdiction:
            If given, rules from any jurisdiction other than this one or
            its national parent are skipped.
        facts:
            Citizen-declared facts used for ``other_conditions``.

        Returns
        -------
        EligibilityReport
            Eligible matches ordered by benefit (desc) then rule id;
            near-misses ordered by score (desc) then benefit (desc).
        """
        holding = self.aggregate(parcels, owner_id=owner_id)
        declared = dict(facts or {})
        scope = {jurisdiction, national_of(jurisdiction)} if jurisdiction else None

        eligible: list[EligibilityMatch] = []
        near_miss: list[EligibilityMatch] = []
        skipped = 0
        seen: set[str] = set()
        for rule in rules:
            if rule.id in seen:
                continue
            seen.add(rule.id)
            if scope is not None and rule.jurisdiction not in scope:
                skipped += 1
                continue
            result = _evaluate_rule(rule, holding, declared)
            if result.score == 1.0:
                eligible.append(result)
            elif result.score > 0.0:
                near_miss.append(result)

        eligible.sort(key=lambda m: (-m.scheme.benefit_amount, m.scheme.id))
        near_miss.sort(key=lambda m: (-m.score, -m.scheme.benefit_amount, m.scheme.id))

        logger.info(
            "eligibility.matched",
            parcels=holding.parcel_count,
            total_area_acres=holding.total_area_acres,
            rules=len(seen),
            eligible=len(eligible),
            near_miss=len(near_miss),
            skipped=skipped,
        )
        return EligibilityReport(
            owner_id=holding.owner_id,
            holding=holding,
            eligible=eligible,
            near_miss=near_miss,
            skipped_out_of_jurisdiction=skipped,
        )
