"""Append-only catalog of service timeline rules.

Rules are never deleted.  For a given ``(service, jurisdiction)`` the
governing rule at an instant is the one with the latest
``effective_from`` that is not after that instant; when two versions share
an ``effective_from`` the one published later wins.
"""

from __future__ import annotations

import threading
from datetime import date
from types import MappingProxyType

import structlog

from src.models.errors import InvalidRule, TimelineRuleNotFound
from src.models.scheme import slugify
from src.models.timeline import TimelineRule

logger = structlog.get_logger(__name__)


def _normalise_service(service_identifier: str) -> str:
    return slugify(service_identifier)


class TimelineSnapshot:
    """Immutable view of the rule catalog at one instant."""

    __slots__ = ("_rules", "version")

    def __init__(self, rules: MappingProxyType[tuple[str, str], tuple[TimelineRule, ...]], *, version: int) -> None:
        self._rules = rules
        self.version = version

    def current(self, service_identifier: str, jurisdiction: str, on: date) -> TimelineRule:
        """Return the rule governing ``service_identifier`` on ``on``."""
        rules = self._rules.get((_normalise_service(service_identifier), jurisdiction), ())
        best: TimelineRule | None = None
        # Publication order is preserved, so ">=" lets later versions win ties.
        for rule in rules:
            if rule.effective_from <= on and (best is None or rule.effective_from >= best.effective_from):
                best = rule
        if best is None:
            raise TimelineRuleNotFound(service_identifier, jurisdiction)
        return best

    def find(self, service_identifier: str, jurisdiction: str, on: date) -> TimelineRule | None:
        try:
            return self.current(service_identifier, jurisdiction, on)
        except TimelineRuleNotFound:
            return None

    def history(self, service_identifier: str, jurisdiction: str) -> tuple[TimelineRule, ...]:
        return self._rules.get((_normalise_service(service_identifier), jurisdiction), ())


class TimelineRuleCatalog:
    __slots__ = ("_lock", "_rules", "_version")

    def __init__(self) -> None:
        self._rules: MappingProxyType[tuple[str, str], tuple[TimelineRule, ...]] = MappingProxyType({})
        self._version = 0
        self._lock = threading.Lock()

    def publish(self, rule: TimelineRule) -> int:
        if rule.duration_units <= 0:
            raise InvalidRule(f"must be positive, got {rule.duration_units}")
        key = (_normalise_service(rule.service_identifier), rule.jurisdiction)
        with self._lock:
            existing = self._rules.get(key, ())
            if rule in existing:
                return self._version
            updated = dict(self._rules)
            updated[key] = (*existing, rule)
            self._rules = MappingProxyType(updated)
            self._version += 1
            version = self._version
        logger.info(
            "timeline.published",
            service=rule.service_identifier,
            jurisdiction=rule.jurisdiction,
            effective_from=rule.effective_from.isoformat(),
            source_version=rule.source_version,
            catalog_version=version,
        )
        return version

    def snapshot(self) -> TimelineSnapshot:
        with self._lock:
            return TimelineSnapshot(self._rules, version=self._version)

    def current(self, service_identifier: str, jurisdiction: str, on: date) -> TimelineRule:
        return self.snapshot().current(service_identifier, jurisdiction, on)

    @property
    def version(self) -> int:
        return self._version
