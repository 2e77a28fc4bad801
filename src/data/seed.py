"""Reference data loading for holiday calendars, timeline rules and schemes.

Loads the bundled JSON files under ``reference/`` into validated models
and publishes them into the in-process catalogs.  Designed to run once at
application startup; administrative updates later go through the
catalogs' ``publish`` methods.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson
import structlog
from pydantic import ValidationError

from src.models.calendar import HolidayCalendar
from src.models.errors import InvalidRule
from src.models.scheme import SchemeRule
from src.models.timeline import TimelineRule

if TYPE_CHECKING:
    from src.services.calendar_service import HolidayCatalog
    from src.services.timeline_catalog import TimelineRuleCatalog

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

_DATA_DIR: Path = Path(__file__).resolve().parent / "reference"
_HOLIDAYS_PATH: Path = _DATA_DIR / "holidays.json"
_TIMELINES_PATH: Path = _DATA_DIR / "timeline_rules.json"
_SCHEMES_PATH: Path = _DATA_DIR / "scheme_rules.json"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _read(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        raise FileNotFoundError(f"Reference data file not found: {path}")
    data = orjson.loads(path.read_bytes())
    if not isinstance(data, list):
        raise ValueError(f"{path.name}: expected a JSON array")
    return data


def load_holiday_calendars(path: Path | None = None) -> list[HolidayCalendar]:
    """Load holiday calendars from a JSON file.

    Parameters
    ----------
    path:
        Path to the JSON file.  Defaults to the bundled ``holidays.json``.

    Returns
    -------
    list[HolidayCalendar]
        One calendar per ``(jurisdiction, year)`` entry.  Entries that fail
        validation are logged and skipped.

    Raises
    ------
    FileNotFoundError
        If the JSON file does not exist.
    """
    file_path = path or _HOLIDAYS_PATH
    calendars: list[HolidayCalendar] = []
    for raw in _read(file_path):
        try:
            calendars.append(HolidayCalendar.model_validate(raw))
        except ValidationError:
            logger.warning(
                "seed.calendar_parse_error",
                jurisdiction=raw.get("jurisdiction", "unknown"),
                year=raw.get("year"),
                exc_info=True,
            )
    logger.info("seed.loaded_calendars", count=len(calendars), source=str(file_path))
    return calendars


def load_timeline_rules(path: Path | None = None) -> list[TimelineRule]:
    file_path = path or _TIMELINES_PATH
    rules: list[TimelineRule] = []
    for raw in _read(file_path):
        try:
            rules.append(TimelineRule.model_validate(raw))
        except ValidationError:
            logger.warning(
                "seed.timeline_parse_error",
                service=raw.get("service_identifier", "unknown"),
                exc_info=True,
            )
    logger.info("seed.loaded_timeline_rules", count=len(rules), source=str(file_path))
    return rules


def load_scheme_rules(path: Path | None = None) -> list[SchemeRule]:
    file_path = path or _SCHEMES_PATH
    rules: list[SchemeRule] = []
    for raw in _read(file_path):
        try:
            rules.append(SchemeRule.model_validate(raw))
        except ValidationError:
            logger.warning("seed.scheme_parse_error", scheme_id=raw.get("id", "unknown"), exc_info=True)
    logger.info("seed.loaded_scheme_rules", count=len(rules), source=str(file_path))
    return rules


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------


def seed_catalogs(
    holidays: HolidayCatalog,
    timelines: TimelineRuleCatalog,
    *,
    holidays_path: Path | None = None,
    timelines_path: Path | None = None,
) -> tuple[int, int]:
    """Publish the bundled calendars and timeline rules.

    Returns
    -------
    tuple[int, int]
        Number of calendars and timeline rules published.
    """
    calendars = load_holiday_calendars(holidays_path)
    for calendar in calendars:
        holidays.publish(calendar)

    rules = load_timeline_rules(timelines_path)
    published = 0
    for rule in rules:
        try:
            timelines.publish(rule)
        except InvalidRule:
            logger.warning("seed.timeline_rejected", service=rule.service_identifier, jurisdiction=rule.jurisdiction)
            continue
        published += 1

    if not calendars:
        logger.warning("seed.no_calendars_loaded")
    logger.info("seed.complete", calendars=len(calendars), timeline_rules=published)
    return len(calendars), published
