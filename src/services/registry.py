"""Application tracking registry.

Owns the :class:`ApplicationRecord` set for every citizen.  Records are
partitioned by ``owner_id`` in the state store and each mutation is
serialised per record id; records never read or write each other, so
re-evaluating one application can never disturb a sibling.

Deadlines are derived here and nowhere else.  Re-evaluation only updates
``status``, ``overdue_days`` and ``last_evaluated_at``, except when a
newer timeline rule has taken effect for the service, in which case the
deadline is recomputed first.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime

import structlog

from src.models.application import ApplicationRecord
from src.models.enums import ApplicationStatus
from src.models.errors import (
    ConcurrencyConflict,
    FutureSubmissionDate,
    OwnershipViolation,
    RecordNotFound,
)
from src.models.timeline import TimelineRule
from src.services.breach import evaluate
from src.services.calendar_service import CalendarService, CalendarSnapshot, local_today
from src.services.deadline import compute_deadline
from src.services.store import KeyedLocks, StateStore
from src.services.timeline_catalog import TimelineRuleCatalog, TimelineSnapshot

logger = structlog.get_logger(__name__)

KIND = "application"


def _urgency_key(record: ApplicationRecord) -> tuple[int, int, date, str]:
    # Breached (most overdue first), then pending (soonest deadline), then completed.
    if record.status == ApplicationStatus.BREACHED:
        return (0, -record.overdue_days, record.computed_deadline, record.id)
    if record.status == ApplicationStatus.PENDING:
        return (1, 0, record.computed_deadline, record.id)
    return (2, 0, record.computed_deadline, record.id)


class ApplicationRegistry:
    """CRUD and derived views over tracked applications."""

    __slots__ = ("_calendar", "_locks", "_max_retries", "_store", "_timelines", "_timezone")

    def __init__(
        self,
        store: StateStore,
        calendar: CalendarService,
        timelines: TimelineRuleCatalog,
        *,
        timezone: str = "Asia/Kolkata",
        max_retries: int = 3,
    ) -> None:
        self._store = store
        self._calendar = calendar
        self._timelines = timelines
        self._timezone = timezone
        self._max_retries = max_retries
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    @staticmethod
    def _dump(record: ApplicationRecord) -> dict:
        return record.model_dump(mode="json", exclude={"version"})

    @staticmethod
    def _load(data: dict, version: int) -> ApplicationRecord:
        return ApplicationRecord.model_validate({**data, "version": version})

    def _today(self, now: datetime | None) -> date:
        return local_today(now, self._timezone)

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create(
        self,
        owner_id: str,
        service_identifier: str,
        jurisdiction: str,
        submission_date: date,
        *,
        now: datetime | None = None,
        rule: TimelineRule | None = None,
        record_id: str | None = None,
    ) -> ApplicationRecord:
        """Register a new application with ``status=pending``.

        ``rule`` overrides the catalog lookup; it is used for manually
        entered timelines and rules fetched from the retrieval provider.
        When ``record_id`` is given, creation is idempotent: a second call
        with the same id returns the record already stored.

        Raises
        ------
        FutureSubmissionDate
            ``submission_date`` is after today in the configured timezone.
        TimelineRuleNotFound
            No ``rule`` was given and the catalog has none for the service.
        """
        today = self._today(now)
        if submission_date > today:
            raise FutureSubmissionDate(submission_date, today)

        calendar = self._calendar.snapshot()
        if rule is None:
            rule = self._timelines.snapshot().current(service_identifier, jurisdiction, today)

        computed = compute_deadline(
            submission_date, rule, jurisdiction, calendar=calendar, today=today
        )
        record = ApplicationRecord(
            owner_id=owner_id,
            service_identifier=service_identifier,
            jurisdiction=jurisdiction,
            submission_date=submission_date,
            computed_deadline=computed.deadline,
            rule=rule,
            calendar_basis=computed.basis,
            **({"id": record_id} if record_id else {}),
        )
        try:
            version = await self._store.put(
                KIND, owner_id, record.id, self._dump(record), expected_version=0
            )
        except ConcurrencyConflict:
            if record_id is None:
                raise
            return await self.get(owner_id, record_id)
        logger.info(
            "registry.record_created",
            record_id=record.id,
            service=service_identifier,
            jurisdiction=jurisdiction,
            deadline=computed.deadline.isoformat(),
            calendar_basis=computed.basis,
            rule_source_version=rule.source_version,
        )
        return record.model_copy(update={"version": version})

    async def get(self, owner_id: str, record_id: str) -> ApplicationRecord:
        doc = await self._store.get(KIND, owner_id, record_id)
        if doc is None:
            actual_owner = await self._store.locate(KIND, record_id)
            if actual_owner is not None and actual_owner != owner_id:
                logger.warning("registry.cross_owner_access", record_id=record_id)
                raise OwnershipViolation(KIND, record_id)
            raise RecordNotFound(KIND, record_id)
        return self._load(doc.data, doc.version)

    async def _resolve_owner(self, record_id: str, owner_id: str | None) -> str:
        if owner_id is not None:
            return owner_id
        located = await self._store.locate(KIND, record_id)
        if located is None:
            raise RecordNotFound(KIND, record_id)
        return located

    # ------------------------------------------------------------------
    # Re-evaluation
    # ------------------------------------------------------------------

    def _reevaluated(
        self,
        record: ApplicationRecord,
        today: date,
        now: datetime,
        calendar: CalendarSnapshot,
        timelines: TimelineSnapshot,
    ) -> ApplicationRecord:
        rule = record.rule
        deadline = record.computed_deadline
        basis = record.calendar_basis

        if not rule.is_manual:
            current = timelines.find(record.service_identifier, record.jurisdiction, today)
            if current is not None and current.effective_from > rule.effective_from:
                computed = compute_deadline(
                    record.submission_date,
                    current,
                    record.jurisdiction,
                    calendar=calendar,
                    today=today,
                )
                logger.info(
                    "registry.rule_changed",
                    record_id=record.id,
                    old_source_version=rule.source_version,
                    new_source_version=current.source_version,
                    old_deadline=deadline.isoformat(),
                    new_deadline=computed.deadline.isoformat(),
                )
                rule, deadline, basis = current, computed.deadline, computed.basis

        verdict = evaluate(record.submission_date, deadline, today)
        return record.model_copy(
            update={
                "rule": rule,
                "computed_deadline": deadline,
                "calendar_basis": basis,
                "status": ApplicationStatus.BREACHED if verdict.breached else ApplicationStatus.PENDING,
                "overdue_days": verdict.overdue_days,
                "last_evaluated_at": now,
            }
        )

    async def reevaluate(
        self,
        record_id: str,
        now: datetime | None = None,
        *,
        owner_id: str | None = None,
    ) -> ApplicationRecord:
        """Re-run breach detection for one record.

        A stale write is retried against a fresh read up to
        ``max_retries`` times before :class:`ConcurrencyConflict` is
        raised.  Completed records are returned unchanged.
        """
        instant = now or datetime.now(UTC)
        today = self._today(instant)
        owner = await self._resolve_owner(record_id, owner_id)

        async with self._locks.hold(record_id):
            for attempt in range(1, self._max_retries + 1):
                record = await self.get(owner, record_id)
                if record.status == ApplicationStatus.COMPLETED:
                    return record
                # One snapshot pair per attempt; never mixed within a computation.
                updated = self._reevaluated(
                    record, today, instant, self._calendar.snapshot(), self._timelines.snapshot()
                )
                try:
                    version = await self._store.put(
                        KIND, owner, record_id, self._dump(updated), expected_version=record.version
                    )
                except ConcurrencyConflict:
                    logger.info("registry.reevaluate_retry", record_id=record_id, attempt=attempt)
                    continue
                if updated.status != record.status:
                    logger.info(
                        "registry.status_changed",
                        record_id=record_id,
                        old_status=record.status,
                        new_status=updated.status,
                        overdue_days=updated.overdue_days,
                    )
                return updated.model_copy(update={"version": version})

        raise ConcurrencyConflict(KIND, record_id, f"gave up after {self._max_retries} attempts")

    async def reevaluate_owner(self, owner_id: str, now: datetime | None = None) -> list[ApplicationRecord]:
        """Re-evaluate every record of ``owner_id`` independently.

        A failure on one record is logged and leaves that record as it
        was; it never prevents its siblings from being evaluated.
        """
        docs = await self._store.list_partition(KIND, owner_id)
        outcomes = await asyncio.gather(
            *(self.reevaluate(doc.key, now, owner_id=owner_id) for doc in docs),
            return_exceptions=True,
        )
        for doc, outcome in zip(docs, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "registry.reevaluate_failed",
                    record_id=doc.key,
                    error_type=type(outcome).__name__,
                )
        return await self.list_by_owner(owner_id)

    # ------------------------------------------------------------------
    # Views and lifecycle
    # ------------------------------------------------------------------

    async def list_by_owner(self, owner_id: str) -> list[ApplicationRecord]:
        """All records of ``owner_id`` ordered by urgency."""
        docs = await self._store.list_partition(KIND, owner_id)
        records = [self._load(doc.data, doc.version) for doc in docs]
        records.sort(key=_urgency_key)
        return records

    async def mark_completed(
        self, owner_id: str, record_id: str, now: datetime | None = None
    ) -> ApplicationRecord:
        instant = now or datetime.now(UTC)
        async with self._locks.hold(record_id):
            record = await self.get(owner_id, record_id)
            if record.status == ApplicationStatus.COMPLETED:
                return record
            updated = record.model_copy(
                update={
                    "status": ApplicationStatus.COMPLETED,
                    "overdue_days": 0,
                    "last_evaluated_at": instant,
                }
            )
            version = await self._store.put(
                KIND, owner_id, record_id, self._dump(updated), expected_version=record.version
            )
        logger.info("registry.record_completed", record_id=record_id)
        return updated.model_copy(update={"version": version})

    async def delete_owner(self, owner_id: str) -> int:
        removed = await self._store.delete_partition(KIND, owner_id)
        logger.info("registry.owner_deleted", records=removed)
        return removed
