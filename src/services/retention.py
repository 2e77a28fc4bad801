"""Data retention and owner-data deletion.

Two obligations live here:

Retention
    A session with no activity for ``session_retention_days`` (90) is
    purged automatically.

Deletion on request
    :meth:`OwnerDataEraser.erase` removes every application, land parcel
    and session of an owner.  The request is recorded *before* anything
    is deleted, so a crash or store failure half-way leaves a pending
    request that the sweeper retries until it completes.  Each request
    must complete within ``deletion_sla_hours`` (24) of being made.

Development mode runs :class:`RetentionSweeper` as an ``asyncio``
background task in the API process.  In production it can equally be
triggered externally through :meth:`RetentionSweeper.run_once`.
"""

from __future__ import annotations

import asyncio
import hashlib
from datetime import UTC, datetime, timedelta
from typing import Literal
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field

from src.models.errors import ConcurrencyConflict
from src.services.land_records import LandRecordStore
from src.services.registry import ApplicationRegistry
from src.services.sessions import SessionRepository
from src.services.store import StateStore

logger = structlog.get_logger(__name__)

KIND = "deletion_request"
_PARTITION = "_deletions"


def owner_reference(owner_id: str) -> str:
    """Stable, non-reversible reference kept after the owner is erased."""
    return hashlib.sha256(owner_id.encode()).hexdigest()[:16]


class DeletionReceipt(BaseModel):
    request_id: str = Field(default_factory=lambda: f"DEL-{uuid4().hex[:12].upper()}")
    owner_ref: str
    # Held only while the request is pending; cleared on completion.
    owner_id: str | None = None
    status: Literal["pending", "completed"] = "pending"
    requested_at: datetime
    due_by: datetime
    completed_at: datetime | None = None
    removed: dict[str, int] = Field(default_factory=dict)
    attempts: int = 0
    version: int = 0

    @property
    def within_sla(self) -> bool:
        finished = self.completed_at
        return finished is not None and finished <= self.due_by


class SweepResult(BaseModel):
    purged_sessions: int = 0
    deletions_completed: int = 0
    deletions_pending: int = 0
    ran_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


# ---------------------------------------------------------------------------
# Eraser
# ---------------------------------------------------------------------------


class OwnerDataEraser:
    """Deletes all data held for an owner and keeps a receipt."""

    __slots__ = ("_land", "_registry", "_sessions", "_sla", "_store")

    def __init__(
        self,
        store: StateStore,
        registry: ApplicationRegistry,
        land: LandRecordStore,
        sessions: SessionRepository,
        *,
        sla_hours: int = 24,
    ) -> None:
        self._store = store
        self._registry = registry
        self._land = land
        self._sessions = sessions
        self._sla = timedelta(hours=sla_hours)

    async def _save(self, receipt: DeletionReceipt) -> DeletionReceipt:
        version = await self._store.put(
            KIND,
            _PARTITION,
            receipt.request_id,
            receipt.model_dump(mode="json", exclude={"version"}),
            expected_version=receipt.version,
        )
        return receipt.model_copy(update={"version": version})

    async def _attempt(self, receipt: DeletionReceipt, now: datetime) -> DeletionReceipt:
        if receipt.owner_id is None:
            raise RuntimeError(f"deletion request {receipt.request_id} has no owner to erase")
        attempt = receipt.model_copy(update={"attempts": receipt.attempts + 1})
        try:
            removed = {
                "applications": await self._registry.delete_owner(receipt.owner_id),
                "land_parcels": await self._land.delete_owner(receipt.owner_id),
                "sessions": await self._sessions.delete_owner(receipt.owner_id),
            }
        except Exception:
            logger.error(
                "retention.deletion_failed",
                request_id=receipt.request_id,
                attempts=attempt.attempts,
                exc_info=True,
            )
            return await self._save(attempt)

        done = attempt.model_copy(
            update={
                "status": "completed",
                "owner_id": None,
                "completed_at": now,
                "removed": removed,
            }
        )
        saved = await self._save(done)
        logger.info(
            "retention.deletion_completed",
            request_id=receipt.request_id,
            owner_ref=receipt.owner_ref,
            within_sla=saved.within_sla,
            **removed,
        )
        return saved

    async def erase(self, owner_id: str, now: datetime | None = None) -> DeletionReceipt:
        """Delete everything held for ``owner_id``.

        Returns a completed receipt, or a pending one if the store failed;
        pending requests are retried by :meth:`complete_pending`.
        """
        instant = now or datetime.now(UTC)
        receipt = await self._save(
            DeletionReceipt(
                owner_ref=owner_reference(owner_id),
                owner_id=owner_id,
                requested_at=instant,
                due_by=instant + self._sla,
            )
        )
        logger.info("retention.deletion_requested", request_id=receipt.request_id, owner_ref=receipt.owner_ref)
        return await self._attempt(receipt, instant)

    async def get(self, request_id: str) -> DeletionReceipt | None:
        doc = await self._store.get(KIND, _PARTITION, request_id)
        if doc is None:
            return None
        return DeletionReceipt.model_validate({**doc.data, "version": doc.version})

    async def pending(self) -> list[DeletionReceipt]:
        docs = await self._store.list_partition(KIND, _PARTITION)
        receipts = [DeletionReceipt.model_validate({**d.data, "version": d.version}) for d in docs]
        return [r for r in receipts if r.status == "pending"]

    async def complete_pending(self, now: datetime | None = None) -> tuple[int, int]:
        """Retry pending requests; returns ``(completed, still_pending)``."""
        instant = now or datetime.now(UTC)
        completed = still_pending = 0
        for receipt in await self.pending():
            if instant > receipt.due_by:
                logger.error("retention.deletion_sla_missed", request_id=receipt.request_id)
            try:
                result = await self._attempt(receipt, instant)
            except ConcurrencyConflict:
                # Another worker is handling this request.
                still_pending += 1
                continue
            if result.status == "completed":
                completed += 1
            else:
                still_pending += 1
        return completed, still_pending


# ---------------------------------------------------------------------------
# Background sweeper
# ---------------------------------------------------------------------------


class RetentionSweeper:
    """Periodic session purge and deletion-request completion.

    Parameters
    ----------
    sessions:
        Session repository to purge.
    eraser:
        Owner data eraser whose pending requests are retried.
    settings:
        Application settings (``session_retention_days``,
        ``retention_sweep_interval_seconds``, ``enable_retention_sweeper``).
    """

    def __init__(
        self,
        sessions: SessionRepository,
        eraser: OwnerDataEraser,
        settings: object,
    ) -> None:
        self._sessions = sessions
        self._eraser = eraser
        self._settings = settings
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._running = False
        self._last_result: SweepResult | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_result(self) -> SweepResult | None:
        return self._last_result

    async def run_once(self, now: datetime | None = None) -> SweepResult:
        instant = now or datetime.now(UTC)
        retention = timedelta(days=getattr(self._settings, "session_retention_days", 90))
        purged = await self._sessions.purge_expired(retention, instant)
        completed, pending = await self._eraser.complete_pending(instant)
        result = SweepResult(
            purged_sessions=purged,
            deletions_completed=completed,
            deletions_pending=pending,
            ran_at=instant,
        )
        self._last_result = result
        logger.info("retention.sweep_complete", **result.model_dump(exclude={"ran_at"}))
        return result

    async def _loop(self) -> None:
        interval = getattr(self._settings, "retention_sweep_interval_seconds", 3600)
        self._running = True
        logger.info("retention.background_started", interval_seconds=interval)
        try:
            while self._running:
                try:
                    await self.run_once()
                except Exception:
                    logger.error("retention.sweep_failed", exc_info=True)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("retention.background_cancelled")
        finally:
            self._running = False
            logger.info("retention.background_stopped")

    def start(self) -> None:
        if not getattr(self._settings, "enable_retention_sweeper", True):
            logger.info("retention.sweeper_disabled")
            return
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        logger.info("retention.stopping")
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=10.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            self._task = None
