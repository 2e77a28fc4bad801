"""Workflow session persistence.

Sessions are stored under the owner's partition and addressed by
``session_id`` through the store's locator.  Every save presents the
version that was loaded; a stale save raises :class:`ConcurrencyConflict`
and :meth:`SessionRepository.update` re-reads and re-applies the change
a bounded number of times.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import structlog

from src.models.enums import LanguageCode
from src.models.errors import ConcurrencyConflict, OwnershipViolation, SessionNotFound
from src.models.session import WorkflowSession
from src.services.store import StateStore

logger = structlog.get_logger(__name__)

KIND = "session"

SessionMutation = Callable[[WorkflowSession], Awaitable[WorkflowSession]]


class SessionRepository:
    __slots__ = ("_max_retries", "_store")

    def __init__(self, store: StateStore, *, max_retries: int = 3) -> None:
        self._store = store
        self._max_retries = max_retries

    @staticmethod
    def _dump(session: WorkflowSession) -> dict:
        return session.model_dump(mode="json", exclude={"version"})

    async def create(self, owner_id: str, language_preference: LanguageCode = LanguageCode.hi) -> WorkflowSession:
        session = WorkflowSession(owner_id=owner_id, language_preference=language_preference)
        version = await self._store.put(
            KIND, owner_id, session.session_id, self._dump(session), expected_version=0
        )
        logger.info("session.created", session_id=session.session_id, language=language_preference)
        return session.model_copy(update={"version": version})

    async def load(self, session_id: str, *, owner_id: str | None = None) -> WorkflowSession:
        """Reconstruct a session exactly as it was last saved."""
        partition = await self._store.locate(KIND, session_id)
        if partition is None:
            raise SessionNotFound(session_id)
        if owner_id is not None and partition != owner_id:
            raise OwnershipViolation(KIND, session_id)
        doc = await self._store.get(KIND, partition, session_id)
        if doc is None:
            raise SessionNotFound(session_id)
        return WorkflowSession.model_validate({**doc.data, "version": doc.version})

    async def save(self, session: WorkflowSession) -> WorkflowSession:
        """Persist ``session`` if nobody has written since it was loaded."""
        version = await self._store.put(
            KIND,
            session.owner_id,
            session.session_id,
            self._dump(session),
            expected_version=session.version,
        )
        return session.model_copy(update={"version": version})

    async def update(self, session_id: str, mutate: SessionMutation) -> WorkflowSession:
        """Load, apply ``mutate`` and save, retrying on stale writes.

        ``mutate`` must be safe to run more than once: on a conflict it is
        re-applied to a freshly loaded session.
        """
        for attempt in range(1, self._max_retries + 1):
            session = await self.load(session_id)
            changed = await mutate(session)
            try:
                return await self.save(changed)
            except ConcurrencyConflict:
                logger.info("session.update_retry", session_id=session_id, attempt=attempt)
        raise ConcurrencyConflict(KIND, session_id, f"gave up after {self._max_retries} attempts")

    async def list_by_owner(self, owner_id: str) -> list[WorkflowSession]:
        docs = await self._store.list_partition(KIND, owner_id)
        return [WorkflowSession.model_validate({**d.data, "version": d.version}) for d in docs]

    async def purge_expired(self, retention: timedelta, now: datetime | None = None) -> int:
        """Delete sessions with no activity for ``retention`` or longer."""
        cutoff = (now or datetime.now(UTC)) - retention
        purged = 0
        for owner_id in await self._store.list_partitions(KIND):
            for session in await self.list_by_owner(owner_id):
                if session.last_activity_at <= cutoff:
                    if await self._store.delete(KIND, owner_id, session.session_id):
                        purged += 1
        if purged:
            logger.info("session.purged", sessions=purged, cutoff=cutoff.isoformat())
        return purged

    async def delete_owner(self, owner_id: str) -> int:
        return await self._store.delete_partition(KIND, owner_id)
