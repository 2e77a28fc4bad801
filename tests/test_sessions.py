"""Tests for the versioned state store and session persistence."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from src.models.enums import LanguageCode, WorkflowFlow, WorkflowState
from src.models.errors import ConcurrencyConflict, OwnershipViolation, SessionNotFound
from src.models.session import DeadlineStep, EligibilityStep, WorkflowSession
from src.services.sessions import SessionRepository
from src.services.store import InMemoryStateStore, KeyedLocks, StateStore


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class TestInMemoryStateStore:
    def test_satisfies_protocol(self, store: InMemoryStateStore) -> None:
        assert isinstance(store, StateStore)

    async def test_create_then_update(self, store: InMemoryStateStore) -> None:
        assert await store.put("k", "owner", "a", {"n": 1}, expected_version=0) == 1
        assert await store.put("k", "owner", "a", {"n": 2}, expected_version=1) == 2
        doc = await store.get("k", "owner", "a")
        assert doc.version == 2
        assert doc.data == {"n": 2}

    async def test_create_over_existing_conflicts(self, store: InMemoryStateStore) -> None:
        await store.put("k", "owner", "a", {}, expected_version=0)
        with pytest.raises(ConcurrencyConflict):
            await store.put("k", "owner", "a", {}, expected_version=0)

    async def test_stale_version_conflicts(self, store: InMemoryStateStore) -> None:
        await store.put("k", "owner", "a", {"n": 1}, expected_version=0)
        await store.put("k", "owner", "a", {"n": 2}, expected_version=1)
        with pytest.raises(ConcurrencyConflict):
            await store.put("k", "owner", "a", {"n": 3}, expected_version=1)
        assert (await store.get("k", "owner", "a")).data == {"n": 2}, "a stale write must not land"

    async def test_returned_data_is_a_copy(self, store: InMemoryStateStore) -> None:
        payload = {"items": [1]}
        await store.put("k", "owner", "a", payload, expected_version=0)
        payload["items"].append(2)
        doc = await store.get("k", "owner", "a")
        doc.data["items"].append(3)
        assert (await store.get("k", "owner", "a")).data == {"items": [1]}

    async def test_locate_and_partitions(self, store: InMemoryStateStore) -> None:
        await store.put("k", "owner-1", "a", {}, expected_version=0)
        await store.put("k", "owner-2", "b", {}, expected_version=0)
        assert await store.locate("k", "b") == "owner-2"
        assert await store.locate("k", "missing") is None
        assert sorted(await store.list_partitions("k")) == ["owner-1", "owner-2"]

    async def test_delete_partition(self, store: InMemoryStateStore) -> None:
        await store.put("k", "owner-1", "a", {}, expected_version=0)
        await store.put("k", "owner-1", "b", {}, expected_version=0)
        await store.put("other", "owner-1", "c", {}, expected_version=0)
        assert await store.delete_partition("k", "owner-1") == 2
        assert await store.locate("k", "a") is None
        assert await store.list_partition("k", "owner-1") == []
        assert await store.get("other", "owner-1", "c") is not None, "other kinds must be untouched"

    async def test_delete_single(self, store: InMemoryStateStore) -> None:
        await store.put("k", "owner-1", "a", {}, expected_version=0)
        assert await store.delete("k", "owner-1", "a") is True
        assert await store.delete("k", "owner-1", "a") is False


class TestKeyedLocks:
    async def test_same_key_serialised(self) -> None:
        locks = KeyedLocks()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("record"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    async def test_distinct_keys_independent(self) -> None:
        locks = KeyedLocks()
        async with locks.hold("one"):
            assert locks.is_held("one")
            assert not locks.is_held("two")
            async with locks.hold("two"):
                assert locks.is_held("two")
        assert not locks.is_held("one"), "idle locks should be released"


# ---------------------------------------------------------------------------
# Session repository
# ---------------------------------------------------------------------------


class TestSessionRepository:
    async def test_new_session_is_idle(self, sessions: SessionRepository) -> None:
        session = await sessions.create("citizen-1", LanguageCode.kn)
        assert session.state == WorkflowState.IDLE
        assert session.language_preference == LanguageCode.kn
        assert session.current_flow is None
        assert session.version == 1

    async def test_round_trip_is_exact(self, sessions: SessionRepository) -> None:
        session = await sessions.create("citizen-1")
        changed = session.model_copy(
            update={
                "state": WorkflowState.AWAITING_INPUT,
                "current_flow": WorkflowFlow.DEADLINE_CHECK,
                "current_step": DeadlineStep.SUBMISSION_DATE,
                "saved_context": {"service_identifier": "income_certificate", "jurisdiction": "IN-KA"},
            }
        )
        saved = await sessions.save(changed)
        loaded = await sessions.load(session.session_id)
        assert loaded == saved
        assert loaded.current_step is DeadlineStep.SUBMISSION_DATE

    async def test_unknown_session(self, sessions: SessionRepository) -> None:
        with pytest.raises(SessionNotFound):
            await sessions.load("does-not-exist")

    async def test_other_owner_rejected(self, sessions: SessionRepository) -> None:
        session = await sessions.create("citizen-1")
        with pytest.raises(OwnershipViolation):
            await sessions.load(session.session_id, owner_id="citizen-2")

    async def test_stale_save_rejected(self, sessions: SessionRepository) -> None:
        session = await sessions.create("citizen-1")
        await sessions.save(session.model_copy(update={"input_attempts": 1}))
        with pytest.raises(ConcurrencyConflict):
            await sessions.save(session.model_copy(update={"input_attempts": 2}))

    async def test_update_reapplies_after_conflict(self, sessions: SessionRepository) -> None:
        session = await sessions.create("citizen-1")
        calls = 0

        async def bump(current: WorkflowSession) -> WorkflowSession:
            nonlocal calls
            calls += 1
            if calls == 1:
                # Someone else writes between our load and save.
                await sessions.save(current.model_copy(update={"input_attempts": 5}))
            return current.model_copy(update={"input_attempts": current.input_attempts + 1})

        updated = await sessions.update(session.session_id, bump)
        assert calls == 2
        assert updated.input_attempts == 6, "the mutation must be re-applied to the fresh copy"

    def test_step_must_belong_to_flow(self) -> None:
        with pytest.raises(ValueError, match="does not belong"):
            WorkflowSession(
                owner_id="citizen-1",
                current_flow=WorkflowFlow.DEADLINE_CHECK,
                current_step=EligibilityStep.MATCHING,
            )

    async def test_purge_expired(self, sessions: SessionRepository) -> None:
        now = datetime(2024, 6, 1, tzinfo=UTC)
        old = await sessions.create("citizen-1")
        await sessions.save(old.model_copy(update={"last_activity_at": now - timedelta(days=91)}))
        fresh = await sessions.create("citizen-2")
        await sessions.save(fresh.model_copy(update={"last_activity_at": now - timedelta(days=3)}))

        assert await sessions.purge_expired(timedelta(days=90), now) == 1
        with pytest.raises(SessionNotFound):
            await sessions.load(old.session_id)
        assert (await sessions.load(fresh.session_id)).owner_id == "citizen-2"

    async def test_delete_owner(self, sessions: SessionRepository) -> None:
        await sessions.create("citizen-1")
        await sessions.create("citizen-1")
        kept = await sessions.create("citizen-2")
        assert await sessions.delete_owner("citizen-1") == 2
        assert await sessions.list_by_owner("citizen-1") == []
        assert (await sessions.load(kept.session_id)).session_id == kept.session_id
