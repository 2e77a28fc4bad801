"""Versioned state store with Redis primary and in-memory fallback.

Every document is addressed by ``(kind, partition, key)`` where the
partition is the owning identifier (citizen id), and carries an integer
version that increases by one on each successful write.  Writers must
present the version they last read; a mismatch raises
:class:`ConcurrencyConflict`.  There is no last-writer-wins path.

``expected_version=0`` means "create": the key must not exist yet.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import orjson
import structlog

from src.models.errors import ConcurrencyConflict

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class VersionedDocument:
    kind: str
    partition: str
    key: str
    version: int
    data: dict[str, Any]


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class StateStore(Protocol):
    """Async persistence interface required by the core."""

    async def get(self, kind: str, partition: str, key: str) -> VersionedDocument | None: ...

    async def put(
        self,
        kind: str,
        partition: str,
        key: str,
        data: dict[str, Any],
        *,
        expected_version: int,
    ) -> int: ...

    async def locate(self, kind: str, key: str) -> str | None: ...

    async def list_partition(self, kind: str, partition: str) -> list[VersionedDocument]: ...

    async def list_partitions(self, kind: str) -> list[str]: ...

    async def delete(self, kind: str, partition: str, key: str) -> bool: ...

    async def delete_partition(self, kind: str, partition: str) -> int: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryStateStore:
    """Dict-backed store for tests and single-process development.

    Values are stored as serialised bytes so callers can never share a
    mutable object with the store.
    """

    __slots__ = ("_data", "_lock", "_locator")

    def __init__(self) -> None:
        self._data: dict[tuple[str, str], dict[str, tuple[int, bytes]]] = defaultdict(dict)
        self._locator: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def get(self, kind: str, partition: str, key: str) -> VersionedDocument | None:
        async with self._lock:
            entry = self._data.get((kind, partition), {}).get(key)
        if entry is None:
            return None
        version, raw = entry
        return VersionedDocument(kind, partition, key, version, orjson.loads(raw))

    async def put(
        self,
        kind: str,
        partition: str,
        key: str,
        data: dict[str, Any],
        *,
        expected_version: int,
    ) -> int:
        raw = orjson.dumps(data)
        async with self._lock:
            bucket = self._data[(kind, partition)]
            current = bucket.get(key)
            current_version = current[0] if current is not None else 0
            if current_version != expected_version:
                logger.info(
                    "store.conflict",
                    kind=kind,
                    key=key,
                    expected=expected_version,
                    actual=current_version,
                )
                raise ConcurrencyConflict(kind, key, f"expected v{expected_version}, found v{current_version}")
            new_version = current_version + 1
            bucket[key] = (new_version, raw)
            self._locator[(kind, key)] = partition
        return new_version

    async def locate(self, kind: str, key: str) -> str | None:
        async with self._lock:
            return self._locator.get((kind, key))

    async def list_partition(self, kind: str, partition: str) -> list[VersionedDocument]:
        async with self._lock:
            items = list(self._data.get((kind, partition), {}).items())
        return [
            VersionedDocument(kind, partition, key, version, orjson.loads(raw))
            for key, (version, raw) in items
        ]

    async def list_partitions(self, kind: str) -> list[str]:
        async with self._lock:
            return [p for (k, p), bucket in self._data.items() if k == kind and bucket]

    async def delete(self, kind: str, partition: str, key: str) -> bool:
        async with self._lock:
            removed = self._data.get((kind, partition), {}).pop(key, None)
            self._locator.pop((kind, key), None)
        return removed is not None

    async def delete_partition(self, kind: str, partition: str) -> int:
        async with self._lock:
            bucket = self._data.pop((kind, partition), {})
            for key in bucket:
                self._locator.pop((kind, key), None)
        return len(bucket)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisStateStore:
    """Redis-backed store using WATCH/MULTI compare-and-set.

    Layout (``ns`` is the configured namespace)::

        {ns}{kind}:{partition}:{key}   hash  {v: version, d: json}
        {ns}{kind}:{partition}:_keys   set   keys in the partition
        {ns}{kind}:_partitions         set   partitions holding the kind
        {ns}{kind}:_loc:{key}          str   partition owning the key
    """

    __slots__ = ("_namespace", "_pool", "_redis")

    def __init__(self, url: str, *, namespace: str = "samaysetu:", max_connections: int = 20) -> None:
        import redis.asyncio as aioredis

        self._namespace = namespace
        self._pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )
        self._redis = aioredis.Redis(connection_pool=self._pool)

    def _doc_key(self, kind: str, partition: str, key: str) -> str:
        return f"{self._namespace}{kind}:{partition}:{key}"

    def _keys_key(self, kind: str, partition: str) -> str:
        return f"{self._namespace}{kind}:{partition}:_keys"

    def _partitions_key(self, kind: str) -> str:
        return f"{self._namespace}{kind}:_partitions"

    def _locator_key(self, kind: str, key: str) -> str:
        return f"{self._namespace}{kind}:_loc:{key}"

    async def get(self, kind: str, partition: str, key: str) -> VersionedDocument | None:
        fields = await self._redis.hgetall(self._doc_key(kind, partition, key))
        if not fields:
            return None
        return VersionedDocument(kind, partition, key, int(fields[b"v"]), orjson.loads(fields[b"d"]))

    async def put(
        self,
        kind: str,
        partition: str,
        key: str,
        data: dict[str, Any],
        *,
        expected_version: int,
    ) -> int:
        from redis.exceptions import WatchError

        doc_key = self._doc_key(kind, partition, key)
        raw = orjson.dumps(data)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(doc_key)
                current = await pipe.hget(doc_key, "v")
                current_version = int(current) if current is not None else 0
                if current_version != expected_version:
                    await pipe.unwatch()
                    raise ConcurrencyConflict(
                        kind, key, f"expected v{expected_version}, found v{current_version}"
                    )
                new_version = current_version + 1
                pipe.multi()
                pipe.hset(doc_key, mapping={"v": new_version, "d": raw})
                pipe.sadd(self._keys_key(kind, partition), key)
                pipe.sadd(self._partitions_key(kind), partition)
                pipe.set(self._locator_key(kind, key), partition)
                await pipe.execute()
            except WatchError:
                logger.info("store.conflict", kind=kind, key=key, backend="redis")
                raise ConcurrencyConflict(kind, key, "modified during write") from None
        return new_version

    async def locate(self, kind: str, key: str) -> str | None:
        raw = await self._redis.get(self._locator_key(kind, key))
        return raw.decode() if raw is not None else None

    async def list_partition(self, kind: str, partition: str) -> list[VersionedDocument]:
        keys = await self._redis.smembers(self._keys_key(kind, partition))
        documents: list[VersionedDocument] = []
        for raw_key in sorted(keys):
            doc = await self.get(kind, partition, raw_key.decode())
            if doc is not None:
                documents.append(doc)
        return documents

    async def list_partitions(self, kind: str) -> list[str]:
        members = await self._redis.smembers(self._partitions_key(kind))
        return sorted(m.decode() for m in members)

    async def delete(self, kind: str, partition: str, key: str) -> bool:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._doc_key(kind, partition, key))
            pipe.srem(self._keys_key(kind, partition), key)
            pipe.delete(self._locator_key(kind, key))
            removed, _, _ = await pipe.execute()
        return bool(removed)

    async def delete_partition(self, kind: str, partition: str) -> int:
        keys = [k.decode() for k in await self._redis.smembers(self._keys_key(kind, partition))]
        async with self._redis.pipeline(transaction=True) as pipe:
            for key in keys:
                pipe.delete(self._doc_key(kind, partition, key))
                pipe.delete(self._locator_key(kind, key))
            pipe.delete(self._keys_key(kind, partition))
            pipe.srem(self._partitions_key(kind), partition)
            await pipe.execute()
        return len(keys)

    # -- Lifecycle -------------------------------------------------------------

    async def close(self) -> None:
        await self._redis.aclose()
        await self._pool.aclose()

    async def ping(self) -> bool:
        """Return *True* if the Redis server is reachable."""
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False


async def build_state_store(redis_url: str | None, *, namespace: str = "samaysetu:") -> StateStore:
    """Return a Redis store when reachable, else the in-memory store."""
    if redis_url:
        try:
            store = RedisStateStore(redis_url, namespace=namespace)
        except Exception:
            logger.warning("store.redis_init_failed", exc_info=True)
        else:
            if await store.ping():
                logger.info("store.redis_connected")
                return store
            logger.warning("store.redis_unavailable_using_inmemory")
            with contextlib.suppress(Exception):
                await store.close()
    return InMemoryStateStore()


# ---------------------------------------------------------------------------
# Per-identifier serialisation
# ---------------------------------------------------------------------------


class KeyedLocks:
    """One :class:`asyncio.Lock` per identifier.

    Mutations on the same identifier are serialised; distinct identifiers
    never wait on each other.  Idle locks are dropped once released.
    """

    __slots__ = ("_locks", "_waiters")

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = defaultdict(int)

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
