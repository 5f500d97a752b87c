"""Named exclusive locks shared by the API fleet and the batch jobs.

Prefer ``DistributedLock.hold()``: it releases on every exit, including
cancellation and exceptions.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import hashlib
import logging
import time

import asyncpg  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

INGESTION_LOCK_KEY = 1
BACKFILL_LOCK_KEY = 2
_INT64_MAX = 2**63 - 1


class LockNotAcquiredError(Exception):
    """Raised by ``hold()`` when the lock is held elsewhere."""

    def __init__(self, key: int) -> None:
        super().__init__(f"lock {key} is held by another session")
        self.key = key


def description_lock_key(notice_id: str) -> int:
    """Map a record identifier to a non-negative signed 64-bit lock key."""
    digest = hashlib.sha256(notice_id.encode("utf-8")).digest()
    key = abs(int.from_bytes(digest[:8], "big", signed=True))
    return min(key, _INT64_MAX)


class DistributedLock:
    def __init__(self, key: int) -> None:
        self.key = key

    async def try_acquire(self) -> bool:
        raise NotImplementedError

    async def release(self) -> None:
        raise NotImplementedError

    async def acquire(self, *, timeout: float, poll_interval: float = 0.1) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            if await self.try_acquire():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(poll_interval, remaining))

    @asynccontextmanager
    async def hold(self, *, timeout: float | None = None) -> AsyncIterator[DistributedLock]:
        if timeout is None:
            acquired = await self.try_acquire()
        else:
            acquired = await self.acquire(timeout=timeout)
        if not acquired:
            raise LockNotAcquiredError(self.key)
        try:
            yield self
        finally:
            await self.release()


class InMemoryLockRegistry:
    """Process-local lock table; stands in for the database in tests and local runs."""

    def __init__(self) -> None:
        self._held: set[int] = set()

    def lock(self, key: int) -> InMemoryLock:
        return InMemoryLock(self, key)

    def is_held(self, key: int) -> bool:
        return key in self._held


class InMemoryLock(DistributedLock):
    def __init__(self, registry: InMemoryLockRegistry, key: int) -> None:
        super().__init__(key)
        self._registry = registry
        self._owned = False

    async def try_acquire(self) -> bool:
        if self._owned or self.key in self._registry._held:
            return False
        self._registry._held.add(self.key)
        self._owned = True
        return True

    async def release(self) -> None:
        if not self._owned:
            return
        self._registry._held.discard(self.key)
        self._owned = False


class PostgresAdvisoryLock(DistributedLock):
    """Session-level ``pg_advisory_lock`` pinned to one pooled connection.

    Advisory locks belong to the session that took them, so the connection is
    held until release and unlocked on that same connection.
    """

    def __init__(self, pool: asyncpg.Pool, key: int) -> None:
        super().__init__(key)
        self._pool = pool
        self._conn: asyncpg.Connection | None = None

    async def try_acquire(self) -> bool:
        if self._conn is not None:
            return False
        conn = await self._pool.acquire()
        try:
            acquired = await conn.fetchval("select pg_try_advisory_lock($1)", self.key)
        except BaseException:
            await self._pool.release(conn)
            raise
        if not acquired:
            await self._pool.release(conn)
            return False
        self._conn = conn
        return True

    async def release(self) -> None:
        conn = self._conn
        if conn is None:
            return
        self._conn = None
        try:
            unlocked = await conn.fetchval("select pg_advisory_unlock($1)", self.key)
            if not unlocked:
                logger.warning("advisory lock was not held at release key=%s", self.key)
        finally:
            await self._pool.release(conn)
