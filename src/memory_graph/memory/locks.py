"""Owner-level serialization for the creation pipeline.

By default nothing is serialized: two concurrent submissions that both
contradict the same earlier memory each get their own ``contradicts`` edge.
Deployments that want each submission to see the previous one during
relationship resolution can hold a per-owner lock across resolution and
persistence, either inside one process (:class:`LocalOwnerLock`) or across
workers through Redis (:class:`RedisOwnerLock`).
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Dict, Protocol

import redis.asyncio as aioredis
from redis.exceptions import LockError, RedisError

from memory_graph.errors import PersistenceError

logger = logging.getLogger(__name__)


class OwnerLock(Protocol):
    def hold(self, user_id: str) -> AbstractAsyncContextManager[None]:
        ...

    async def close(self) -> None:
        ...


class NullOwnerLock:
    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        yield

    async def close(self) -> None:
        return None


class LocalOwnerLock:
    """One :class:`asyncio.Lock` per owner, released locks are dropped."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._waiters[user_id] = self._waiters.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[user_id] -= 1
            if self._waiters[user_id] == 0:
                del self._waiters[user_id]
                self._locks.pop(user_id, None)

    async def close(self) -> None:
        self._locks.clear()
        self._waiters.clear()


class RedisOwnerLock:
    def __init__(self, url: str, ttl_sec: float = 30.0, wait_sec: float | None = None,
                 prefix: str = "memgraph:owner-lock") -> None:
        self._client = aioredis.Redis.from_url(url)
        self._ttl_sec = ttl_sec
        self._wait_sec = wait_sec if wait_sec is not None else ttl_sec
        self._prefix = prefix

    def _key(self, user_id: str) -> str:
        return f"{self._prefix}:{user_id}"

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._client.lock(self._key(user_id), timeout=self._ttl_sec, blocking_timeout=self._wait_sec)
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            raise PersistenceError(f"Owner lock unavailable: {exc}") from exc
        if not acquired:
            raise PersistenceError(f"Timed out waiting for the owner lock of {user_id}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("Owner lock for %s expired before release", user_id)

    async def close(self) -> None:
        await self._client.aclose()


def build_owner_lock(mode: str, redis_url: str = "", ttl_sec: float = 30.0) -> OwnerLock:
    if mode == "local":
        return LocalOwnerLock()
    if mode == "redis":
        return RedisOwnerLock(redis_url, ttl_sec=ttl_sec)
    return NullOwnerLock()
