"""Per-subscription mutual exclusion for read-evaluate-write sequences.

Every ingestor that resolves to a subscription takes its lock before reading
the row, deciding and writing. The optimistic `state_version` guard in the
store still catches writers that bypass the lock (other replicas when the
local backend is used).
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis

from paygate.common.config import settings


class LocalSubscriptionLocks:
    """In-process `asyncio.Lock` per subscription id, dropped when idle."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, subscription_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(subscription_id, asyncio.Lock())
        self._waiters[subscription_id] = self._waiters.get(subscription_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[subscription_id] -= 1
            if self._waiters[subscription_id] == 0:
                del self._waiters[subscription_id]
                self._locks.pop(subscription_id, None)


class RedisSubscriptionLocks:
    """Redis-backed lock so several gateway replicas serialize per subscription."""

    def __init__(self, redis_url: str, timeout_seconds: int = 30) -> None:
        self.rdb = aioredis.Redis.from_url(redis_url)
        self.timeout_seconds = timeout_seconds

    @asynccontextmanager
    async def hold(self, subscription_id: str) -> AsyncIterator[None]:
        lock = self.rdb.lock(
            f"subscription-lock:{subscription_id}",
            timeout=self.timeout_seconds,
            blocking_timeout=self.timeout_seconds,
        )
        async with lock:
            yield

    async def close(self) -> None:
        await self.rdb.aclose()


def build_locks():
    """Pick the lock backend configured by `LOCK_BACKEND`."""

    if settings.lock_backend == "redis":
        return RedisSubscriptionLocks(settings.redis_url, settings.lock_timeout_seconds)
    if settings.lock_backend != "local":
        raise ValueError(f"unknown lock backend: {settings.lock_backend}")
    return LocalSubscriptionLocks()
