"""
Per-entity advisory locks for sweeps.

A sweep that cannot take the lock for a subscription, invoice or delivery skips
it; whoever holds the lock is already processing that entity. Locks never block.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

import structlog
from redis.asyncio import Redis
from redis.exceptions import LockError

logger = structlog.get_logger(__name__)


class LockManager(Protocol):
    """Non-blocking advisory lock provider."""

    def hold(self, key: str) -> AbstractAsyncContextManager[bool]: ...  # pragma: no cover


class InMemoryLockManager:
    """Locks shared by coroutines of one process."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[bool]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            yield False
            return
        await lock.acquire()
        try:
            yield True
        finally:
            lock.release()
            if self._locks.get(key) is lock and not lock.locked():
                del self._locks[key]

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


class RedisLockManager:
    """Locks shared by every worker connected to the same Redis."""

    def __init__(self, client: Redis, prefix: str = "recurring:lock", timeout: float = 300) -> None:
        self._client = client
        self._prefix = prefix
        self._timeout = timeout

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[bool]:
        lock = self._client.lock(f"{self._prefix}:{key}", timeout=self._timeout, blocking=False)
        if not await lock.acquire(blocking=False):
            yield False
            return
        try:
            yield True
        finally:
            try:
                await lock.release()
            except LockError:
                # Expired while held; another worker may already own it
                logger.warning("locks.release_failed", key=key)


__all__ = ["InMemoryLockManager", "LockManager", "RedisLockManager"]
