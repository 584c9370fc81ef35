"""Named locks used to serialize automatic charges per recurring token."""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator

import redis.asyncio as redis


class LockProvider(ABC):
    """Hands out named mutual-exclusion locks."""

    @abstractmethod
    def lock(self, key: str) -> AsyncContextManager[None]:
        """Return an async context manager holding the lock for ``key``."""


class InProcessLockProvider(LockProvider):
    """asyncio locks keyed by name; valid within one event loop.

    A key's lock is dropped once nobody holds or waits for it.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class RedisLockProvider(LockProvider):
    """Distributed locks for multi-worker deployments."""

    def __init__(self, client: redis.Redis, timeout: int = 120, prefix: str = "paysub:lock:"):
        self.client = client
        self.timeout = timeout
        self.prefix = prefix

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        async with self.client.lock(
            f"{self.prefix}{key}",
            timeout=self.timeout,
            blocking_timeout=self.timeout,
        ):
            yield
