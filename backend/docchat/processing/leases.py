"""
Per-key asyncio locks with reference-counted cleanup.

Two usages:
  - lock(key)       wait for exclusive access (conversation message appends)
  - try_lock(key)   fail fast if held (single-flight document processing)

Entries are dropped once no task holds or waits on the key, so the registry
does not grow with the number of ids ever seen.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager

from docchat.core.errors import ConflictError


class KeyedLocks:

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def _checkout(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: Hashable) -> None:
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
        else:
            del self._users[key]
            del self._locks[key]

    @asynccontextmanager
    async def lock(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._checkout(key)
        try:
            async with lock:
                yield
        finally:
            self._checkin(key)

    @asynccontextmanager
    async def try_lock(self, key: Hashable, message: str = "Resource is busy") -> AsyncIterator[None]:
        """Acquire without waiting; raise ConflictError if another task holds *key*."""
        if self.is_locked(key):
            raise ConflictError(message)
        lock = self._checkout(key)
        try:
            # Uncontended: no await between the check and this acquire
            await lock.acquire()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)
