"""
xpengine.engine.locks — Per-key asyncio locks
==============================================

Linearizes work addressed at the same key (e.g. one user's record) while
letting different keys proceed concurrently.  Idle locks are discarded so the
table does not grow with every user ever touched.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager


class KeyedLock:
    """Reference-counted ``asyncio.Lock`` per key.

    Usage::

        locks = KeyedLock()
        async with locks.hold(("default", guild_id, user_id)):
            ...  # read-modify-write
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
