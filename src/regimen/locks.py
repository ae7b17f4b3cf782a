"""Per-key exclusive locks for schedule computation.

Generation is read-then-write, so two overlapping calls for the same
``(patient_id, date)`` could both see a key as missing and both insert it.
Every call for one key therefore runs under the same process-local
``asyncio.Lock``. Locks are held in a ``WeakValueDictionary`` so idle keys
do not accumulate.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date


def schedule_key(patient_id: str, day: date) -> str:
    return f"{patient_id}:{day.isoformat()}"


class KeyedLocks:
    """Registry of one ``asyncio.Lock`` per string key."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._guard = asyncio.Lock()

    async def get(self, key: str) -> asyncio.Lock:
        """Return the lock for *key*, creating it on first use."""
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for *key*; concurrent holders wait for the current one to finish."""
        lock = await self.get(key)
        async with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)
