"""Per-key asyncio locks (one mutual-exclusion boundary per user id)."""

from __future__ import annotations

import asyncio
import weakref


class KeyedLocks:
    """Hands out one ``asyncio.Lock`` per key.

    Locks are held weakly: an entry disappears once no coroutine is
    holding or waiting on it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)
