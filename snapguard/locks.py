"""
Per-key serialization for the upload commit.

Requests that share a key run their critical section one at a time; requests
with different keys never wait on each other.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable, Tuple


class KeyedLock:
    """
    A family of asyncio locks indexed by key.

    Locks are created on demand and dropped once no coroutine holds or waits
    for them, so the table only grows with in-flight keys.

    Example:
        >>> locks = KeyedLock()
        >>> async with locks.hold((image_hash, identity)):
        ...     ...
    """

    def __init__(self):
        # key -> (lock, number of holders and waiters)
        self._locks: Dict[Hashable, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    def locked(self, key: Hashable) -> bool:
        entry = self._locks.get(key)
        return entry is not None and entry[0].locked()

    def __len__(self) -> int:
        return len(self._locks)
