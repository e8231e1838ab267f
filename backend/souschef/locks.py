"""
Keyed asyncio locks
One lock per key, created on demand and dropped once nobody holds or waits for it
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Hashable


class KeyedLock:
    """Mutual exclusion per key, e.g. one lookup-fetch-persist per ingredient"""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
