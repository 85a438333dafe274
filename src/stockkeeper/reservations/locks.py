"""
Per-key asyncio locks.

Serializes every change to one product's held total inside a process;
different products never wait on each other.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Iterable


class KeyedLocks:
    """
    Registry of asyncio.Lock objects created on demand per key.

    Usage:
        locks = KeyedLocks()
        async with locks.acquire_many(["sku-2", "sku-1"]):
            ...  # both products held, taken in sorted order
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def acquire(self, key: str):
        async with self.acquire_many([key]):
            yield

    @asynccontextmanager
    async def acquire_many(self, keys: Iterable[str]):
        """Hold the locks of all keys; sorted order rules out deadlock."""
        ordered = sorted(set(keys))
        for key in ordered:
            self._users[key] = self._users.get(key, 0) + 1
            self._locks.setdefault(key, asyncio.Lock())

        acquired = []
        try:
            for key in ordered:
                await self._locks[key].acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
            for key in ordered:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]
