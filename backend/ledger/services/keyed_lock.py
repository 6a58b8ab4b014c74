"""In-process keyed asyncio locks.

Serializes webhook handling that touches the same user or external
subscription within one worker. Cross-worker safety comes from the
version compare-and-swap in subscription_service.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional


class KeyedLock:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def _acquire_entry(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        return lock

    def _release_entry(self, key: str) -> None:
        remaining = self._waiters.get(key, 1) - 1
        if remaining <= 0:
            self._waiters.pop(key, None)
            self._locks.pop(key, None)
        else:
            self._waiters[key] = remaining

    @asynccontextmanager
    async def hold(self, *keys: Optional[str]):
        """Hold every given key. Keys are taken in sorted order to avoid deadlock."""
        ordered = sorted({k for k in keys if k})
        acquired = []
        try:
            for key in ordered:
                lock = self._acquire_entry(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._release_entry(key)
                    raise
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._release_entry(key)

    def __len__(self) -> int:
        return len(self._locks)
