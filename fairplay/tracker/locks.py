"""
Per-key asyncio mutual exclusion.

Requests advance independently; only transitions of the *same* request id are
serialized. Entries are dropped once no task holds or waits on them.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional


class KeyedLocks:
    def __init__(self) -> None:
        self._locks: Dict[str, List] = {}  # key -> [lock, users]

    @asynccontextmanager
    async def hold(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        slot = self._locks.get(key)
        if slot is None:
            slot = self._locks[key] = [asyncio.Lock(), 0]
        slot[1] += 1
        try:
            if timeout is None:
                await slot[0].acquire()
            else:
                await asyncio.wait_for(slot[0].acquire(), timeout=timeout)
            try:
                yield
            finally:
                slot[0].release()
        finally:
            slot[1] -= 1
            if slot[1] == 0 and self._locks.get(key) is slot:
                del self._locks[key]

    def locked(self, key: str) -> bool:
        slot = self._locks.get(key)
        return bool(slot and slot[0].locked())

    def __len__(self) -> int:
        return len(self._locks)


__all__ = ["KeyedLocks"]
