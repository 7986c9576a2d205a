import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator


class UserLocks:
    """Per-user mutual exclusion for local transaction segments.

    Locks are created on demand and dropped once no coroutine holds or waits
    on them, so the registry does not grow with the user table.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, user_id: int) -> AsyncIterator[None]:
        lock = self._lock_for(user_id)
        async with lock:
            yield

    def is_locked(self, user_id: int) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()
