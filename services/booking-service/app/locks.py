import asyncio
from contextlib import asynccontextmanager

from .config import LOCK_TIMEOUT_SECONDS
from .errors import LockTimeout


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand and dropped once nobody holds
    or waits for it. Acquisition is bounded by `timeout`.
    """

    def __init__(self, name: str, timeout: float = LOCK_TIMEOUT_SECONDS):
        self.name = name
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            await self._acquire(lock, key)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    async def _acquire(self, lock: asyncio.Lock, key: str):
        # the acquire may complete in the same loop pass we time out or get
        # cancelled in; whoever gives up must hand the lock back
        waiter = asyncio.ensure_future(lock.acquire())
        try:
            done, _ = await asyncio.wait({waiter}, timeout=self.timeout)
        except asyncio.CancelledError:
            self._abandon(lock, waiter)
            raise
        if not done:
            self._abandon(lock, waiter)
            raise LockTimeout(f"{self.name}:{key}")

    @staticmethod
    def _abandon(lock: asyncio.Lock, waiter: asyncio.Future):
        if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
            lock.release()
        else:
            waiter.cancel()

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
