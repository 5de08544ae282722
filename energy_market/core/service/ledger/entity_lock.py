import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List

from energy_market.core.logger.logger import get_logger

logger = get_logger(__name__)


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def listing_key(listing_id: str) -> str:
    return f"listing:{listing_id}"


class EntityLockManager:
    """
    Per-entity mutexes for ledger read-modify-write sequences.

    Keys are always taken in sorted order so two operations touching the same
    pair of entities cannot deadlock. Idle locks are dropped once no holder or
    waiter references them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
            self._refs[key] = 0
        self._refs[key] += 1
        return self._locks[key]

    def _release_ref(self, key: str) -> None:
        self._refs[key] -= 1
        if self._refs[key] == 0:
            del self._refs[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, keys: Iterable[str]) -> AsyncIterator[None]:
        ordered: List[str] = sorted(set(keys))
        acquired: List[str] = []
        try:
            for key in ordered:
                lock = self._get_lock(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._release_ref(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._release_ref(key)

    def stats(self) -> Dict[str, int]:
        return {"tracked_locks": len(self._locks), "held_locks": sum(1 for lock in self._locks.values() if lock.locked())}
