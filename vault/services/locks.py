import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager


class KeyedLock:
    """
    Реестр asyncio.Lock по ключу (счёт, аллокация).
    Разные ключи не мешают друг другу; несколько ключей берутся в отсортированном порядке.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: dict[str, int] = defaultdict(int)

    def locked(self, key: str) -> bool:
        return key in self._locks and self._locks[key].locked()

    @asynccontextmanager
    async def hold(self, *keys: str):
        ordered = sorted(set(keys))
        acquired = []
        for key in ordered:
            self._waiters[key] += 1
        try:
            for key in ordered:
                await self._locks[key].acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
            for key in ordered:
                self._waiters[key] -= 1
                # чистим, чтобы реестр не рос бесконечно
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    lock = self._locks.get(key)
                    if lock is not None and not lock.locked():
                        del self._locks[key]


account_locks = KeyedLock()
allocation_locks = KeyedLock()
