from __future__ import annotations

import fnmatch
import time
from typing import Any, Callable, Dict, List, Optional, Tuple


class InMemoryStore:
    """Process-local key/value store exposing the slice of the
    ``redis.asyncio.Redis`` API the cache and rate limiter use.

    Used when ``ENABLE_REDIS`` is off; contents die with the process.
    Expired keys are dropped when read and by a sweep every
    ``sweep_every`` writes.
    """

    def __init__(self, clock: Callable[[], float] = time.time, sweep_every: int = 1000):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._sweep_every = sweep_every
        self._writes = 0

    def _written(self) -> None:
        self._writes += 1
        if self._writes >= self._sweep_every:
            self._writes = 0
            self.purge_expired()

    def purge_expired(self) -> int:
        now = self._clock()
        dead = [k for k, (_, expires) in self._data.items() if expires is not None and expires <= now]
        for k in dead:
            del self._data[k]
        return len(dead)

    def __len__(self) -> int:
        return len(self._data)

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        item = self._data.get(key)
        if item is None:
            return None
        _, expires = item
        if expires is not None and expires <= self._clock():
            del self._data[key]
            return None
        return item

    async def get(self, key: str) -> Any:
        item = self._live(key)
        return item[0] if item else None

    async def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        expires = self._clock() + ex if ex else None
        self._data[key] = (value, expires)
        self._written()
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for k in keys:
            if self._live(k) is not None:
                del self._data[k]
                removed += 1
        return removed

    async def exists(self, *keys: str) -> int:
        return sum(1 for k in keys if self._live(k) is not None)

    async def ttl(self, key: str) -> int:
        item = self._live(key)
        if item is None:
            return -2
        if item[1] is None:
            return -1
        return max(0, int(item[1] - self._clock()))

    async def expire(self, key: str, seconds: int) -> bool:
        item = self._live(key)
        if item is None:
            return False
        self._data[key] = (item[0], self._clock() + seconds)
        return True

    async def incr(self, key: str) -> int:
        item = self._live(key)
        value = int(item[0]) + 1 if item else 1
        self._data[key] = (value, item[1] if item else None)
        self._written()
        return value

    async def keys(self, pattern: str = "*") -> List[str]:
        return [k for k in list(self._data) if self._live(k) is not None and fnmatch.fnmatchcase(k, pattern)]

    async def dbsize(self) -> int:
        return len(await self.keys())

    async def flushdb(self) -> bool:
        self._data.clear()
        return True

    async def info(self, section: Optional[str] = None) -> Dict[str, Any]:
        return {"used_memory_human": "n/a", "backend": "memory"}

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        self._data.clear()
