from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from pydantic import BaseModel

from bityield.models import CacheEntry, ComponentHealth

logger = logging.getLogger(__name__)

ALL_OPPORTUNITIES_KEY = "yield:all-opportunities"


def protocol_key(protocol: str) -> str:
    return f"yield:protocol:{protocol}"


def _encode(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    return value


class Cache:
    """Cache-aside over a redis.asyncio-compatible store.

    Every value is written as ``{"data", "cached_at", "expires_at"}`` with a
    store-level TTL. An entry older than ``stale_threshold`` seconds is stale
    but still served until the TTL evicts it.

    Store failures never escape: reads degrade to a miss, writes to False.
    """

    def __init__(self, store: Any, default_ttl: int = 1800, stale_threshold: int = 600, clock: Callable[[], float] = time.time):
        self.r = store
        self.default_ttl = default_ttl
        self.stale_threshold = stale_threshold
        self._clock = clock
        self._background: Set[asyncio.Task] = set()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _read(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self.r.get(key)
        if raw is None:
            return None
        obj = json.loads(raw)
        if isinstance(obj, dict) and "data" in obj and "cached_at" in obj:
            return obj
        # Written by something else; serve it but treat it as stale
        return {"data": obj, "cached_at": 0, "expires_at": self._now_ms()}

    async def get(self, key: str) -> Any:
        try:
            env = await self._read(key)
        except Exception as e:
            logger.error(f"Cache get error key={key}: {e}")
            return None
        if env is None:
            logger.debug(f"Cache miss key={key}")
            return None
        logger.debug(f"Cache hit key={key}")
        return env["data"]

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        try:
            env = await self._read(key)
        except Exception as e:
            logger.error(f"Cache get entry error key={key}: {e}")
            return None
        if env is None:
            return None
        cached_at = int(env.get("cached_at") or 0)
        age = (self._now_ms() - cached_at) / 1000.0
        return CacheEntry(
            key=key,
            data=env["data"],
            cached_at=cached_at,
            expires_at=int(env.get("expires_at") or 0),
            stale=age > self.stale_threshold,
        )

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        ttl = ttl or self.default_ttl
        now = self._now_ms()
        try:
            payload = json.dumps({"data": _encode(value), "cached_at": now, "expires_at": now + ttl * 1000})
            await self.r.set(key, payload, ex=ttl)
        except Exception as e:
            logger.error(f"Cache set error key={key}: {e}")
            return False
        logger.debug(f"Cache set key={key} ttl={ttl}")
        return True

    async def delete(self, key: str) -> bool:
        try:
            return (await self.r.delete(key)) > 0
        except Exception as e:
            logger.error(f"Cache delete error key={key}: {e}")
            return False

    async def exists(self, key: str) -> bool:
        try:
            return (await self.r.exists(key)) == 1
        except Exception as e:
            logger.error(f"Cache exists error key={key}: {e}")
            return False

    async def get_ttl(self, key: str) -> int:
        try:
            return int(await self.r.ttl(key))
        except Exception as e:
            logger.error(f"Cache TTL error key={key}: {e}")
            return -1

    async def get_or_set(self, key: str, compute: Callable[[], Awaitable[Any]], ttl: Optional[int] = None) -> Any:
        cached = await self.get(key)
        if cached is not None:
            return cached
        logger.debug(f"Cache miss, computing key={key}")
        fresh = await compute()
        await self.set(key, fresh, ttl)
        return fresh

    async def get_with_stale_fallback(
        self, key: str, compute: Callable[[], Awaitable[Any]], ttl: Optional[int] = None
    ) -> Tuple[Any, bool]:
        entry = await self.get_entry(key)
        if entry is not None and not entry.stale:
            return entry.data, False

        if entry is not None:
            logger.info(f"Returning stale data, refreshing in background key={key}")
            task = asyncio.create_task(self._refresh(key, compute, ttl))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return entry.data, True

        fresh = await compute()
        await self.set(key, fresh, ttl)
        return fresh, False

    async def _refresh(self, key: str, compute: Callable[[], Awaitable[Any]], ttl: Optional[int]) -> None:
        try:
            fresh = await compute()
            await self.set(key, fresh, ttl)
            logger.debug(f"Background refresh complete key={key}")
        except Exception as e:
            logger.error(f"Background refresh failed key={key}: {e}")

    @property
    def pending_refreshes(self) -> int:
        return len(self._background)

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def delete_pattern(self, pattern: str) -> int:
        try:
            keys = await self.r.keys(pattern)
            if not keys:
                return 0
            deleted = await self.r.delete(*keys)
        except Exception as e:
            logger.error(f"Cache delete pattern error pattern={pattern}: {e}")
            return 0
        logger.info(f"Cache pattern delete pattern={pattern} deleted={deleted}")
        return int(deleted)

    async def flush(self) -> bool:
        try:
            await self.r.flushdb()
        except Exception as e:
            logger.error(f"Cache flush error: {e}")
            return False
        logger.warning("Cache flushed")
        return True

    async def get_stats(self) -> Dict[str, Any]:
        try:
            info = await self.r.info("memory")
            keys = await self.r.dbsize()
        except Exception as e:
            logger.error(f"Failed to get cache stats: {e}")
            return {"connected": False, "keys": 0, "memory": "unknown"}
        return {"connected": True, "keys": int(keys), "memory": str(info.get("used_memory_human", "unknown"))}

    async def health_check(self) -> ComponentHealth:
        start = time.perf_counter()
        try:
            await self.r.ping()
        except Exception as e:
            logger.error(f"Cache health check failed: {e}")
            return ComponentHealth(status="down", error=str(e))
        return ComponentHealth(status="up", latency_ms=round((time.perf_counter() - start) * 1000.0, 2))

    async def close(self) -> None:
        await self.wait_for_background()
        try:
            await self.r.aclose()
        except Exception as e:
            logger.warning(f"Cache close failed: {e}")
