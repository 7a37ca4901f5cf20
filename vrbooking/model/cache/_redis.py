from __future__ import annotations
from typing import Any, Dict, Optional

import orjson
import redis.asyncio as redis

PREFIX = "cache:"


def k_cache(key: str) -> str:
    return f"{PREFIX}{key}"


class ResponseCache:
    """Redis-backed cache; TTL via EX, capacity left to Redis maxmemory."""

    def __init__(self, *, r: redis.Redis, ttl_seconds: int = 60) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.r.get(k_cache(key))
        return None if raw is None else orjson.loads(raw)

    async def set(self, key: str, value: Any,
                  ttl_seconds: Optional[int] = None) -> None:
        ttl = self.ttl if ttl_seconds is None else ttl_seconds
        await self.r.set(k_cache(key), orjson.dumps(value), ex=max(1, ttl))

    async def delete(self, key: str) -> None:
        await self.r.delete(k_cache(key))

    async def purge(self, prefix: str = "") -> int:
        n = 0
        async for k in self.r.scan_iter(match=f"{k_cache(prefix)}*"):
            n += await self.r.delete(k)
        return n

    async def stats(self) -> Dict[str, Any]:
        n = 0
        async for _ in self.r.scan_iter(match=f"{PREFIX}*"):
            n += 1
        return {"backend": "redis", "size": n, "ttl_seconds": self.ttl}
