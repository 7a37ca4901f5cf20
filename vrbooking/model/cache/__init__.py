from typing import Callable, Optional

import redis.asyncio as redis

from ._memory import ResponseCache as MemoryResponseCache
from ._redis import ResponseCache as RedisResponseCache

PUBLIC_TYPES_KEY = "ticket-types:public"


def new_cache(backend: str, *, ttl_seconds: int = 60, capacity: int = 256,
              r: Optional[redis.Redis] = None,
              clock: Optional[Callable[[], float]] = None):
    backend = backend.lower()
    if backend == "memory":
        return MemoryResponseCache(ttl_seconds=ttl_seconds,
                                   capacity=capacity, clock=clock)
    if backend == "redis":
        if r is None:
            raise RuntimeError("ResponseCache(redis) requires r=redis.Redis")
        return RedisResponseCache(r=r, ttl_seconds=ttl_seconds)
    raise RuntimeError(f"unknown cache backend: {backend}")


__all__ = ["MemoryResponseCache", "RedisResponseCache", "new_cache",
           "PUBLIC_TYPES_KEY"]
