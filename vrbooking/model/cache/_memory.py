from __future__ import annotations
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple


class ResponseCache:
    """Bounded in-process cache: per-entry TTL plus LRU eviction.

    Single event loop, no locks. Expired entries are dropped lazily on read
    and when the capacity bound forces an eviction.
    """

    def __init__(self, *, ttl_seconds: int = 60, capacity: int = 256,
                 clock: Optional[Callable[[], float]] = None) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.ttl = ttl_seconds
        self.capacity = capacity
        self._clock = clock or time.monotonic
        # key -> (expires_at, value), oldest first
        self._data: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._data[key]
            self.misses += 1
            return None
        self._data.move_to_end(key)
        self.hits += 1
        return value

    async def set(self, key: str, value: Any,
                  ttl_seconds: Optional[int] = None) -> None:
        ttl = self.ttl if ttl_seconds is None else ttl_seconds
        self._data[key] = (self._clock() + ttl, value)
        self._data.move_to_end(key)
        self._evict()

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def purge(self, prefix: str = "") -> int:
        keys = [k for k in self._data if k.startswith(prefix)]
        for k in keys:
            del self._data[k]
        return len(keys)

    async def stats(self) -> Dict[str, Any]:
        return {
            "backend": "memory",
            "size": len(self._data),
            "capacity": self.capacity,
            "ttl_seconds": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
        }

    def __len__(self) -> int:
        return len(self._data)

    def _evict(self) -> None:
        if len(self._data) <= self.capacity:
            return
        now = self._clock()
        for k in [k for k, (exp, _) in self._data.items() if exp <= now]:
            del self._data[k]
        while len(self._data) > self.capacity:
            self._data.popitem(last=False)
