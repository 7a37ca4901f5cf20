from typing import AsyncContextManager, Callable, Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from ._postgres import PaymentSessionStore as PgPaymentSessionStore
from ._redis import PaymentSessionStore as RedisPaymentSessionStore

Gated = Callable[[], AsyncContextManager[None]]


# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: str, *, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 300,
              gated: Optional[Gated] = None):
    backend = backend.lower()
    if backend == "pg":
        if db is None:
            raise RuntimeError(
                "PaymentSessionStore(pg) requires db=AsyncSession"
            )
        if gated is None:
            raise RuntimeError(
                "PaymentSessionStore(pg) requires gated=Gated"
            )
        return PgPaymentSessionStore(db=db, ttl_seconds=ttl_seconds,
                                     gated=gated)
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "PaymentSessionStore(redis) requires r=redis.Redis"
            )
        return RedisPaymentSessionStore(r=r, ttl_seconds=ttl_seconds)
    raise RuntimeError(f"unknown payment session backend: {backend}")


__all__ = [
    "PgPaymentSessionStore", "RedisPaymentSessionStore", "new_store",
]
