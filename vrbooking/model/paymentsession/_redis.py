from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple
import time
import redis.asyncio as redis


# ---- keys
def k_ps(psid: str) -> str: return f"ps:{psid}"
def k_fulfill(psid: str) -> str: return f"fulfill:{psid}"
def k_idemp(evt: str) -> str: return f"idemp:{evt}"


PENDING_INDEX = "pendings"


class PaymentSessionStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def save_payment_session(
            self, psid: str, mapping: Dict[str, Any]) -> None:
        # hash values are strings (decode_responses=True)
        created_at = float(mapping.get("created_at") or time.time())
        fields = {k: str(v) for k, v in mapping.items() if v is not None}
        fields["created_at"] = str(created_at)
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_ps(psid), mapping=fields)
        pipe.expire(k_ps(psid), self.ttl + 60)
        pipe.zadd(PENDING_INDEX, {psid: created_at})
        await pipe.execute()

    async def get_payment_session(self, psid: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_ps(psid))
        if not h:
            return None
        out: Dict[str, Any] = dict(h)
        out["amount"] = int(h.get("amount", "0"))
        out["created_at"] = float(h.get("created_at", "0"))
        return out

    async def remove_pending(self, psid: str) -> None:
        # drop from the live index; the hash expires on its own so late
        # webhooks can still resolve the registration
        await self.r.zrem(PENDING_INDEX, psid)

    async def fulfill_gate(self, psid: str) -> bool:
        # NX gate for fulfillment, 24h TTL
        ok = await self.r.set(k_fulfill(psid), "1", nx=True, ex=24*3600)
        return bool(ok)

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return True
        ok = await self.r.set(k_idemp(evt_id), "1", nx=True, ex=3600)
        return bool(ok)

    async def fulfill_and_mark_event(
        self, psid: str, evt_id: Optional[str]
    ) -> Dict[str, Optional[bool]]:
        """Same contract as the SQL store, in 1-2 round trips."""
        if not await self.fulfill_gate(psid):
            return {"already_fulfilled": True, "event_seen": None}
        if evt_id:
            fresh = await self.mark_event_seen(evt_id)
            return {"already_fulfilled": False, "event_seen": not fresh}
        return {"already_fulfilled": False, "event_seen": None}

    async def get_recent_payment_sessions(
            self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total = await self.r.zcard(PENDING_INDEX)
        psids = await self.r.zrevrange(PENDING_INDEX, 0, max(0, limit - 1))

        pipe = self.r.pipeline()
        for psid in psids:
            pipe.hgetall(k_ps(psid))
        rows = await pipe.execute()

        now = time.time()
        items = []
        for psid, h in zip(psids, rows):
            # house-keeping: index entry whose hash expired
            if not h:
                await self.r.zrem(PENDING_INDEX, psid)
                continue
            try:
                created = float(h.get("created_at", "0"))
            except ValueError:
                created = 0.0
            items.append({
                "psid": psid,
                "created_at": created,
                "age_ms": int(max(0.0, now - created) * 1000),
                "registration_id": h.get("registration_id", ""),
                "email": h.get("customer_email", ""),
                "amount": int(h.get("amount", "0")),
                "currency": h.get("currency", "eur"),
                "status": "PENDING",
            })
        return int(total), items
