from __future__ import annotations
import time
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional
from typing import Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

# Tables are declared in model/db.py and created with the rest of the schema.

_UPSERT_HOT = text("""
  INSERT INTO payment_sessions_hot(
    psid, registration_id, amount, currency, customer_email,
    created_at, expires_at
  ) VALUES (
    :psid, :registration_id, :amount, :currency,
    :customer_email, :created_at, :expires_at
  )
  ON CONFLICT (psid) DO UPDATE SET
    registration_id=EXCLUDED.registration_id,
    amount=EXCLUDED.amount,
    currency=EXCLUDED.currency,
    customer_email=EXCLUDED.customer_email,
    created_at=EXCLUDED.created_at,
    expires_at=EXCLUDED.expires_at
""")

_UPSERT_PENDING = text("""
  INSERT INTO payment_sessions_pending(psid, created_at)
  VALUES(:psid, :created_at)
  ON CONFLICT (psid) DO UPDATE SET created_at=EXCLUDED.created_at
""")

_PENDING_WITH_SESSION = text("""
  SELECT p.psid, h.created_at, h.registration_id, h.amount, h.currency,
         h.customer_email
  FROM payment_sessions_pending AS p
  LEFT JOIN payment_sessions_hot AS h ON h.psid = p.psid
  ORDER BY p.created_at DESC
  LIMIT :lim
""")


# UN-GATED: insert-if-absent, True when this call created the row
async def _claim_gate(db: AsyncSession, psid: str, ts: float) -> bool:
    row = (await db.execute(text("""
      INSERT INTO fulfillment_gates(psid, created_at)
      VALUES(:psid, :ts)
      ON CONFLICT (psid) DO NOTHING
      RETURNING psid
    """), {"psid": psid, "ts": ts})).first()
    return row is not None


async def _claim_key(db: AsyncSession, key: str, ts: float) -> bool:
    row = (await db.execute(text("""
      INSERT INTO idempotency_keys(key, created_at)
      VALUES(:k, :ts)
      ON CONFLICT (key) DO NOTHING
      RETURNING key
    """), {"k": key, "ts": ts})).first()
    return row is not None


class PaymentSessionStore:
    """Payment sessions in SQL: a hot row per session, a pending index,
    per-session fulfill gates and webhook idempotency keys."""

    def __init__(
        self, *, db: AsyncSession, ttl_seconds: int,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.db = db
        self.ttl = ttl_seconds
        self.gated = gated

    async def save_payment_session(
            self, psid: str, mapping: Dict[str, Any]
    ) -> None:
        created_at = float(mapping.get("created_at") or time.time())
        hot = {
            "psid": psid,
            "registration_id": mapping["registration_id"],
            "amount": int(mapping["amount"]),
            "currency": mapping["currency"],
            "customer_email": mapping.get("customer_email") or "",
            "created_at": created_at,
            # outlive the provider session so late webhooks still resolve
            "expires_at": created_at + self.ttl + 60,
        }
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(_UPSERT_HOT, hot)
                await self.db.execute(
                    _UPSERT_PENDING, {"psid": psid, "created_at": created_at})

    async def get_payment_session(self, psid: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text("SELECT * FROM payment_sessions_hot WHERE psid=:psid"),
                    {"psid": psid},
                )).mappings().first()
        return dict(row) if row else None

    async def remove_pending(self, psid: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("DELETE FROM payment_sessions_pending "
                         "WHERE psid=:psid"),
                    {"psid": psid},
                )

    async def fulfill_gate(self, psid: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                return await _claim_gate(self.db, psid, time.time())

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return True
        async with self.gated():
            async with self.db.begin():
                return await _claim_key(self.db, evt_id, time.time())

    async def get_recent_payment_sessions(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        now = time.time()
        items: List[Dict[str, Any]] = []
        dangling: List[str] = []

        async with self.gated():
            async with self.db.begin():
                total = (await self.db.execute(
                    text("SELECT COUNT(*) FROM payment_sessions_pending")
                )).scalar_one()
                rows = (await self.db.execute(
                    _PENDING_WITH_SESSION, {"lim": int(limit)}
                )).mappings().all()

                for r in rows:
                    # pending entry without a hot row -> remove it
                    if r["created_at"] is None:
                        dangling.append(r["psid"])
                        continue
                    created = float(r["created_at"])
                    items.append({
                        "psid": r["psid"],
                        "created_at": created,
                        "age_ms": int(max(0.0, now - created) * 1000),
                        "registration_id": r["registration_id"] or "",
                        "email": r["customer_email"] or "",
                        "amount": int(r["amount"] or 0),
                        "currency": r["currency"] or "eur",
                        "status": "PENDING",
                    })

                if dangling:
                    await self.db.execute(
                        text("DELETE FROM payment_sessions_pending "
                             "WHERE psid IN :psids").bindparams(
                            bindparam("psids", expanding=True)),
                        {"psids": tuple(dangling)},
                    )

        return int(total), items

    async def fulfill_and_mark_event(
            self, psid: str, idem: str | None
    ) -> Dict[str, Optional[bool]]:
        """
        Both webhook idempotency checks in one transaction.

          1) Claim the fulfill gate. If it already exists -> short-circuit,
             don't touch idempotency.
          2) If the gate was claimed now and an event id is given, mark it.

        Returns:
          {
            "already_fulfilled": True if the fulfill gate already existed
            "event_seen":        True if the idempotency key already existed
                                 None if not checked or not provided
          }
        """
        ts = time.time()
        async with self.gated():
            async with self.db.begin():
                if not await _claim_gate(self.db, psid, ts):
                    return {"already_fulfilled": True, "event_seen": None}
                if not idem:
                    return {"already_fulfilled": False, "event_seen": None}
                fresh = await _claim_key(self.db, idem, ts)
        return {"already_fulfilled": False, "event_seen": not fresh}
