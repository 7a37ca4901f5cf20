"""
Registration store.

Every status change is a conditional UPDATE ... WHERE status = <expected>
RETURNING, so two racing transitions cannot both win.
"""

from __future__ import annotations
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain import (
    CartLine, PricingResult, Registration, RegistrationItem,
    RegistrationStatus, TicketType,
)
from ..errors import (
    DuplicatePaymentError, EmsRegistrationPendingError,
    InvalidStatusTransitionError, RegistrationNotFoundError,
)
from ..helpers import normalize_email, now_ts
from ..infra.sql import GatedAsyncSession
from ..pricing import line_unit_price
from .coupons import claim_coupon_use, release_coupon_use
from .db import Registration as RegistrationRow
from .db import RegistrationItem as RegistrationItemRow

PENDING = RegistrationStatus.PENDING.value
APPROVED = RegistrationStatus.APPROVED.value
PAID = RegistrationStatus.PAID.value
CANCELLED = RegistrationStatus.CANCELLED.value


def row_to_registration(
    r: Mapping[str, Any], items: Sequence[RegistrationItem] = ()
) -> Registration:
    return Registration(
        id=r["id"],
        email=r["email"],
        status=RegistrationStatus(r["status"]),
        items=tuple(items),
        first_name=r["first_name"] or "",
        last_name=r["last_name"] or "",
        phone=r["phone"] or "",
        is_ems_client=bool(r["is_ems_client"]),
        original_amount=int(r["original_amount"]),
        discount_amount=int(r["discount_amount"]),
        final_amount=int(r["final_amount"]),
        currency=r["currency"],
        applied_coupon_code=r["applied_coupon_code"],
        payment_reference=r["payment_reference"],
        paid_at=r["paid_at"],
        tickets_issued_at=r["tickets_issued_at"],
        issuance_error=r["issuance_error"],
        duplicate_payments=tuple((r["duplicate_payments"] or "").split()),
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
    )


def _row_to_item(r: Mapping[str, Any]) -> RegistrationItem:
    return RegistrationItem(
        ticket_type_id=r["ticket_type_id"],
        name=r["name"],
        quantity=int(r["quantity"]),
        unit_price_in_cents=int(r["unit_price_in_cents"]),
    )


# ----------------------------
# UN-GATED internals: callers hold the gate and the transaction
# ----------------------------
async def _items_for(
    session: AsyncSession, reg_ids: Sequence[str]
) -> Dict[str, List[RegistrationItem]]:
    out: Dict[str, List[RegistrationItem]] = {rid: [] for rid in reg_ids}
    if not reg_ids:
        return out
    stmt = text("""
        SELECT * FROM registration_items
        WHERE registration_id IN :ids
        ORDER BY registration_id, position
    """).bindparams(bindparam("ids", expanding=True))
    rows = (await session.execute(
        stmt, {"ids": tuple(reg_ids)}
    )).mappings().all()
    for r in rows:
        out[r["registration_id"]].append(_row_to_item(r))
    return out


async def load_registration(
    session: AsyncSession, reg_id: str, *, for_update: bool = False
) -> Registration:
    sql = "SELECT * FROM registrations WHERE id = :id"
    if for_update and session.bind.dialect.name == "postgresql":
        sql += " FOR UPDATE"
    row = (await session.execute(
        text(sql), {"id": reg_id}
    )).mappings().first()
    if row is None:
        raise RegistrationNotFoundError(reg_id)
    items = await _items_for(session, [reg_id])
    return row_to_registration(row, items[reg_id])


async def _pending_ems_registration(
    session: AsyncSession, email: str
) -> Optional[str]:
    return (await session.execute(text("""
        SELECT id FROM registrations
        WHERE email = :email AND is_ems_client = :ems AND status = :pending
        ORDER BY created_at DESC
        LIMIT 1
    """), {"email": normalize_email(email), "ems": True,
           "pending": PENDING})).scalar_one_or_none()


async def _transition(
    session: AsyncSession,
    reg_id: str,
    target: str,
    allowed: Sequence[str],
    extra_set: str = "",
    params: Optional[Dict[str, Any]] = None,
) -> Optional[Mapping[str, Any]]:
    froms = ", ".join(f":from{i}" for i in range(len(allowed)))
    p: Dict[str, Any] = {f"from{i}": s for i, s in enumerate(allowed)}
    p.update(params or {})
    p.update(id=reg_id, target=target, ts=now_ts())
    return (await session.execute(text(f"""
        UPDATE registrations
        SET status = :target, updated_at = :ts{extra_set}
        WHERE id = :id AND status IN ({froms})
        RETURNING *
    """), p)).mappings().first()


# ----------------------------
# Reads
# ----------------------------
async def get_registration(
    db: GatedAsyncSession, reg_id: str
) -> Registration:
    async with db.gated():
        async with db.session.begin():
            return await load_registration(db.session, reg_id)


async def list_registrations(
    db: GatedAsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
    status: Optional[str] = None,
    q: Optional[str] = None,
) -> Tuple[int, List[Registration]]:
    where = []
    params: Dict[str, Any] = {}
    if status:
        where.append("status = :status")
        params["status"] = status.upper()
    if q:
        where.append("""(
            LOWER(email) LIKE :q OR LOWER(first_name) LIKE :q
            OR LOWER(last_name) LIKE :q OR id = :exact
        )""")
        params["q"] = f"%{q.strip().lower()}%"
        params["exact"] = q.strip()
    clause = f"WHERE {' AND '.join(where)}" if where else ""

    async with db.gated():
        async with db.session.begin():
            total = (await db.session.execute(
                text(f"SELECT COUNT(*) FROM registrations {clause}"), params
            )).scalar_one()
            rows = (await db.session.execute(text(f"""
                SELECT * FROM registrations {clause}
                ORDER BY created_at DESC
                LIMIT :lim OFFSET :off
            """), {**params, "lim": int(limit), "off": int(offset)}
            )).mappings().all()
            items = await _items_for(db.session, [r["id"] for r in rows])
    return int(total), [row_to_registration(r, items[r["id"]]) for r in rows]


async def find_pending_ems_registration(
    db: GatedAsyncSession, email: str
) -> Optional[str]:
    async with db.gated():
        async with db.session.begin():
            return await _pending_ems_registration(db.session, email)


async def registrations_for_email(
    db: GatedAsyncSession, email: str, limit: int = 20
) -> List[Registration]:
    """Most recent first."""
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT * FROM registrations
                WHERE email = :email
                ORDER BY created_at DESC
                LIMIT :lim
            """), {"email": normalize_email(email), "lim": int(limit)}
            )).mappings().all()
            items = await _items_for(db.session, [r["id"] for r in rows])
    return [row_to_registration(r, items[r["id"]]) for r in rows]


# ----------------------------
# Writes
# ----------------------------
async def create_registration(
    db: GatedAsyncSession,
    *,
    email: str,
    cart: Sequence[CartLine],
    ticket_types: Mapping[str, TicketType],
    pricing: PricingResult,
    is_ems_client: bool = False,
    first_name: str = "",
    last_name: str = "",
    phone: str = "",
    currency: str = "eur",
) -> Registration:
    """Insert a PENDING registration; claims the coupon use atomically.

    An EMS client gets one unresolved registration at a time.
    """
    reg_id = uuid.uuid4().hex
    ts = now_ts()
    coupon = pricing.applied_coupon

    items = [
        RegistrationItem(
            ticket_type_id=line.ticket_type_id,
            name=ticket_types[line.ticket_type_id].name,
            quantity=line.quantity,
            unit_price_in_cents=line_unit_price(
                ticket_types[line.ticket_type_id], is_ems_client),
        )
        for line in cart
    ]

    async with db.gated():
        async with db.session.begin():
            if is_ems_client:
                pending = await _pending_ems_registration(db.session, email)
                if pending is not None:
                    raise EmsRegistrationPendingError(
                        normalize_email(email), pending)
            if coupon is not None:
                await claim_coupon_use(db.session, coupon.id, coupon.code,
                                       email)
            db.session.add(RegistrationRow(
                id=reg_id,
                email=normalize_email(email),
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                phone=phone.strip(),
                is_ems_client=is_ems_client,
                status=PENDING,
                original_amount=pricing.original_amount,
                discount_amount=pricing.discount_amount,
                final_amount=pricing.final_amount,
                currency=currency,
                applied_coupon_id=coupon.id if coupon else None,
                applied_coupon_code=coupon.code if coupon else None,
                created_at=ts,
                updated_at=ts,
            ))
            # registration row must exist before its items reference it
            await db.session.flush()
            for pos, item in enumerate(items):
                db.session.add(RegistrationItemRow(
                    registration_id=reg_id,
                    ticket_type_id=item.ticket_type_id,
                    name=item.name,
                    quantity=item.quantity,
                    unit_price_in_cents=item.unit_price_in_cents,
                    position=pos,
                ))

    return Registration(
        id=reg_id,
        email=normalize_email(email),
        status=RegistrationStatus.PENDING,
        items=tuple(items),
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        phone=phone.strip(),
        is_ems_client=is_ems_client,
        original_amount=pricing.original_amount,
        discount_amount=pricing.discount_amount,
        final_amount=pricing.final_amount,
        currency=currency,
        applied_coupon_code=coupon.code if coupon else None,
        created_at=ts,
        updated_at=ts,
    )


async def set_payment_reference(
    db: GatedAsyncSession, reg_id: str, psid: str, previous: Optional[str]
) -> bool:
    """Point a PENDING registration at a new payment session.

    Compare-and-set on the previous reference: False means another checkout
    got there first.
    """
    params = {"psid": psid, "ts": now_ts(), "id": reg_id,
              "pending": PENDING}
    if previous is None:
        same = "payment_reference IS NULL"
    else:
        same = "payment_reference = :prev"
        params["prev"] = previous
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(f"""
                UPDATE registrations
                SET payment_reference = :psid, updated_at = :ts
                WHERE id = :id AND status = :pending AND {same}
                RETURNING id
            """), params)).first()
    return row is not None


async def clear_payment_reference(
    db: GatedAsyncSession, reg_id: str, psid: str
) -> None:
    """Forget a failed or canceled session so a new checkout can start."""
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                UPDATE registrations
                SET payment_reference = NULL, updated_at = :ts
                WHERE id = :id AND status = :pending
                  AND payment_reference = :psid
            """), {"psid": psid, "ts": now_ts(), "id": reg_id,
                   "pending": PENDING})


async def mark_paid(
    db: GatedAsyncSession, reg_id: str, payment_reference: str
) -> Registration:
    """PENDING -> PAID.

    Paying an already PAID registration again with the same session is a
    no-op. A different session is a second charge: it is recorded on the
    registration and DuplicatePaymentError is raised.
    """
    duplicate = False
    async with db.gated():
        async with db.session.begin():
            row = await _transition(
                db.session, reg_id, PAID, [PENDING],
                ", paid_at = :paid_at, payment_reference = :ref",
                {"paid_at": now_ts(), "ref": payment_reference},
            )
            reg = await load_registration(db.session, reg_id)
            if row is None and reg.status == RegistrationStatus.PAID and \
                    reg.payment_reference != payment_reference:
                duplicate = True
                if payment_reference not in reg.duplicate_payments:
                    await db.session.execute(text("""
                        UPDATE registrations
                        SET duplicate_payments =
                              TRIM(COALESCE(duplicate_payments, '')
                                   || ' ' || :ref),
                            updated_at = :ts
                        WHERE id = :id
                    """), {"ref": payment_reference, "ts": now_ts(),
                           "id": reg_id})
    if duplicate:
        raise DuplicatePaymentError(reg_id, payment_reference,
                                    reg.payment_reference)
    if row is None and reg.status != RegistrationStatus.PAID:
        raise InvalidStatusTransitionError(reg_id, reg.status.value, PAID)
    return reg


async def approve_registration(
    db: GatedAsyncSession, reg_id: str
) -> Registration:
    """PENDING -> APPROVED. APPROVED or PAID registrations are left as is."""
    async with db.gated():
        async with db.session.begin():
            await _transition(db.session, reg_id, APPROVED, [PENDING])
            reg = await load_registration(db.session, reg_id)
    if reg.status == RegistrationStatus.CANCELLED:
        raise InvalidStatusTransitionError(reg_id, reg.status.value, APPROVED)
    return reg


async def cancel_registration(
    db: GatedAsyncSession, reg_id: str
) -> Registration:
    """PENDING|APPROVED -> CANCELLED before issuance; releases the coupon."""
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                UPDATE registrations
                SET status = :cancelled, updated_at = :ts
                WHERE id = :id
                  AND status IN (:pending, :approved)
                  AND tickets_issued_at IS NULL
                RETURNING applied_coupon_id
            """), {
                "cancelled": CANCELLED, "ts": now_ts(), "id": reg_id,
                "pending": PENDING, "approved": APPROVED,
            })).first()
            if row is not None and row[0]:
                await release_coupon_use(db.session, row[0])
            reg = await load_registration(db.session, reg_id)
    if row is None:
        raise InvalidStatusTransitionError(reg_id, reg.status.value,
                                           CANCELLED)
    return reg


async def record_issuance_error(
    db: GatedAsyncSession, reg_id: str, message: Optional[str]
) -> None:
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                UPDATE registrations
                SET issuance_error = :err, updated_at = :ts
                WHERE id = :id
            """), {"err": message, "ts": now_ts(), "id": reg_id})
