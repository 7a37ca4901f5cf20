"""
Catalog store: ticket types, stock and the public price lookup.

Stock only moves through conditional UPDATEs, so available_stock can never
go negative no matter how many requests race on it.
"""

from __future__ import annotations
import uuid
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import bindparam, text

from ..domain import TicketType
from ..errors import (
    InsufficientStockError, InUseError, TicketTypeNotFoundError,
    ValidationError,
)
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from .db import TicketType as TicketTypeRow

UPDATABLE_FIELDS = (
    "name", "description", "price_in_cents", "max_per_order",
    "min_per_order", "is_active", "ems_clients_only", "public_only",
    "available_from", "available_until", "sort_order",
)
NULLABLE_FIELDS = ("available_from", "available_until")

_WINDOW = """
    is_active = :active
    AND (available_from IS NULL OR available_from <= :now)
    AND (available_until IS NULL OR available_until >= :now)
"""


def row_to_ticket_type(r: Mapping[str, Any]) -> TicketType:
    return TicketType(
        id=r["id"],
        name=r["name"],
        description=r["description"] or "",
        price_in_cents=int(r["price_in_cents"]),
        available_stock=int(r["available_stock"]),
        sold_stock=int(r["sold_stock"]),
        max_per_order=int(r["max_per_order"]),
        min_per_order=int(r["min_per_order"]),
        is_active=bool(r["is_active"]),
        ems_clients_only=bool(r["ems_clients_only"]),
        public_only=bool(r["public_only"]),
        available_from=r["available_from"],
        available_until=r["available_until"],
        sort_order=int(r["sort_order"]),
    )


# ----------------------------
# Reads
# ----------------------------
async def list_ticket_types(
    db: GatedAsyncSession, *, active_only: bool = False
) -> List[TicketType]:
    sql = "SELECT * FROM ticket_types"
    params: Dict[str, Any] = {}
    if active_only:
        sql += " WHERE is_active = :active"
        params["active"] = True
    sql += " ORDER BY sort_order ASC, name ASC"
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(sql), params)).mappings()
            return [row_to_ticket_type(r) for r in rows.all()]


async def list_public_ticket_types(
    db: GatedAsyncSession, now: float
) -> List[TicketType]:
    """Active types inside their availability window."""
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(f"""
                SELECT * FROM ticket_types
                WHERE {_WINDOW}
                ORDER BY sort_order ASC, name ASC
            """), {"active": True, "now": now})).mappings().all()
    return [row_to_ticket_type(r) for r in rows]


async def get_ticket_type(db: GatedAsyncSession, tt_id: str) -> TicketType:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                text("SELECT * FROM ticket_types WHERE id = :id"),
                {"id": tt_id},
            )).mappings().first()
    if row is None:
        raise TicketTypeNotFoundError(tt_id)
    return row_to_ticket_type(row)


async def get_ticket_types(
    db: GatedAsyncSession, ids: Iterable[str]
) -> Dict[str, TicketType]:
    ids = tuple(set(ids))
    if not ids:
        return {}
    stmt = text(
        "SELECT * FROM ticket_types WHERE id IN :ids"
    ).bindparams(bindparam("ids", expanding=True))
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                stmt, {"ids": ids}
            )).mappings().all()
    return {r["id"]: row_to_ticket_type(r) for r in rows}


async def current_public_price(
    db: GatedAsyncSession, now: float, default: int
) -> int:
    """Price of the highest sort_order public type, else `default`."""
    async with db.gated():
        async with db.session.begin():
            price = (await db.session.execute(text(f"""
                SELECT price_in_cents FROM ticket_types
                WHERE {_WINDOW}
                  AND ems_clients_only = :ems_only
                ORDER BY sort_order DESC, name ASC
                LIMIT 1
            """), {"active": True, "now": now, "ems_only": False})
            ).scalar_one_or_none()
    return default if price is None else int(price)


async def compute_inventory(db: GatedAsyncSession) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT id, name, available_stock, sold_stock, is_active
                FROM ticket_types
                ORDER BY sort_order ASC, name ASC
            """))).mappings().all()
    return [{
        "id": r["id"],
        "name": r["name"],
        "available": int(r["available_stock"]),
        "sold": int(r["sold_stock"]),
        "total": int(r["available_stock"]) + int(r["sold_stock"]),
        "is_active": bool(r["is_active"]),
    } for r in rows]


# ----------------------------
# Writes
# ----------------------------
async def create_ticket_type(
    db: GatedAsyncSession,
    *,
    name: str,
    price_in_cents: int,
    available_stock: int,
    tt_id: Optional[str] = None,
    **fields: Any,
) -> TicketType:
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError("unknown ticket type fields",
                              fields=sorted(unknown))
    if not (name or "").strip():
        raise ValidationError("name is required")
    try:
        tt = TicketType(
            id=tt_id or uuid.uuid4().hex,
            name=name.strip(),
            price_in_cents=price_in_cents,
            available_stock=available_stock,
            **fields,
        )
    except ValueError as e:
        raise ValidationError(str(e))

    ts = now_ts()
    async with db.gated():
        async with db.session.begin():
            db.session.add(TicketTypeRow(
                id=tt.id,
                name=tt.name,
                description=tt.description,
                price_in_cents=tt.price_in_cents,
                available_stock=tt.available_stock,
                sold_stock=tt.sold_stock,
                max_per_order=tt.max_per_order,
                min_per_order=tt.min_per_order,
                is_active=tt.is_active,
                ems_clients_only=tt.ems_clients_only,
                public_only=tt.public_only,
                available_from=tt.available_from,
                available_until=tt.available_until,
                sort_order=tt.sort_order,
                created_at=ts,
                updated_at=ts,
            ))
    return tt


async def update_ticket_type(
    db: GatedAsyncSession, tt_id: str, changes: Mapping[str, Any]
) -> TicketType:
    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError("unknown ticket type fields",
                              fields=sorted(unknown))
    nulled = sorted(f for f, v in changes.items()
                    if v is None and f not in NULLABLE_FIELDS)
    if nulled:
        raise ValidationError("fields cannot be null", fields=nulled)
    if "name" in changes:
        if not changes["name"].strip():
            raise ValidationError("name is required")
        changes = {**changes, "name": changes["name"].strip()}
    current = await get_ticket_type(db, tt_id)
    if not changes:
        return current

    try:
        updated = replace(current, **changes)
    except (TypeError, ValueError) as e:
        raise ValidationError(str(e))

    cols = sorted(changes)
    assignments = ", ".join(f"{c} = :{c}" for c in cols)
    params = {c: getattr(updated, c) for c in cols}
    params.update(id=tt_id, ts=now_ts())
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text(
                f"UPDATE ticket_types SET {assignments}, updated_at = :ts "
                "WHERE id = :id"
            ), params)
    return updated


async def delete_ticket_type(db: GatedAsyncSession, tt_id: str) -> None:
    """Only a type nobody has sold or booked can go; others get disabled."""
    async with db.gated():
        async with db.session.begin():
            used = (await db.session.execute(text("""
                SELECT 1 FROM registration_items WHERE ticket_type_id = :id
                UNION ALL
                SELECT 1 FROM tickets WHERE ticket_type_id = :id
                LIMIT 1
            """), {"id": tt_id})).first()
            if used is not None:
                raise InUseError("ticket type", tt_id)
            row = (await db.session.execute(text("""
                DELETE FROM ticket_types
                WHERE id = :id AND sold_stock = 0
                RETURNING id
            """), {"id": tt_id})).first()
    if row is None:
        # raises when unknown
        await get_ticket_type(db, tt_id)
        raise InUseError("ticket type", tt_id)


async def adjust_stock(
    db: GatedAsyncSession, tt_id: str, delta: int
) -> TicketType:
    """Add (or remove, with a negative delta) available stock."""
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                UPDATE ticket_types
                SET available_stock = available_stock + :d, updated_at = :ts
                WHERE id = :id AND available_stock + :d >= 0
                RETURNING *
            """), {"id": tt_id, "d": int(delta), "ts": now_ts()})
            ).mappings().first()
    if row is not None:
        return row_to_ticket_type(row)

    # missed: either unknown or the decrement would go negative
    current = await get_ticket_type(db, tt_id)
    raise InsufficientStockError(
        tt_id, -int(delta), current.available_stock, current.name
    )
