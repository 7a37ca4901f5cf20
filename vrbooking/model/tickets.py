"""
Ticket store and the atomic issuance operation.

issue_tickets() runs in a single transaction:
  1) load the registration
  2) already issued -> return the existing tickets (created=False)
  3) plan the tickets (raises NotApprovedError)
  4) claim the issuance marker with a conditional UPDATE
  5) per item: available_stock -= q WHERE available_stock >= q
  6) insert the ticket rows
Any failure in 4-6 rolls the whole thing back: no stock change, no rows,
no marker.
"""

from __future__ import annotations
import uuid
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain import Ticket
from ..errors import InsufficientStockError
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from ..issuance import ISSUABLE_STATUSES, plan_tickets
from .db import Ticket as TicketRow
from .registrations import load_registration


@dataclass(frozen=True)
class IssueResult:
    tickets: Tuple[Ticket, ...]
    created: bool


def row_to_ticket(r: Mapping[str, Any]) -> Ticket:
    return Ticket(
        id=r["id"],
        registration_id=r["registration_id"],
        ticket_type_id=r["ticket_type_id"],
        sequence_number=int(r["sequence_number"]),
        ticket_number=r["ticket_number"],
        purchase_price=int(r["purchase_price"]),
        created_at=float(r["created_at"]),
    )


# UN-GATED internal function
async def _tickets_for(session: AsyncSession, reg_id: str) -> List[Ticket]:
    rows = (await session.execute(text("""
        SELECT * FROM tickets
        WHERE registration_id = :rid
        ORDER BY sequence_number
    """), {"rid": reg_id})).mappings().all()
    return [row_to_ticket(r) for r in rows]


# UN-GATED internal function
async def _decrement_stock(
    session: AsyncSession, tt_id: str, qty: int, name: str
) -> None:
    row = (await session.execute(text("""
        UPDATE ticket_types
        SET available_stock = available_stock - :q,
            sold_stock = sold_stock + :q
        WHERE id = :id AND available_stock >= :q
        RETURNING available_stock
    """), {"id": tt_id, "q": qty})).first()
    if row is not None:
        return
    available = (await session.execute(
        text("SELECT available_stock FROM ticket_types WHERE id = :id"),
        {"id": tt_id},
    )).scalar_one_or_none()
    raise InsufficientStockError(tt_id, qty, int(available or 0), name)


async def issue_tickets(
    db: GatedAsyncSession, reg_id: str, now: Optional[float] = None
) -> IssueResult:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            reg = await load_registration(db.session, reg_id,
                                          for_update=True)
            if reg.tickets_issued_at is not None:
                existing = await _tickets_for(db.session, reg_id)
                return IssueResult(tuple(existing), created=False)

            drafts = plan_tickets(reg, now)

            statuses = [s.value for s in ISSUABLE_STATUSES]
            claimed = (await db.session.execute(text("""
                UPDATE registrations
                SET tickets_issued_at = :now, issuance_error = NULL,
                    updated_at = :now
                WHERE id = :id
                  AND tickets_issued_at IS NULL
                  AND status IN (:s0, :s1)
                RETURNING id
            """), {"now": now, "id": reg_id,
                   "s0": statuses[0], "s1": statuses[1]})).first()
            if claimed is None:
                # a concurrent issuer got here first
                existing = await _tickets_for(db.session, reg_id)
                return IssueResult(tuple(existing), created=False)

            for item in reg.items:
                await _decrement_stock(db.session, item.ticket_type_id,
                                       item.quantity, item.name)

            tickets = []
            for d in drafts:
                t = Ticket(
                    id=uuid.uuid4().hex,
                    registration_id=reg_id,
                    ticket_type_id=d.ticket_type_id,
                    sequence_number=d.sequence_number,
                    ticket_number=d.ticket_number,
                    purchase_price=d.purchase_price,
                    created_at=now,
                )
                db.session.add(TicketRow(
                    id=t.id,
                    registration_id=t.registration_id,
                    ticket_type_id=t.ticket_type_id,
                    sequence_number=t.sequence_number,
                    ticket_number=t.ticket_number,
                    purchase_price=t.purchase_price,
                    created_at=t.created_at,
                ))
                tickets.append(t)
    return IssueResult(tuple(tickets), created=True)


async def get_tickets(db: GatedAsyncSession, reg_id: str) -> List[Ticket]:
    async with db.gated():
        async with db.session.begin():
            return await _tickets_for(db.session, reg_id)


async def find_by_number(
    db: GatedAsyncSession, ticket_number: str
) -> Optional[Mapping[str, Any]]:
    """Ticket joined with its registration and type, for verification."""
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT t.*, r.status AS registration_status,
                       r.email, r.first_name, r.last_name, r.is_ems_client,
                       tt.name AS ticket_type_name
                FROM tickets AS t
                JOIN registrations AS r ON r.id = t.registration_id
                JOIN ticket_types AS tt ON tt.id = t.ticket_type_id
                WHERE t.ticket_number = :n
            """), {"n": ticket_number})).mappings().first()
    return dict(row) if row else None
