"""Ticket issuance planning.

Pure part of issuance: decides which tickets a registration gets. The atomic
store operation that decrements stock and writes the rows lives in
model/tickets.py.
"""

from __future__ import annotations

import re
import secrets
from typing import List, Mapping, Optional, Sequence

from .domain import (
    CartLine, Registration, RegistrationStatus, TicketDraft, TicketType,
)
from .errors import InsufficientStockError, NotApprovedError

ISSUABLE_STATUSES = (RegistrationStatus.APPROVED, RegistrationStatus.PAID)

TICKET_PREFIX = "VR"
TICKET_NUMBER_RE = re.compile(r"^VR(EMS|STD)\d{6}[A-F0-9]{8}$")


# ----------------------------
# Ticket numbers
# ----------------------------
def generate_ticket_number(is_ems_client: bool, now: float,
                           token: Optional[str] = None) -> str:
    # last 6 digits of the ms timestamp + 8 random hex chars
    stamp = int(now * 1000) % 1_000_000
    token = (token or secrets.token_hex(4)).upper()
    audience = "EMS" if is_ems_client else "STD"
    return f"{TICKET_PREFIX}{audience}{stamp:06d}{token}"


def validate_ticket_number(ticket_number: str) -> bool:
    return bool(TICKET_NUMBER_RE.match(ticket_number or ""))


def verification_url(base_url: str, ticket_number: str) -> str:
    return f"{base_url.rstrip('/')}/{ticket_number}"


# ----------------------------
# Planning
# ----------------------------
def ensure_issuable(registration: Registration) -> None:
    if registration.status not in ISSUABLE_STATUSES:
        raise NotApprovedError(registration.id, registration.status.value)


def plan_tickets(registration: Registration, now: float) -> List[TicketDraft]:
    """One draft per unit, sequence numbers 1..N in item order."""
    ensure_issuable(registration)

    drafts: List[TicketDraft] = []
    seq = 0
    seen = set()
    for item in registration.items:
        for _ in range(item.quantity):
            seq += 1
            number = generate_ticket_number(registration.is_ems_client, now)
            while number in seen:
                number = generate_ticket_number(
                    registration.is_ems_client, now)
            seen.add(number)
            drafts.append(TicketDraft(
                ticket_type_id=item.ticket_type_id,
                sequence_number=seq,
                ticket_number=number,
                purchase_price=item.unit_price_in_cents,
            ))
    return drafts


def ensure_available(cart: Sequence[CartLine],
                     ticket_types: Mapping[str, TicketType]) -> None:
    """Stock pre-check; the decrement at issuance is the binding check."""
    for line in cart:
        tt = ticket_types[line.ticket_type_id]
        if tt.available_stock < line.quantity:
            raise InsufficientStockError(
                tt.id, line.quantity, tt.available_stock, tt.name)
