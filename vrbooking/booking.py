"""
Booking flows: quote, register, checkout, payment webhook, approve, cancel.

This is the layer between HTTP and the engines: it reads records from the
stores, hands plain values to pricing/issuance and writes the outcome back.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import structlog
from fastapi import HTTPException

from .domain import (
    CartLine, Coupon, PricingResult, Registration, RegistrationStatus,
    Ticket,
)
from .errors import (
    CheckoutInProgressError, DomainError, DuplicatePaymentError,
    InsufficientStockError, InvalidStatusTransitionError,
    PaymentNotRequiredError, ValidationError,
)
from .helpers import is_valid_email, now_ts
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .issuance import ensure_available
from .mockpay import EVENT_KINDS, PaymentAdapter
from .model import catalog, coupons, registrations, tickets
from .model.tickets import IssueResult
from .pricing import (
    PriceTable, calculate_cart_pricing, calculate_pricing, validate_coupon,
)

logger = structlog.get_logger()

PAID_UNFULFILLED = "PAID_UNFULFILLED"
DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"


@dataclass(frozen=True)
class Applicant:
    email: str
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    is_ems_client: bool = False


@dataclass(frozen=True)
class PaymentOutcome:
    order_status: str
    idempotent: bool = False
    registration: Optional[Registration] = None
    tickets: Tuple[Ticket, ...] = ()
    created: bool = False


def order_status(reg: Registration) -> str:
    """Registration status as shown to customers and operators."""
    if reg.status == RegistrationStatus.PAID and \
            reg.tickets_issued_at is None and reg.issuance_error:
        return PAID_UNFULFILLED
    return reg.status.value


# ----------------------------
# Quotes
# ----------------------------
async def quote_simple(
    db: GatedAsyncSession,
    *,
    quantity: int,
    is_ems_client: bool,
    coupon_code: Optional[str] = None,
    email: Optional[str] = None,
    default_price: int = 5000,
    now: Optional[float] = None,
) -> PricingResult:
    now = now_ts() if now is None else now
    public = await catalog.current_public_price(db, now, default_price)
    coupon, uses = await coupons.lookup_coupon(db, coupon_code, email)
    return calculate_pricing(
        quantity, is_ems_client, coupon_code,
        coupon=coupon, prices=PriceTable(public=public), now=now,
        user_uses=uses,
    )


async def quote_cart(
    db: GatedAsyncSession,
    *,
    cart: Sequence[CartLine],
    is_ems_client: bool,
    coupon_code: Optional[str] = None,
    email: Optional[str] = None,
    now: Optional[float] = None,
):
    now = now_ts() if now is None else now
    ticket_types = await catalog.get_ticket_types(
        db, [line.ticket_type_id for line in cart])
    coupon, uses = await coupons.lookup_coupon(db, coupon_code, email)
    pricing = calculate_cart_pricing(
        cart, ticket_types, is_ems_client, coupon_code,
        coupon=coupon, now=now, user_uses=uses,
    )
    return pricing, ticket_types


async def check_coupon_code(
    db: GatedAsyncSession,
    *,
    code: str,
    order_amount: int,
    is_ems_client: bool,
    email: Optional[str] = None,
    now: Optional[float] = None,
) -> Tuple[Coupon, int]:
    now = now_ts() if now is None else now
    coupon, uses = await coupons.lookup_coupon(db, code, email)
    discount = validate_coupon(
        coupon, code, order_amount=order_amount,
        is_ems_client=is_ems_client, now=now, user_uses=uses,
    )
    return coupon, discount


# ----------------------------
# Registration and checkout
# ----------------------------
async def register(
    db: GatedAsyncSession,
    applicant: Applicant,
    cart: Sequence[CartLine],
    *,
    coupon_code: Optional[str] = None,
    currency: str = "eur",
    now: Optional[float] = None,
) -> Tuple[Registration, PricingResult]:
    if not is_valid_email(applicant.email):
        raise ValidationError("A valid email address is required",
                              field="email")

    pricing, ticket_types = await quote_cart(
        db, cart=cart, is_ems_client=applicant.is_ems_client,
        coupon_code=coupon_code, email=applicant.email, now=now,
    )
    ensure_available(cart, ticket_types)

    async with timeit("registrations.create"):
        reg = await registrations.create_registration(
            db,
            email=applicant.email,
            cart=cart,
            ticket_types=ticket_types,
            pricing=pricing,
            is_ems_client=applicant.is_ems_client,
            first_name=applicant.first_name,
            last_name=applicant.last_name,
            phone=applicant.phone,
            currency=currency,
        )
    logger.info("registration_created", registration_id=reg.id,
                final_amount=reg.final_amount,
                coupon=reg.applied_coupon_code,
                tickets=reg.ticket_count)
    return reg, pricing


async def pending_ems_registration(
    db: GatedAsyncSession, email: str, is_ems_client: bool
) -> Optional[str]:
    """Id of the registration that blocks a new one, if any.

    Public customers may register any number of times.
    """
    if not is_valid_email(email):
        raise ValidationError("A valid email address is required",
                              field="email")
    if not is_ems_client:
        return None
    return await registrations.find_pending_ems_registration(db, email)


async def ticket_status(
    db: GatedAsyncSession,
    *,
    email: Optional[str] = None,
    ticket_number: Optional[str] = None,
) -> List[Tuple[Registration, List[Ticket]]]:
    """Registrations (with their tickets) by customer email or ticket number."""
    if ticket_number:
        row = await tickets.find_by_number(db, ticket_number.strip().upper())
        regs = [] if row is None else [
            await registrations.get_registration(db, row["registration_id"])]
    elif email:
        regs = await registrations.registrations_for_email(db, email)
    else:
        raise ValidationError("email or ticket_number is required")
    return [(reg, await tickets.get_tickets(db, reg.id)) for reg in regs]


async def start_checkout(
    db: GatedAsyncSession,
    store,
    adapter: PaymentAdapter,
    reg_id: str,
) -> dict:
    reg = await registrations.get_registration(db, reg_id)
    if not reg.requires_payment:
        raise PaymentNotRequiredError(reg_id)
    if reg.status != RegistrationStatus.PENDING:
        raise InvalidStatusTransitionError(
            reg_id, reg.status.value, RegistrationStatus.PAID.value)

    previous = reg.payment_reference
    if previous:
        async with timeit("paymentsession.get"):
            ps = await store.get_payment_session(previous)
        # one payable session at a time; the customer can cancel it
        if ps and now_ts() - float(ps["created_at"]) < store.ttl:
            raise CheckoutInProgressError(reg.id, previous)

    session = adapter.create_session(
        reg.final_amount, reg.currency, {"registration_id": reg.id})
    psid = session["payment_session_id"]
    if not await registrations.set_payment_reference(db, reg.id, psid,
                                                     previous):
        # lost the race to a concurrent checkout (or a payment)
        current = await registrations.get_registration(db, reg.id)
        if current.status != RegistrationStatus.PENDING:
            raise InvalidStatusTransitionError(
                reg.id, current.status.value, RegistrationStatus.PAID.value)
        raise CheckoutInProgressError(reg.id,
                                      current.payment_reference or "")

    async with timeit("paymentsession.save"):
        await store.save_payment_session(psid, {
            "registration_id": reg.id,
            "amount": reg.final_amount,
            "currency": reg.currency,
            "customer_email": reg.email,
            "created_at": now_ts(),
        })
    logger.info("checkout_started", registration_id=reg.id, psid=psid,
                amount=reg.final_amount)

    return {
        "registration_id": reg.id,
        "payment_session_id": psid,
        "redirect_url": session["redirect_url"],
        "amount": reg.final_amount,
        "currency": reg.currency,
    }


# ----------------------------
# Fulfillment
# ----------------------------
async def fulfill(db: GatedAsyncSession, reg: Registration) -> PaymentOutcome:
    """Issue tickets for a paid registration; never raises domain errors.

    The payment already happened, so an issuance failure is recorded on the
    registration and reported as PAID_UNFULFILLED for an operator.
    """
    try:
        async with timeit("tickets.issue"):
            res = await tickets.issue_tickets(db, reg.id)
    except DomainError as e:
        await registrations.record_issuance_error(db, reg.id, e.message)
        logger.error("ticket_issuance_failed", registration_id=reg.id,
                     code=e.code.value, error=e.message, **e.details)
        return PaymentOutcome(order_status=PAID_UNFULFILLED,
                              registration=reg)
    if res.created:
        logger.info("tickets_issued", registration_id=reg.id,
                    count=len(res.tickets))
    return PaymentOutcome(order_status=RegistrationStatus.PAID.value,
                          registration=reg, tickets=res.tickets,
                          created=res.created)


async def handle_payment_webhook(
    db: GatedAsyncSession,
    store,
    adapter: PaymentAdapter,
    payload: bytes,
    headers: dict,
) -> PaymentOutcome:
    event = adapter.verify_webhook(payload, headers)
    kind = adapter.event_kind(event)  # succeeded | failed | canceled
    if kind not in EVENT_KINDS:
        raise HTTPException(400, detail="unknown event type")
    psid, idem = adapter.event_ids(event)
    if not psid:
        raise HTTPException(400, detail="missing payment_session_id")

    async with timeit("paymentsession.get"):
        ps = await store.get_payment_session(psid)
    if not ps:
        raise HTTPException(404, detail="payment session not found")

    async with timeit("paymentsession.fulfill"):
        flags = await store.fulfill_and_mark_event(psid, idem)
    if flags["already_fulfilled"] or (flags["event_seen"] is True):
        logger.info("webhook_replay_ignored", psid=psid, kind=kind)
        return PaymentOutcome(order_status="IGNORED", idempotent=True)

    reg_id = ps["registration_id"]

    if kind != "succeeded":
        async with timeit("paymentsession.remove_pending"):
            await store.remove_pending(psid)
        await registrations.clear_payment_reference(db, reg_id, psid)
        logger.info("payment_not_completed", registration_id=reg_id,
                    psid=psid, kind=kind)
        return PaymentOutcome(
            order_status="FAILED" if kind == "failed" else "CANCELED")

    try:
        async with timeit("registrations.mark_paid"):
            reg = await registrations.mark_paid(db, reg_id, psid)
    except DuplicatePaymentError as e:
        # second charge for the same registration; refund is manual
        logger.error("duplicate_payment", registration_id=reg_id, psid=psid,
                     paid_with=e.details.get("paid_with"),
                     amount=ps.get("amount"))
        outcome = PaymentOutcome(order_status=DUPLICATE_PAYMENT)
    except InvalidStatusTransitionError as e:
        # money arrived for a registration that can no longer be paid
        await registrations.record_issuance_error(
            db, reg_id, f"payment {psid} received: {e.message}")
        logger.error("payment_for_inactive_registration",
                     registration_id=reg_id, psid=psid,
                     status=e.details.get("status"))
        outcome = PaymentOutcome(order_status=PAID_UNFULFILLED)
    else:
        logger.info("registration_paid", registration_id=reg_id, psid=psid,
                    amount=ps.get("amount"))
        outcome = await fulfill(db, reg)

    async with timeit("paymentsession.remove_pending"):
        await store.remove_pending(psid)
    return outcome


# ----------------------------
# Admin transitions
# ----------------------------
async def approve(db: GatedAsyncSession, reg_id: str) -> IssueResult:
    """Approve a registration and issue its tickets."""
    reg = await registrations.approve_registration(db, reg_id)
    logger.info("registration_approved", registration_id=reg.id,
                status=reg.status.value)
    return await generate_tickets(db, reg.id)


async def generate_tickets(db: GatedAsyncSession, reg_id: str) -> IssueResult:
    try:
        async with timeit("tickets.issue"):
            res = await tickets.issue_tickets(db, reg_id)
    except InsufficientStockError as e:
        await registrations.record_issuance_error(db, reg_id, e.message)
        logger.warning("ticket_issuance_rejected", registration_id=reg_id,
                       code=e.code.value, error=e.message)
        raise
    if res.created:
        logger.info("tickets_issued", registration_id=reg_id,
                    count=len(res.tickets))
    return res


async def cancel(db: GatedAsyncSession, reg_id: str) -> Registration:
    reg = await registrations.cancel_registration(db, reg_id)
    logger.info("registration_cancelled", registration_id=reg.id,
                coupon=reg.applied_coupon_code)
    return reg
