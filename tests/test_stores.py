"""Store-level tests against a throwaway SQLite file."""

import asyncio

import pytest

from vrbooking.domain import CartLine, DiscountType, RegistrationStatus
from vrbooking.errors import (
    CouponExhaustedError, CouponUserLimitError, DuplicatePaymentError,
    EmsRegistrationPendingError, InsufficientStockError,
    InvalidStatusTransitionError, InUseError, NotApprovedError,
    RegistrationNotFoundError, TicketTypeNotFoundError, ValidationError,
)
from vrbooking.model.tickets import IssueResult
from vrbooking.helpers import now_ts
from vrbooking.issuance import validate_ticket_number
from vrbooking.model import catalog, coupons, registrations, tickets
from vrbooking.pricing import calculate_cart_pricing


async def make_type(db, name="VR 30", price=3000, stock=10, **kw):
    return await catalog.create_ticket_type(
        db, name=name, price_in_cents=price, available_stock=stock, **kw)


async def make_registration(db, lines, *, email="guest@example.com",
                            coupon=None, is_ems=False):
    cart = [CartLine(tt.id, qty) for tt, qty in lines]
    types = {tt.id: tt for tt, _ in lines}
    pricing = calculate_cart_pricing(
        cart, types, is_ems, coupon.code if coupon else None,
        coupon=coupon, now=now_ts())
    return await registrations.create_registration(
        db, email=email, cart=cart, ticket_types=types, pricing=pricing,
        is_ems_client=is_ems, first_name="Ada", last_name="Lovelace")


# ----------------------------
# Catalog
# ----------------------------
async def test_create_and_get_ticket_type(db):
    tt = await make_type(db, description="half an hour", sort_order=5)
    got = await catalog.get_ticket_type(db, tt.id)
    assert got == tt
    assert (await catalog.get_ticket_types(db, [tt.id, "nope"])) == \
        {tt.id: tt}


async def test_unknown_ticket_type(db):
    with pytest.raises(TicketTypeNotFoundError):
        await catalog.get_ticket_type(db, "nope")


async def test_create_ticket_type_rejects_bad_input(db):
    with pytest.raises(ValidationError):
        await make_type(db, name="  ")
    with pytest.raises(ValidationError):
        await make_type(db, price=-1)
    with pytest.raises(ValidationError):
        await make_type(db, min_per_order=5, max_per_order=2)
    with pytest.raises(ValidationError):
        await make_type(db, colour="red")


async def test_public_listing_and_price(db):
    now = now_ts()
    await make_type(db, name="Short", price=3000, sort_order=10)
    await make_type(db, name="Long", price=5000, sort_order=20)
    await make_type(db, name="EMS", price=0, sort_order=30,
                    ems_clients_only=True)
    await make_type(db, name="Retired", price=9000, sort_order=40,
                    is_active=False)
    await make_type(db, name="Future", price=7000, sort_order=50,
                    available_from=now + 3600)

    public = await catalog.list_public_ticket_types(db, now)
    assert [t.name for t in public] == ["Short", "Long", "EMS"]
    assert await catalog.current_public_price(db, now, 1234) == 5000


async def test_public_price_falls_back_to_default(db):
    assert await catalog.current_public_price(db, now_ts(), 1234) == 1234


async def test_update_ticket_type(db):
    tt = await make_type(db)
    updated = await catalog.update_ticket_type(
        db, tt.id, {"price_in_cents": 3500, "is_active": False})
    assert updated.price_in_cents == 3500
    assert (await catalog.get_ticket_type(db, tt.id)) == updated
    with pytest.raises(ValidationError):
        await catalog.update_ticket_type(db, tt.id, {"available_stock": 99})


@pytest.mark.parametrize("changes", [
    {"name": None},
    {"name": "   "},
    {"is_active": None},
    {"price_in_cents": None},
    {"sort_order": None, "available_from": None},
])
async def test_update_ticket_type_rejects_nulls(db, changes):
    tt = await make_type(db)
    with pytest.raises(ValidationError):
        await catalog.update_ticket_type(db, tt.id, changes)
    assert (await catalog.get_ticket_type(db, tt.id)) == tt


async def test_update_ticket_type_clears_window(db):
    tt = await make_type(db, available_from=now_ts() + 3600)
    updated = await catalog.update_ticket_type(
        db, tt.id, {"available_from": None, "name": " VR 45 "})
    assert updated.available_from is None
    assert updated.name == "VR 45"
    assert (await catalog.get_ticket_type(db, tt.id)) == updated


async def test_delete_ticket_type(db):
    unused = await make_type(db, name="Unused")
    booked = await make_type(db, name="Booked")
    await make_registration(db, [(booked, 1)])

    await catalog.delete_ticket_type(db, unused.id)
    with pytest.raises(TicketTypeNotFoundError):
        await catalog.get_ticket_type(db, unused.id)
    with pytest.raises(TicketTypeNotFoundError):
        await catalog.delete_ticket_type(db, unused.id)
    with pytest.raises(InUseError):
        await catalog.delete_ticket_type(db, booked.id)
    assert (await catalog.get_ticket_type(db, booked.id)).name == "Booked"


async def test_adjust_stock_never_goes_negative(db):
    tt = await make_type(db, stock=3)
    assert (await catalog.adjust_stock(db, tt.id, 4)).available_stock == 7
    with pytest.raises(InsufficientStockError):
        await catalog.adjust_stock(db, tt.id, -8)
    assert (await catalog.get_ticket_type(db, tt.id)).available_stock == 7
    with pytest.raises(TicketTypeNotFoundError):
        await catalog.adjust_stock(db, "nope", 1)


# ----------------------------
# Coupons
# ----------------------------
async def test_coupon_code_is_normalized_and_unique(db):
    c = await coupons.create_coupon(db, code=" spring ",
                                    discount_type="PERCENTAGE",
                                    discount_value=20)
    assert c.code == "SPRING"
    assert (await coupons.get_coupon_by_code(db, "spring")).id == c.id
    with pytest.raises(ValidationError):
        await coupons.create_coupon(db, code="SPRING",
                                    discount_type=DiscountType.FIXED_AMOUNT,
                                    discount_value=500)


async def test_coupon_definition_is_checked(db):
    with pytest.raises(ValidationError):
        await coupons.create_coupon(db, code="X", discount_type="BOGUS",
                                    discount_value=5)
    with pytest.raises(ValidationError):
        await coupons.create_coupon(db, code="X",
                                    discount_type="PERCENTAGE",
                                    discount_value=150)


async def test_registration_claims_coupon_up_to_the_cap(db):
    tt = await make_type(db)
    c = await coupons.create_coupon(db, code="ONCE",
                                    discount_type="FIXED_AMOUNT",
                                    discount_value=1000, max_uses=1)
    reg = await make_registration(db, [(tt, 1)], coupon=c)
    assert reg.discount_amount == 1000
    assert reg.applied_coupon_code == "ONCE"

    # the stale coupon value still passes the rules; the claim must not
    with pytest.raises(CouponExhaustedError):
        await make_registration(db, [(tt, 1)], coupon=c,
                                email="other@example.com")
    total, _ = await registrations.list_registrations(db)
    assert total == 1
    assert (await coupons.get_coupon_by_code(db, "ONCE")).current_uses == 1


async def test_user_uses_are_counted_per_email(db):
    tt = await make_type(db)
    c = await coupons.create_coupon(db, code="PER", discount_type="PERCENTAGE",
                                    discount_value=10)
    await make_registration(db, [(tt, 1)], coupon=c,
                            email="Guest@Example.com")
    coupon, uses = await coupons.lookup_coupon(db, "per",
                                               "guest@example.com")
    assert coupon.id == c.id
    assert uses == 1
    _, other = await coupons.lookup_coupon(db, "PER", "else@example.com")
    assert other == 0


async def test_claim_enforces_per_customer_limit(db):
    tt = await make_type(db)
    c = await coupons.create_coupon(db, code="ONEEACH",
                                    discount_type="PERCENTAGE",
                                    discount_value=10, max_uses_per_user=1)
    await make_registration(db, [(tt, 1)], coupon=c)
    # quoted without the prior use; the claim still counts it
    with pytest.raises(CouponUserLimitError):
        await make_registration(db, [(tt, 1)], coupon=c,
                                email="GUEST@example.com")
    await make_registration(db, [(tt, 1)], coupon=c,
                            email="else@example.com")
    total, _ = await registrations.list_registrations(db)
    assert total == 2
    assert (await coupons.get_coupon(db, c.id)).current_uses == 2


async def test_ems_registration_does_not_use_coupon(db):
    tt = await make_type(db)
    c = await coupons.create_coupon(db, code="ONCE",
                                    discount_type="PERCENTAGE",
                                    discount_value=10, max_uses=1)
    reg = await make_registration(db, [(tt, 2)], coupon=c, is_ems=True)
    assert reg.final_amount == 0
    assert reg.applied_coupon_code is None
    assert (await coupons.get_coupon(db, c.id)).current_uses == 0
    public = await make_registration(db, [(tt, 1)], coupon=c,
                                     email="public@example.com")
    assert public.applied_coupon_code == "ONCE"


async def test_update_coupon(db):
    tt = await make_type(db)
    c = await coupons.create_coupon(db, code="LEAKED",
                                    discount_type="PERCENTAGE",
                                    discount_value=50, max_uses=10)
    await make_registration(db, [(tt, 1)], coupon=c)
    await make_registration(db, [(tt, 1)], coupon=c,
                            email="other@example.com")

    off = await coupons.update_coupon(db, c.id, {"is_active": False,
                                                 "name": "Leaked"})
    assert not off.is_active
    assert off.name == "Leaked"
    assert off.current_uses == 2
    assert (await coupons.get_coupon_by_code(db, "LEAKED")) == off

    capped = await coupons.update_coupon(db, c.id, {"max_uses": 2})
    assert capped.max_uses == 2
    with pytest.raises(ValidationError) as exc:
        await coupons.update_coupon(db, c.id, {"max_uses": 1})
    assert exc.value.details["current_uses"] == 2
    unlimited = await coupons.update_coupon(db, c.id, {"max_uses": None})
    assert unlimited.max_uses is None

    assert await coupons.update_coupon(db, "nope", {"is_active": True}) \
        is None


@pytest.mark.parametrize("changes", [
    {"is_active": None},
    {"discount_value": 0},
    {"discount_value": 150},
    {"discount_type": "BOGUS"},
    {"ems_clients_only": True, "public_only": True},
    {"valid_from": 2000.0, "valid_to": 1000.0},
    {"code": "OTHER"},
])
async def test_update_coupon_rejects_bad_changes(db, changes):
    c = await coupons.create_coupon(db, code="KEEP",
                                    discount_type="PERCENTAGE",
                                    discount_value=10)
    with pytest.raises(ValidationError):
        await coupons.update_coupon(db, c.id, changes)
    assert (await coupons.get_coupon(db, c.id)) == c


async def test_delete_coupon(db):
    tt = await make_type(db)
    unused = await coupons.create_coupon(db, code="UNUSED",
                                         discount_type="PERCENTAGE",
                                         discount_value=10)
    used = await coupons.create_coupon(db, code="USED",
                                       discount_type="PERCENTAGE",
                                       discount_value=10)
    await make_registration(db, [(tt, 1)], coupon=used)

    assert await coupons.delete_coupon(db, unused.id)
    assert await coupons.get_coupon(db, unused.id) is None
    assert not await coupons.delete_coupon(db, unused.id)
    with pytest.raises(InUseError):
        await coupons.delete_coupon(db, used.id)
    assert (await coupons.get_coupon(db, used.id)).current_uses == 1


# ----------------------------
# Registrations
# ----------------------------
async def test_create_and_load_registration(db):
    a = await make_type(db, name="A", price=2000)
    b = await make_type(db, name="B", price=5000)
    reg = await make_registration(db, [(a, 2), (b, 1)],
                                  email=" Guest@Example.COM ")
    assert reg.email == "guest@example.com"
    assert reg.final_amount == 9000

    loaded = await registrations.get_registration(db, reg.id)
    assert loaded.status == RegistrationStatus.PENDING
    assert [(i.name, i.quantity, i.unit_price_in_cents)
            for i in loaded.items] == [("A", 2, 2000), ("B", 1, 5000)]
    assert loaded.ticket_count == 3


async def test_missing_registration(db):
    with pytest.raises(RegistrationNotFoundError):
        await registrations.get_registration(db, "nope")


async def test_list_registrations_filters(db):
    tt = await make_type(db)
    r1 = await make_registration(db, [(tt, 1)], email="one@example.com")
    await make_registration(db, [(tt, 1)], email="two@example.com")
    await registrations.approve_registration(db, r1.id)

    total, items = await registrations.list_registrations(
        db, status="approved")
    assert total == 1 and items[0].id == r1.id
    total, items = await registrations.list_registrations(db, q="two@")
    assert total == 1 and items[0].email == "two@example.com"


async def test_mark_paid_is_idempotent(db):
    tt = await make_type(db)
    reg = await make_registration(db, [(tt, 1)])
    paid = await registrations.mark_paid(db, reg.id, "mock_1")
    assert paid.status == RegistrationStatus.PAID
    assert paid.paid_at is not None
    again = await registrations.mark_paid(db, reg.id, "mock_1")
    assert again.paid_at == paid.paid_at


async def test_cancel_releases_coupon(db):
    tt = await make_type(db)
    c = await coupons.create_coupon(db, code="ONCE",
                                    discount_type="PERCENTAGE",
                                    discount_value=10, max_uses=1)
    reg = await make_registration(db, [(tt, 1)], coupon=c)
    cancelled = await registrations.cancel_registration(db, reg.id)
    assert cancelled.status == RegistrationStatus.CANCELLED
    assert (await coupons.get_coupon_by_code(db, "ONCE")).current_uses == 0

    with pytest.raises(InvalidStatusTransitionError):
        await registrations.cancel_registration(db, reg.id)
    assert (await coupons.get_coupon_by_code(db, "ONCE")).current_uses == 0


async def test_cancelled_registration_cannot_be_approved_or_paid(db):
    tt = await make_type(db)
    reg = await make_registration(db, [(tt, 1)])
    await registrations.cancel_registration(db, reg.id)
    with pytest.raises(InvalidStatusTransitionError):
        await registrations.approve_registration(db, reg.id)
    with pytest.raises(InvalidStatusTransitionError):
        await registrations.mark_paid(db, reg.id, "mock_1")


async def test_second_payment_is_recorded_as_duplicate(db):
    tt = await make_type(db)
    reg = await make_registration(db, [(tt, 1)])
    await registrations.mark_paid(db, reg.id, "mock_1")

    for _ in range(2):
        with pytest.raises(DuplicatePaymentError) as exc:
            await registrations.mark_paid(db, reg.id, "mock_2")
        assert exc.value.details["paid_with"] == "mock_1"
    await registrations.mark_paid(db, reg.id, "mock_1")

    loaded = await registrations.get_registration(db, reg.id)
    assert loaded.payment_reference == "mock_1"
    assert loaded.duplicate_payments == ("mock_2",)


async def test_payment_reference_is_compare_and_set(db):
    tt = await make_type(db)
    reg = await make_registration(db, [(tt, 1)])
    assert await registrations.set_payment_reference(db, reg.id, "mock_1",
                                                     None)
    assert not await registrations.set_payment_reference(db, reg.id,
                                                         "mock_2", None)
    assert await registrations.set_payment_reference(db, reg.id, "mock_2",
                                                     "mock_1")

    # only the current session can be cleared
    await registrations.clear_payment_reference(db, reg.id, "mock_1")
    assert (await registrations.get_registration(
        db, reg.id)).payment_reference == "mock_2"
    await registrations.clear_payment_reference(db, reg.id, "mock_2")
    assert (await registrations.get_registration(
        db, reg.id)).payment_reference is None


async def test_one_pending_ems_registration_per_email(db):
    tt = await make_type(db)
    first = await make_registration(db, [(tt, 1)], is_ems=True)
    with pytest.raises(EmsRegistrationPendingError) as exc:
        await make_registration(db, [(tt, 1)], is_ems=True,
                                email="GUEST@example.com")
    assert exc.value.details["registration_id"] == first.id
    assert await registrations.find_pending_ems_registration(
        db, "guest@example.com") == first.id

    # public bookings from the same address are not limited
    await make_registration(db, [(tt, 1)])
    await registrations.approve_registration(db, first.id)
    assert await registrations.find_pending_ems_registration(
        db, "guest@example.com") is None
    await make_registration(db, [(tt, 1)], is_ems=True)


# ----------------------------
# Issuance
# ----------------------------
async def test_issue_tickets_decrements_stock(db):
    a = await make_type(db, name="A", stock=5)
    b = await make_type(db, name="B", stock=5)
    reg = await make_registration(db, [(a, 2), (b, 1)])
    await registrations.approve_registration(db, reg.id)

    res = await tickets.issue_tickets(db, reg.id)
    assert res.created
    assert [t.sequence_number for t in res.tickets] == [1, 2, 3]
    assert all(validate_ticket_number(t.ticket_number) for t in res.tickets)
    assert (await catalog.get_ticket_type(db, a.id)).available_stock == 3
    assert (await catalog.get_ticket_type(db, a.id)).sold_stock == 2
    assert (await catalog.get_ticket_type(db, b.id)).available_stock == 4

    loaded = await registrations.get_registration(db, reg.id)
    assert loaded.tickets_issued_at is not None


async def test_issue_tickets_is_idempotent(db):
    tt = await make_type(db, stock=5)
    reg = await make_registration(db, [(tt, 2)])
    await registrations.mark_paid(db, reg.id, "mock_1")

    first = await tickets.issue_tickets(db, reg.id)
    second = await tickets.issue_tickets(db, reg.id)
    assert not second.created
    assert [t.ticket_number for t in second.tickets] == \
        [t.ticket_number for t in first.tickets]
    assert (await catalog.get_ticket_type(db, tt.id)).available_stock == 3
    assert len(await tickets.get_tickets(db, reg.id)) == 2


async def test_issue_requires_approval(db):
    tt = await make_type(db)
    reg = await make_registration(db, [(tt, 1)])
    with pytest.raises(NotApprovedError):
        await tickets.issue_tickets(db, reg.id)


async def test_insufficient_stock_changes_nothing(db):
    a = await make_type(db, name="A", stock=5)
    b = await make_type(db, name="B", stock=1)
    reg = await make_registration(db, [(a, 2), (b, 1)])
    await registrations.approve_registration(db, reg.id)
    # another booking takes the last B
    await catalog.adjust_stock(db, b.id, -1)

    with pytest.raises(InsufficientStockError) as exc:
        await tickets.issue_tickets(db, reg.id)
    assert exc.value.ticket_type_id == b.id
    assert exc.value.available == 0

    # A's decrement was rolled back with the rest
    assert (await catalog.get_ticket_type(db, a.id)).available_stock == 5
    assert (await catalog.get_ticket_type(db, a.id)).sold_stock == 0
    assert await tickets.get_tickets(db, reg.id) == []
    loaded = await registrations.get_registration(db, reg.id)
    assert loaded.tickets_issued_at is None


async def test_last_units_go_to_one_registration(db, db2):
    tt = await make_type(db, stock=3)
    first = await make_registration(db, [(tt, 2)], email="a@example.com")
    second = await make_registration(db, [(tt, 2)], email="b@example.com")
    await registrations.approve_registration(db, first.id)
    await registrations.approve_registration(db, second.id)

    results = await asyncio.gather(
        tickets.issue_tickets(db, first.id),
        tickets.issue_tickets(db2, second.id),
        return_exceptions=True,
    )
    issued = [r for r in results if isinstance(r, IssueResult)]
    refused = [r for r in results if isinstance(r, InsufficientStockError)]
    assert len(issued) == 1 and issued[0].created
    assert len(refused) == 1
    assert (await catalog.get_ticket_type(db, tt.id)).available_stock == 1
    assert (await catalog.get_ticket_type(db, tt.id)).sold_stock == 2


async def test_concurrent_issue_for_one_registration(db, db2):
    tt = await make_type(db, stock=5)
    reg = await make_registration(db, [(tt, 2)])
    await registrations.approve_registration(db, reg.id)

    results = await asyncio.gather(
        tickets.issue_tickets(db, reg.id),
        tickets.issue_tickets(db2, reg.id),
    )
    assert sorted(r.created for r in results) == [False, True]
    assert (await catalog.get_ticket_type(db, tt.id)).available_stock == 3
    assert len(await tickets.get_tickets(db, reg.id)) == 2


async def test_find_by_number(db):
    tt = await make_type(db, name="VR 60")
    reg = await make_registration(db, [(tt, 1)], is_ems=True)
    await registrations.approve_registration(db, reg.id)
    res = await tickets.issue_tickets(db, reg.id)
    number = res.tickets[0].ticket_number
    assert number.startswith("VREMS")
    assert res.tickets[0].purchase_price == 0

    row = await tickets.find_by_number(db, number)
    assert row["registration_status"] == "APPROVED"
    assert row["ticket_type_name"] == "VR 60"
    assert row["first_name"] == "Ada"
    assert await tickets.find_by_number(db, "VRSTD000000DEADBEEF") is None
