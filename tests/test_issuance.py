import pytest

from vrbooking.domain import (
    CartLine, Registration, RegistrationItem, RegistrationStatus, TicketType,
)
from vrbooking.errors import InsufficientStockError, NotApprovedError
from vrbooking.issuance import (
    ensure_available, generate_ticket_number, plan_tickets,
    validate_ticket_number, verification_url,
)

NOW = 1_700_000_123.5


def registration(status=RegistrationStatus.APPROVED, is_ems=False):
    return Registration(
        id="reg-1",
        email="guest@example.com",
        status=status,
        is_ems_client=is_ems,
        items=(
            RegistrationItem("t30", "30 min", 2, 3000),
            RegistrationItem("t60", "60 min", 3, 5000),
        ),
    )


def test_ticket_number_layout():
    number = generate_ticket_number(False, NOW, token="abcdef01")
    assert number == "VRSTD123500ABCDEF01"
    assert validate_ticket_number(number)


def test_ems_ticket_number_prefix():
    number = generate_ticket_number(True, NOW)
    assert number.startswith("VREMS")
    assert validate_ticket_number(number)


@pytest.mark.parametrize("number", [
    "", "VRSTD123456abcdef01", "VRVIP123456ABCDEF01", "VRSTD12345ABCDEF01",
    "VRSTD123456ABCDEF0", "xVRSTD123456ABCDEF01",
])
def test_malformed_ticket_numbers(number):
    assert not validate_ticket_number(number)


def test_verification_url_joins_cleanly():
    assert verification_url("https://vr.example/verify/", "VRSTD1") == \
        "https://vr.example/verify/VRSTD1"


def test_plan_numbers_tickets_in_item_order():
    drafts = plan_tickets(registration(), NOW)
    assert [d.sequence_number for d in drafts] == [1, 2, 3, 4, 5]
    assert [d.ticket_type_id for d in drafts] == \
        ["t30", "t30", "t60", "t60", "t60"]
    assert [d.purchase_price for d in drafts] == \
        [3000, 3000, 5000, 5000, 5000]
    numbers = [d.ticket_number for d in drafts]
    assert len(set(numbers)) == len(numbers)
    assert all(validate_ticket_number(n) for n in numbers)


def test_plan_for_paid_registration():
    drafts = plan_tickets(registration(RegistrationStatus.PAID), NOW)
    assert len(drafts) == 5


@pytest.mark.parametrize("status", [RegistrationStatus.PENDING,
                                    RegistrationStatus.CANCELLED])
def test_plan_requires_approval(status):
    with pytest.raises(NotApprovedError) as exc:
        plan_tickets(registration(status), NOW)
    assert exc.value.details["status"] == status.value


def test_ensure_available():
    types = {"t30": TicketType("t30", "30 min", 3000, available_stock=2)}
    ensure_available([CartLine("t30", 2)], types)
    with pytest.raises(InsufficientStockError) as exc:
        ensure_available([CartLine("t30", 3)], types)
    assert exc.value.available == 2
    assert exc.value.requested == 3
    assert "Available: 2" in exc.value.message
