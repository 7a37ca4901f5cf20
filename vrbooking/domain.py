"""Domain models passed between the stores and the engines.

These are plain immutable values. ORM models live in model/db.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class RegistrationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


@dataclass(frozen=True)
class TicketType:
    id: str
    name: str
    price_in_cents: int
    available_stock: int
    max_per_order: int = 10
    min_per_order: int = 1
    is_active: bool = True
    description: str = ""
    sold_stock: int = 0
    ems_clients_only: bool = False
    public_only: bool = False
    available_from: Optional[float] = None
    available_until: Optional[float] = None
    sort_order: int = 0

    def __post_init__(self) -> None:
        if self.price_in_cents < 0:
            raise ValueError("price_in_cents cannot be negative")
        if self.available_stock < 0:
            raise ValueError("available_stock cannot be negative")
        if not (self.max_per_order >= self.min_per_order >= 0):
            raise ValueError("expected max_per_order >= min_per_order >= 0")

    def is_available_at(self, now: float) -> bool:
        if not self.is_active:
            return False
        if self.available_from is not None and self.available_from > now:
            return False
        if self.available_until is not None and self.available_until < now:
            return False
        return True


@dataclass(frozen=True)
class Coupon:
    id: str
    code: str
    discount_type: DiscountType
    discount_value: int
    name: str = ""
    min_order_amount: Optional[int] = None
    max_uses: Optional[int] = None
    current_uses: int = 0
    max_uses_per_user: Optional[int] = None
    valid_from: float = 0.0
    valid_to: Optional[float] = None
    is_active: bool = True
    ems_clients_only: bool = False
    public_only: bool = False


@dataclass(frozen=True)
class CartLine:
    ticket_type_id: str
    quantity: int


@dataclass(frozen=True)
class AppliedCoupon:
    id: str
    code: str
    name: str
    discount_type: DiscountType
    discount_value: int


@dataclass(frozen=True)
class PricingResult:
    """Amounts in minor currency units."""

    original_amount: int
    discount_amount: int
    final_amount: int
    applied_coupon: Optional[AppliedCoupon] = None

    def __post_init__(self) -> None:
        if min(self.original_amount, self.discount_amount,
               self.final_amount) < 0:
            raise ValueError("pricing amounts cannot be negative")
        if self.discount_amount > self.original_amount:
            raise ValueError("discount cannot exceed the original amount")
        if self.final_amount != self.original_amount - self.discount_amount:
            raise ValueError("final amount must equal original - discount")

    @property
    def has_discount(self) -> bool:
        return self.discount_amount > 0


@dataclass(frozen=True)
class RegistrationItem:
    ticket_type_id: str
    name: str
    quantity: int
    unit_price_in_cents: int


@dataclass(frozen=True)
class Registration:
    id: str
    email: str
    status: RegistrationStatus
    items: Tuple[RegistrationItem, ...] = ()
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    is_ems_client: bool = False
    original_amount: int = 0
    discount_amount: int = 0
    final_amount: int = 0
    currency: str = "eur"
    applied_coupon_code: Optional[str] = None
    payment_reference: Optional[str] = None
    paid_at: Optional[float] = None
    tickets_issued_at: Optional[float] = None
    issuance_error: Optional[str] = None
    # psids of successful payments beyond the first; each one needs a refund
    duplicate_payments: Tuple[str, ...] = ()
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def ticket_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def requires_payment(self) -> bool:
        return self.final_amount > 0


@dataclass(frozen=True)
class TicketDraft:
    ticket_type_id: str
    sequence_number: int
    ticket_number: str
    purchase_price: int


@dataclass(frozen=True)
class Ticket:
    id: str
    registration_id: str
    ticket_type_id: str
    sequence_number: int
    ticket_number: str
    purchase_price: int = 0
    created_at: float = 0.0
