"""
Pricing engine: pure computation of quotes from plain values.

The calling layer reads TicketType and Coupon records and passes them in;
nothing here touches the store, the clock or the network. All amounts are
integers in minor currency units (cents).

Percentage discounts use round-half-up on integers:
    discount = (amount * percent + 50) // 100
so 4000 @ 10% -> 400 and 1005 @ 10% -> 101 (100.5 rounds up).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from .domain import (
    AppliedCoupon, CartLine, Coupon, DiscountType, PricingResult, TicketType,
)
from .errors import (
    CouponExhaustedError, CouponExpiredError, CouponMinOrderError,
    CouponNotApplicableError, CouponNotFoundError, CouponUserLimitError,
    ValidationError,
)

SIMPLE_MIN_QUANTITY = 1
SIMPLE_MAX_QUANTITY = 10
DEFAULT_TICKET_PRICE = 5000  # cents (EUR 50.00)
EMS_TICKET_PRICE = 0  # EMS clients are complimentary

CURRENCY_SYMBOLS = {"eur": "€", "usd": "$", "gbp": "£"}


@dataclass(frozen=True)
class PriceTable:
    """Per-unit base price for the simple quantity path."""

    public: int = DEFAULT_TICKET_PRICE
    ems: int = EMS_TICKET_PRICE

    def unit_price(self, is_ems_client: bool) -> int:
        return self.ems if is_ems_client else self.public


# ----------------------------
# Helpers
# ----------------------------
def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def percentage_of(amount: int, percent: int) -> int:
    return (amount * percent + 50) // 100


def format_price(cents: int, currency: str = "eur") -> str:
    """Display-only rendering, e.g. 4000 -> '€40.00'."""
    symbol = CURRENCY_SYMBOLS.get(currency.lower(), currency.upper() + " ")
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}{symbol}{whole}.{frac:02d}"


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# ----------------------------
# Coupons
# ----------------------------
def check_coupon_definition(discount_type: DiscountType,
                            discount_value: int) -> None:
    if not _is_int(discount_value) or discount_value <= 0:
        raise ValidationError("discount_value must be a positive integer",
                              discount_value=discount_value)
    if discount_type == DiscountType.PERCENTAGE and discount_value > 100:
        raise ValidationError("percentage discount cannot exceed 100",
                              discount_value=discount_value)


def check_coupon(
    coupon: Optional[Coupon],
    code: str,
    *,
    order_amount: int,
    is_ems_client: bool,
    now: float,
    user_uses: int = 0,
) -> Coupon:
    """Raise the first coupon rule that fails, else return the coupon."""
    wanted = normalize_code(code)
    if coupon is None or not coupon.is_active or coupon.code != wanted:
        raise CouponNotFoundError(wanted)
    if coupon.valid_from > now:
        raise CouponExpiredError(coupon.code, not_yet_valid=True)
    if coupon.valid_to is not None and coupon.valid_to < now:
        raise CouponExpiredError(coupon.code)
    if (coupon.ems_clients_only and not is_ems_client) or \
            (coupon.public_only and is_ems_client):
        raise CouponNotApplicableError(coupon.code, is_ems_client)
    if coupon.max_uses is not None and coupon.current_uses >= coupon.max_uses:
        raise CouponExhaustedError(coupon.code, coupon.max_uses)
    if coupon.max_uses_per_user is not None and \
            user_uses >= coupon.max_uses_per_user:
        raise CouponUserLimitError(coupon.code, coupon.max_uses_per_user)
    if coupon.min_order_amount is not None and \
            order_amount < coupon.min_order_amount:
        raise CouponMinOrderError(coupon.code, coupon.min_order_amount)
    return coupon


def compute_discount(coupon: Coupon, original_amount: int) -> int:
    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = percentage_of(original_amount, coupon.discount_value)
    else:
        discount = coupon.discount_value
    return max(0, min(discount, original_amount))


def validate_coupon(
    coupon: Optional[Coupon],
    code: str,
    *,
    order_amount: int,
    is_ems_client: bool,
    now: float,
    user_uses: int = 0,
) -> int:
    """Check a coupon against an order amount; return the discount."""
    if not normalize_code(code):
        raise ValidationError("Coupon code is required")
    if not _is_int(order_amount) or order_amount < 0:
        raise ValidationError("order_amount must be a non-negative integer",
                              order_amount=order_amount)
    coupon = check_coupon(
        coupon, code, order_amount=order_amount,
        is_ems_client=is_ems_client, now=now, user_uses=user_uses,
    )
    return compute_discount(coupon, order_amount)


def _priced(
    original_amount: int,
    is_ems_client: bool,
    coupon_code: Optional[str],
    coupon: Optional[Coupon],
    now: float,
    user_uses: int,
) -> PricingResult:
    # coupons never attach to free orders (EMS clients, zero totals)
    if not normalize_code(coupon_code) or is_ems_client or \
            original_amount == 0:
        return PricingResult(original_amount, 0, original_amount)

    coupon = check_coupon(
        coupon, coupon_code, order_amount=original_amount,
        is_ems_client=is_ems_client, now=now, user_uses=user_uses,
    )
    discount = compute_discount(coupon, original_amount)
    return PricingResult(
        original_amount=original_amount,
        discount_amount=discount,
        final_amount=max(0, original_amount - discount),
        applied_coupon=AppliedCoupon(
            id=coupon.id,
            code=coupon.code,
            name=coupon.name,
            discount_type=coupon.discount_type,
            discount_value=coupon.discount_value,
        ),
    )


# ----------------------------
# Simple quantity path
# ----------------------------
def calculate_pricing(
    quantity: int,
    is_ems_client: bool,
    coupon_code: Optional[str] = None,
    *,
    coupon: Optional[Coupon] = None,
    prices: PriceTable = PriceTable(),
    now: float,
    user_uses: int = 0,
) -> PricingResult:
    if not _is_int(quantity) or \
            not SIMPLE_MIN_QUANTITY <= quantity <= SIMPLE_MAX_QUANTITY:
        raise ValidationError(
            f"quantity must be between {SIMPLE_MIN_QUANTITY} and "
            f"{SIMPLE_MAX_QUANTITY}",
            quantity=quantity,
        )
    original = prices.unit_price(is_ems_client) * quantity
    return _priced(original, is_ems_client, coupon_code, coupon, now,
                   user_uses)


# ----------------------------
# Cart path
# ----------------------------
def line_unit_price(ticket_type: TicketType, is_ems_client: bool) -> int:
    return EMS_TICKET_PRICE if is_ems_client else ticket_type.price_in_cents


def validate_cart(
    cart: Sequence[CartLine],
    ticket_types: Mapping[str, TicketType],
    is_ems_client: bool,
    now: Optional[float] = None,
) -> None:
    if not cart:
        raise ValidationError("At least one ticket must be selected")

    seen = set()
    for line in cart:
        tt = ticket_types.get(line.ticket_type_id)
        if tt is None:
            raise ValidationError("Unknown ticket type",
                                  ticket_type_id=line.ticket_type_id)
        if line.ticket_type_id in seen:
            raise ValidationError("Ticket type selected more than once",
                                  ticket_type_id=line.ticket_type_id)
        seen.add(line.ticket_type_id)

        available = tt.is_available_at(now) if now is not None \
            else tt.is_active
        if not available:
            raise ValidationError(f"{tt.name} is not available",
                                  ticket_type_id=tt.id)
        if (tt.ems_clients_only and not is_ems_client) or \
                (tt.public_only and is_ems_client):
            raise ValidationError(f"{tt.name} is not available to you",
                                  ticket_type_id=tt.id)
        if not _is_int(line.quantity) or line.quantity < 1:
            raise ValidationError("quantity must be a positive integer",
                                  ticket_type_id=tt.id,
                                  quantity=line.quantity)
        if line.quantity < tt.min_per_order:
            raise ValidationError(
                f"Minimum {tt.min_per_order} per order for {tt.name}",
                ticket_type_id=tt.id, quantity=line.quantity,
            )
        if line.quantity > tt.max_per_order:
            raise ValidationError(
                f"Maximum {tt.max_per_order} per order for {tt.name}",
                ticket_type_id=tt.id, quantity=line.quantity,
            )


def cart_total(
    cart: Sequence[CartLine],
    ticket_types: Mapping[str, TicketType],
    is_ems_client: bool,
) -> int:
    return sum(
        line_unit_price(ticket_types[line.ticket_type_id], is_ems_client)
        * line.quantity
        for line in cart
    )


def calculate_cart_pricing(
    cart: Sequence[CartLine],
    ticket_types: Mapping[str, TicketType],
    is_ems_client: bool,
    coupon_code: Optional[str] = None,
    *,
    coupon: Optional[Coupon] = None,
    now: float,
    user_uses: int = 0,
) -> PricingResult:
    validate_cart(cart, ticket_types, is_ems_client, now)
    original = cart_total(cart, ticket_types, is_ems_client)
    return _priced(original, is_ems_client, coupon_code, coupon, now,
                   user_uses)
