"""Request bodies (pydantic) and the JSON shapes we send back (plain dicts)."""

from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from .domain import (
    Coupon, DiscountType, PricingResult, Registration, Ticket, TicketType,
)
from .helpers import to_iso
from .issuance import verification_url
from .pricing import format_price


# ----------------------------
# Requests
# ----------------------------
class CartItem(BaseModel):
    ticket_type_id: str
    quantity: int


class PricingRequest(BaseModel):
    quantity: int
    is_ems_client: bool = False
    coupon_code: Optional[str] = None
    customer_email: Optional[str] = None


class QuoteRequest(BaseModel):
    items: List[CartItem]
    is_ems_client: bool = False
    coupon_code: Optional[str] = None
    customer_email: Optional[str] = None


class CouponValidateRequest(BaseModel):
    code: str
    order_amount: int
    is_ems_client: bool = False
    customer_email: Optional[str] = None


class RegistrationRequest(BaseModel):
    email: str
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    is_ems_client: bool = False
    items: List[CartItem]
    coupon_code: Optional[str] = None


class CheckoutRequest(BaseModel):
    registration_id: str


class TicketTypeCreate(BaseModel):
    name: str
    price_in_cents: int = Field(ge=0)
    available_stock: int = Field(ge=0)
    description: str = ""
    max_per_order: int = Field(10, ge=0)
    min_per_order: int = Field(1, ge=0)
    is_active: bool = True
    ems_clients_only: bool = False
    public_only: bool = False
    available_from: Optional[float] = None
    available_until: Optional[float] = None
    sort_order: int = 0


class TicketTypeUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price_in_cents: Optional[int] = Field(None, ge=0)
    max_per_order: Optional[int] = Field(None, ge=0)
    min_per_order: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    ems_clients_only: Optional[bool] = None
    public_only: Optional[bool] = None
    available_from: Optional[float] = None
    available_until: Optional[float] = None
    sort_order: Optional[int] = None


class StockAdjustment(BaseModel):
    delta: int


class CouponCreate(BaseModel):
    code: str
    discount_type: DiscountType
    discount_value: int
    name: str = ""
    min_order_amount: Optional[int] = Field(None, ge=0)
    max_uses: Optional[int] = Field(None, ge=1)
    max_uses_per_user: Optional[int] = Field(None, ge=1)
    valid_from: Optional[float] = None
    valid_to: Optional[float] = None
    is_active: bool = True
    ems_clients_only: bool = False
    public_only: bool = False


class CouponUpdate(BaseModel):
    name: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[int] = None
    min_order_amount: Optional[int] = Field(None, ge=0)
    max_uses: Optional[int] = Field(None, ge=1)
    max_uses_per_user: Optional[int] = Field(None, ge=1)
    valid_from: Optional[float] = None
    valid_to: Optional[float] = None
    is_active: Optional[bool] = None
    ems_clients_only: Optional[bool] = None
    public_only: Optional[bool] = None


class TicketStatusRequest(BaseModel):
    email: Optional[str] = None
    ticket_number: Optional[str] = None


# ----------------------------
# Responses
# ----------------------------
def pricing_out(p: PricingResult, currency: str) -> Dict[str, Any]:
    coupon = None
    if p.applied_coupon is not None:
        c = p.applied_coupon
        coupon = {
            "id": c.id,
            "code": c.code,
            "name": c.name,
            "discount_type": c.discount_type.value,
            "discount_value": c.discount_value,
        }
    return {
        "original_amount": p.original_amount,
        "discount_amount": p.discount_amount,
        "final_amount": p.final_amount,
        "currency": currency,
        "has_discount": p.has_discount,
        "applied_coupon": coupon,
        "formatted": {
            "original_amount": format_price(p.original_amount, currency),
            "discount_amount": format_price(p.discount_amount, currency),
            "final_amount": format_price(p.final_amount, currency),
        },
    }


def ticket_type_out(tt: TicketType, currency: str) -> Dict[str, Any]:
    return {
        "id": tt.id,
        "name": tt.name,
        "description": tt.description,
        "price_in_cents": tt.price_in_cents,
        "price": format_price(tt.price_in_cents, currency),
        "available_stock": tt.available_stock,
        "sold_stock": tt.sold_stock,
        "max_per_order": tt.max_per_order,
        "min_per_order": tt.min_per_order,
        "is_active": tt.is_active,
        "ems_clients_only": tt.ems_clients_only,
        "public_only": tt.public_only,
        "available_from": to_iso(tt.available_from),
        "available_until": to_iso(tt.available_until),
        "sort_order": tt.sort_order,
    }


def coupon_out(c: Coupon) -> Dict[str, Any]:
    return {
        "id": c.id,
        "code": c.code,
        "name": c.name,
        "discount_type": c.discount_type.value,
        "discount_value": c.discount_value,
        "min_order_amount": c.min_order_amount,
        "max_uses": c.max_uses,
        "current_uses": c.current_uses,
        "max_uses_per_user": c.max_uses_per_user,
        "valid_from": to_iso(c.valid_from),
        "valid_to": to_iso(c.valid_to),
        "is_active": c.is_active,
        "ems_clients_only": c.ems_clients_only,
        "public_only": c.public_only,
    }


def ticket_out(t: Ticket, base_url: str) -> Dict[str, Any]:
    return {
        "id": t.id,
        "ticket_number": t.ticket_number,
        "ticket_type_id": t.ticket_type_id,
        "sequence_number": t.sequence_number,
        "purchase_price": t.purchase_price,
        "verification_url": verification_url(base_url, t.ticket_number),
        "created_at": to_iso(t.created_at),
    }


def registration_out(
    reg: Registration,
    order_status: str,
    tickets: Sequence[Ticket] = (),
    base_url: str = "",
) -> Dict[str, Any]:
    return {
        "id": reg.id,
        "status": reg.status.value,
        "order_status": order_status,
        "email": reg.email,
        "first_name": reg.first_name,
        "last_name": reg.last_name,
        "phone": reg.phone,
        "is_ems_client": reg.is_ems_client,
        "items": [{
            "ticket_type_id": i.ticket_type_id,
            "name": i.name,
            "quantity": i.quantity,
            "unit_price_in_cents": i.unit_price_in_cents,
        } for i in reg.items],
        "ticket_count": reg.ticket_count,
        "original_amount": reg.original_amount,
        "discount_amount": reg.discount_amount,
        "final_amount": reg.final_amount,
        "final_amount_formatted": format_price(reg.final_amount,
                                               reg.currency),
        "currency": reg.currency,
        "requires_payment": reg.requires_payment,
        "applied_coupon_code": reg.applied_coupon_code,
        "payment_reference": reg.payment_reference,
        "paid_at": to_iso(reg.paid_at),
        "tickets_issued_at": to_iso(reg.tickets_issued_at),
        "issuance_error": reg.issuance_error,
        "duplicate_payments": list(reg.duplicate_payments),
        "created_at": to_iso(reg.created_at),
        "tickets": [ticket_out(t, base_url) for t in tickets],
    }
