from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)


Base = declarative_base()


# ----------------------------
# Catalog
# ----------------------------
class TicketType(Base):
    __tablename__ = "ticket_types"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    price_in_cents = Column(Integer, nullable=False)
    available_stock = Column(Integer, nullable=False, default=0)
    sold_stock = Column(Integer, nullable=False, default=0)
    max_per_order = Column(Integer, nullable=False, default=10)
    min_per_order = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    ems_clients_only = Column(Boolean, nullable=False, default=False)
    public_only = Column(Boolean, nullable=False, default=False)
    available_from = Column(Float, nullable=True)
    available_until = Column(Float, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Coupon(Base):
    __tablename__ = "coupons"
    id = Column(String, primary_key=True)
    code = Column(String, nullable=False, unique=True)  # upper-case
    name = Column(String, nullable=False, default="")
    # PERCENTAGE | FIXED_AMOUNT
    discount_type = Column(String, nullable=False)
    discount_value = Column(Integer, nullable=False)
    min_order_amount = Column(Integer, nullable=True)  # cents
    max_uses = Column(Integer, nullable=True)
    current_uses = Column(Integer, nullable=False, default=0)
    max_uses_per_user = Column(Integer, nullable=True)
    valid_from = Column(Float, nullable=False)
    valid_to = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    ems_clients_only = Column(Boolean, nullable=False, default=False)
    public_only = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


# ----------------------------
# Registrations and tickets
# ----------------------------
class Registration(Base):
    __tablename__ = "registrations"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False)  # lower-case
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    phone = Column(String, nullable=False, default="")
    is_ems_client = Column(Boolean, nullable=False, default=False)

    # PENDING | APPROVED | PAID | CANCELLED
    status = Column(String, nullable=False, default="PENDING")

    original_amount = Column(Integer, nullable=False)  # cents
    discount_amount = Column(Integer, nullable=False, default=0)
    final_amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="eur")
    applied_coupon_id = Column(String, ForeignKey("coupons.id"),
                               nullable=True)
    applied_coupon_code = Column(String, nullable=True)

    payment_reference = Column(String, nullable=True)  # psid
    paid_at = Column(Float, nullable=True)
    tickets_issued_at = Column(Float, nullable=True)
    issuance_error = Column(Text, nullable=True)
    duplicate_payments = Column(Text, nullable=True)  # space separated psids

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_registrations_created_at", "created_at"),
        Index("idx_registrations_email", "email"),
    )


class RegistrationItem(Base):
    __tablename__ = "registration_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    registration_id = Column(String, ForeignKey("registrations.id"),
                             nullable=False, index=True)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    name = Column(String, nullable=False)  # snapshot
    quantity = Column(Integer, nullable=False)
    unit_price_in_cents = Column(Integer, nullable=False)  # snapshot
    position = Column(Integer, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    registration_id = Column(String, ForeignKey("registrations.id"),
                             nullable=False, index=True)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    sequence_number = Column(Integer, nullable=False)
    ticket_number = Column(String, nullable=False, unique=True)
    purchase_price = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("registration_id", "sequence_number"),
    )


# ----------------------------
# Payment sessions (pg backend)
# ----------------------------
class PaymentSessionHot(Base):
    __tablename__ = "payment_sessions_hot"
    psid = Column(String, primary_key=True)
    registration_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    created_at = Column(Float, nullable=False, index=True)
    expires_at = Column(Float, nullable=False)


class PaymentSessionPending(Base):
    __tablename__ = "payment_sessions_pending"
    psid = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=True)


class FulfillmentGate(Base):
    __tablename__ = "fulfillment_gates"
    psid = Column(String, primary_key=True)
    created_at = Column(Float, nullable=True)


async def create_all(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
