from __future__ import annotations
import uuid
from dataclasses import replace
from typing import Any, List, Mapping, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain import Coupon, DiscountType, RegistrationStatus
from ..errors import (
    CouponExhaustedError, CouponUserLimitError, InUseError, ValidationError,
)
from ..helpers import normalize_email, now_ts
from ..infra.sql import GatedAsyncSession
from ..pricing import check_coupon_definition, normalize_code
from .db import Coupon as CouponRow

UPDATABLE_FIELDS = (
    "name", "discount_type", "discount_value", "min_order_amount",
    "max_uses", "max_uses_per_user", "valid_from", "valid_to", "is_active",
    "ems_clients_only", "public_only",
)
NULLABLE_FIELDS = (
    "min_order_amount", "max_uses", "max_uses_per_user", "valid_to",
)


def row_to_coupon(r: Mapping[str, Any]) -> Coupon:
    return Coupon(
        id=r["id"],
        code=r["code"],
        name=r["name"] or "",
        discount_type=DiscountType(r["discount_type"]),
        discount_value=int(r["discount_value"]),
        min_order_amount=r["min_order_amount"],
        max_uses=r["max_uses"],
        current_uses=int(r["current_uses"]),
        max_uses_per_user=r["max_uses_per_user"],
        valid_from=float(r["valid_from"]),
        valid_to=r["valid_to"],
        is_active=bool(r["is_active"]),
        ems_clients_only=bool(r["ems_clients_only"]),
        public_only=bool(r["public_only"]),
    )


# ----------------------------
# Reads
# ----------------------------
async def get_coupon_by_code(
    db: GatedAsyncSession, code: str
) -> Optional[Coupon]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                text("SELECT * FROM coupons WHERE code = :code"),
                {"code": normalize_code(code)},
            )).mappings().first()
    return row_to_coupon(row) if row else None


async def get_coupon(
    db: GatedAsyncSession, coupon_id: str
) -> Optional[Coupon]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                text("SELECT * FROM coupons WHERE id = :id"),
                {"id": coupon_id},
            )).mappings().first()
    return row_to_coupon(row) if row else None


# UN-GATED internal function
async def _count_user_uses(
    session: AsyncSession, coupon_id: str, email: str
) -> int:
    n = (await session.execute(text("""
        SELECT COUNT(*) FROM registrations
        WHERE applied_coupon_id = :cid
          AND email = :email
          AND status <> :cancelled
    """), {
        "cid": coupon_id,
        "email": normalize_email(email),
        "cancelled": RegistrationStatus.CANCELLED.value,
    })).scalar_one()
    return int(n)


async def count_user_uses(
    db: GatedAsyncSession, coupon_id: str, email: str
) -> int:
    """Non-cancelled registrations of `email` that applied the coupon."""
    async with db.gated():
        async with db.session.begin():
            return await _count_user_uses(db.session, coupon_id, email)


async def lookup_coupon(
    db: GatedAsyncSession, code: Optional[str], email: Optional[str]
) -> Tuple[Optional[Coupon], int]:
    """Coupon record plus the customer's prior uses, for the pricing engine."""
    if not normalize_code(code):
        return None, 0
    coupon = await get_coupon_by_code(db, code)
    if coupon is None or not email:
        return coupon, 0
    return coupon, await count_user_uses(db, coupon.id, email)


async def list_coupons(db: GatedAsyncSession) -> List[Coupon]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(
                "SELECT * FROM coupons ORDER BY created_at DESC"
            ))).mappings().all()
    return [row_to_coupon(r) for r in rows]


# ----------------------------
# Use counter (UN-GATED: callers hold the gate and the transaction)
# ----------------------------
async def claim_coupon_use(
    session: AsyncSession, coupon_id: str, code: str, email: str
) -> None:
    """Take one use of the coupon for `email` or raise.

    The UPDATE row-locks the coupon until commit, so the per-customer count
    that follows sees every committed claim on this coupon.
    """
    row = (await session.execute(text("""
        UPDATE coupons
        SET current_uses = current_uses + 1
        WHERE id = :id
          AND (max_uses IS NULL OR current_uses < max_uses)
        RETURNING max_uses, max_uses_per_user
    """), {"id": coupon_id})).mappings().first()
    if row is None:
        raise CouponExhaustedError(code)
    per_user = row["max_uses_per_user"]
    if per_user is not None and \
            await _count_user_uses(session, coupon_id, email) >= per_user:
        raise CouponUserLimitError(code, per_user)


async def release_coupon_use(session: AsyncSession, coupon_id: str) -> None:
    await session.execute(text("""
        UPDATE coupons
        SET current_uses = current_uses - 1
        WHERE id = :id AND current_uses > 0
    """), {"id": coupon_id})


# ----------------------------
# Admin writes
# ----------------------------
async def create_coupon(
    db: GatedAsyncSession,
    *,
    code: str,
    discount_type: DiscountType | str,
    discount_value: int,
    name: str = "",
    min_order_amount: Optional[int] = None,
    max_uses: Optional[int] = None,
    max_uses_per_user: Optional[int] = None,
    valid_from: Optional[float] = None,
    valid_to: Optional[float] = None,
    is_active: bool = True,
    ems_clients_only: bool = False,
    public_only: bool = False,
) -> Coupon:
    code = normalize_code(code)
    if not code:
        raise ValidationError("code is required")
    try:
        discount_type = DiscountType(discount_type)
    except ValueError:
        raise ValidationError("unknown discount_type",
                              discount_type=discount_type)
    check_coupon_definition(discount_type, discount_value)
    if max_uses is not None and max_uses < 1:
        raise ValidationError("max_uses must be positive", max_uses=max_uses)
    if ems_clients_only and public_only:
        raise ValidationError(
            "coupon cannot be both EMS-only and public-only")

    ts = now_ts()
    coupon = Coupon(
        id=uuid.uuid4().hex,
        code=code,
        name=name,
        discount_type=discount_type,
        discount_value=discount_value,
        min_order_amount=min_order_amount,
        max_uses=max_uses,
        max_uses_per_user=max_uses_per_user,
        valid_from=ts if valid_from is None else valid_from,
        valid_to=valid_to,
        is_active=is_active,
        ems_clients_only=ems_clients_only,
        public_only=public_only,
    )
    try:
        async with db.gated():
            async with db.session.begin():
                db.session.add(CouponRow(
                    id=coupon.id,
                    code=coupon.code,
                    name=coupon.name,
                    discount_type=coupon.discount_type.value,
                    discount_value=coupon.discount_value,
                    min_order_amount=coupon.min_order_amount,
                    max_uses=coupon.max_uses,
                    current_uses=0,
                    max_uses_per_user=coupon.max_uses_per_user,
                    valid_from=coupon.valid_from,
                    valid_to=coupon.valid_to,
                    is_active=coupon.is_active,
                    ems_clients_only=coupon.ems_clients_only,
                    public_only=coupon.public_only,
                    created_at=ts,
                ))
    except IntegrityError:
        raise ValidationError("coupon code already exists", code=code)
    return coupon


async def update_coupon(
    db: GatedAsyncSession, coupon_id: str, changes: Mapping[str, Any]
) -> Optional[Coupon]:
    """Apply a partial update; None when the coupon does not exist."""
    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError("unknown coupon fields", fields=sorted(unknown))
    nulled = sorted(f for f, v in changes.items()
                    if v is None and f not in NULLABLE_FIELDS)
    if nulled:
        raise ValidationError("fields cannot be null", fields=nulled)

    current = await get_coupon(db, coupon_id)
    if current is None or not changes:
        return current

    changes = dict(changes)
    if "discount_type" in changes:
        try:
            changes["discount_type"] = DiscountType(changes["discount_type"])
        except ValueError:
            raise ValidationError("unknown discount_type",
                                  discount_type=changes["discount_type"])
    updated = replace(current, **changes)
    check_coupon_definition(updated.discount_type, updated.discount_value)
    if updated.ems_clients_only and updated.public_only:
        raise ValidationError(
            "coupon cannot be both EMS-only and public-only")
    if changes.get("valid_from") is not None and \
            changes.get("valid_to") is not None and \
            changes["valid_to"] <= changes["valid_from"]:
        raise ValidationError("valid_to must be after valid_from")

    cols = sorted(changes)
    assignments = ", ".join(f"{c} = :{c}" for c in cols)
    params = {c: getattr(updated, c) for c in cols}
    if "discount_type" in params:
        params["discount_type"] = updated.discount_type.value
    params["id"] = coupon_id
    # a lowered cap may not fall below the uses already handed out
    cap = ""
    if "max_uses" in changes and updated.max_uses is not None:
        cap = " AND current_uses <= :max_uses"

    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(
                f"UPDATE coupons SET {assignments} WHERE id = :id{cap} "
                "RETURNING *"
            ), params)).mappings().first()
            if row is None:
                uses = (await db.session.execute(
                    text("SELECT current_uses FROM coupons WHERE id = :id"),
                    {"id": coupon_id},
                )).scalar_one_or_none()
    if row is None:
        raise ValidationError("max_uses cannot be below current uses",
                              max_uses=updated.max_uses, current_uses=uses)
    return row_to_coupon(row)


async def delete_coupon(db: GatedAsyncSession, coupon_id: str) -> bool:
    """Delete a never-used coupon; False when it does not exist."""
    async with db.gated():
        async with db.session.begin():
            used = (await db.session.execute(text(
                "SELECT 1 FROM registrations WHERE applied_coupon_id = :id "
                "LIMIT 1"
            ), {"id": coupon_id})).first()
            if used is not None:
                raise InUseError("coupon", coupon_id)
            row = (await db.session.execute(
                text("DELETE FROM coupons WHERE id = :id RETURNING id"),
                {"id": coupon_id},
            )).first()
    return row is not None
