from __future__ import annotations
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request
from fastapi.responses import ORJSONResponse

from . import booking
from .config import Config
from .deps import (
    get_cache, get_config, get_db, paymentsessions, require_admin,
)
from .domain import RegistrationStatus
from .errors import ValidationError
from .helpers import clamp, ct_equal, to_iso
from .infra.sql import GatedAsyncSession
from .infra import timings
from .issuance import (
    ISSUABLE_STATUSES, validate_ticket_number, verification_url,
)
from .model import catalog, coupons, registrations, tickets
from .model.cache import PUBLIC_TYPES_KEY
from .schemas import (
    CouponCreate, CouponUpdate, StockAdjustment, TicketTypeCreate, TicketTypeUpdate,
    coupon_out, registration_out, ticket_out, ticket_type_out,
)

logger = structlog.get_logger()

router = APIRouter()
api = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


# ----------------------------
# Login / logout
# ----------------------------
@router.post("/admin/login")
async def admin_login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    config: Config = Depends(get_config),
):
    ok_user = ct_equal(username.strip(), config.admin_username)
    ok_pass = ct_equal(password, config.admin_password)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        logger.info("admin_login", user=username.strip())
        return {"success": True, "user": username.strip()}
    logger.warning("admin_login_failed", user=username.strip())
    return ORJSONResponse(
        status_code=401,
        content={"success": False, "message": "Invalid credentials."},
    )


@router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"success": True}


# ----------------------------
# Registrations
# ----------------------------
@api.get("/registrations")
async def list_registrations(
    limit: int = 50,
    offset: int = 0,
    status: Optional[str] = None,
    q: Optional[str] = None,
    db: GatedAsyncSession = Depends(get_db),
):
    if status and status.upper() not in RegistrationStatus.__members__:
        raise ValidationError("unknown status", status=status)
    limit = clamp(limit, 1, 500)
    offset = max(0, offset)
    total, items = await registrations.list_registrations(
        db, limit=limit, offset=offset, status=status, q=q)
    return {
        "items": [registration_out(r, booking.order_status(r))
                  for r in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@api.post("/registrations/{reg_id}/approve")
async def approve_registration(
    reg_id: str,
    db: GatedAsyncSession = Depends(get_db),
    cache=Depends(get_cache),
    config: Config = Depends(get_config),
):
    res = await booking.approve(db, reg_id)
    if res.created:
        await cache.delete(PUBLIC_TYPES_KEY)
    reg = await registrations.get_registration(db, reg_id)
    return {
        "success": True,
        "created": res.created,
        "registration": registration_out(
            reg, booking.order_status(reg), res.tickets,
            config.verify_base_url),
    }


@api.post("/registrations/{reg_id}/generate-tickets")
async def generate_tickets(
    reg_id: str,
    db: GatedAsyncSession = Depends(get_db),
    cache=Depends(get_cache),
    config: Config = Depends(get_config),
):
    res = await booking.generate_tickets(db, reg_id)
    if res.created:
        await cache.delete(PUBLIC_TYPES_KEY)
    return {
        "success": True,
        "created": res.created,
        "tickets": [ticket_out(t, config.verify_base_url)
                    for t in res.tickets],
    }


@api.post("/registrations/{reg_id}/cancel")
async def cancel_registration(
    reg_id: str,
    db: GatedAsyncSession = Depends(get_db),
):
    reg = await booking.cancel(db, reg_id)
    return {
        "success": True,
        "registration": registration_out(reg, booking.order_status(reg)),
    }


@api.get("/tickets/verify/{ticket_number}")
async def verify_ticket(
    ticket_number: str,
    db: GatedAsyncSession = Depends(get_db),
    config: Config = Depends(get_config),
):
    ticket_number = ticket_number.strip().upper()
    if not validate_ticket_number(ticket_number):
        raise ValidationError("malformed ticket number",
                              ticket_number=ticket_number)
    row = await tickets.find_by_number(db, ticket_number)
    if row is None:
        raise HTTPException(404, detail="ticket not found")
    status = row["registration_status"]
    return {
        "valid": status in {s.value for s in ISSUABLE_STATUSES},
        "ticket_number": row["ticket_number"],
        "ticket_type": row["ticket_type_name"],
        "sequence_number": row["sequence_number"],
        "registration_id": row["registration_id"],
        "registration_status": status,
        "holder": f"{row['first_name']} {row['last_name']}".strip(),
        "email": row["email"],
        "is_ems_client": bool(row["is_ems_client"]),
        "issued_at": to_iso(row["created_at"]),
        "verification_url": verification_url(config.verify_base_url,
                                             row["ticket_number"]),
    }


# ----------------------------
# Ticket types
# ----------------------------
@api.get("/ticket-types")
async def list_ticket_types(
    active_only: bool = False,
    db: GatedAsyncSession = Depends(get_db),
    config: Config = Depends(get_config),
):
    types = await catalog.list_ticket_types(db, active_only=active_only)
    return {
        "items": [ticket_type_out(t, config.currency) for t in types],
        "inventory": await catalog.compute_inventory(db),
    }


@api.post("/ticket-types", status_code=201)
async def create_ticket_type(
    body: TicketTypeCreate,
    db: GatedAsyncSession = Depends(get_db),
    cache=Depends(get_cache),
    config: Config = Depends(get_config),
):
    fields = body.model_dump()
    tt = await catalog.create_ticket_type(
        db,
        name=fields.pop("name"),
        price_in_cents=fields.pop("price_in_cents"),
        available_stock=fields.pop("available_stock"),
        **fields,
    )
    await cache.delete(PUBLIC_TYPES_KEY)
    logger.info("ticket_type_created", ticket_type_id=tt.id, name=tt.name)
    return {"success": True, "ticket_type": ticket_type_out(tt,
                                                            config.currency)}


@api.patch("/ticket-types/{tt_id}")
async def update_ticket_type(
    tt_id: str,
    body: TicketTypeUpdate,
    db: GatedAsyncSession = Depends(get_db),
    cache=Depends(get_cache),
    config: Config = Depends(get_config),
):
    changes = body.model_dump(exclude_unset=True)
    tt = await catalog.update_ticket_type(db, tt_id, changes)
    await cache.delete(PUBLIC_TYPES_KEY)
    logger.info("ticket_type_updated", ticket_type_id=tt.id,
                fields=sorted(changes))
    return {"success": True, "ticket_type": ticket_type_out(tt,
                                                            config.currency)}


@api.delete("/ticket-types/{tt_id}")
async def delete_ticket_type(
    tt_id: str,
    db: GatedAsyncSession = Depends(get_db),
    cache=Depends(get_cache),
):
    await catalog.delete_ticket_type(db, tt_id)
    await cache.delete(PUBLIC_TYPES_KEY)
    logger.info("ticket_type_deleted", ticket_type_id=tt_id)
    return {"success": True}


@api.post("/ticket-types/{tt_id}/stock")
async def adjust_stock(
    tt_id: str,
    body: StockAdjustment,
    db: GatedAsyncSession = Depends(get_db),
    cache=Depends(get_cache),
    config: Config = Depends(get_config),
):
    tt = await catalog.adjust_stock(db, tt_id, body.delta)
    await cache.delete(PUBLIC_TYPES_KEY)
    logger.info("stock_adjusted", ticket_type_id=tt.id, delta=body.delta,
                available=tt.available_stock)
    return {"success": True, "ticket_type": ticket_type_out(tt,
                                                            config.currency)}


# ----------------------------
# Coupons
# ----------------------------
@api.get("/coupons")
async def list_coupons(db: GatedAsyncSession = Depends(get_db)):
    return {"items": [coupon_out(c) for c in await coupons.list_coupons(db)]}


@api.post("/coupons", status_code=201)
async def create_coupon(
    body: CouponCreate,
    db: GatedAsyncSession = Depends(get_db),
):
    c = await coupons.create_coupon(db, **body.model_dump())
    logger.info("coupon_created", coupon_id=c.id, code=c.code)
    return {"success": True, "coupon": coupon_out(c)}


@api.patch("/coupons/{coupon_id}")
async def update_coupon(
    coupon_id: str,
    body: CouponUpdate,
    db: GatedAsyncSession = Depends(get_db),
):
    changes = body.model_dump(exclude_unset=True)
    c = await coupons.update_coupon(db, coupon_id, changes)
    if c is None:
        raise HTTPException(404, detail="coupon not found")
    logger.info("coupon_updated", coupon_id=c.id, code=c.code,
                fields=sorted(changes))
    return {"success": True, "coupon": coupon_out(c)}


@api.delete("/coupons/{coupon_id}")
async def delete_coupon(
    coupon_id: str,
    db: GatedAsyncSession = Depends(get_db),
):
    if not await coupons.delete_coupon(db, coupon_id):
        raise HTTPException(404, detail="coupon not found")
    logger.info("coupon_deleted", coupon_id=coupon_id)
    return {"success": True}


# ----------------------------
# Operations
# ----------------------------
@api.get("/payment-sessions")
async def pending_payment_sessions(
    limit: int = Query(100, ge=1, le=500),
    rs=Depends(paymentsessions),
):
    total, items = await rs.get_recent_payment_sessions(limit=limit)
    return {"items": items, "limit": limit, "total": total}


@api.get("/cache")
async def cache_stats(cache=Depends(get_cache)):
    return await cache.stats()


@api.post("/cache/purge")
async def purge_cache(cache=Depends(get_cache)):
    purged = await cache.purge()
    logger.info("cache_purged", purged=purged)
    return {"success": True, "purged": purged}


@api.get("/timings")
async def get_timings():
    return {"items": timings.snapshot()}


@api.post("/timings/reset")
async def reset_timings():
    timings.reset()
    return {"success": True}


router.include_router(api)
