from __future__ import annotations
from typing import Optional

import httpx
import redis.asyncio as redis
import structlog
from fastapi import (
    APIRouter, BackgroundTasks, Depends, FastAPI, Form, HTTPException, Request,
)
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from sqlalchemy import text
from starlette.middleware.sessions import SessionMiddleware

from . import booking
from .admin import router as admin_router
from .config import Config
from .deps import (
    get_adapter, get_cache, get_config, get_db, get_notifier,
    paymentsessions,
)
from .domain import CartLine
from .errors import CouponError, DomainError, ErrorCode, http_status
from .helpers import now_ts
from .infra.logging import configure_logging
from .infra.sql import GatedAsyncSession, make_async_engine
from .infra.timings import timeit
from .mockpay import EVENT_KINDS, MockPay, PaymentAdapter
from .model import catalog, registrations, tickets
from .model.cache import PUBLIC_TYPES_KEY, new_cache
from .model.db import create_all
from .notify import LogNotifier, Notifier
from .pricing import format_price
from .schemas import (
    CheckoutRequest, CouponValidateRequest, PricingRequest, QuoteRequest,
    RegistrationRequest, TicketStatusRequest, pricing_out, registration_out,
    ticket_type_out,
)

logger = structlog.get_logger()

router = APIRouter()


def error_body(code: str, message: str, details: Optional[dict] = None,
               **extra) -> dict:
    return {"success": False, "code": code, "message": message,
            "details": details or {}, **extra}


# ----------------------------
# App factory
# ----------------------------
def create_app(
    config: Config,
    *,
    adapter: Optional[PaymentAdapter] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    configure_logging(config.log_level, config.log_json)

    engine, SessionAsync, gated = make_async_engine(
        config.database_url,
        pool_size=config.db_pool_size,
        max_overflow=config.db_max_overflow,
        pool_timeout=config.db_pool_timeout,
        gate_limit=config.db_gate_limit,
    )

    app = FastAPI(
        title="VR Booking",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=config.session_secret)

    app.state.config = config
    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.gated = gated
    app.state.adapter = adapter or MockPay(secret=config.mock_secret)
    app.state.notifier = notifier or LogNotifier()
    app.state.redis = None
    app.state.http = None
    app.state.cache = None
    if config.cache_backend == "memory":
        app.state.cache = new_cache("memory", ttl_seconds=config.cache_ttl,
                                    capacity=config.cache_capacity)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _db_init():
        await create_all(engine)

    @app.on_event("startup")
    async def _redis_start():
        if config.uses_redis:
            app.state.redis = redis.from_url(
                config.redis_url,
                decode_responses=True,
                max_connections=config.redis_max_conn,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
        if config.cache_backend == "redis":
            app.state.cache = new_cache("redis", r=app.state.redis,
                                        ttl_seconds=config.cache_ttl)

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=5.0,
            limits=httpx.Limits(
                max_connections=64, max_keepalive_connections=64
            ),
        )

    @app.on_event("startup")
    async def _say_hello():
        logger.info("vrbooking_started",
                    paysession_backend=config.paysession_backend,
                    cache_backend=config.cache_backend,
                    currency=config.currency)

    @app.on_event("shutdown")
    async def _http_client_stop():
        if app.state.http is not None:
            await app.state.http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _redis_stop():
        if app.state.redis is not None:
            await app.state.redis.close()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _db_stop():
        await engine.dispose()

    # ---
    # error mapping
    # ---
    @app.exception_handler(DomainError)
    async def _domain_error(request: Request, exc: DomainError):
        return ORJSONResponse(
            status_code=http_status(exc),
            content=error_body(exc.code.value, exc.message, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request,
                                        exc: RequestValidationError):
        return ORJSONResponse(
            status_code=400,
            content=error_body(
                ErrorCode.VALIDATION_ERROR.value, "Invalid request body",
                errors=jsonable_encoder(exc.errors()),
            ),
        )

    app.include_router(router)
    app.include_router(admin_router)
    return app


def app_from_env() -> FastAPI:
    """Entry point for `uvicorn --factory vrbooking.server:app_from_env`."""
    return create_app(Config.from_env())


# ----------------------------
# Public API
# ----------------------------

@router.get("/health")
async def health(db: GatedAsyncSession = Depends(get_db)):
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("SELECT 1"))
    return {"ok": True}


@router.get("/api/ticket-types/public")
async def public_ticket_types(
    db: GatedAsyncSession = Depends(get_db),
    cache=Depends(get_cache),
    config: Config = Depends(get_config),
):
    cached = await cache.get(PUBLIC_TYPES_KEY)
    if cached is not None:
        return cached
    async with timeit("catalog.list_public"):
        types = await catalog.list_public_ticket_types(db, now_ts())
    payload = {
        "success": True,
        "items": [ticket_type_out(t, config.currency) for t in types],
        "currency": config.currency,
    }
    await cache.set(PUBLIC_TYPES_KEY, payload)
    return payload


@router.post("/api/pricing/calculate")
async def pricing_calculate(
    body: PricingRequest,
    db: GatedAsyncSession = Depends(get_db),
    config: Config = Depends(get_config),
):
    pricing = await booking.quote_simple(
        db,
        quantity=body.quantity,
        is_ems_client=body.is_ems_client,
        coupon_code=body.coupon_code,
        email=body.customer_email,
        default_price=config.default_ticket_price,
    )
    return {
        "success": True,
        "quantity": body.quantity,
        "is_ems_client": body.is_ems_client,
        "pricing": pricing_out(pricing, config.currency),
    }


@router.post("/api/pricing/quote")
async def pricing_quote(
    body: QuoteRequest,
    db: GatedAsyncSession = Depends(get_db),
    config: Config = Depends(get_config),
):
    cart = [CartLine(i.ticket_type_id, i.quantity) for i in body.items]
    pricing, _ = await booking.quote_cart(
        db,
        cart=cart,
        is_ems_client=body.is_ems_client,
        coupon_code=body.coupon_code,
        email=body.customer_email,
    )
    return {
        "success": True,
        "is_ems_client": body.is_ems_client,
        "pricing": pricing_out(pricing, config.currency),
    }


@router.post("/api/coupons/validate")
async def coupons_validate(
    body: CouponValidateRequest,
    db: GatedAsyncSession = Depends(get_db),
    config: Config = Depends(get_config),
):
    try:
        coupon, discount = await booking.check_coupon_code(
            db,
            code=body.code,
            order_amount=body.order_amount,
            is_ems_client=body.is_ems_client,
            email=body.customer_email,
        )
    except CouponError as e:
        return ORJSONResponse(
            status_code=http_status(e),
            content=error_body(e.code.value, e.message, e.details,
                               is_valid=False),
        )
    return {
        "success": True,
        "is_valid": True,
        "coupon": {
            "id": coupon.id,
            "code": coupon.code,
            "name": coupon.name,
            "discount_type": coupon.discount_type.value,
            "discount_value": coupon.discount_value,
        },
        "discount_amount": discount,
        "final_amount": body.order_amount - discount,
        "formatted_discount": format_price(discount, config.currency),
    }


@router.post("/api/registrations", status_code=201)
async def create_registration(
    body: RegistrationRequest,
    background: BackgroundTasks,
    db: GatedAsyncSession = Depends(get_db),
    config: Config = Depends(get_config),
    notifier: Notifier = Depends(get_notifier),
):
    applicant = booking.Applicant(
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        is_ems_client=body.is_ems_client,
    )
    cart = [CartLine(i.ticket_type_id, i.quantity) for i in body.items]
    reg, pricing = await booking.register(
        db, applicant, cart,
        coupon_code=body.coupon_code, currency=config.currency,
    )
    background.add_task(notifier.registration_received, reg)
    return {
        "success": True,
        "registration": registration_out(reg, booking.order_status(reg)),
        "pricing": pricing_out(pricing, config.currency),
        "requires_payment": reg.requires_payment,
    }


@router.get("/api/registrations/eligibility")
async def registration_eligibility(
    email: str,
    is_ems_client: bool = False,
    db: GatedAsyncSession = Depends(get_db),
):
    pending = await booking.pending_ems_registration(db, email,
                                                     is_ems_client)
    return {
        "success": True,
        "can_register": pending is None,
        "existing_registration_id": pending,
    }


@router.post("/api/ticket-status")
async def ticket_status(
    body: TicketStatusRequest,
    db: GatedAsyncSession = Depends(get_db),
    config: Config = Depends(get_config),
):
    async with timeit("registrations.status"):
        found = await booking.ticket_status(
            db, email=body.email, ticket_number=body.ticket_number)
    if not found:
        raise HTTPException(
            404, detail="No registration found with the provided details")
    return {
        "success": True,
        "registrations": [
            registration_out(reg, booking.order_status(reg), issued,
                             config.verify_base_url)
            for reg, issued in found
        ],
    }


@router.get("/api/registrations/{reg_id}")
async def get_registration(
    reg_id: str,
    db: GatedAsyncSession = Depends(get_db),
    config: Config = Depends(get_config),
):
    async with timeit("registrations.get"):
        reg = await registrations.get_registration(db, reg_id)
        issued = await tickets.get_tickets(db, reg_id)
    return {
        "success": True,
        "registration": registration_out(
            reg, booking.order_status(reg), issued, config.verify_base_url),
    }


@router.post("/api/checkout")
async def checkout(
    body: CheckoutRequest,
    db: GatedAsyncSession = Depends(get_db),
    rs=Depends(paymentsessions),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    return await booking.start_checkout(db, rs, adapter, body.registration_id)


# ----------------------------
# Webhook endpoint
# ----------------------------
@router.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    background: BackgroundTasks,
    db: GatedAsyncSession = Depends(get_db),
    rs=Depends(paymentsessions),
    adapter: PaymentAdapter = Depends(get_adapter),
    notifier: Notifier = Depends(get_notifier),
    cache=Depends(get_cache),
):
    payload = await request.body()
    headers = dict(request.headers)

    outcome = await booking.handle_payment_webhook(
        db, rs, adapter, payload, headers)

    if outcome.idempotent:
        return {"ok": True, "idempotent": True}
    if outcome.created:
        # stock moved; public listing is stale
        await cache.delete(PUBLIC_TYPES_KEY)
        background.add_task(notifier.tickets_issued, outcome.registration,
                            outcome.tickets)
    return {"ok": True, "order_status": outcome.order_status}


# ----------------------------
# MockPay provider screen (JSON) and event emitter
# ----------------------------
@router.get("/mockpay/{psid}")
async def mockpay_screen(
    psid: str,
    rs=Depends(paymentsessions),
    config: Config = Depends(get_config),
):
    async with timeit("paymentsession.get"):
        ps = await rs.get_payment_session(psid)
    if not ps:
        raise HTTPException(404, "payment session not found")
    return {
        "psid": psid,
        "registration_id": ps["registration_id"],
        "amount": int(ps["amount"]),
        "amount_formatted": format_price(int(ps["amount"]), ps["currency"]),
        "currency": ps["currency"],
        "emit_url": f"/mockpay/{psid}/emit",
        "kinds": list(EVENT_KINDS),
        "webhook_url": config.mock_webhook_url,
    }


@router.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str,
    request: Request,
    t: str = Form(...),
    rs=Depends(paymentsessions),
    adapter: PaymentAdapter = Depends(get_adapter),
    config: Config = Depends(get_config),
):
    if t not in EVENT_KINDS:
        raise HTTPException(400, detail="invalid kind")
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, detail="mock provider disabled")

    async with timeit("paymentsession.get"):
        ps = await rs.get_payment_session(psid)
    if not ps:
        raise HTTPException(404, "payment session not found")

    payload = adapter.build_event(t, psid, ps["registration_id"],
                                  int(ps["amount"]), ps["currency"])
    client_http: httpx.AsyncClient = request.app.state.http
    delivered = False
    try:
        r = await client_http.post(
            config.mock_webhook_url,
            content=payload,
            headers={
                "x-mockpay-signature": adapter.sign(payload),
                "content-type": "application/json",
            },
        )
        delivered = r.is_success
    except httpx.HTTPError as e:
        # the customer can press the button again
        logger.warning("mock_webhook_delivery_failed", psid=psid,
                       error=str(e))

    return {
        "ok": True,
        "kind": t,
        "delivered": delivered,
        "registration_id": ps["registration_id"],
    }
