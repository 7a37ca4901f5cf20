from typing import AsyncIterator

from fastapi import HTTPException, Request

from .config import Config
from .infra.sql import GatedAsyncSession
from .mockpay import PaymentAdapter
from .model.paymentsession import new_store
from .notify import Notifier


# ----------------------------
# Per-request dependencies; everything hangs off app.state
# ----------------------------
def get_config(request: Request) -> Config:
    return request.app.state.config


async def get_db(request: Request) -> AsyncIterator[GatedAsyncSession]:
    st = request.app.state
    async with st.SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=st.gated)


async def paymentsessions(request: Request):
    st = request.app.state
    cfg: Config = st.config
    if cfg.paysession_backend == "pg":
        async with st.SessionAsync() as session:
            yield new_store("pg", db=session, gated=st.gated,
                            ttl_seconds=cfg.payment_session_ttl)
    else:
        yield new_store("redis", r=st.redis,
                        ttl_seconds=cfg.payment_session_ttl)


def get_cache(request: Request):
    return request.app.state.cache


def get_adapter(request: Request) -> PaymentAdapter:
    return request.app.state.adapter


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")
