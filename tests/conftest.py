"""Shared fixtures: a throwaway SQLite file per test, plus an API client."""

import pytest
from fastapi.testclient import TestClient

from vrbooking.config import Config
from vrbooking.infra.sql import GatedAsyncSession, make_async_engine
from vrbooking.mockpay import MockPay
from vrbooking.model.db import create_all
from vrbooking.notify import LogNotifier
from vrbooking.server import create_app

MOCK_SECRET = "test-secret"
ADMIN_PASSWORD = "test-admin-pw"


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'vrbooking.db'}"


@pytest.fixture
async def engine_bundle(db_url):
    engine, SessionAsync, gated = make_async_engine(db_url)
    await create_all(engine)
    yield engine, SessionAsync, gated
    await engine.dispose()


@pytest.fixture
async def db(engine_bundle):
    _, SessionAsync, gated = engine_bundle
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)


@pytest.fixture
async def db2(engine_bundle):
    """A second, independent session on the same database."""
    _, SessionAsync, gated = engine_bundle
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)


# ----------------------------
# HTTP
# ----------------------------
@pytest.fixture
def config(db_url):
    return Config(
        database_url=db_url,
        mock_secret=MOCK_SECRET,
        admin_password=ADMIN_PASSWORD,
        verify_base_url="https://vr.example/verify",
        log_level="warning",
        log_json=False,
    )


class RecordingNotifier(LogNotifier):
    """Logs like the real one and remembers what it was asked to send."""

    def __init__(self):
        self.sent = []

    async def registration_received(self, reg):
        self.sent.append(("registration_received", reg.id))
        await super().registration_received(reg)

    async def tickets_issued(self, reg, tickets):
        self.sent.append(("tickets_issued", reg.id))
        await super().tickets_issued(reg, tickets)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def mockpay():
    return MockPay(secret=MOCK_SECRET)


@pytest.fixture
def client(config, notifier, mockpay):
    app = create_app(config, adapter=mockpay, notifier=notifier)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin(client):
    r = client.post("/admin/login",
                    data={"username": "admin", "password": ADMIN_PASSWORD})
    assert r.status_code == 200, r.text
    return client
