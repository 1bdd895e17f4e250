"""Shared fixtures: an app on the mock gateway and a scratch sqlite db."""
from __future__ import annotations
import json

import httpx
import pytest
import pytest_asyncio

from unicornshop.config import Settings
from unicornshop.gateway import EventKind, MockPay
from unicornshop.infra import timings
from unicornshop.intake import gateway_metadata
from unicornshop.model.store import UnicornStore
from unicornshop.server import create_app, start_app, stop_app

MOCK_SECRET = "test-secret"
UNICORN_PRICE = 25


@pytest.fixture(autouse=True)
def _reset_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path}/unicorns.db",
        gateway_backend="mock",
        mock_secret=MOCK_SECRET,
        mock_webhook_url="http://test/webhook",
        unicorn_price=UNICORN_PRICE,
        currency="usd",
    )


@pytest.fixture
def adapter() -> MockPay:
    return MockPay(MOCK_SECRET, tolerance=300)


@pytest_asyncio.fixture
async def app(settings, adapter):
    app = create_app(settings, adapter=adapter)
    # mock emits are delivered back into this same app
    app.state.http = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    )
    await start_app(app)
    yield app
    await stop_app(app)


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c


@pytest_asyncio.fixture
async def store(app):
    async with app.state.SessionAsync() as session:
        yield UnicornStore(db=session, gated=app.state.gated)


def order_payload(base_name="Nova", orders=None, total_unicorns=None,
                  total_amount=None, user_session="s1") -> dict:
    orders = orders if orders is not None else [
        {"color": "Pink", "quantity": 2}
    ]
    n = sum(o["quantity"] for o in orders)
    return {
        "base_name": base_name,
        "unicorn_orders": orders,
        "total_unicorns": n if total_unicorns is None else total_unicorns,
        "total_amount": (n * UNICORN_PRICE if total_amount is None
                         else total_amount),
        "user_session": user_session,
    }


async def place_order(client, **kw) -> str:
    r = await client.post("/create-payment-intent", json=order_payload(**kw))
    assert r.status_code == 200, r.text
    return r.json()["payment_intent_id"]


async def event_for(store, adapter, payment_intent_id,
                    kind=EventKind.SUCCEEDED) -> bytes:
    payment = await store.get_payment(payment_intent_id)
    event = adapter.build_event(kind, payment, gateway_metadata(payment))
    return json.dumps(event).encode()


async def deliver(client, adapter, body: bytes, ts=None):
    return await client.post("/webhook", content=body,
                             headers=adapter.sign(body, ts))
