from __future__ import annotations
import json
import logging
from typing import Any, Dict, Optional

import httpx
import uvicorn

from .config import Settings, configure_logging
from .errors import ShopError
from .gateway import MOCK_KINDS, MockPay, PaymentAdapter, adapter_from_settings
from .helpers import to_iso
from .infra import timings
from .infra.sql import make_async_engine
from .infra.timings import timeit
from .ingestion import ingest
from .intake import OrderRequest, create_payment_intent, gateway_metadata
from .model.store import UnicornStore, create_schema
from .stats import current_totals

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse

logger = logging.getLogger(__name__)


# ----------------------------
# Serialization
# ----------------------------
def unicorn_json(row: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(row)
    out["created_at"] = to_iso(row["created_at"])
    return out


def payment_json(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "payment_intent_id": row["payment_intent_id"],
        "status": row["status"],
        "base_name": row["base_name"],
        "total_unicorns": row["total_unicorns"],
        "total_amount": row["total_amount"],
        "currency": row["currency"],
        "user_session": row["user_session"],
        "created_at": to_iso(row["created_at"]),
        "completed_at": to_iso(row["completed_at"]),
    }


# ---
# startup / shutdown
# ---
async def start_app(app: FastAPI) -> None:
    settings: Settings = app.state.settings
    adapter: Optional[PaymentAdapter] = app.state.adapter
    logger.info("Space Unicorns shop starting up (gateway: %s)",
                adapter.name if adapter else "not configured")
    if adapter is None:
        logger.warning(
            "Stripe keys missing or placeholders; set STRIPE_SECRET_KEY, "
            "STRIPE_PUBLISHABLE_KEY and STRIPE_WEBHOOK_SECRET "
            "(https://dashboard.stripe.com/apikeys)"
        )
    await create_schema(app.state.engine)
    if getattr(app.state, "http", None) is None:
        app.state.http = httpx.AsyncClient(
            timeout=settings.gateway_timeout_seconds
        )


async def stop_app(app: FastAPI) -> None:
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None
    await app.state.engine.dispose()


def create_app(settings: Optional[Settings] = None,
               adapter: Optional[PaymentAdapter] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    if adapter is None:
        adapter = adapter_from_settings(settings)

    engine, SessionAsync, gated = make_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )

    app = FastAPI(
        title="Space Unicorns",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.adapter = adapter
    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.gated = gated
    app.state.http = None

    @app.on_event("startup")
    async def _startup():
        await start_app(app)

    @app.on_event("shutdown")
    async def _shutdown():
        await stop_app(app)

    @app.exception_handler(ShopError)
    async def _shop_error(request: Request, exc: ShopError):
        return ORJSONResponse({"error": exc.message},
                              status_code=exc.status_code)

    async def get_store() -> UnicornStore:
        async with SessionAsync() as session:
            yield UnicornStore(db=session, gated=gated)

    # ----------------------------
    # Read API
    # ----------------------------
    @app.get("/config")
    async def get_config():
        return {
            "publishable_key": adapter.publishable_key if adapter else None,
            "unicorn_price": settings.unicorn_price,
            "currency": settings.currency,
        }

    @app.get("/units")
    @app.get("/unicorns")
    async def list_unicorns(store: UnicornStore = Depends(get_store)):
        async with timeit("store.list_unicorns"):
            rows = await store.list_unicorns()
        return [unicorn_json(r) for r in rows]

    @app.get("/units/{session_id}")
    @app.get("/unicorns/{session_id}")
    async def list_session_unicorns(session_id: str,
                                    store: UnicornStore = Depends(get_store)):
        async with timeit("store.list_unicorns"):
            rows = await store.list_unicorns(user_session=session_id)
        return [unicorn_json(r) for r in rows]

    @app.get("/stats")
    async def get_stats(store: UnicornStore = Depends(get_store)):
        return await current_totals(store)

    # polled by the front-end after checkout
    @app.get("/payments/{payment_intent_id}")
    async def get_payment(payment_intent_id: str,
                          store: UnicornStore = Depends(get_store)):
        row = await store.get_payment(payment_intent_id)
        if not row:
            raise HTTPException(404, detail="payment not found")
        return payment_json(row)

    @app.get("/api/pending")
    async def api_pending(limit: int = 100,
                          store: UnicornStore = Depends(get_store)):
        limit = max(1, min(limit, 500))
        total, rows = await store.pending_payments(limit=limit)
        items = []
        for r in rows:
            item = payment_json(r)
            item["id"] = r["id"]
            items.append(item)
        return {"items": items, "total": total, "limit": limit}

    @app.get("/api/metrics")
    async def api_metrics():
        return timings.snapshot()

    # ----------------------------
    # Write API
    # ----------------------------
    @app.post("/create-payment-intent")
    async def create_intent(payload: Any = Body(None),
                            store: UnicornStore = Depends(get_store)):
        order = OrderRequest.from_payload(payload)
        return await create_payment_intent(
            store, adapter, order,
            unit_price=settings.unicorn_price,
            currency=settings.currency,
        )

    @app.post("/webhook")
    async def webhook(request: Request,
                      store: UnicornStore = Depends(get_store)):
        payload = await request.body()
        headers = dict(request.headers)
        return await ingest(store, adapter, payload, headers)

    # ----------------------------
    # MockPay: deliver a signed event for a payment
    # ----------------------------
    @app.post("/mockpay/{payment_intent_id}/emit")
    async def mockpay_emit(payment_intent_id: str, payload: dict,
                           store: UnicornStore = Depends(get_store)):
        if not isinstance(adapter, MockPay):
            raise HTTPException(404, detail="mock gateway not enabled")
        kind = MOCK_KINDS.get(payload.get("kind"))
        if kind is None:
            raise HTTPException(400, detail="invalid kind")
        payment = await store.get_payment(payment_intent_id)
        if not payment:
            raise HTTPException(404, detail="payment not found")

        event = adapter.build_event(kind, payment, gateway_metadata(payment))
        body = json.dumps(event).encode()
        adapter.record_outcome(payment_intent_id, kind)

        delivered = None
        try:
            r = await app.state.http.post(
                settings.mock_webhook_url,
                content=body,
                headers=adapter.sign(body),
            )
            delivered = r.status_code
        except httpx.HTTPError as e:
            # the payer can emit again; redelivery is harmless
            logger.warning("Webhook delivery failed: %s", e)

        return {
            "event_id": event["id"],
            "event_type": event["type"],
            "delivered_status": delivered,
        }

    return app


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
