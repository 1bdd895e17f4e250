"""Webhook ingestion.

Verify the signature, then dispatch on the event kind. Anything that goes
wrong after verification is logged and counted but still acknowledged, so
the gateway does not redeliver a poison event forever. Redeliveries of
events we did process are dropped by the fulfillment guard.
"""
from __future__ import annotations
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from .errors import SignatureInvalid
from .fulfillment import (
    build_unicorns, line_items_from_json, line_items_to_json,
)
from .gateway import EventKind, GatewayEvent, PaymentAdapter
from .infra.timings import incr, timeit
from .model.orm import SUCCEEDED, FAILED, CANCELED
from .model.store import FulfillOutcome, UnicornStore
from .stats import record_snapshot

logger = logging.getLogger(__name__)

Handler = Callable[[UnicornStore, GatewayEvent], Awaitable[Optional[str]]]


def fallback_payment(event: GatewayEvent) -> Optional[Dict[str, Any]]:
    """Rebuild a payment row from event metadata, if it carries an order."""
    md = event.metadata
    if "unicorn_orders" not in md or "user_session" not in md:
        return None
    items = line_items_from_json(md.get("unicorn_orders"))
    return {
        "id": md.get("payment_id") or uuid.uuid4().hex,
        "base_name": md.get("base_name") or "Unicorn",
        "total_unicorns": sum(li.quantity for li in items),
        "total_amount": int(event.amount or 0),
        "currency": event.currency or "",
        "unicorn_orders": line_items_to_json(items),
        "user_session": md.get("user_session") or "unknown",
    }


async def on_succeeded(store: UnicornStore, event: GatewayEvent) -> str:
    pi = event.payment_intent_id
    async with timeit("store.fulfill"):
        result = await store.fulfill(
            pi, build_unicorns,
            payment_id=event.metadata.get("payment_id"),
            fallback=fallback_payment(event),
        )

    if result.outcome is FulfillOutcome.ALREADY_PROCESSED:
        incr("fulfillment.duplicate")
        if result.prior_status != SUCCEEDED:
            logger.warning("payment %s is %s; ignoring success event %s",
                           pi, result.prior_status, event.id)
        else:
            logger.info("payment %s already fulfilled; dropping event %s",
                        pi, event.id)
        return result.outcome.value
    if result.outcome is FulfillOutcome.UNKNOWN_PAYMENT:
        incr("fulfillment.unknown_payment")
        logger.error("payment %s unknown and event %s carries no order",
                     pi, event.id)
        return result.outcome.value

    incr("fulfillment.ok")
    incr("fulfillment.unicorns", len(result.unicorns))
    logger.info("PAYMENT SUCCESS %s: %d unicorns saved (amount %s)",
                pi, len(result.unicorns), event.amount)
    await record_snapshot(store)
    return result.outcome.value


async def _on_terminal(store: UnicornStore, event: GatewayEvent,
                       status: str) -> str:
    async with timeit("store.mark_terminal"):
        changed = await store.mark_terminal(
            event.payment_intent_id, status,
            payment_id=event.metadata.get("payment_id"),
        )
    if not changed:
        incr("payment.transition_ignored")
        logger.info("payment %s not pending; %s event %s ignored",
                    event.payment_intent_id, status, event.id)
        return "ignored"
    return status


async def on_failed(store: UnicornStore, event: GatewayEvent) -> str:
    logger.warning("PAYMENT FAILED %s (base name %r, %s unicorns): %s",
                   event.payment_intent_id, event.metadata.get("base_name"),
                   event.metadata.get("total_unicorns"),
                   event.error_message or "Unknown error")
    return await _on_terminal(store, event, FAILED)


async def on_canceled(store: UnicornStore, event: GatewayEvent) -> str:
    logger.info("PAYMENT CANCELED %s (base name %r, %s unicorns)",
                event.payment_intent_id, event.metadata.get("base_name"),
                event.metadata.get("total_unicorns"))
    return await _on_terminal(store, event, CANCELED)


async def on_created(store: UnicornStore, event: GatewayEvent) -> str:
    logger.info("Payment intent created: %s", event.payment_intent_id)
    payment_id = event.metadata.get("payment_id")
    if payment_id and event.payment_intent_id:
        # covers an intake that died between the gateway call and its
        # own bookkeeping
        await store.attach_payment_intent(payment_id,
                                          event.payment_intent_id)
    return "noted"


async def on_unhandled(store: UnicornStore, event: GatewayEvent) -> None:
    incr("webhook.unhandled")
    logger.info("Unhandled event type: %s", event.type)
    return None


HANDLERS: Dict[EventKind, Handler] = {
    EventKind.SUCCEEDED: on_succeeded,
    EventKind.FAILED: on_failed,
    EventKind.CANCELED: on_canceled,
    EventKind.CREATED: on_created,
    EventKind.UNHANDLED: on_unhandled,
}

_missing = set(EventKind) - set(HANDLERS)
if _missing:
    raise RuntimeError(
        f"no webhook handler for {sorted(k.name for k in _missing)}"
    )


async def dispatch(store: UnicornStore, event: GatewayEvent) -> Optional[str]:
    """Run the handler for `event`; failures are logged and counted."""
    if event.kind is not EventKind.UNHANDLED and not event.payment_intent_id:
        incr("webhook.malformed")
        logger.warning("event %s (%s) names no payment; ignored",
                       event.id, event.type)
        return None
    try:
        return await HANDLERS[event.kind](store, event)
    except SQLAlchemyError:
        incr("fulfillment.error" if event.kind is EventKind.SUCCEEDED
             else "webhook.storage_error")
        logger.exception(
            "storage error handling %s for payment %s (event %s); "
            "acknowledged anyway, needs manual reconciliation",
            event.type, event.payment_intent_id, event.id,
        )
        return None
    except Exception:
        incr("webhook.handler_error")
        logger.exception("handler for %s failed on event %s; acknowledged "
                         "anyway", event.type, event.id)
        return None


async def ingest(store: UnicornStore, adapter: Optional[PaymentAdapter],
                 payload: bytes, headers: dict) -> Dict[str, Any]:
    if adapter is None:
        incr("webhook.rejected")
        raise SignatureInvalid("Webhook Error: no signing secret configured")
    try:
        event = adapter.verify_webhook(payload, headers)
    except SignatureInvalid as e:
        incr("webhook.rejected")
        logger.warning("Webhook signature verification failed: %s",
                       e.message)
        raise
    logger.info("Webhook signature verified for event: %s", event.type)

    await dispatch(store, event)
    return {
        "received": True,
        "event_type": event.type,
        "event_id": event.id,
    }
