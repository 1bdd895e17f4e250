"""Order intake: price check, pending payment row, gateway payment request."""
from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .errors import (
    AmountMismatch, GatewayNotConfigured, GatewayUnavailable, ValidationError,
)
from .fulfillment import LineItem, PALETTE, line_items_to_json
from .gateway import PaymentAdapter
from .helpers import now_ts
from .infra.timings import incr, timeit
from .model.store import UnicornStore

logger = logging.getLogger(__name__)

PRODUCT = "space_unicorns"
MAX_UNICORNS_PER_ORDER = 1000


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


@dataclass(frozen=True)
class OrderRequest:
    base_name: str
    line_items: Tuple[LineItem, ...]
    total_unicorns: int
    total_amount: int
    user_session: str

    @classmethod
    def from_payload(cls, payload: Any) -> "OrderRequest":
        if not isinstance(payload, dict):
            raise ValidationError("request body must be a JSON object")

        base_name = payload.get("base_name")
        if not isinstance(base_name, str) or not base_name.strip():
            raise ValidationError("base_name is required")

        user_session = payload.get("user_session")
        if not isinstance(user_session, str) or not user_session:
            raise ValidationError("user_session is required")

        raw_orders = payload.get("unicorn_orders")
        if not isinstance(raw_orders, list) or not raw_orders:
            raise ValidationError("unicorn_orders must be a non-empty list")
        items = []
        for raw in raw_orders:
            if not isinstance(raw, dict):
                raise ValidationError("each order needs color and quantity")
            color, qty = raw.get("color"), raw.get("quantity")
            if color not in PALETTE:
                raise ValidationError(f"Unknown color: {color}")
            if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
                raise ValidationError("quantity must be a positive integer")
            items.append(LineItem(color=color, quantity=qty))
        if sum(li.quantity for li in items) > MAX_UNICORNS_PER_ORDER:
            raise ValidationError(
                f"at most {MAX_UNICORNS_PER_ORDER} unicorns per order"
            )

        total_unicorns = payload.get("total_unicorns")
        total_amount = payload.get("total_amount")
        if not _is_number(total_unicorns) or not _is_number(total_amount):
            raise ValidationError(
                "total_unicorns and total_amount must be numbers"
            )

        return cls(
            base_name=base_name.strip(),
            line_items=tuple(items),
            total_unicorns=total_unicorns,
            total_amount=total_amount,
            user_session=user_session,
        )

    @property
    def ordered_unicorns(self) -> int:
        return sum(li.quantity for li in self.line_items)


def gateway_metadata(payment: Dict[str, Any]) -> Dict[str, str]:
    """Opaque order copy sent along with the payment; comes back in events."""
    return {
        "payment_id": payment["id"],
        "base_name": payment["base_name"],
        "total_unicorns": str(payment["total_unicorns"]),
        "unicorn_orders": payment["unicorn_orders"],
        "user_session": payment["user_session"],
        "product": PRODUCT,
    }


def expected_amount(order: OrderRequest, unit_price: int) -> int:
    return order.ordered_unicorns * unit_price


def validate_order(order: OrderRequest, unit_price: int) -> int:
    """Returns the server-side amount; raises before anything is written."""
    if order.total_unicorns != order.ordered_unicorns:
        raise ValidationError("total_unicorns does not match unicorn_orders")
    expected = expected_amount(order, unit_price)
    if order.total_amount != expected:
        raise AmountMismatch(expected, order.total_amount)
    return expected


async def create_payment_intent(
    store: UnicornStore,
    adapter: Optional[PaymentAdapter],
    order: OrderRequest,
    *,
    unit_price: int,
    currency: str,
) -> Dict[str, str]:
    amount = validate_order(order, unit_price)
    if adapter is None:
        raise GatewayNotConfigured()

    payment_id = uuid.uuid4().hex
    orders_json = line_items_to_json(order.line_items)

    row = {
        "id": payment_id,
        "base_name": order.base_name,
        "total_unicorns": order.ordered_unicorns,
        "total_amount": amount,
        "currency": currency,
        "unicorn_orders": orders_json,
        "user_session": order.user_session,
        "created_at": now_ts(),
    }
    # the row exists before the gateway hears about it
    async with timeit("store.save_pending_payment"):
        await store.save_pending_payment(row)

    metadata = gateway_metadata(row)
    try:
        async with timeit("gateway.create_payment"):
            result = await adapter.create_payment(
                amount, currency, metadata, idempotency_key=payment_id
            )
    except GatewayUnavailable:
        incr("intake.gateway_error")
        logger.exception("gateway refused payment %s; left pending for "
                         "reconciliation", payment_id)
        raise

    async with timeit("store.attach_payment_intent"):
        await store.attach_payment_intent(
            payment_id, result["payment_intent_id"]
        )
    incr("intake.created")

    logger.info(
        "Payment Intent created: %s (base name %r, %d unicorns, "
        "%.2f %s, orders %s, session %s)",
        result["payment_intent_id"], order.base_name,
        order.ordered_unicorns, amount / 100, currency, orders_json,
        order.user_session,
    )
    return {
        "client_secret": result["client_secret"],
        "session_id": order.user_session,
        "payment_intent_id": result["payment_intent_id"],
    }
