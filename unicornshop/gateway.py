from __future__ import annotations
import asyncio
import enum
import hashlib
import hmac
import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TypedDict

import stripe

from .errors import GatewayUnavailable, SignatureInvalid
from .helpers import ct_equal
from .model.orm import PENDING, SUCCEEDED, FAILED, CANCELED


# ----------------------------
# Events
# ----------------------------
class EventKind(enum.Enum):
    SUCCEEDED = "payment_intent.succeeded"
    FAILED = "payment_intent.payment_failed"
    CANCELED = "payment_intent.canceled"
    CREATED = "payment_intent.created"
    UNHANDLED = "unhandled"

    @classmethod
    def from_type(cls, event_type: str) -> "EventKind":
        try:
            kind = cls(event_type)
        except ValueError:
            return cls.UNHANDLED
        return kind


# mock emit kind -> event type
MOCK_KINDS = {
    "succeeded": EventKind.SUCCEEDED,
    "failed": EventKind.FAILED,
    "canceled": EventKind.CANCELED,
}


@dataclass(frozen=True)
class GatewayEvent:
    id: str
    type: str
    kind: EventKind
    payment_intent_id: str = ""
    amount: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    error_message: Optional[str] = None


def parse_event(body: Any) -> GatewayEvent:
    if not isinstance(body, dict):
        raise SignatureInvalid("Webhook Error: event is not an object")
    event_type = str(body.get("type", ""))
    data = body.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        obj = {}
    last_error = obj.get("last_payment_error")
    if not isinstance(last_error, dict):
        last_error = {}
    metadata = obj.get("metadata")
    return GatewayEvent(
        id=str(body.get("id", "")),
        type=event_type,
        kind=EventKind.from_type(event_type),
        payment_intent_id=str(obj.get("id", "")),
        amount=obj.get("amount"),
        currency=obj.get("currency"),
        metadata=dict(metadata) if isinstance(metadata, dict) else {},
        error_message=last_error.get("message"),
    )


def _loads(payload: bytes) -> Any:
    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise SignatureInvalid("Webhook Error: invalid JSON")


# ----------------------------
# Signatures ("t=<unix>,v1=<hex hmac-sha256 of '<t>.<payload>'>")
# ----------------------------
def compute_signature(payload: bytes, secret: str, ts: int) -> str:
    signed = f"{ts}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def signature_header(payload: bytes, secret: str,
                     ts: Optional[int] = None) -> str:
    ts = int(time.time()) if ts is None else ts
    return f"t={ts},v1={compute_signature(payload, secret, ts)}"


def verify_signature(payload: bytes, header: Optional[str], secret: str,
                     tolerance: int, now: Optional[float] = None) -> None:
    if not header:
        raise SignatureInvalid("Webhook Error: missing signature")
    ts = None
    candidates = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                ts = int(value)
            except ValueError:
                raise SignatureInvalid("Webhook Error: bad timestamp")
        elif key == "v1":
            candidates.append(value)
    if ts is None or not candidates:
        raise SignatureInvalid("Webhook Error: malformed signature header")
    expected = compute_signature(payload, secret, ts)
    if not any(ct_equal(expected, c) for c in candidates):
        raise SignatureInvalid("Webhook Error: signature mismatch")
    now = time.time() if now is None else now
    if tolerance and abs(now - ts) > tolerance:
        raise SignatureInvalid(
            "Webhook Error: timestamp outside the tolerance zone"
        )


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreatePaymentResult(TypedDict):
    payment_intent_id: str
    client_secret: str


class PaymentAdapter(ABC):
    name: str = ""
    publishable_key: Optional[str] = None

    @abstractmethod
    async def create_payment(
            self, amount: int, currency: str, metadata: Dict[str, str],
            idempotency_key: str,
    ) -> CreatePaymentResult: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> GatewayEvent:
        ...

    # pending | succeeded | failed | canceled
    @abstractmethod
    async def retrieve_status(self, payment_intent_id: str) -> str: ...


# ----------------------------
# Stripe implementation
# ----------------------------
class StripePay(PaymentAdapter):
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str,
                 publishable_key: Optional[str] = None,
                 tolerance: int = 300, timeout: float = 10.0) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.publishable_key = publishable_key
        self.tolerance = tolerance
        self.timeout = timeout

    async def _call(self, fn, *args, **kwargs):
        # the SDK is blocking; keep it off the event loop and bound it
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, api_key=self.secret_key,
                                  **kwargs),
                self.timeout,
            )
        except stripe.StripeError as e:
            raise GatewayUnavailable(str(e.user_message or e)) from e
        except asyncio.TimeoutError as e:
            raise GatewayUnavailable("payment gateway timed out") from e

    async def create_payment(
            self, amount: int, currency: str, metadata: Dict[str, str],
            idempotency_key: str,
    ) -> CreatePaymentResult:
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        return {
            "payment_intent_id": intent["id"],
            "client_secret": intent["client_secret"],
        }

    def verify_webhook(self, payload: bytes, headers: dict) -> GatewayEvent:
        sig = headers.get("stripe-signature")
        if not sig:
            raise SignatureInvalid("Webhook Error: missing signature")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), sig, self.webhook_secret,
                self.tolerance,
            )
        except (stripe.SignatureVerificationError,
                UnicodeDecodeError) as e:
            raise SignatureInvalid(f"Webhook Error: {e}")
        return parse_event(_loads(payload))

    async def retrieve_status(self, payment_intent_id: str) -> str:
        intent = await self._call(stripe.PaymentIntent.retrieve,
                                  payment_intent_id)
        status = intent["status"]
        if status == "succeeded":
            return SUCCEEDED
        if status == "canceled":
            return CANCELED
        # requires_payment_method etc.: the customer may still retry
        return PENDING


# ----------------------------
# MockPay implementation (development / tests)
# ----------------------------
class MockPay(PaymentAdapter):
    name = "mock"
    SIGNATURE_HEADER = "x-mockpay-signature"

    def __init__(self, secret: str, tolerance: int = 300,
                 publishable_key: str = "pk_mock") -> None:
        self.secret = secret
        self.tolerance = tolerance
        self.publishable_key = publishable_key
        # outcomes emitted so far; what retrieve_status reports
        self.outcomes: Dict[str, str] = {}
        # set to make create_payment fail, simulating an outage
        self.unavailable = False

    async def create_payment(
            self, amount: int, currency: str, metadata: Dict[str, str],
            idempotency_key: str,
    ) -> CreatePaymentResult:
        if self.unavailable:
            raise GatewayUnavailable("mock gateway unavailable")
        pi = f"pi_mock_{uuid.uuid4().hex}"
        return {
            "payment_intent_id": pi,
            "client_secret": f"{pi}_secret_{uuid.uuid4().hex[:16]}",
        }

    def verify_webhook(self, payload: bytes, headers: dict) -> GatewayEvent:
        verify_signature(payload, headers.get(self.SIGNATURE_HEADER),
                         self.secret, self.tolerance)
        return parse_event(_loads(payload))

    async def retrieve_status(self, payment_intent_id: str) -> str:
        return self.outcomes.get(payment_intent_id, PENDING)

    def build_event(self, kind: EventKind, payment: Dict[str, Any],
                    metadata: Dict[str, str]) -> Dict[str, Any]:
        obj: Dict[str, Any] = {
            "id": payment["payment_intent_id"],
            "object": "payment_intent",
            "amount": int(payment["total_amount"]),
            "currency": payment["currency"],
            "metadata": metadata,
        }
        if kind is EventKind.FAILED:
            obj["last_payment_error"] = {"message": "Your card was declined."}
        return {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": kind.value,
            "created": int(time.time()),
            "data": {"object": obj},
        }

    def sign(self, payload: bytes, ts: Optional[int] = None) -> Dict[str, str]:
        return {
            self.SIGNATURE_HEADER: signature_header(payload, self.secret, ts),
            "content-type": "application/json",
        }

    def record_outcome(self, payment_intent_id: str, kind: EventKind) -> None:
        status = {
            EventKind.SUCCEEDED: SUCCEEDED,
            EventKind.FAILED: FAILED,
            EventKind.CANCELED: CANCELED,
        }.get(kind)
        if status:
            self.outcomes[payment_intent_id] = status


def adapter_from_settings(settings) -> Optional[PaymentAdapter]:
    """The configured gateway, or None when Stripe has no usable keys."""
    if settings.gateway_backend == "mock":
        return MockPay(settings.mock_secret,
                       tolerance=settings.webhook_tolerance_seconds)
    if not settings.stripe_configured:
        return None
    return StripePay(
        settings.stripe_secret_key,
        settings.stripe_webhook_secret,
        publishable_key=settings.stripe_publishable_key,
        tolerance=settings.webhook_tolerance_seconds,
        timeout=settings.gateway_timeout_seconds,
    )
