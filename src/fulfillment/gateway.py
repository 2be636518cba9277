"""Payment gateway port and adapters.

``StripeGateway`` talks to Stripe through the official SDK; ``FakeGateway``
stands in for it in development and tests. ``get_gateway()`` returns the
active adapter and ``set_gateway()`` swaps it.
"""
import asyncio
import enum
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from uuid import uuid4

import stripe

from fulfillment.config import settings
from fulfillment.errors import GatewayError, InvalidSignature

logger = logging.getLogger("fulfillment.gateway")


class EventKind(enum.Enum):
    SUCCEEDED = "payment_intent.succeeded"
    FAILED = "payment_intent.payment_failed"
    OTHER = "other"


@dataclass(frozen=True)
class GatewayEvent:
    kind: EventKind
    event_type: str
    object_id: str
    payment_id: str | None
    created: int | None


def parse_event(data: dict) -> GatewayEvent:
    event_type = data.get("type", "")
    obj = (data.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    try:
        kind = EventKind(event_type)
    except ValueError:
        kind = EventKind.OTHER
    return GatewayEvent(
        kind=kind,
        event_type=event_type,
        object_id=obj.get("id", ""),
        payment_id=metadata.get("paymentId"),
        created=data.get("created"),
    )


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


class PaymentGateway(ABC):
    """Contract every payment gateway adapter implements."""

    @abstractmethod
    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict,
        idempotency_key: str,
    ) -> str:
        """Ask the gateway for a payment intent and return its id."""
        ...

    @abstractmethod
    def verify_and_parse_webhook(
        self,
        raw_payload: bytes,
        signature: str,
        secret: str,
    ) -> GatewayEvent:
        """Authenticate a webhook body and decode it. Raises InvalidSignature."""
        ...


class StripeGateway(PaymentGateway):

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    async def create_intent(self, amount, currency, metadata, idempotency_key):
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=self.api_key,
                amount=to_minor_units(amount),
                currency=currency,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error("Stripe rejected payment intent %s: %s", idempotency_key, e)
            raise GatewayError(f"Payment gateway error: {e.user_message or e}") from e
        return intent["id"]

    def verify_and_parse_webhook(self, raw_payload, signature, secret):
        try:
            stripe.Webhook.construct_event(raw_payload, signature, secret)
        except (stripe.SignatureVerificationError, ValueError) as e:
            raise InvalidSignature(f"Webhook Error {e}") from e
        return parse_event(json.loads(raw_payload))


class FakeGateway(PaymentGateway):
    """In-process gateway. Signatures are hex HMAC-SHA256 of the raw body."""

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "Card declined"
        self.calls: list[dict] = []

    def configure(self, should_succeed: bool, failure_reason: str = "Card declined") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    @staticmethod
    def sign(raw_payload: bytes, secret: str) -> str:
        return hmac.new(secret.encode(), raw_payload, hashlib.sha256).hexdigest()

    async def create_intent(self, amount, currency, metadata, idempotency_key):
        self.calls.append({
            "method": "create_intent",
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        if not self.should_succeed:
            raise GatewayError(f"Payment gateway error: {self.failure_reason}")
        return f"pi_fake_{uuid4().hex[:16]}"

    def verify_and_parse_webhook(self, raw_payload, signature, secret):
        expected = self.sign(raw_payload, secret)
        if not signature or not hmac.compare_digest(expected, signature):
            raise InvalidSignature("Webhook Error: signature mismatch")
        try:
            data = json.loads(raw_payload)
        except ValueError as e:
            raise InvalidSignature(f"Webhook Error {e}") from e
        return parse_event(data)


_current_gateway: PaymentGateway | None = None


def get_gateway() -> PaymentGateway:
    global _current_gateway
    if _current_gateway is None:
        if settings.PAYMENT_GATEWAY == "fake":
            _current_gateway = FakeGateway()
        else:
            _current_gateway = StripeGateway(settings.STRIPE_SECRET_KEY)
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None
