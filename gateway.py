"""
Payment gateway port and adapters.

The storefront only needs two things from a gateway: open a remote payment
intent for an amount (in minor units) and check the signature the client
sends back after paying. A signature is the hex HMAC-SHA256 of
"<gateway_order_id>|<payment_id>" keyed with the server-held signing secret.

The active gateway is built once at startup by `build_gateway()`, kept on
`app.state` and injected into routes with `get_gateway`.
"""
import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional
from uuid import uuid4

import stripe
import structlog
from fastapi import Request

from errors import Internal

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GatewayOrder:
    """Remote order opened with the gateway."""

    id: str
    amount: int
    currency: str
    receipt: str
    status: str = "created"


def compute_signature(secret: str, gateway_order_id: str, payment_id: str) -> str:
    body = f"{gateway_order_id}|{payment_id}"
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def signature_matches(secret: str, gateway_order_id: str, payment_id: str, signature: str) -> bool:
    expected = compute_signature(secret, gateway_order_id, payment_id)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


class PaymentGateway(ABC):
    name = "gateway"

    def __init__(self, key_secret: str) -> None:
        self.key_secret = key_secret

    @abstractmethod
    def create_order(self, amount: int, currency: str, receipt: str) -> GatewayOrder:
        """Open a remote order for `amount` minor units."""
        ...

    def verify_payment_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        return signature_matches(self.key_secret, gateway_order_id, payment_id, signature)


class StripeGateway(PaymentGateway):
    """PaymentIntent-backed gateway.

    Stripe does not sign "<intent id>|<payment id>" pairs itself. The
    signature checked by `verify_payment_signature` follows the Razorpay-style
    order/payment flow: whichever trusted backend confirms the PaymentIntent
    (the checkout confirmation service or the Stripe webhook consumer holding
    PAYMENT_SIGNING_SECRET) computes `compute_signature(secret, intent_id,
    payment_id)` and hands it to the client, which posts it to
    /api/payments/verify-payment. The Stripe API key never signs anything.
    """

    name = "stripe"

    def __init__(self, api_key: str, signing_secret: str) -> None:
        super().__init__(signing_secret)
        self.api_key = api_key

    def create_order(self, amount: int, currency: str, receipt: str) -> GatewayOrder:
        try:
            # Stripe expects amount in smallest unit (paise/cents)
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency.lower(),
                metadata={"receipt": receipt},
                idempotency_key=receipt,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe payment intent creation failed", receipt=receipt, error=str(exc))
            raise Internal("Payment gateway error") from exc
        return GatewayOrder(
            id=intent["id"],
            amount=int(intent["amount"]),
            currency=str(intent["currency"]).upper(),
            receipt=receipt,
            status=intent["status"],
        )


class FakeGateway(PaymentGateway):
    """In-process gateway for development and tests. Records every call."""

    name = "fake"

    def __init__(self, key_secret: str = "fake_secret") -> None:
        super().__init__(key_secret)
        self.should_succeed: bool = True
        self.calls: List[dict] = []

    def configure(self, should_succeed: bool) -> None:
        self.should_succeed = should_succeed

    def create_order(self, amount: int, currency: str, receipt: str) -> GatewayOrder:
        self.calls.append({"method": "create_order", "amount": amount, "currency": currency, "receipt": receipt})
        if not self.should_succeed:
            raise Internal("Payment gateway error")
        return GatewayOrder(id=f"order_fake_{uuid4().hex[:14]}", amount=amount, currency=currency, receipt=receipt)


def build_gateway(settings) -> Optional[PaymentGateway]:
    if settings.payment_gateway == "fake":
        return FakeGateway(settings.payment_signing_secret or "fake_secret")
    if settings.stripe_secret_key and settings.payment_signing_secret:
        return StripeGateway(settings.stripe_secret_key, settings.payment_signing_secret)
    logger.warning("Payment gateway not configured", gateway=settings.payment_gateway)
    return None


def get_gateway(request: Request) -> Optional[PaymentGateway]:
    return getattr(request.app.state, "gateway", None)
