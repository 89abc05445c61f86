"""
Payment processor adapters.

Each gateway turns its SDK's orders, refunds and signed webhooks into the same
small vocabulary (``OrderResult``, ``RefundResult``, ``GatewayEvent``) so that
the rest of the application never imports a gateway SDK directly.
"""
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import razorpay
import stripe
from razorpay.errors import SignatureVerificationError

from services.errors import PaymentVerificationFailed, ValidationError
from services.policy import money

logger = logging.getLogger(__name__)

PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED = "payment.failed"
REFUND_PROCESSED = "refund.processed"


@dataclass(frozen=True)
class OrderResult:
    order_id: str
    provider_reference: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    refunded_amount: Decimal


@dataclass(frozen=True)
class GatewayEvent:
    event_id: str
    kind: Optional[str]  # one of the PAYMENT_*/REFUND_* constants, None if unhandled
    raw_type: str
    order_id: Optional[str] = None
    payment_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # refunds only: ``amount`` is the running total refunded, not this one refund
    cumulative: bool = False


def to_minor_units(amount) -> int:
    return int(money(amount) * 100)


def from_minor_units(amount) -> Optional[Decimal]:
    if amount is None:
        return None
    return money(Decimal(int(amount)) / 100)


class PaymentGateway:
    name = "base"

    def create_order(self, amount, currency: str, metadata: Dict[str, Any]) -> OrderResult:
        raise NotImplementedError

    def verify(self, order_id: str, payment_ref: str, signature: Optional[str]) -> bool:
        raise NotImplementedError

    def refund(self, payment_ref: str, amount=None, reason: str = "requested_by_customer") -> RefundResult:
        raise NotImplementedError

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        raise NotImplementedError


class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    def __init__(self, key_id: Optional[str], key_secret: Optional[str], webhook_secret: Optional[str]):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self._client = None

    def _sdk(self):
        if self._client is None:
            if not self.key_id or not self.key_secret:
                raise PaymentVerificationFailed("Razorpay credentials are not configured")
            self._client = razorpay.Client(auth=(self.key_id, self.key_secret))
        return self._client

    def create_order(self, amount, currency: str, metadata: Dict[str, Any]) -> OrderResult:
        if money(amount) < 1:
            raise ValidationError("Valid amount is required (minimum 1)")
        order = self._sdk().order.create({
            "amount": to_minor_units(amount),
            "currency": currency.upper(),
            "receipt": f"booking_{metadata.get('booking_id', '')}",
            "notes": {k: str(v) for k, v in metadata.items()},
        })
        return OrderResult(order_id=order["id"], provider_reference=self.key_id)

    def verify(self, order_id: str, payment_ref: str, signature: Optional[str]) -> bool:
        if not order_id or not payment_ref or not signature:
            return False
        try:
            return bool(self._sdk().utility.verify_payment_signature({
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_ref,
                "razorpay_signature": signature,
            }))
        except SignatureVerificationError:
            return False

    def refund(self, payment_ref: str, amount=None, reason: str = "requested_by_customer") -> RefundResult:
        options = {"notes": {"reason": reason}}
        if amount is not None:
            options["amount"] = to_minor_units(amount)
        refund = self._sdk().payment.refund(payment_ref, options)
        return RefundResult(refund_id=refund["id"], refunded_amount=from_minor_units(refund["amount"]))

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        if not self.webhook_secret:
            raise PaymentVerificationFailed("Razorpay webhook secret is not configured")
        if not signature:
            raise PaymentVerificationFailed("Missing webhook signature")
        try:
            verified = razorpay.Utility().verify_webhook_signature(
                payload.decode("utf-8"), signature, self.webhook_secret)
        except (UnicodeDecodeError, SignatureVerificationError):
            verified = False
        if not verified:
            raise PaymentVerificationFailed("Invalid webhook signature")

        try:
            body = json.loads(payload)
        except ValueError:
            raise PaymentVerificationFailed("Webhook payload is not JSON")

        raw_type = body.get("event", "")
        entities = body.get("payload") or {}
        if raw_type == REFUND_PROCESSED:
            refund = (entities.get("refund") or {}).get("entity") or {}
            return GatewayEvent(
                event_id=body.get("id") or f"{raw_type}:{refund.get('id')}",
                kind=REFUND_PROCESSED,
                raw_type=raw_type,
                payment_ref=refund.get("payment_id"),
                amount=from_minor_units(refund.get("amount")),
                metadata={"refund_id": refund.get("id")},
            )

        payment = (entities.get("payment") or {}).get("entity") or {}
        kind = raw_type if raw_type in (PAYMENT_CAPTURED, PAYMENT_FAILED) else None
        return GatewayEvent(
            event_id=body.get("id") or f"{raw_type}:{payment.get('id')}",
            kind=kind,
            raw_type=raw_type,
            order_id=payment.get("order_id"),
            payment_ref=payment.get("id"),
            amount=from_minor_units(payment.get("amount")),
            failure_reason=payment.get("error_description"),
        )


# stripe event type -> normalized kind
STRIPE_EVENT_KINDS = {
    "checkout.session.completed": PAYMENT_CAPTURED,
    "payment_intent.succeeded": PAYMENT_CAPTURED,
    "checkout.session.expired": PAYMENT_FAILED,
    "payment_intent.payment_failed": PAYMENT_FAILED,
    "charge.refunded": REFUND_PROCESSED,
}


class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str],
                 success_url: Optional[str] = None, cancel_url: Optional[str] = None):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url

    def _configure(self):
        if not self.secret_key:
            raise PaymentVerificationFailed("Stripe secret key missing (STRIPE_SECRET_KEY)")
        stripe.api_key = self.secret_key

    def create_order(self, amount, currency: str, metadata: Dict[str, Any]) -> OrderResult:
        self._configure()
        if not self.success_url or not self.cancel_url:
            raise PaymentVerificationFailed("Stripe success/cancel URLs not configured")
        session = stripe.checkout.Session.create(
            mode="payment",
            line_items=[{
                "price_data": {
                    "currency": currency.lower(),
                    "product_data": {"name": f"Booking #{metadata.get('booking_id', '')}"},
                    "unit_amount": to_minor_units(amount),
                },
                "quantity": 1,
            }],
            success_url=self.success_url,
            cancel_url=self.cancel_url,
            metadata={k: str(v) for k, v in metadata.items()},
            payment_intent_data={"metadata": {k: str(v) for k, v in metadata.items()}},
        )
        return OrderResult(order_id=session["id"], provider_reference=session["url"])

    def verify(self, order_id: str, payment_ref: str, signature: Optional[str]) -> bool:
        # Checkout has no client-side signature; ask Stripe for the session instead
        self._configure()
        session = stripe.checkout.Session.retrieve(order_id)
        return session.get("payment_status") == "paid" and session.get("payment_intent") == payment_ref

    def refund(self, payment_ref: str, amount=None, reason: str = "requested_by_customer") -> RefundResult:
        self._configure()
        params = {"payment_intent": payment_ref, "metadata": {"reason": reason}}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        refund = stripe.Refund.create(**params)
        return RefundResult(refund_id=refund["id"], refunded_amount=from_minor_units(refund["amount"]))

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        if not self.webhook_secret:
            raise PaymentVerificationFailed("Webhook secret not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError):
            raise PaymentVerificationFailed("Invalid webhook signature")

        raw_type = event["type"]
        obj = event["data"]["object"]
        kind = STRIPE_EVENT_KINDS.get(raw_type)

        order_id = None
        payment_ref = None
        amount = None
        failure_reason = None
        if raw_type.startswith("checkout.session."):
            order_id = obj.get("id")
            payment_ref = obj.get("payment_intent")
            amount = obj.get("amount_total")
        elif raw_type.startswith("payment_intent."):
            payment_ref = obj.get("id")
            amount = obj.get("amount")
            error = obj.get("last_payment_error") or {}
            failure_reason = error.get("message")
        elif raw_type == "charge.refunded":
            payment_ref = obj.get("payment_intent")
            amount = obj.get("amount_refunded")

        return GatewayEvent(
            event_id=event["id"],
            kind=kind,
            raw_type=raw_type,
            order_id=order_id,
            payment_ref=payment_ref,
            amount=from_minor_units(amount),
            failure_reason=failure_reason,
            metadata=dict(obj.get("metadata") or {}),
            cumulative=raw_type == "charge.refunded",
        )


def build_gateways(config) -> Dict[str, PaymentGateway]:
    return {
        RazorpayGateway.name: RazorpayGateway(
            key_id=config.get("RAZORPAY_KEY_ID"),
            key_secret=config.get("RAZORPAY_KEY_SECRET"),
            webhook_secret=config.get("RAZORPAY_WEBHOOK_SECRET"),
        ),
        StripeGateway.name: StripeGateway(
            secret_key=config.get("STRIPE_SECRET_KEY"),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            success_url=config.get("STRIPE_SUCCESS_URL"),
            cancel_url=config.get("STRIPE_CANCEL_URL"),
        ),
    }
