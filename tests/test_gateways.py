import hashlib
import hmac
import json
import time
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from services.errors import PaymentVerificationFailed, ValidationError
from services.gateways import (
    PAYMENT_CAPTURED,
    PAYMENT_FAILED,
    REFUND_PROCESSED,
    RazorpayGateway,
    StripeGateway,
    from_minor_units,
    to_minor_units,
)


def sign(secret, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def stripe_header(secret, payload: bytes) -> str:
    ts = int(time.time())
    return f"t={ts},v1={sign(secret, f'{ts}.'.encode() + payload)}"


@pytest.fixture
def razorpay_gateway():
    return RazorpayGateway("rzp_test_key", "rzp_test_secret", "rzp_webhook_secret")


@pytest.fixture
def stripe_gateway():
    return StripeGateway("sk_test_123", "whsec_test_123", "https://example.test/ok", "https://example.test/no")


def test_minor_units():
    assert to_minor_units(Decimal("100.5")) == 10050
    assert from_minor_units(10050) == Decimal("100.50")
    assert from_minor_units(None) is None


def test_razorpay_checkout_signature(razorpay_gateway):
    good = sign("rzp_test_secret", b"order_1|pay_1")
    assert razorpay_gateway.verify("order_1", "pay_1", good)
    assert not razorpay_gateway.verify("order_1", "pay_2", good)
    assert not razorpay_gateway.verify("order_1", "pay_1", None)
    assert not razorpay_gateway.verify("order_1", "pay_1", "not-hex")


def test_razorpay_create_order_uses_paise(razorpay_gateway):
    created = {}

    def create(data):
        created.update(data)
        return {"id": "order_abc"}

    razorpay_gateway._client = SimpleNamespace(order=SimpleNamespace(create=create))
    result = razorpay_gateway.create_order(Decimal("100.00"), "inr", {"booking_id": 7})
    assert result.order_id == "order_abc"
    assert created["amount"] == 10000
    assert created["currency"] == "INR"
    assert created["receipt"] == "booking_7"


def test_razorpay_rejects_tiny_orders(razorpay_gateway):
    with pytest.raises(ValidationError):
        razorpay_gateway.create_order(Decimal("0.50"), "INR", {})


def test_razorpay_webhook_capture(razorpay_gateway):
    payload = json.dumps({
        "id": "evt_1",
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_1", "order_id": "order_1", "amount": 10000}}},
    }).encode()
    event = razorpay_gateway.parse_webhook(payload, sign("rzp_webhook_secret", payload))
    assert event.kind == PAYMENT_CAPTURED
    assert event.event_id == "evt_1"
    assert event.order_id == "order_1"
    assert event.payment_ref == "pay_1"
    assert event.amount == Decimal("100.00")


def test_razorpay_webhook_refund(razorpay_gateway):
    payload = json.dumps({
        "event": "refund.processed",
        "payload": {"refund": {"entity": {"id": "rfnd_1", "payment_id": "pay_1", "amount": 9000}}},
    }).encode()
    event = razorpay_gateway.parse_webhook(payload, sign("rzp_webhook_secret", payload))
    assert event.kind == REFUND_PROCESSED
    assert event.event_id == "refund.processed:rfnd_1"
    assert event.metadata["refund_id"] == "rfnd_1"
    assert event.amount == Decimal("90.00")


def test_razorpay_refund_without_amount_keeps_it_unknown(razorpay_gateway):
    payload = json.dumps({
        "id": "evt_3",
        "event": "refund.processed",
        "payload": {"refund": {"entity": {"id": "rfnd_2", "payment_id": "pay_1"}}},
    }).encode()
    event = razorpay_gateway.parse_webhook(payload, sign("rzp_webhook_secret", payload))
    assert event.amount is None
    assert not event.cumulative


def test_razorpay_webhook_unhandled_event(razorpay_gateway):
    payload = json.dumps({"id": "evt_2", "event": "order.paid", "payload": {}}).encode()
    assert razorpay_gateway.parse_webhook(payload, sign("rzp_webhook_secret", payload)).kind is None


def test_razorpay_webhook_bad_signature(razorpay_gateway):
    payload = b'{"event": "payment.captured"}'
    with pytest.raises(PaymentVerificationFailed):
        razorpay_gateway.parse_webhook(payload, sign("wrong", payload))
    with pytest.raises(PaymentVerificationFailed):
        razorpay_gateway.parse_webhook(payload, None)


def test_stripe_create_order(stripe_gateway, monkeypatch):
    seen = {}

    def create(**kwargs):
        seen.update(kwargs)
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}

    monkeypatch.setattr(stripe.checkout.Session, "create", create)
    result = stripe_gateway.create_order(Decimal("100.00"), "USD", {"booking_id": 3})
    assert result.order_id == "cs_test_1"
    assert result.provider_reference.endswith("cs_test_1")
    assert seen["line_items"][0]["price_data"]["unit_amount"] == 10000
    assert seen["line_items"][0]["price_data"]["currency"] == "usd"
    assert seen["metadata"] == {"booking_id": "3"}


def test_stripe_webhook_checkout_completed(stripe_gateway):
    payload = json.dumps({
        "id": "evt_stripe_1",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_test_1",
            "object": "checkout.session",
            "payment_intent": "pi_1",
            "amount_total": 10000,
            "metadata": {"booking_id": "3"},
        }},
    }).encode()
    event = stripe_gateway.parse_webhook(payload, stripe_header("whsec_test_123", payload))
    assert event.kind == PAYMENT_CAPTURED
    assert event.event_id == "evt_stripe_1"
    assert event.order_id == "cs_test_1"
    assert event.payment_ref == "pi_1"
    assert event.amount == Decimal("100.00")
    assert event.metadata == {"booking_id": "3"}


def test_stripe_webhook_payment_failed(stripe_gateway):
    payload = json.dumps({
        "id": "evt_stripe_2",
        "object": "event",
        "type": "payment_intent.payment_failed",
        "data": {"object": {
            "id": "pi_2",
            "object": "payment_intent",
            "amount": 5000,
            "last_payment_error": {"message": "card declined"},
        }},
    }).encode()
    event = stripe_gateway.parse_webhook(payload, stripe_header("whsec_test_123", payload))
    assert event.kind == PAYMENT_FAILED
    assert event.payment_ref == "pi_2"
    assert event.failure_reason == "card declined"


def test_stripe_charge_refunded_reports_running_total(stripe_gateway):
    payload = json.dumps({
        "id": "evt_stripe_3",
        "object": "event",
        "type": "charge.refunded",
        "data": {"object": {"id": "ch_1", "object": "charge", "payment_intent": "pi_1", "amount_refunded": 7000}},
    }).encode()
    event = stripe_gateway.parse_webhook(payload, stripe_header("whsec_test_123", payload))
    assert event.kind == REFUND_PROCESSED
    assert event.payment_ref == "pi_1"
    assert event.amount == Decimal("70.00")
    assert event.cumulative


def test_stripe_webhook_bad_signature(stripe_gateway):
    payload = b'{"id": "evt_x", "object": "event", "type": "checkout.session.completed", "data": {"object": {}}}'
    with pytest.raises(PaymentVerificationFailed):
        stripe_gateway.parse_webhook(payload, stripe_header("whsec_other", payload))
    with pytest.raises(PaymentVerificationFailed):
        stripe_gateway.parse_webhook(payload, "garbage")
