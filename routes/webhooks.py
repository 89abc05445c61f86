from flask import Blueprint, request, jsonify

from services import payment_event_handler, payment_gateway
from services.errors import PaymentVerificationFailed
from utils.audit import log_event

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")

SIGNATURE_HEADERS = {
    "razorpay": "X-Razorpay-Signature",
    "stripe": "Stripe-Signature",
}


@webhooks_bp.post("/<gateway_name>")
def receive(gateway_name: str):
    gateway = payment_gateway(gateway_name)
    signature = request.headers.get(SIGNATURE_HEADERS.get(gateway.name, "X-Signature"))
    payload = request.get_data()

    try:
        event = gateway.parse_webhook(payload, signature)
    except PaymentVerificationFailed as exc:
        log_event("WEBHOOK_REJECTED", entity="webhook", entity_id=gateway.name, metadata={"reason": exc.message})
        raise

    outcome = payment_event_handler().apply(gateway.name, event)
    if outcome.applied:
        action = "WEBHOOK_APPLIED"
    elif outcome.reason == "duplicate":
        action = "WEBHOOK_DUPLICATE"
    else:
        action = "WEBHOOK_IGNORED"
    log_event(
        action,
        entity="payment",
        entity_id=outcome.payment_id,
        metadata={"gateway": gateway.name, "event": event.raw_type, "event_id": event.event_id, "reason": outcome.reason},
    )
    return jsonify(received=True, applied=outcome.applied, reason=outcome.reason), 200
