from flask import Blueprint, request, jsonify, g

from security.rbac import require_roles
from services import booking_lifecycle, payment_event_handler, payment_gateway
from services.errors import BookingError, InvalidTransition, NotFound, NotOwner, ValidationError
from services.policy import BookingStatus, PaymentStatus, money
from services.repository import PaymentRepository
from utils.audit import log_event
from utils.auth_context import login_required
from utils.roles import UserRole

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _payment_dict(p) -> dict:
    return {
        "id": p.id,
        "booking_id": p.booking_id,
        "provider": p.provider,
        "amount": float(p.amount),
        "currency": p.currency,
        "status": p.status,
        "order_id": p.order_id,
        "payment_ref": p.payment_ref,
        "refunded_amount": float(p.refunded_amount) if p.refunded_amount is not None else None,
        "created_at": p.created_at.isoformat() if p.created_at else None,
        "paid_at": p.paid_at.isoformat() if p.paid_at else None,
    }


@payments_bp.post("/orders")
@login_required
def create_order():
    data = request.get_json(silent=True) or {}
    booking_id = data.get("booking_id")
    if not isinstance(booking_id, int):
        raise ValidationError("booking_id required")

    engine = booking_lifecycle()
    booking = engine.get(booking_id)
    if booking.user_id != g.user.id:
        raise NotOwner("Only the booking owner can pay for it")
    if booking.status in (BookingStatus.CANCELLED, BookingStatus.NO_SHOW):
        raise ValidationError(f"Cannot pay for a booking that is {booking.status.value}")
    if booking.payment_status == PaymentStatus.PAID:
        raise ValidationError("Booking already paid")

    gateway = payment_gateway(data.get("gateway"))
    order = gateway.create_order(booking.total_amount, booking.currency, {
        "booking_id": booking.id,
        "user_id": g.user.id,
    })

    payment = PaymentRepository().create(
        booking_id=booking.id,
        user_id=g.user.id,
        provider=gateway.name,
        amount=money(booking.total_amount),
        currency=booking.currency,
        status=PaymentStatus.PENDING,
        order_id=order.order_id,
    )

    log_event("PAYMENT_ORDER_CREATED", user_id=g.user.id, entity="payment", entity_id=payment.id,
              metadata={"gateway": gateway.name, "order_id": order.order_id})
    return jsonify(success=True, data={
        "payment_id": payment.id,
        "gateway": gateway.name,
        "order_id": order.order_id,
        "provider_reference": order.provider_reference,
        "amount": float(payment.amount),
        "currency": payment.currency,
    }), 201


@payments_bp.post("/verify")
@login_required
def verify_payment():
    data = request.get_json(silent=True) or {}
    order_id = data.get("order_id")
    payment_ref = data.get("payment_ref")
    if not order_id or not payment_ref:
        raise ValidationError("Missing payment verification parameters")

    payments = PaymentRepository()
    payment = payments.find_by_order_id(order_id)
    if payment is None or payment.user_id != g.user.id:
        raise NotFound("Payment record not found")

    gateway = payment_gateway(payment.provider)
    try:
        outcome = payment_event_handler().confirm_client_payment(gateway, order_id, payment_ref, data.get("signature"))
    except BookingError:
        log_event("PAYMENT_VERIFY_FAIL", user_id=g.user.id, entity="payment", entity_id=payment.id)
        raise

    log_event("PAYMENT_VERIFIED", user_id=g.user.id, entity="payment", entity_id=outcome.payment_id,
              metadata={"applied": outcome.applied, "reason": outcome.reason})
    return jsonify(success=True, data=_payment_dict(payments.find_by_order_id(order_id))), 200


@payments_bp.post("/bookings/<int:booking_id>/refund")
@require_roles(UserRole.ADMIN)
def refund_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    engine = booking_lifecycle()
    booking = engine.get(booking_id)
    if booking.status != BookingStatus.CANCELLED:
        raise InvalidTransition(booking.status, BookingStatus.CANCELLED, "Only cancelled bookings are refunded")

    payments = PaymentRepository()
    payment = payments.latest_paid_for_booking(booking_id)
    if payment is None or not payment.payment_ref:
        raise NotFound("No captured payment for this booking")

    amount = money(booking.refund_amount or 0)
    if amount <= 0:
        raise ValidationError("Nothing to refund for this booking")

    gateway = payment_gateway(payment.provider)
    result = gateway.refund(payment.payment_ref, amount, (data.get("reason") or "booking_cancelled")[:200])

    target = PaymentStatus.REFUNDED if result.refunded_amount >= money(payment.amount) else PaymentStatus.PARTIALLY_REFUNDED
    payments.stage(payment, status=target, refund_id=result.refund_id,
                   refunded_amount=result.refunded_amount, refunded_at=engine.clock.now())
    payments.record_event(payment.provider, f"refund:{result.refund_id}", "refund.created")
    engine.apply_payment_status(booking_id, target)
    payments.commit()

    log_event("PAYMENT_REFUND", user_id=g.user.id, entity="payment", entity_id=payment.id,
              metadata={"refund_id": result.refund_id, "amount": result.refunded_amount})
    return jsonify(success=True, data=_payment_dict(payment)), 200


@payments_bp.get("/mine")
@login_required
def my_payments():
    rows = PaymentRepository().list_for_user(g.user.id)
    return jsonify(success=True, count=len(rows), data=[_payment_dict(p) for p in rows]), 200
