import logging
from dataclasses import dataclass
from typing import Optional

from services.errors import NotFound, PaymentVerificationFailed
from services.gateways import PAYMENT_CAPTURED, PAYMENT_FAILED, REFUND_PROCESSED, GatewayEvent
from services.policy import PaymentStatus, money

logger = logging.getLogger(__name__)


@dataclass
class EventOutcome:
    applied: bool
    reason: str
    payment_id: Optional[int] = None
    booking_id: Optional[int] = None


class PaymentEventHandler:
    """Applies verified gateway events to payments and booking payment status.

    Delivery is at-least-once: an event id is processed once per gateway, and
    re-applying a state the payment is already in changes nothing.
    """

    def __init__(self, payments, lifecycle, clock):
        self.payments = payments
        self.lifecycle = lifecycle
        self.clock = clock

    def _find_payment(self, event: GatewayEvent):
        payment = None
        if event.order_id:
            payment = self.payments.find_by_order_id(event.order_id)
        if payment is None and event.payment_ref:
            payment = self.payments.find_by_payment_ref(event.payment_ref)
        return payment

    def apply(self, gateway_name: str, event: GatewayEvent) -> EventOutcome:
        if event.kind is None:
            logger.info("ignoring unhandled %s webhook event %s", gateway_name, event.raw_type)
            return EventOutcome(applied=False, reason="unhandled")

        if not self.payments.record_event(gateway_name, event.event_id, event.raw_type):
            logger.info("duplicate %s webhook event %s", gateway_name, event.event_id)
            return EventOutcome(applied=False, reason="duplicate")

        payment = self._find_payment(event)
        if payment is None:
            # keep the marker so redeliveries stay no-ops
            self.payments.commit()
            logger.warning("%s event %s references unknown payment (order=%s ref=%s)",
                           gateway_name, event.event_id, event.order_id, event.payment_ref)
            return EventOutcome(applied=False, reason="unknown_payment")

        return self._apply_to_payment(gateway_name, payment, event)

    def confirm_client_payment(self, gateway, order_id: str, payment_ref: str,
                               signature: Optional[str]) -> EventOutcome:
        """Synchronous checkout confirmation; shares the webhook path so a later
        ``payment.captured`` for the same payment is a no-op."""
        payment = self.payments.find_by_order_id(order_id)
        if payment is None:
            raise NotFound("Payment record not found")
        if not gateway.verify(order_id, payment_ref, signature):
            raise PaymentVerificationFailed("Invalid payment signature")

        event = GatewayEvent(
            event_id=f"verify:{order_id}:{payment_ref}",
            kind=PAYMENT_CAPTURED,
            raw_type="client.verify",
            order_id=order_id,
            payment_ref=payment_ref,
        )
        if not self.payments.record_event(gateway.name, event.event_id, event.raw_type):
            return EventOutcome(False, "duplicate", payment.id, payment.booking_id)
        return self._apply_to_payment(gateway.name, payment, event)

    def _apply_to_payment(self, gateway_name: str, payment, event: GatewayEvent) -> EventOutcome:
        now = self.clock.now()
        current = PaymentStatus(payment.status)

        if event.kind == PAYMENT_CAPTURED:
            if current == PaymentStatus.PAID:
                self.payments.commit()
                return EventOutcome(False, "already_paid", payment.id, payment.booking_id)
            if current in (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED):
                self.payments.commit()
                return EventOutcome(False, "already_refunded", payment.id, payment.booking_id)
            self.payments.stage(payment, status=PaymentStatus.PAID, payment_ref=event.payment_ref or payment.payment_ref,
                                paid_at=now)
            target = PaymentStatus.PAID

        elif event.kind == PAYMENT_FAILED:
            if current != PaymentStatus.PENDING:
                self.payments.commit()
                return EventOutcome(False, f"already_{current.value}", payment.id, payment.booking_id)
            self.payments.stage(payment, status=PaymentStatus.FAILED, failure_reason=event.failure_reason)
            target = PaymentStatus.FAILED

        elif event.kind == REFUND_PROCESSED:
            skipped = self._stage_refund(gateway_name, payment, event, now)
            if skipped is not None:
                self.payments.commit()
                return skipped
            target = PaymentStatus(payment.status)

        else:
            self.payments.commit()
            return EventOutcome(False, "unhandled", payment.id, payment.booking_id)

        self.lifecycle.apply_payment_status(payment.booking_id, target)
        self.payments.commit()
        logger.info("payment %s -> %s via %s", payment.id, target.value, event.raw_type)
        return EventOutcome(True, target.value, payment.id, payment.booking_id)

    def _stage_refund(self, gateway_name: str, payment, event: GatewayEvent, now) -> Optional[EventOutcome]:
        """Stage one refund notification on ``payment``.

        Razorpay reports each refund separately, keyed by its refund id, so
        amounts accumulate. Stripe reports the running total on the charge.
        Returns an outcome only when the notification changes nothing.
        """
        captured = money(payment.amount)
        already = money(payment.refunded_amount or 0)
        refund_id = None

        if event.cumulative:
            total = money(event.amount) if event.amount is not None else captured
            if total <= already:
                return EventOutcome(False, "refund_already_recorded", payment.id, payment.booking_id)
        else:
            refund_id = event.metadata.get("refund_id")
            if refund_id and (refund_id == payment.refund_id or not self.payments.record_event(
                    gateway_name, f"refund:{refund_id}", event.raw_type)):
                return EventOutcome(False, "refund_already_recorded", payment.id, payment.booking_id)
            # no amount means the rest of the captured amount went back
            total = already + (money(event.amount) if event.amount is not None else captured - already)

        total = min(total, captured)
        status = PaymentStatus.REFUNDED if total >= captured else PaymentStatus.PARTIALLY_REFUNDED
        self.payments.stage(payment, status=status, refunded_amount=total, refunded_at=now,
                            refund_id=refund_id or payment.refund_id)
        return None
