from datetime import datetime
from models.db import db

class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    provider = db.Column(db.String(20), nullable=False, default="razorpay")  # razorpay, stripe
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")

    status = db.Column(db.String(20), nullable=False, default="pending")
    # status values: pending, paid, failed, refunded, partially_refunded
    order_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    payment_ref = db.Column(db.String(255), nullable=True, unique=True, index=True)

    refund_id = db.Column(db.String(255), nullable=True)
    refunded_amount = db.Column(db.Numeric(10, 2), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(20), nullable=False)
    event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(60), nullable=False)

    received_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        # at-least-once delivery: a given event is applied once per gateway
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_event_once"),
    )
