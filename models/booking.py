from datetime import datetime
from models.db import db

class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.id"), nullable=False, index=True)
    # snapshot of services.provider_id at creation; not updated if the service changes hands
    provider_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    booking_date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.String(5), nullable=False)  # HH:MM
    end_time = db.Column(db.String(5), nullable=False)    # HH:MM
    duration = db.Column(db.Float, nullable=False)        # hours

    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    # status values: pending, confirmed, in_progress, completed, cancelled, no_show

    total_amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    payment_status = db.Column(db.String(20), nullable=False, default="pending")
    # payment_status values: pending, paid, failed, refunded, partially_refunded

    special_requests = db.Column(db.String(500), nullable=True)

    cancelled_by = db.Column(db.String(10), nullable=True)  # user, provider, admin, system
    cancellation_reason = db.Column(db.String(200), nullable=True)
    cancellation_fee = db.Column(db.Numeric(10, 2), nullable=True)
    refund_amount = db.Column(db.Numeric(10, 2), nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    rating_score = db.Column(db.Integer, nullable=True)
    rating_comment = db.Column(db.String(500), nullable=True)
    rated_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    notes = db.relationship("BookingNote", order_by="BookingNote.id", lazy="select")

    __table_args__ = (
        db.Index("ix_bookings_service_date", "service_id", "booking_date"),
        db.Index("ix_bookings_status_payment", "status", "payment_status"),
        db.CheckConstraint("total_amount >= 0", name="ck_booking_total_non_negative"),
    )


class BookingNote(db.Model):
    __tablename__ = "booking_notes"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)

    author = db.Column(db.String(10), nullable=False)  # user, provider, admin
    author_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    message = db.Column(db.String(500), nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class ServiceDayClaim(db.Model):
    """Per (service, date) version row bumped by every booking creation.

    A creation commits only if the version it read before the availability
    check is still current, so two overlapping creations cannot both win.
    """
    __tablename__ = "service_day_claims"

    id = db.Column(db.Integer, primary_key=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.id"), nullable=False)
    booking_date = db.Column(db.Date, nullable=False)
    version = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint("service_id", "booking_date", name="uq_service_day_claim"),
    )
