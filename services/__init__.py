from flask import current_app

from services.availability import AvailabilityChecker
from services.errors import ValidationError
from services.lifecycle import Actor, BookingLifecycle
from services.payment_events import PaymentEventHandler
from services.repository import BookingRepository, PaymentRepository, ServiceRepository
from utils.clock import get_clock


def booking_lifecycle() -> BookingLifecycle:
    """Request-scoped engine wired from the app config."""
    bookings = BookingRepository()
    return BookingLifecycle(
        bookings=bookings,
        services=ServiceRepository(),
        clock=get_clock(),
        availability=AvailabilityChecker(bookings),
        lenient_cancellation=current_app.config.get("CANCELLATION_POLICY", "lenient") == "lenient",
        create_attempts=current_app.config.get("BOOKING_CREATE_ATTEMPTS", 3),
    )


def payment_gateway(name=None):
    gateways = current_app.extensions["payment_gateways"]
    name = (name or current_app.config.get("PAYMENT_GATEWAY", "razorpay")).lower()
    gateway = gateways.get(name)
    if gateway is None:
        raise ValidationError(f"Unknown payment gateway '{name}'")
    return gateway


def payment_event_handler(lifecycle=None) -> PaymentEventHandler:
    return PaymentEventHandler(PaymentRepository(), lifecycle or booking_lifecycle(), get_clock())
