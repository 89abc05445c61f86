"""
Booking-domain errors.

Every failure of the booking core is one of these classes. Each carries a
stable ``kind`` that clients can switch on and the HTTP status the API layer
renders it with.
"""
from typing import Any, Dict, Optional


class BookingError(Exception):
    kind = "BookingError"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        out = {"kind": self.kind, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(BookingError):
    kind = "ValidationError"
    status_code = 400


class NotFound(BookingError):
    kind = "NotFound"
    status_code = 404


class ServiceNotFound(NotFound):
    kind = "ServiceNotFound"


class BookingNotFound(NotFound):
    kind = "BookingNotFound"


class Unauthorized(BookingError):
    kind = "Unauthorized"
    status_code = 403


class NotProvider(Unauthorized):
    kind = "NotProvider"


class NotOwner(Unauthorized):
    kind = "NotOwner"


class InvalidTransition(BookingError):
    kind = "InvalidTransition"
    status_code = 409

    def __init__(self, current, requested, message: Optional[str] = None):
        current = getattr(current, "value", current)
        requested = getattr(requested, "value", requested)
        self.current = current
        self.requested = requested
        super().__init__(
            message or f"Cannot move booking from '{current}' to '{requested}'",
            {"current_status": current, "requested_status": requested},
        )


class ServiceInactive(BookingError):
    kind = "ServiceInactive"
    status_code = 409


class SlotUnavailable(BookingError):
    kind = "SlotUnavailable"
    status_code = 409


class RatingNotAllowed(BookingError):
    kind = "RatingNotAllowed"
    status_code = 409


class PaymentVerificationFailed(BookingError):
    kind = "PaymentVerificationFailed"
    status_code = 400


class TransientRepositoryError(BookingError):
    """Storage failure. Callers may retry; the core never does."""

    kind = "TransientRepositoryError"
    status_code = 503
