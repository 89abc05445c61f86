"""
Booking lifecycle: creation, status transitions and cancellation fees.

The engine is stateless between calls. It reads a snapshot from the booking
repository, validates the move against the transition table, computes every
derived field, and hands the repository a single conditional patch, so a
booking is never observed half-updated (for example cancelled without its
fee).
"""
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from services.availability import AvailabilityChecker
from services.errors import (
    BookingNotFound,
    InvalidTransition,
    NotOwner,
    NotProvider,
    RatingNotAllowed,
    ServiceInactive,
    ServiceNotFound,
    SlotUnavailable,
    Unauthorized,
    ValidationError,
)
from services.policy import (
    BookingSnapshot,
    BookingStatus,
    CancelledBy,
    Note,
    NoteAuthor,
    PaymentStatus,
    calculate_cancellation_fee,
    can_be_cancelled,
    ensure_transition,
    money,
    normalize_hhmm,
    parse_hhmm,
)
from services.repository import StaleDayClaim
from utils.roles import UserRole

logger = logging.getLogger(__name__)

MIN_DURATION_HOURS = 0.5
MAX_DURATION_HOURS = 24
MAX_REASON_LENGTH = 200
MAX_TEXT_LENGTH = 500


@dataclass(frozen=True)
class Actor:
    user_id: Optional[int]
    role: Optional[UserRole]

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, role=None)

    @property
    def is_system(self) -> bool:
        return self.role is None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def _clean_text(value: Optional[str], field: str, max_length: int) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} cannot exceed {max_length} characters")
    return value or None


def validate_duration(duration) -> float:
    if isinstance(duration, bool):
        raise ValidationError("duration must be a number of hours")
    try:
        hours = float(duration)
    except (TypeError, ValueError):
        raise ValidationError("duration must be a number of hours")
    if not MIN_DURATION_HOURS <= hours <= MAX_DURATION_HOURS:
        raise ValidationError(f"duration must be between {MIN_DURATION_HOURS} and {MAX_DURATION_HOURS} hours")
    return hours


def validate_score(score) -> int:
    if isinstance(score, bool) or not isinstance(score, int):
        raise ValidationError("score must be an integer between 1 and 5")
    if not 1 <= score <= 5:
        raise ValidationError("score must be an integer between 1 and 5")
    return score


class BookingLifecycle:
    def __init__(self, bookings, services, clock, availability: Optional[AvailabilityChecker] = None,
                 lenient_cancellation: bool = True, create_attempts: int = 3):
        self.bookings = bookings
        self.services = services
        self.clock = clock
        self.availability = availability or AvailabilityChecker(bookings)
        self.lenient_cancellation = lenient_cancellation
        self.create_attempts = max(1, create_attempts)

    # ---------- helpers ----------

    def get(self, booking_id: int, with_notes: bool = False) -> BookingSnapshot:
        booking = self.bookings.find_by_id(booking_id, with_notes=with_notes)
        if booking is None:
            raise BookingNotFound(f"Booking {booking_id} not found")
        return booking

    def _require_provider(self, actor: Actor, booking: BookingSnapshot) -> None:
        if actor.user_id is None or actor.user_id != booking.provider_id:
            raise NotProvider(f"Only the service provider can do this for booking {booking.id}")

    def _require_provider_or_admin(self, actor: Actor, booking: BookingSnapshot) -> None:
        if actor.is_admin:
            return
        self._require_provider(actor, booking)

    def _transition(self, booking: BookingSnapshot, target: BookingStatus,
                    patch: Optional[Dict[str, Any]] = None) -> BookingSnapshot:
        ensure_transition(booking.status, target)
        patch = self._stamped(patch)
        patch["status"] = target
        updated = self.bookings.update_by_id(booking.id, patch, expected_status=booking.status)
        logger.info("booking %s: %s -> %s", booking.id, booking.status.value, target.value)
        return updated

    def _stamped(self, patch: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        patch = dict(patch or {})
        patch["updated_at"] = self.clock.now()
        return patch

    def can_access(self, actor: Actor, booking: BookingSnapshot) -> bool:
        return actor.is_admin or actor.user_id in (booking.user_id, booking.provider_id)

    # ---------- creation ----------

    def create_booking(self, actor: Actor, service_id: int, booking_date: date, start_time: str,
                       end_time: str, duration, special_requests: Optional[str] = None) -> BookingSnapshot:
        if actor.user_id is None:
            raise Unauthorized("Bookings are created on behalf of a user")

        service = self.services.find_by_id(service_id)
        if service is None:
            raise ServiceNotFound(f"Service {service_id} not found for booking creation")
        if not service.is_active:
            raise ServiceInactive("Service is not available for booking")

        start = normalize_hhmm(start_time)
        end = normalize_hhmm(end_time)
        if parse_hhmm(start) >= parse_hhmm(end):
            raise ValidationError("start_time must be before end_time")
        hours = validate_duration(duration)

        data = {
            "user_id": actor.user_id,
            "service_id": service.id,
            "provider_id": service.provider_id,
            "booking_date": booking_date,
            "start_time": start,
            "end_time": end,
            "duration": hours,
            "status": BookingStatus.PENDING,
            "payment_status": PaymentStatus.PENDING,
            "total_amount": money(Decimal(str(service.unit_price)) * Decimal(str(hours))),
            "currency": service.currency,
            "special_requests": _clean_text(special_requests, "special_requests", MAX_TEXT_LENGTH),
            "created_at": self.clock.now(),
        }

        for attempt in range(1, self.create_attempts + 1):
            version = self.bookings.read_day_version(service.id, booking_date)
            if not self.availability.is_available(service.id, booking_date, start, end):
                raise SlotUnavailable("Selected time slot is not available")
            try:
                booking = self.bookings.create_claiming_day(data, version)
            except StaleDayClaim:
                logger.info(
                    "service %s on %s changed during booking creation (attempt %s), re-checking",
                    service.id, booking_date, attempt,
                )
                continue
            logger.info("booking %s created for service %s on %s %s-%s",
                        booking.id, service.id, booking_date, start, end)
            return booking

        raise SlotUnavailable("Selected time slot is being booked by someone else, try again")

    def reschedule(self, actor: Actor, booking_id: int, booking_date: Optional[date] = None,
                   start_time: Optional[str] = None, end_time: Optional[str] = None,
                   special_requests: Optional[str] = None) -> BookingSnapshot:
        """Move a booking to another date or window, or edit its special requests.

        Only bookings that could still be cancelled (confirmed, more than 24h
        out) may change. The new window is checked against every other
        booking under the same day claim that creation uses. Price and
        duration stay as booked.
        """
        booking = self.get(booking_id)
        if not self.can_access(actor, booking):
            raise Unauthorized(f"User {actor.user_id} is not authorized to update booking {booking_id}")

        hours = booking.hours_until_start(self.clock.now())
        if not can_be_cancelled(booking.status, hours):
            raise ValidationError("Booking cannot be updated at this time", {
                "status": booking.status.value,
                "hours_until_start": round(hours, 2),
            })

        new_date = booking_date or booking.booking_date
        start = normalize_hhmm(start_time) if start_time is not None else booking.start_time
        end = normalize_hhmm(end_time) if end_time is not None else booking.end_time
        if parse_hhmm(start) >= parse_hhmm(end):
            raise ValidationError("start_time must be before end_time")

        patch = {"booking_date": new_date, "start_time": start, "end_time": end}
        if special_requests is not None:
            patch["special_requests"] = _clean_text(special_requests, "special_requests", MAX_TEXT_LENGTH)

        for attempt in range(1, self.create_attempts + 1):
            version = self.bookings.read_day_version(booking.service_id, new_date)
            if not self.availability.is_available(booking.service_id, new_date, start, end,
                                                  exclude_booking_id=booking.id):
                raise SlotUnavailable("Selected time slot is not available")
            try:
                updated = self.bookings.update_claiming_day(
                    booking.id, self._stamped(patch), booking.service_id, new_date, version,
                    expected_status=booking.status,
                )
            except StaleDayClaim:
                logger.info(
                    "service %s on %s changed while moving booking %s (attempt %s), re-checking",
                    booking.service_id, new_date, booking.id, attempt,
                )
                continue
            logger.info("booking %s moved to %s %s-%s", booking.id, new_date, start, end)
            return updated

        raise SlotUnavailable("Selected time slot is being booked by someone else, try again")

    # ---------- provider actions ----------

    def accept(self, actor: Actor, booking_id: int) -> BookingSnapshot:
        booking = self.get(booking_id)
        self._require_provider(actor, booking)
        if booking.status != BookingStatus.PENDING:
            raise InvalidTransition(booking.status, BookingStatus.CONFIRMED)
        return self._transition(booking, BookingStatus.CONFIRMED)

    def reject(self, actor: Actor, booking_id: int, reason: Optional[str]) -> BookingSnapshot:
        booking = self.get(booking_id)
        self._require_provider(actor, booking)
        if booking.status != BookingStatus.PENDING:
            raise InvalidTransition(booking.status, BookingStatus.CANCELLED,
                                    "Only pending bookings can be rejected")
        reason = _clean_text(reason, "reason", MAX_REASON_LENGTH)
        if not reason:
            raise ValidationError("A reason is required to reject a booking")

        # rejection is never the requester's fault: full refund
        return self._transition(booking, BookingStatus.CANCELLED, {
            "cancelled_by": CancelledBy.PROVIDER,
            "cancellation_reason": reason,
            "cancellation_fee": money(0),
            "refund_amount": money(booking.total_amount),
            "cancelled_at": self.clock.now(),
        })

    def start(self, actor: Actor, booking_id: int) -> BookingSnapshot:
        booking = self.get(booking_id)
        self._require_provider_or_admin(actor, booking)
        return self._transition(booking, BookingStatus.IN_PROGRESS)

    def complete(self, actor: Actor, booking_id: int) -> BookingSnapshot:
        booking = self.get(booking_id)
        self._require_provider(actor, booking)
        return self._transition(booking, BookingStatus.COMPLETED)

    def mark_no_show(self, actor: Actor, booking_id: int) -> BookingSnapshot:
        booking = self.get(booking_id)
        self._require_provider_or_admin(actor, booking)
        return self._transition(booking, BookingStatus.NO_SHOW)

    def update_status(self, actor: Actor, booking_id: int, target, reason: Optional[str] = None) -> BookingSnapshot:
        """Provider/admin status change through the transition table."""
        try:
            target = BookingStatus(target)
        except ValueError:
            raise ValidationError(f"Unknown booking status '{target}'")

        booking = self.get(booking_id)
        self._require_provider_or_admin(actor, booking)
        if target == BookingStatus.CANCELLED:
            return self.cancel(actor, booking_id, reason)
        return self._transition(booking, target)

    # ---------- cancellation ----------

    def _cancelled_by(self, actor: Actor, booking: BookingSnapshot) -> CancelledBy:
        if actor.is_system:
            return CancelledBy.SYSTEM
        if actor.is_admin:
            return CancelledBy.ADMIN
        if actor.user_id == booking.provider_id:
            return CancelledBy.PROVIDER
        if actor.user_id == booking.user_id:
            return CancelledBy.USER
        raise Unauthorized(f"User {actor.user_id} is not authorized to cancel booking {booking.id}")

    def cancellation_fee(self, booking: BookingSnapshot, lenient: Optional[bool] = None) -> Decimal:
        """Fee that cancelling ``booking`` now would charge under the chosen policy."""
        ensure_transition(booking.status, BookingStatus.CANCELLED)
        lenient = self.lenient_cancellation if lenient is None else lenient
        hours = booking.hours_until_start(self.clock.now())

        if not lenient:
            return calculate_cancellation_fee(booking.total_amount, hours)
        if booking.status == BookingStatus.PENDING:
            # nothing is owed before the provider has accepted
            return money(0)
        if booking.status == BookingStatus.CONFIRMED:
            return calculate_cancellation_fee(booking.total_amount, hours)
        raise InvalidTransition(
            booking.status, BookingStatus.CANCELLED,
            f"Bookings that are '{booking.status.value}' cannot be cancelled",
        )

    def cancel(self, actor: Actor, booking_id: int, reason: Optional[str] = None,
               lenient: Optional[bool] = None) -> BookingSnapshot:
        booking = self.get(booking_id)
        cancelled_by = self._cancelled_by(actor, booking)
        fee = self.cancellation_fee(booking, lenient)

        reason = _clean_text(reason, "reason", MAX_REASON_LENGTH)
        if not reason and cancelled_by in (CancelledBy.PROVIDER, CancelledBy.ADMIN):
            raise ValidationError("A reason is required to cancel someone else's booking")

        total = money(booking.total_amount)
        return self._transition(booking, BookingStatus.CANCELLED, {
            "cancelled_by": cancelled_by,
            "cancellation_reason": reason,
            "cancellation_fee": fee,
            "refund_amount": total - fee,
            "cancelled_at": self.clock.now(),
        })

    # ---------- owner actions ----------

    def rate(self, actor: Actor, booking_id: int, score, comment: Optional[str] = None) -> BookingSnapshot:
        booking = self.get(booking_id)
        if actor.user_id is None or actor.user_id != booking.user_id:
            raise NotOwner(f"User {actor.user_id} is not authorized to rate booking {booking_id}")
        score = validate_score(score)
        comment = _clean_text(comment, "comment", MAX_TEXT_LENGTH)

        if booking.status != BookingStatus.COMPLETED:
            raise RatingNotAllowed("Can only rate completed bookings")
        if booking.is_rated:
            raise RatingNotAllowed("Booking has already been rated")

        updated = self.bookings.update_by_id(booking_id, self._stamped({
            "rating_score": score,
            "rating_comment": comment,
            "rated_at": self.clock.now(),
        }), expected_status=BookingStatus.COMPLETED, unrated_only=True)
        self.services.update_average_rating(booking.service_id)
        return updated

    def add_note(self, actor: Actor, booking_id: int, message: Optional[str]) -> Note:
        booking = self.get(booking_id)
        if actor.is_admin:
            author = NoteAuthor.ADMIN
        elif actor.user_id is not None and actor.user_id == booking.provider_id:
            author = NoteAuthor.PROVIDER
        elif actor.user_id is not None and actor.user_id == booking.user_id:
            author = NoteAuthor.USER
        else:
            raise Unauthorized(f"User {actor.user_id} is not authorized to add notes to booking {booking_id}")

        message = _clean_text(message, "note", MAX_TEXT_LENGTH)
        if not message:
            raise ValidationError("note is required")
        return self.bookings.add_note(booking_id, author, message, actor.user_id, self.clock.now())

    # ---------- payment processor callbacks ----------

    def apply_payment_status(self, booking_id: int, payment_status) -> BookingSnapshot:
        """Record a processor-confirmed payment state. Booking status is left alone."""
        payment_status = PaymentStatus(payment_status)
        booking = self.get(booking_id)
        if booking.payment_status == payment_status:
            return booking
        updated = self.bookings.update_by_id(booking_id, self._stamped({"payment_status": payment_status}))
        logger.info("booking %s payment %s -> %s", booking_id,
                    booking.payment_status.value, payment_status.value)
        return updated

    # ---------- read model ----------

    def describe(self, booking: BookingSnapshot) -> Dict[str, Any]:
        now = self.clock.now()
        hours = booking.hours_until_start(now)

        def _amount(value):
            return float(value) if value is not None else None

        out = {
            "id": booking.id,
            "user_id": booking.user_id,
            "service_id": booking.service_id,
            "provider_id": booking.provider_id,
            "booking_date": booking.booking_date.isoformat(),
            "start_time": booking.start_time,
            "end_time": booking.end_time,
            "duration": booking.duration,
            "status": booking.status.value,
            "total_amount": _amount(booking.total_amount),
            "currency": booking.currency,
            "payment_status": booking.payment_status.value,
            "special_requests": booking.special_requests,
            "cancelled_by": booking.cancelled_by.value if booking.cancelled_by else None,
            "cancellation_reason": booking.cancellation_reason,
            "cancellation_fee": _amount(booking.cancellation_fee),
            "refund_amount": _amount(booking.refund_amount),
            "cancelled_at": booking.cancelled_at.isoformat() if booking.cancelled_at else None,
            "rating": None,
            "created_at": booking.created_at.isoformat() if booking.created_at else None,
            "is_upcoming": booking.is_upcoming(now),
            "is_past": booking.is_past(now),
            "can_be_cancelled": can_be_cancelled(booking.status, hours),
            "hours_until_start": round(hours, 2),
        }
        if booking.is_rated:
            out["rating"] = {
                "score": booking.rating_score,
                "comment": booking.rating_comment,
                "created_at": booking.rated_at.isoformat() if booking.rated_at else None,
            }
        if booking.notes:
            out["notes"] = {
                author.value: [
                    {"message": n.message, "created_at": n.created_at.isoformat()}
                    for n in booking.notes_by(author)
                ]
                for author in NoteAuthor
            }
        return out
