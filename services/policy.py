"""
Booking rules that depend only on values: the status transition table,
time arithmetic on HH:MM slots, the cancellation fee brackets and the
derived upcoming/past flags. Nothing here touches the database or the clock;
callers pass ``now`` in.
"""
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from services.errors import InvalidTransition, ValidationError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class CancelledBy(str, Enum):
    USER = "user"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


class NoteAuthor(str, Enum):
    USER = "user"
    PROVIDER = "provider"
    ADMIN = "admin"


TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.IN_PROGRESS,
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    }),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

# statuses that hold a slot
BLOCKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)

# (minimum hours before start, share of total charged), checked top down
FEE_BRACKETS = (
    (48, Decimal("0")),
    (24, Decimal("0.10")),
    (2, Decimal("0.50")),
)

CENT = Decimal("0.01")

_HHMM = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")


def can_transition(current, target) -> bool:
    return BookingStatus(target) in TRANSITIONS[BookingStatus(current)]


def ensure_transition(current, target) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)


def money(value) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_hhmm(value: str) -> time:
    """Parse a 24-hour ``H:MM``/``HH:MM`` string."""
    match = _HHMM.match(value or "")
    if not match:
        raise ValidationError(f"Invalid time '{value}'. Use HH:MM (24-hour)")
    return time(int(match.group(1)), int(match.group(2)))


def normalize_hhmm(value: str) -> str:
    return parse_hhmm(value).strftime("%H:%M")


def booking_start(booking_date: date, start_time: str) -> datetime:
    return datetime.combine(booking_date, parse_hhmm(start_time))


def hours_until(instant: datetime, now: datetime) -> float:
    return (instant - now).total_seconds() / 3600


def intervals_overlap(s1, e1, s2, e2) -> bool:
    """Half-open overlap: ``[s1, e1)`` and ``[s2, e2)`` share an instant."""
    return s1 < e2 and s2 < e1


def calculate_cancellation_fee(total_amount, hours_until_booking: float) -> Decimal:
    total = money(total_amount)
    for min_hours, share in FEE_BRACKETS:
        if hours_until_booking >= min_hours:
            return money(total * share)
    return total


def can_be_cancelled(status, hours_until_booking: float) -> bool:
    return BookingStatus(status) == BookingStatus.CONFIRMED and hours_until_booking > 24


@dataclass
class Note:
    author: NoteAuthor
    message: str
    created_at: datetime
    author_user_id: Optional[int] = None


@dataclass
class BookingSnapshot:
    id: Optional[int]
    user_id: int
    service_id: int
    provider_id: int
    booking_date: date
    start_time: str
    end_time: str
    duration: float
    status: BookingStatus
    total_amount: Decimal
    currency: str
    payment_status: PaymentStatus
    special_requests: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None
    cancellation_reason: Optional[str] = None
    cancellation_fee: Optional[Decimal] = None
    refund_amount: Optional[Decimal] = None
    cancelled_at: Optional[datetime] = None
    rating_score: Optional[int] = None
    rating_comment: Optional[str] = None
    rated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    notes: List[Note] = field(default_factory=list)

    @property
    def starts_at(self) -> datetime:
        return booking_start(self.booking_date, self.start_time)

    @property
    def ends_at(self) -> datetime:
        return booking_start(self.booking_date, self.end_time)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_rated(self) -> bool:
        return self.rating_score is not None

    def is_upcoming(self, now: datetime) -> bool:
        return self.status == BookingStatus.CONFIRMED and self.starts_at > now

    def is_past(self, now: datetime) -> bool:
        return self.ends_at < now

    def hours_until_start(self, now: datetime) -> float:
        return hours_until(self.starts_at, now)

    def notes_by(self, author: NoteAuthor) -> List[Note]:
        return [n for n in self.notes if n.author == author]
