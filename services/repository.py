"""
SQLAlchemy-backed repositories for bookings, services and payments.

Rows never leave this module: bookings are handed out as ``BookingSnapshot``
values and services as ``ServiceInfo``. Every storage failure is rolled back
and re-raised as ``TransientRepositoryError``.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from models.booking import Booking, BookingNote, ServiceDayClaim
from models.payment import Payment, WebhookEvent
from models.service import Service
from services.errors import (
    BookingNotFound,
    InvalidTransition,
    RatingNotAllowed,
    TransientRepositoryError,
    ValidationError,
)
from services.policy import (
    BLOCKING_STATUSES,
    BookingSnapshot,
    BookingStatus,
    CancelledBy,
    Note,
    NoteAuthor,
    PaymentStatus,
)

logger = logging.getLogger(__name__)


class StaleDayClaim(Exception):
    """Another booking for the same service and date committed first."""


@contextmanager
def _storage(session, action: str):
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("storage failure during %s", action)
        raise TransientRepositoryError(f"Storage unavailable while trying to {action}") from exc


def _plain(value):
    return value.value if isinstance(value, Enum) else value


# ---------- typed listing filters ----------

class FilterOp(str, Enum):
    EQ = "eq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"


def _as_status(value):
    try:
        return BookingStatus(value).value
    except ValueError:
        raise ValidationError(f"Unknown booking status '{value}'")


def _as_payment_status(value):
    try:
        return PaymentStatus(value).value
    except ValueError:
        raise ValidationError(f"Unknown payment status '{value}'")


def _as_cancelled_by(value):
    try:
        return CancelledBy(value).value
    except ValueError:
        raise ValidationError(f"Unknown cancelled_by '{value}'")


def _as_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Expected an integer, got '{value}'")


def _as_date(value):
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"Expected a YYYY-MM-DD date, got '{value}'")


def _as_datetime(value):
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"Expected an ISO datetime, got '{value}'")


def _as_decimal(value):
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Expected a number, got '{value}'")


# field name -> value coercion; nothing outside this map is filterable
FILTERABLE_FIELDS = {
    "status": _as_status,
    "payment_status": _as_payment_status,
    "cancelled_by": _as_cancelled_by,
    "user_id": _as_int,
    "provider_id": _as_int,
    "service_id": _as_int,
    "booking_date": _as_date,
    "total_amount": _as_decimal,
    "created_at": _as_datetime,
    "currency": str,
}

SORTABLE_FIELDS = set(FILTERABLE_FIELDS) | {"start_time", "id"}

RESERVED_QUERY_KEYS = {"sort", "page", "limit", "skip", "select"}


@dataclass(frozen=True)
class FilterClause:
    field: str
    op: FilterOp
    value: Any

    def criterion(self):
        column = getattr(Booking, self.field)
        if self.op == FilterOp.EQ:
            return column == self.value
        if self.op == FilterOp.GT:
            return column > self.value
        if self.op == FilterOp.GTE:
            return column >= self.value
        if self.op == FilterOp.LT:
            return column < self.value
        if self.op == FilterOp.LTE:
            return column <= self.value
        return column.in_(self.value)


class BookingFilter:
    """Conjunction of typed clauses over whitelisted booking columns."""

    def __init__(self, clauses: Optional[Iterable[FilterClause]] = None):
        self.clauses: List[FilterClause] = list(clauses or [])

    def where(self, field: str, op=FilterOp.EQ, value=None) -> "BookingFilter":
        coerce = FILTERABLE_FIELDS.get(field)
        if coerce is None:
            raise ValidationError(f"Cannot filter bookings by '{field}'")
        try:
            op = FilterOp(op)
        except ValueError:
            raise ValidationError(f"Unknown filter operator '{op}'")

        if op == FilterOp.IN:
            items = value.split(",") if isinstance(value, str) else list(value)
            coerced = [coerce(v.strip() if isinstance(v, str) else v) for v in items if v != ""]
            if not coerced:
                raise ValidationError(f"'{field}[in]' needs at least one value")
        else:
            coerced = coerce(_plain(value))
        self.clauses.append(FilterClause(field, op, coerced))
        return self

    @classmethod
    def from_args(cls, args: Mapping[str, Any]) -> "BookingFilter":
        """Build from query-string keys such as ``status`` or ``total_amount[gte]``."""
        flt = cls()
        for key, value in args.items():
            if key in RESERVED_QUERY_KEYS:
                continue
            field, op = key, FilterOp.EQ.value
            if key.endswith("]") and "[" in key:
                field, op = key[:-1].split("[", 1)
            flt.where(field, op, value)
        return flt

    def apply(self, query):
        for clause in self.clauses:
            query = query.filter(clause.criterion())
        return query


@dataclass(frozen=True)
class SortKey:
    field: str
    descending: bool = False


def parse_sort(value: Optional[str], default: str = "-created_at") -> List[SortKey]:
    keys = []
    for part in (value or default).split(","):
        part = part.strip()
        if not part:
            continue
        descending = part.startswith("-")
        name = part.lstrip("-+")
        if name not in SORTABLE_FIELDS:
            raise ValidationError(f"Cannot sort bookings by '{name}'")
        keys.append(SortKey(name, descending))
    return keys


# ---------- bookings ----------

def _note(row: BookingNote) -> Note:
    return Note(
        author=NoteAuthor(row.author),
        message=row.message,
        created_at=row.created_at,
        author_user_id=row.author_user_id,
    )


def to_snapshot(row: Booking, with_notes: bool = False) -> BookingSnapshot:
    return BookingSnapshot(
        id=row.id,
        user_id=row.user_id,
        service_id=row.service_id,
        provider_id=row.provider_id,
        booking_date=row.booking_date,
        start_time=row.start_time,
        end_time=row.end_time,
        duration=row.duration,
        status=BookingStatus(row.status),
        total_amount=row.total_amount,
        currency=row.currency,
        payment_status=PaymentStatus(row.payment_status),
        special_requests=row.special_requests,
        cancelled_by=CancelledBy(row.cancelled_by) if row.cancelled_by else None,
        cancellation_reason=row.cancellation_reason,
        cancellation_fee=row.cancellation_fee,
        refund_amount=row.refund_amount,
        cancelled_at=row.cancelled_at,
        rating_score=row.rating_score,
        rating_comment=row.rating_comment,
        rated_at=row.rated_at,
        created_at=row.created_at,
        notes=[_note(n) for n in row.notes] if with_notes else [],
    )


class BookingRepository:
    def __init__(self, session=None):
        self.session = session or db.session

    def create(self, data: Mapping[str, Any]) -> BookingSnapshot:
        with _storage(self.session, "create a booking"):
            row = Booking(**{k: _plain(v) for k, v in data.items()})
            self.session.add(row)
            self.session.commit()
            return to_snapshot(row)

    def read_day_version(self, service_id: int, booking_date: date) -> int:
        with _storage(self.session, "read slot claims"):
            claim = ServiceDayClaim.query.filter_by(service_id=service_id, booking_date=booking_date).first()
            return claim.version if claim else 0

    def _claim_day(self, service_id: int, booking_date: date, expected_version: int) -> None:
        # an IntegrityError here means a concurrent first claim; callers map it to StaleDayClaim
        if expected_version == 0:
            self.session.add(ServiceDayClaim(service_id=service_id, booking_date=booking_date, version=1))
            self.session.flush()
            return
        bumped = (
            ServiceDayClaim.query
            .filter_by(service_id=service_id, booking_date=booking_date, version=expected_version)
            .update({"version": expected_version + 1}, synchronize_session=False)
        )
        if bumped != 1:
            self.session.rollback()
            raise StaleDayClaim()

    def create_claiming_day(self, data: Mapping[str, Any], expected_version: int) -> BookingSnapshot:
        """Insert a booking only if no other booking for its service/date committed since
        ``expected_version`` was read. Raises ``StaleDayClaim`` otherwise."""
        with _storage(self.session, "create a booking"):
            try:
                self._claim_day(data["service_id"], data["booking_date"], expected_version)
                row = Booking(**{k: _plain(v) for k, v in data.items()})
                self.session.add(row)
                self.session.commit()
            except IntegrityError:
                # the claim row for this day was inserted by a concurrent creation
                self.session.rollback()
                raise StaleDayClaim()
            return to_snapshot(row)

    def find_by_id(self, booking_id: int, with_notes: bool = False) -> Optional[BookingSnapshot]:
        with _storage(self.session, "load a booking"):
            row = db.session.get(Booking, booking_id)
            return to_snapshot(row, with_notes=with_notes) if row else None

    def update_by_id(self, booking_id: int, patch: Mapping[str, Any], expected_status=None,
                     unrated_only: bool = False) -> BookingSnapshot:
        """Apply ``patch`` in one conditional UPDATE.

        With ``expected_status`` the write only lands if the stored status is
        still that value; a lost race surfaces as ``InvalidTransition``.
        """
        values = {k: _plain(v) for k, v in patch.items()}

        with _storage(self.session, "update a booking"):
            q = Booking.query.filter(Booking.id == booking_id)
            if expected_status is not None:
                q = q.filter(Booking.status == _plain(expected_status))
            if unrated_only:
                q = q.filter(Booking.rating_score.is_(None))
            updated = q.update(values, synchronize_session=False)
            if updated != 1:
                self.session.rollback()
            else:
                self.session.commit()

        if updated != 1:
            self._explain_missed_update(booking_id, expected_status, values)
        return self.find_by_id(booking_id)

    def update_claiming_day(self, booking_id: int, patch: Mapping[str, Any], service_id: int,
                            booking_date: date, expected_version: int, expected_status) -> BookingSnapshot:
        """Like ``update_by_id`` but also claims ``booking_date`` for the service, so a
        moved booking and a new one can never both land in the same free window."""
        values = {k: _plain(v) for k, v in patch.items()}

        with _storage(self.session, "move a booking"):
            try:
                self._claim_day(service_id, booking_date, expected_version)
                updated = (
                    Booking.query
                    .filter(Booking.id == booking_id, Booking.status == _plain(expected_status))
                    .update(values, synchronize_session=False)
                )
                if updated != 1:
                    self.session.rollback()
                else:
                    self.session.commit()
            except IntegrityError:
                self.session.rollback()
                raise StaleDayClaim()

        if updated != 1:
            self._explain_missed_update(booking_id, expected_status, values)
        return self.find_by_id(booking_id)

    def _explain_missed_update(self, booking_id: int, expected_status, values: Mapping[str, Any]):
        current = self.find_by_id(booking_id)
        if current is None:
            raise BookingNotFound(f"Booking {booking_id} not found")
        if expected_status is not None and current.status != BookingStatus(_plain(expected_status)):
            raise InvalidTransition(current.status, values.get("status", expected_status))
        raise RatingNotAllowed("Booking has already been rated")

    def find_conflicting(self, service_id: int, booking_date: date, start_time: str, end_time: str,
                         exclude_id: Optional[int] = None) -> List[BookingSnapshot]:
        # HH:MM strings are stored zero-padded, so lexical order is time order
        with _storage(self.session, "check availability"):
            q = Booking.query.filter(
                Booking.service_id == service_id,
                Booking.booking_date == booking_date,
                Booking.status.in_([s.value for s in BLOCKING_STATUSES]),
                Booking.start_time < end_time,
                Booking.end_time > start_time,
            )
            if exclude_id is not None:
                q = q.filter(Booking.id != exclude_id)
            return [to_snapshot(r) for r in q.order_by(Booking.start_time.asc()).all()]

    def count_by_filter(self, flt: Optional[BookingFilter] = None) -> int:
        with _storage(self.session, "count bookings"):
            return (flt or BookingFilter()).apply(Booking.query).count()

    def query(self, flt: Optional[BookingFilter] = None, sort: Optional[List[SortKey]] = None,
              skip: int = 0, limit: Optional[int] = None) -> List[BookingSnapshot]:
        with _storage(self.session, "list bookings"):
            q = (flt or BookingFilter()).apply(Booking.query)
            for key in sort or parse_sort(None):
                column = getattr(Booking, key.field)
                q = q.order_by(column.desc() if key.descending else column.asc())
            if skip:
                q = q.offset(skip)
            if limit is not None:
                q = q.limit(limit)
            return [to_snapshot(r) for r in q.all()]

    def add_note(self, booking_id: int, author: NoteAuthor, message: str,
                 author_user_id: Optional[int], created_at: datetime) -> Note:
        with _storage(self.session, "add a booking note"):
            row = BookingNote(
                booking_id=booking_id,
                author=_plain(author),
                author_user_id=author_user_id,
                message=message,
                created_at=created_at,
            )
            self.session.add(row)
            self.session.commit()
            return _note(row)

    def delete_by_id(self, booking_id: int) -> bool:
        with _storage(self.session, "delete a booking"):
            row = db.session.get(Booking, booking_id)
            if row is None:
                return False
            BookingNote.query.filter_by(booking_id=booking_id).delete(synchronize_session=False)
            self.session.delete(row)
            self.session.commit()
            return True


# ---------- services ----------

@dataclass(frozen=True)
class ServiceInfo:
    id: int
    provider_id: int
    unit_price: Decimal
    currency: str
    is_active: bool


class ServiceRepository:
    def __init__(self, session=None):
        self.session = session or db.session

    def find_by_id(self, service_id: int) -> Optional[ServiceInfo]:
        with _storage(self.session, "load a service"):
            row = db.session.get(Service, service_id)
            if row is None:
                return None
            return ServiceInfo(
                id=row.id,
                provider_id=row.provider_id,
                unit_price=row.unit_price,
                currency=row.currency,
                is_active=row.is_active,
            )

    def update_average_rating(self, service_id: int):
        """Recompute the service rating from every rated booking of it."""
        with _storage(self.session, "update a service rating"):
            average, count = (
                self.session.query(func.avg(Booking.rating_score), func.count(Booking.rating_score))
                .filter(Booking.service_id == service_id, Booking.rating_score.isnot(None))
                .one()
            )
            row = db.session.get(Service, service_id)
            if row is None:
                return None
            row.rating_average = float(average or 0)
            row.rating_count = int(count or 0)
            self.session.commit()
            return row.rating_average, row.rating_count


# ---------- payments ----------

class PaymentRepository:
    def __init__(self, session=None):
        self.session = session or db.session

    def create(self, **fields) -> Payment:
        with _storage(self.session, "record a payment"):
            row = Payment(**{k: _plain(v) for k, v in fields.items()})
            self.session.add(row)
            self.session.commit()
            return row

    def find_by_order_id(self, order_id: str) -> Optional[Payment]:
        with _storage(self.session, "load a payment"):
            return Payment.query.filter_by(order_id=order_id).first()

    def find_by_payment_ref(self, payment_ref: str) -> Optional[Payment]:
        with _storage(self.session, "load a payment"):
            return Payment.query.filter_by(payment_ref=payment_ref).first()

    def latest_paid_for_booking(self, booking_id: int) -> Optional[Payment]:
        with _storage(self.session, "load a payment"):
            return (
                Payment.query
                .filter(Payment.booking_id == booking_id, Payment.status == PaymentStatus.PAID.value)
                .order_by(Payment.paid_at.desc())
                .first()
            )

    def list_for_user(self, user_id: int) -> List[Payment]:
        with _storage(self.session, "list payments"):
            return Payment.query.filter_by(user_id=user_id).order_by(Payment.created_at.desc()).all()

    def stage(self, payment: Payment, **fields) -> Payment:
        """Set fields without committing; ``commit`` or a later booking update persists them."""
        for key, value in fields.items():
            setattr(payment, key, _plain(value))
        return payment

    def record_event(self, provider: str, event_id: str, event_type: str) -> bool:
        """Stage a processed-event marker. False if this event was already recorded."""
        with _storage(self.session, "record a webhook event"):
            if WebhookEvent.query.filter_by(provider=provider, event_id=event_id).first():
                return False
            try:
                self.session.add(WebhookEvent(provider=provider, event_id=event_id, event_type=event_type))
                self.session.flush()
            except IntegrityError:
                # concurrent delivery of the same event won
                self.session.rollback()
                return False
            return True

    def commit(self) -> None:
        with _storage(self.session, "save payment changes"):
            self.session.commit()
