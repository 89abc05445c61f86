from datetime import date, datetime
from decimal import Decimal

import pytest

from services.errors import InvalidTransition, ValidationError
from services.policy import (
    BookingSnapshot,
    BookingStatus,
    PaymentStatus,
    TERMINAL_STATUSES,
    calculate_cancellation_fee,
    can_be_cancelled,
    can_transition,
    ensure_transition,
    intervals_overlap,
    normalize_hhmm,
    parse_hhmm,
)

ALLOWED = {
    (BookingStatus.PENDING, BookingStatus.CONFIRMED),
    (BookingStatus.PENDING, BookingStatus.CANCELLED),
    (BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS),
    (BookingStatus.CONFIRMED, BookingStatus.COMPLETED),
    (BookingStatus.CONFIRMED, BookingStatus.CANCELLED),
    (BookingStatus.CONFIRMED, BookingStatus.NO_SHOW),
    (BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED),
    (BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED),
}


@pytest.mark.parametrize("current", list(BookingStatus))
@pytest.mark.parametrize("target", list(BookingStatus))
def test_transition_table(current, target):
    assert can_transition(current, target) == ((current, target) in ALLOWED)


def test_terminal_statuses_have_no_exits():
    assert TERMINAL_STATUSES == {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW}
    for status in TERMINAL_STATUSES:
        for target in BookingStatus:
            with pytest.raises(InvalidTransition):
                ensure_transition(status, target)


def test_invalid_transition_reports_both_statuses():
    with pytest.raises(InvalidTransition) as exc:
        ensure_transition("completed", "cancelled")
    assert exc.value.details == {"current_status": "completed", "requested_status": "cancelled"}
    assert exc.value.status_code == 409


@pytest.mark.parametrize("hours, fee", [
    (100, "0.00"),
    (48, "0.00"),
    (47.99, "10.00"),
    (30, "10.00"),
    (24, "10.00"),
    (23.5, "50.00"),
    (2, "50.00"),
    (1.99, "100.00"),
    (0, "100.00"),
    (-3, "100.00"),
])
def test_cancellation_fee_brackets(hours, fee):
    assert calculate_cancellation_fee(Decimal("100"), hours) == Decimal(fee)


def test_cancellation_fee_is_rounded_to_cents():
    assert calculate_cancellation_fee(Decimal("33.33"), 30) == Decimal("3.33")
    assert calculate_cancellation_fee("19.99", 10) == Decimal("10.00")


def test_can_be_cancelled_only_confirmed_beyond_a_day():
    assert can_be_cancelled(BookingStatus.CONFIRMED, 25)
    assert not can_be_cancelled(BookingStatus.CONFIRMED, 24)
    assert not can_be_cancelled(BookingStatus.PENDING, 100)
    assert not can_be_cancelled(BookingStatus.COMPLETED, 100)


@pytest.mark.parametrize("value, expected", [("9:05", "09:05"), ("00:00", "00:00"), ("23:59", "23:59")])
def test_normalize_hhmm(value, expected):
    assert normalize_hhmm(value) == expected


@pytest.mark.parametrize("value", ["24:00", "12:60", "noon", "", None, "1230"])
def test_parse_hhmm_rejects_garbage(value):
    with pytest.raises(ValidationError):
        parse_hhmm(value)


def test_overlap_is_half_open():
    assert not intervals_overlap("10:00", "11:00", "11:00", "12:00")
    assert intervals_overlap("10:00", "11:00", "10:30", "11:30")
    assert intervals_overlap("10:00", "12:00", "10:30", "11:00")
    assert not intervals_overlap("13:00", "14:00", "10:00", "12:00")


def _snapshot(**overrides):
    fields = dict(
        id=1, user_id=1, service_id=1, provider_id=2,
        booking_date=date(2030, 1, 2), start_time="10:00", end_time="12:00", duration=2.0,
        status=BookingStatus.CONFIRMED, total_amount=Decimal("100.00"), currency="USD",
        payment_status=PaymentStatus.PENDING,
    )
    fields.update(overrides)
    return BookingSnapshot(**fields)


def test_snapshot_derived_flags():
    now = datetime(2030, 1, 1, 9, 0)
    booking = _snapshot()
    assert booking.hours_until_start(now) == 25
    assert booking.is_upcoming(now)
    assert not booking.is_past(now)

    later = datetime(2030, 1, 2, 12, 30)
    assert not booking.is_upcoming(later)
    assert booking.is_past(later)


def test_pending_booking_is_not_upcoming():
    assert not _snapshot(status=BookingStatus.PENDING).is_upcoming(datetime(2030, 1, 1))
