from datetime import date
from decimal import Decimal

import pytest

from models import db
from models.booking import Booking
from models.service import Service
from services.errors import (
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
from services.lifecycle import Actor
from services.policy import BookingStatus, CancelledBy, NoteAuthor, PaymentStatus
from utils.roles import UserRole

from conftest import actor_for

# clock is fixed at 2030-01-01 09:00
FAR = date(2030, 1, 5)        # 97h ahead at 10:00
NEXT_DAY = date(2030, 1, 2)   # 25h ahead at 10:00


@pytest.fixture
def user_actor(customer):
    return actor_for(customer, UserRole.USER)


@pytest.fixture
def provider_actor(provider):
    return actor_for(provider, UserRole.SERVICE_PROVIDER)


@pytest.fixture
def admin_actor(admin):
    return actor_for(admin, UserRole.ADMIN)


@pytest.fixture
def booking(engine, user_actor, service):
    return engine.create_booking(user_actor, service.id, FAR, "10:00", "12:00", 2)


def _confirmed(engine, provider_actor, booking):
    return engine.accept(provider_actor, booking.id)


def test_create_booking_prices_and_snapshots_provider(engine, user_actor, service, provider):
    b = engine.create_booking(user_actor, service.id, FAR, "9:00", "11:00", 2, special_requests="  bring ladder ")
    assert b.status == BookingStatus.PENDING
    assert b.payment_status == PaymentStatus.PENDING
    assert b.total_amount == Decimal("100.00")
    assert b.provider_id == provider.id
    assert b.start_time == "09:00"
    assert b.special_requests == "bring ladder"


def test_create_booking_rejects_overlap(engine, user_actor, other_customer, service, booking):
    with pytest.raises(SlotUnavailable):
        engine.create_booking(actor_for(other_customer, UserRole.USER), service.id, FAR, "11:00", "13:00", 2)


def test_create_booking_unknown_or_inactive_service(engine, user_actor, service):
    with pytest.raises(ServiceNotFound):
        engine.create_booking(user_actor, 9999, FAR, "10:00", "12:00", 2)

    service.is_active = False
    db.session.commit()
    with pytest.raises(ServiceInactive):
        engine.create_booking(user_actor, service.id, FAR, "10:00", "12:00", 2)


@pytest.mark.parametrize("start, end, duration", [
    ("12:00", "10:00", 2),
    ("10:00", "12:00", 0.25),
    ("10:00", "12:00", 25),
    ("10:00", "12:00", "two"),
    ("25:00", "26:00", 1),
])
def test_create_booking_validates_input(engine, user_actor, service, start, end, duration):
    with pytest.raises(ValidationError):
        engine.create_booking(user_actor, service.id, FAR, start, end, duration)


def test_race_between_check_and_insert_has_one_winner(engine, user_actor, other_customer, service, monkeypatch):
    original = engine.availability.is_available
    competitor = actor_for(other_customer, UserRole.USER)
    calls = []

    def sneaky_is_available(*args, **kwargs):
        free = original(*args, **kwargs)
        if not calls:
            calls.append(1)
            # another request books the same slot after our check read the day version
            engine.bookings.create_claiming_day({
                "user_id": competitor.user_id,
                "service_id": service.id,
                "provider_id": service.provider_id,
                "booking_date": FAR,
                "start_time": "10:00",
                "end_time": "12:00",
                "duration": 2.0,
                "status": BookingStatus.PENDING,
                "payment_status": PaymentStatus.PENDING,
                "total_amount": Decimal("100.00"),
                "currency": "USD",
            }, engine.bookings.read_day_version(service.id, FAR))
        return free

    monkeypatch.setattr(engine.availability, "is_available", sneaky_is_available)

    with pytest.raises(SlotUnavailable):
        engine.create_booking(user_actor, service.id, FAR, "10:00", "12:00", 2)

    assert len(engine.availability.conflicts(service.id, FAR, "10:00", "12:00")) == 1


def test_accept_only_by_provider(engine, user_actor, provider_actor, admin_actor, booking):
    with pytest.raises(NotProvider):
        engine.accept(user_actor, booking.id)
    with pytest.raises(NotProvider):
        engine.accept(admin_actor, booking.id)

    confirmed = engine.accept(provider_actor, booking.id)
    assert confirmed.status == BookingStatus.CONFIRMED

    with pytest.raises(InvalidTransition):
        engine.accept(provider_actor, booking.id)


def test_reject_needs_reason_and_refunds_everything(engine, provider_actor, booking):
    with pytest.raises(ValidationError):
        engine.reject(provider_actor, booking.id, "   ")

    rejected = engine.reject(provider_actor, booking.id, "Fully booked that week")
    assert rejected.status == BookingStatus.CANCELLED
    assert rejected.cancelled_by == CancelledBy.PROVIDER
    assert rejected.cancellation_fee == Decimal("0.00")
    assert rejected.refund_amount == Decimal("100.00")


def test_user_cancels_confirmed_booking_30h_out(engine, user_actor, provider_actor, service, clock):
    b = engine.create_booking(user_actor, service.id, NEXT_DAY, "15:00", "17:00", 2)
    engine.accept(provider_actor, b.id)

    cancelled = engine.cancel(user_actor, b.id, "plans changed")
    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.cancelled_by == CancelledBy.USER
    assert cancelled.cancellation_fee == Decimal("10.00")
    assert cancelled.refund_amount == Decimal("90.00")
    assert cancelled.cancelled_at == clock.now()


def test_exactly_48h_is_free(engine, user_actor, provider_actor, service):
    b = engine.create_booking(user_actor, service.id, date(2030, 1, 3), "09:00", "11:00", 2)
    engine.accept(provider_actor, b.id)
    assert engine.cancel(user_actor, b.id).cancellation_fee == Decimal("0.00")


def test_lenient_policy_lets_pending_cancel_free(engine, user_actor, service, clock):
    b = engine.create_booking(user_actor, service.id, NEXT_DAY, "10:00", "12:00", 2)
    clock.advance(hours=24)  # one hour before start
    cancelled = engine.cancel(user_actor, b.id)
    assert cancelled.cancellation_fee == Decimal("0.00")
    assert cancelled.refund_amount == Decimal("100.00")


def test_strict_policy_charges_pending_bookings(engine, user_actor, service, clock):
    b = engine.create_booking(user_actor, service.id, NEXT_DAY, "10:00", "12:00", 2)
    clock.advance(hours=24)
    cancelled = engine.cancel(user_actor, b.id, lenient=False)
    assert cancelled.cancellation_fee == Decimal("100.00")
    assert cancelled.refund_amount == Decimal("0.00")


def test_provider_and_admin_cancellations_need_reason(engine, provider_actor, admin_actor, booking):
    with pytest.raises(ValidationError):
        engine.cancel(provider_actor, booking.id)

    cancelled = engine.cancel(admin_actor, booking.id, "duplicate booking")
    assert cancelled.cancelled_by == CancelledBy.ADMIN


def test_system_cancellation(engine, booking):
    cancelled = engine.cancel(Actor.system(), booking.id, "payment window expired")
    assert cancelled.cancelled_by == CancelledBy.SYSTEM


def test_stranger_cannot_cancel(engine, other_customer, booking):
    with pytest.raises(Unauthorized):
        engine.cancel(actor_for(other_customer, UserRole.USER), booking.id)


def test_cancel_after_completion_is_invalid(engine, user_actor, provider_actor, booking):
    _confirmed(engine, provider_actor, booking)
    engine.complete(provider_actor, booking.id)
    with pytest.raises(InvalidTransition) as exc:
        engine.cancel(user_actor, booking.id)
    assert exc.value.details["current_status"] == "completed"
    assert engine.get(booking.id).status == BookingStatus.COMPLETED


def test_in_progress_can_only_cancel_strictly(engine, user_actor, provider_actor, booking):
    _confirmed(engine, provider_actor, booking)
    engine.start(provider_actor, booking.id)
    with pytest.raises(InvalidTransition):
        engine.cancel(user_actor, booking.id)
    cancelled = engine.cancel(user_actor, booking.id, lenient=False)
    assert cancelled.status == BookingStatus.CANCELLED


def test_update_status_walks_the_table(engine, provider_actor, admin_actor, booking):
    with pytest.raises(InvalidTransition):
        engine.update_status(provider_actor, booking.id, "completed")
    with pytest.raises(ValidationError):
        engine.update_status(provider_actor, booking.id, "teleported")

    engine.update_status(provider_actor, booking.id, "confirmed")
    assert engine.update_status(admin_actor, booking.id, "no_show").status == BookingStatus.NO_SHOW


def test_update_status_to_cancelled_goes_through_cancel(engine, provider_actor, booking):
    cancelled = engine.update_status(provider_actor, booking.id, "cancelled", "provider sick")
    assert cancelled.cancelled_by == CancelledBy.PROVIDER
    assert cancelled.refund_amount == Decimal("100.00")


def test_rating_flow(engine, user_actor, provider_actor, other_customer, booking, service):
    with pytest.raises(RatingNotAllowed):
        engine.rate(user_actor, booking.id, 5)

    _confirmed(engine, provider_actor, booking)
    engine.complete(provider_actor, booking.id)

    with pytest.raises(NotOwner):
        engine.rate(actor_for(other_customer, UserRole.USER), booking.id, 5)
    with pytest.raises(ValidationError):
        engine.rate(user_actor, booking.id, 6)
    with pytest.raises(ValidationError):
        engine.rate(user_actor, booking.id, True)

    rated = engine.rate(user_actor, booking.id, 4, "great job")
    assert rated.rating_score == 4
    assert rated.rating_comment == "great job"

    with pytest.raises(RatingNotAllowed):
        engine.rate(user_actor, booking.id, 5)

    refreshed = db.session.get(Service, service.id)
    assert refreshed.rating_average == 4.0
    assert refreshed.rating_count == 1


def test_notes_are_grouped_by_author(engine, user_actor, provider_actor, admin_actor, other_customer, booking):
    engine.add_note(user_actor, booking.id, "gate code 1234")
    engine.add_note(provider_actor, booking.id, "will arrive early")
    engine.add_note(admin_actor, booking.id, "checked")
    with pytest.raises(Unauthorized):
        engine.add_note(actor_for(other_customer, UserRole.USER), booking.id, "hi")
    with pytest.raises(ValidationError):
        engine.add_note(user_actor, booking.id, "")

    b = engine.get(booking.id, with_notes=True)
    assert [n.message for n in b.notes_by(NoteAuthor.USER)] == ["gate code 1234"]
    assert [n.message for n in b.notes_by(NoteAuthor.PROVIDER)] == ["will arrive early"]

    described = engine.describe(b)
    assert described["notes"]["admin"][0]["message"] == "checked"


def test_apply_payment_status_is_idempotent(engine, booking):
    paid = engine.apply_payment_status(booking.id, PaymentStatus.PAID)
    assert paid.payment_status == PaymentStatus.PAID
    assert paid.status == BookingStatus.PENDING

    again = engine.apply_payment_status(booking.id, "paid")
    assert again.payment_status == PaymentStatus.PAID


def test_describe_exposes_derived_fields(engine, provider_actor, booking):
    confirmed = _confirmed(engine, provider_actor, booking)
    out = engine.describe(confirmed)
    assert out["status"] == "confirmed"
    assert out["total_amount"] == 100.0
    assert out["is_upcoming"] is True
    assert out["is_past"] is False
    assert out["can_be_cancelled"] is True
    assert out["hours_until_start"] == 97.0


def test_out_of_table_moves_fail_before_reason_checks(engine, user_actor, provider_actor, admin_actor, booking):
    _confirmed(engine, provider_actor, booking)
    with pytest.raises(InvalidTransition):
        engine.reject(provider_actor, booking.id, None)

    engine.complete(provider_actor, booking.id)
    with pytest.raises(InvalidTransition):
        engine.cancel(admin_actor, booking.id)


def test_updated_at_follows_the_clock(engine, provider_actor, booking, clock):
    clock.advance(hours=3)
    _confirmed(engine, provider_actor, booking)
    assert db.session.get(Booking, booking.id).updated_at == clock.now()


# ---------- reschedule ----------

def test_reschedule_within_its_own_slot(engine, user_actor, provider_actor, booking):
    _confirmed(engine, provider_actor, booking)
    moved = engine.reschedule(user_actor, booking.id, start_time="11:00", end_time="13:00",
                              special_requests=" side door ")
    assert (moved.booking_date, moved.start_time, moved.end_time) == (FAR, "11:00", "13:00")
    assert moved.special_requests == "side door"
    assert moved.status == BookingStatus.CONFIRMED
    assert moved.total_amount == Decimal("100.00")


def test_reschedule_onto_another_booking_is_refused(engine, user_actor, provider_actor, other_customer,
                                                    service, booking):
    _confirmed(engine, provider_actor, booking)
    engine.create_booking(actor_for(other_customer, UserRole.USER), service.id, FAR, "14:00", "16:00", 2)

    with pytest.raises(SlotUnavailable):
        engine.reschedule(provider_actor, booking.id, start_time="15:00", end_time="17:00")
    unchanged = engine.get(booking.id)
    assert (unchanged.start_time, unchanged.end_time) == ("10:00", "12:00")

    moved = engine.reschedule(provider_actor, booking.id, booking_date=date(2030, 1, 6))
    assert moved.booking_date == date(2030, 1, 6)


def test_reschedule_needs_a_cancellable_booking(engine, user_actor, provider_actor, service, booking, clock):
    # pending bookings are not yet eligible
    with pytest.raises(ValidationError):
        engine.reschedule(user_actor, booking.id, start_time="13:00", end_time="15:00")

    soon = engine.create_booking(user_actor, service.id, NEXT_DAY, "08:00", "10:00", 2)
    _confirmed(engine, provider_actor, soon)  # 23h ahead
    with pytest.raises(ValidationError) as exc:
        engine.reschedule(user_actor, soon.id, booking_date=FAR, start_time="14:00", end_time="16:00")
    assert exc.value.details == {"status": "confirmed", "hours_until_start": 23.0}


def test_reschedule_access_and_window(engine, provider_actor, admin_actor, other_customer, booking):
    _confirmed(engine, provider_actor, booking)
    with pytest.raises(Unauthorized):
        engine.reschedule(actor_for(other_customer, UserRole.USER), booking.id, start_time="13:00", end_time="14:00")
    with pytest.raises(ValidationError):
        engine.reschedule(admin_actor, booking.id, start_time="13:00")


def test_reschedule_race_with_a_new_booking_has_one_winner(engine, user_actor, provider_actor, other_customer,
                                                           service, booking, monkeypatch):
    _confirmed(engine, provider_actor, booking)
    target_day = date(2030, 1, 7)
    original = engine.availability.is_available
    competitor = actor_for(other_customer, UserRole.USER)
    calls = []

    def racing_is_available(*args, **kwargs):
        free = original(*args, **kwargs)
        if not calls:
            calls.append(1)
            engine.create_booking(competitor, service.id, target_day, "10:00", "12:00", 2)
        return free

    monkeypatch.setattr(engine.availability, "is_available", racing_is_available)

    with pytest.raises(SlotUnavailable):
        engine.reschedule(user_actor, booking.id, booking_date=target_day)
    assert engine.get(booking.id).booking_date == FAR
    assert len(engine.availability.conflicts(service.id, target_day, "10:00", "12:00")) == 1
