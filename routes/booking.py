from datetime import date

from flask import Blueprint, request, jsonify, current_app, g

from security.rbac import require_roles
from services import booking_lifecycle
from services.errors import BookingNotFound, Unauthorized, ValidationError
from services.policy import CancelledBy
from services.repository import BookingFilter, parse_sort
from utils.audit import log_event
from utils.auth_context import current_actor, login_required
from utils.roles import UserRole

booking_bp = Blueprint("booking", __name__, url_prefix="/bookings")


def _parse_date(value, field="booking_date") -> date:
    # Accept "2026-01-20" or a full ISO timestamp; only the calendar date matters
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{field} is required (YYYY-MM-DD)")
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise ValidationError(f"Invalid {field}. Use YYYY-MM-DD")


def _required_str(data, field) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value.strip()


def _positive_int(value, field) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")
    if number < 1:
        raise ValidationError(f"{field} must be positive")
    return number


def _ok(engine, booking, status=200):
    return jsonify(success=True, data=engine.describe(booking)), status


# ---------- PUBLIC: availability ----------
@booking_bp.get("/availability")
def check_availability():
    args = request.args
    service_id = _positive_int(args.get("service_id"), "service_id")
    booking_date = _parse_date(args.get("date"), "date")
    start_time = _required_str(args, "start_time")
    end_time = _required_str(args, "end_time")

    engine = booking_lifecycle()
    available = engine.availability.is_available(service_id, booking_date, start_time, end_time)
    return jsonify(success=True, data={"available": available}), 200


# ---------- USERS: create booking ----------
@booking_bp.post("")
@require_roles(UserRole.USER)
def create_booking():
    data = request.get_json(silent=True) or {}
    engine = booking_lifecycle()

    booking = engine.create_booking(
        current_actor(),
        service_id=_positive_int(data.get("service_id"), "service_id"),
        booking_date=_parse_date(data.get("booking_date")),
        start_time=_required_str(data, "start_time"),
        end_time=_required_str(data, "end_time"),
        duration=data.get("duration"),
        special_requests=data.get("special_requests"),
    )

    log_event("BOOKING_CREATE", user_id=g.user.id, entity="booking", entity_id=booking.id,
              metadata={"service_id": booking.service_id, "total_amount": booking.total_amount})
    return _ok(engine, booking, 201)


# ---------- USERS/PROVIDERS: my bookings ----------
@booking_bp.get("/mine")
@login_required
def my_bookings():
    engine = booking_lifecycle()
    owner_field = "provider_id" if g.user.role == UserRole.SERVICE_PROVIDER else "user_id"
    flt = BookingFilter().where(owner_field, "eq", g.user.id)
    status = request.args.get("status")
    if status:
        flt.where("status", "eq", status)

    rows = engine.bookings.query(flt, parse_sort(request.args.get("sort"), "-booking_date,-start_time"))
    return jsonify(success=True, count=len(rows), data=[engine.describe(b) for b in rows]), 200


# ---------- ADMIN: list all bookings (typed filters) ----------
@booking_bp.get("")
@require_roles(UserRole.ADMIN)
def list_bookings():
    args = request.args
    engine = booking_lifecycle()

    flt = BookingFilter.from_args(args)
    sort = parse_sort(args.get("sort"))

    max_limit = current_app.config.get("MAX_PAGE_SIZE", 100)
    page = max(args.get("page", 1, type=int) or 1, 1)
    limit = min(max(args.get("limit", current_app.config.get("DEFAULT_PAGE_SIZE", 10), type=int) or 1, 1), max_limit)
    skip = (page - 1) * limit

    total = engine.bookings.count_by_filter(flt)
    rows = engine.bookings.query(flt, sort, skip=skip, limit=limit)

    pagination = {}
    if skip + limit < total:
        pagination["next"] = {"page": page + 1, "limit": limit}
    if skip > 0:
        pagination["prev"] = {"page": page - 1, "limit": limit}

    return jsonify(
        success=True,
        count=len(rows),
        total=total,
        pagination=pagination,
        data=[engine.describe(b) for b in rows],
    ), 200


@booking_bp.get("/<int:booking_id>")
@login_required
def get_booking(booking_id: int):
    engine = booking_lifecycle()
    booking = engine.get(booking_id, with_notes=True)
    if not engine.can_access(current_actor(), booking):
        raise Unauthorized(f"User {g.user.id} is not authorized to access this booking")
    return _ok(engine, booking)


# ---------- USERS/PROVIDERS/ADMIN: reschedule ----------
@booking_bp.put("/<int:booking_id>")
@login_required
def update_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    engine = booking_lifecycle()
    booking = engine.reschedule(
        current_actor(),
        booking_id,
        booking_date=_parse_date(data["booking_date"]) if "booking_date" in data else None,
        start_time=_required_str(data, "start_time") if "start_time" in data else None,
        end_time=_required_str(data, "end_time") if "end_time" in data else None,
        special_requests=data.get("special_requests"),
    )
    log_event("BOOKING_UPDATE", user_id=g.user.id, entity="booking", entity_id=booking_id, metadata={
        "booking_date": booking.booking_date.isoformat(),
        "start_time": booking.start_time,
        "end_time": booking.end_time,
    })
    return _ok(engine, booking)


# ---------- PROVIDERS: accept / reject / start / complete / no-show ----------
@booking_bp.post("/<int:booking_id>/accept")
@login_required
def accept_booking(booking_id: int):
    engine = booking_lifecycle()
    booking = engine.accept(current_actor(), booking_id)
    log_event("BOOKING_ACCEPT", user_id=g.user.id, entity="booking", entity_id=booking_id)
    return _ok(engine, booking)


@booking_bp.post("/<int:booking_id>/reject")
@login_required
def reject_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    engine = booking_lifecycle()
    booking = engine.reject(current_actor(), booking_id, data.get("reason"))
    log_event("BOOKING_REJECT", user_id=g.user.id, entity="booking", entity_id=booking_id,
              metadata={"reason": booking.cancellation_reason})
    return _ok(engine, booking)


@booking_bp.post("/<int:booking_id>/start")
@login_required
def start_booking(booking_id: int):
    engine = booking_lifecycle()
    booking = engine.start(current_actor(), booking_id)
    log_event("BOOKING_START", user_id=g.user.id, entity="booking", entity_id=booking_id)
    return _ok(engine, booking)


@booking_bp.post("/<int:booking_id>/complete")
@login_required
def complete_booking(booking_id: int):
    engine = booking_lifecycle()
    booking = engine.complete(current_actor(), booking_id)
    log_event("BOOKING_COMPLETE", user_id=g.user.id, entity="booking", entity_id=booking_id)
    return _ok(engine, booking)


@booking_bp.post("/<int:booking_id>/no-show")
@login_required
def no_show_booking(booking_id: int):
    engine = booking_lifecycle()
    booking = engine.mark_no_show(current_actor(), booking_id)
    log_event("BOOKING_NO_SHOW", user_id=g.user.id, entity="booking", entity_id=booking_id)
    return _ok(engine, booking)


@booking_bp.put("/<int:booking_id>/status")
@require_roles(UserRole.SERVICE_PROVIDER, UserRole.ADMIN)
def update_booking_status(booking_id: int):
    data = request.get_json(silent=True) or {}
    engine = booking_lifecycle()
    booking = engine.update_status(current_actor(), booking_id, _required_str(data, "status"), data.get("reason"))
    log_event("BOOKING_STATUS_UPDATE", user_id=g.user.id, entity="booking", entity_id=booking_id,
              metadata={"status": booking.status.value})
    return _ok(engine, booking)


# ---------- USERS/PROVIDERS/ADMIN: cancel ----------
@booking_bp.post("/<int:booking_id>/cancel")
@login_required
def cancel_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    engine = booking_lifecycle()
    booking = engine.cancel(current_actor(), booking_id, data.get("reason"))

    action = "ADMIN_BOOKING_CANCEL" if booking.cancelled_by == CancelledBy.ADMIN else "BOOKING_CANCEL"
    log_event(action, user_id=g.user.id, entity="booking", entity_id=booking_id, metadata={
        "reason": booking.cancellation_reason,
        "cancellation_fee": booking.cancellation_fee,
        "refund_amount": booking.refund_amount,
    })
    return _ok(engine, booking)


# ---------- USERS: rate ----------
@booking_bp.post("/<int:booking_id>/rate")
@require_roles(UserRole.USER)
def rate_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    engine = booking_lifecycle()
    booking = engine.rate(current_actor(), booking_id, data.get("score"), data.get("comment"))
    log_event("BOOKING_RATE", user_id=g.user.id, entity="booking", entity_id=booking_id,
              metadata={"score": booking.rating_score})
    return _ok(engine, booking)


# ---------- notes ----------
@booking_bp.post("/<int:booking_id>/notes")
@login_required
def add_booking_note(booking_id: int):
    data = request.get_json(silent=True) or {}
    engine = booking_lifecycle()
    note = engine.add_note(current_actor(), booking_id, data.get("note"))
    log_event("BOOKING_NOTE", user_id=g.user.id, entity="booking", entity_id=booking_id,
              metadata={"author": note.author.value})
    return jsonify(success=True, data={
        "author": note.author.value,
        "message": note.message,
        "created_at": note.created_at.isoformat(),
    }), 201


# ---------- ADMIN: delete override ----------
@booking_bp.delete("/<int:booking_id>")
@require_roles(UserRole.ADMIN)
def delete_booking(booking_id: int):
    engine = booking_lifecycle()
    if not engine.bookings.delete_by_id(booking_id):
        raise BookingNotFound(f"Booking {booking_id} not found")
    log_event("ADMIN_BOOKING_DELETE", user_id=g.user.id, entity="booking", entity_id=booking_id)
    return jsonify(success=True, data={}), 200
