from decimal import Decimal, InvalidOperation

from flask import Blueprint, request, jsonify, current_app, g

from models import db
from models.service import Service
from security.rbac import require_roles
from services.errors import NotProvider, ServiceNotFound, ValidationError
from utils.audit import log_event
from utils.roles import UserRole

services_bp = Blueprint("services", __name__, url_prefix="/services")

PRICE_TYPES = {"hourly", "daily", "weekly", "monthly", "fixed"}


def _service_dict(s: Service) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "description": s.description,
        "category": s.category,
        "provider_id": s.provider_id,
        "unit_price": float(s.unit_price),
        "price_type": s.price_type,
        "currency": s.currency,
        "is_active": s.is_active,
        "rating": {"average": s.rating_average, "count": s.rating_count},
    }


def _get_or_404(service_id: int) -> Service:
    s = db.session.get(Service, service_id)
    if not s:
        raise ServiceNotFound(f"Service {service_id} not found")
    return s


@services_bp.post("")
@require_roles(UserRole.SERVICE_PROVIDER)
def create_service():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    price_type = (data.get("price_type") or "hourly").strip().lower()
    currency = (data.get("currency") or current_app.config.get("DEFAULT_CURRENCY", "USD")).strip().upper()

    if not name or len(name) > 120:
        raise ValidationError("Service name required (max 120 chars)")
    if price_type not in PRICE_TYPES:
        raise ValidationError("Invalid price_type", {"allowed": sorted(PRICE_TYPES)})
    try:
        unit_price = Decimal(str(data.get("unit_price")))
    except InvalidOperation:
        raise ValidationError("unit_price must be a number")
    if not unit_price.is_finite() or unit_price < 0:
        raise ValidationError("unit_price cannot be negative")

    s = Service(
        name=name,
        description=(data.get("description") or "").strip() or None,
        category=(data.get("category") or "").strip() or None,
        provider_id=g.user.id,
        unit_price=unit_price,
        price_type=price_type,
        currency=currency[:3],
    )
    db.session.add(s)
    db.session.commit()

    log_event("SERVICE_CREATE", user_id=g.user.id, entity="service", entity_id=s.id)
    return jsonify(success=True, data=_service_dict(s)), 201


@services_bp.get("")
def list_services():
    q = Service.query.filter_by(is_active=True)
    provider_id = request.args.get("provider_id", type=int)
    if provider_id:
        q = q.filter_by(provider_id=provider_id)
    category = request.args.get("category")
    if category:
        q = q.filter_by(category=category)
    rows = q.order_by(Service.created_at.desc()).limit(200).all()
    return jsonify(success=True, count=len(rows), data=[_service_dict(s) for s in rows]), 200


@services_bp.get("/<int:service_id>")
def get_service(service_id: int):
    return jsonify(success=True, data=_service_dict(_get_or_404(service_id))), 200


@services_bp.post("/<int:service_id>/deactivate")
@require_roles(UserRole.SERVICE_PROVIDER, UserRole.ADMIN)
def deactivate_service(service_id: int):
    s = _get_or_404(service_id)
    if g.user.role != UserRole.ADMIN and s.provider_id != g.user.id:
        raise NotProvider("Not your service")

    s.is_active = False
    db.session.commit()

    log_event("SERVICE_DEACTIVATE", user_id=g.user.id, entity="service", entity_id=service_id)
    return jsonify(success=True, data=_service_dict(s)), 200
