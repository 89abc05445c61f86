from flask import Blueprint, request, jsonify, current_app, g

from models import db
from models.user import User, Role
from security.password import hash_password, verify_password, validate_password
from security.session import cookie_name, create_session, revoke_session, revoke_all_sessions
from security.csrf import issue_csrf_token
from services.errors import ValidationError
from utils.audit import log_event
from utils.auth_context import login_required
from utils.roles import SELF_REGISTER_ROLES, UserRole


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _error(kind: str, message: str, status: int):
    return jsonify(success=False, error={"kind": kind, "message": message}), status


def _is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255


def _user_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "phone_number": user.phone_number,
        "role": user.role.value,
        "roles": user.role_names,
    }


@auth_bp.post("/register")
def register():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    try:
        role = UserRole(data.get("role") or UserRole.USER.value)
    except ValueError:
        raise ValidationError("Invalid role", {"allowed": sorted(r.value for r in SELF_REGISTER_ROLES)})
    if role not in SELF_REGISTER_ROLES:
        return _error("Unauthorized", "Role cannot be self-assigned", 403)

    if not _is_valid_email(email):
        raise ValidationError("Invalid email")
    errors = validate_password(password)
    if errors:
        raise ValidationError("Password does not meet policy", {"password": errors})

    if User.query.filter_by(email=email).first():
        log_event("REGISTER_FAIL_EMAIL_EXISTS", metadata={"email": email})
        return _error("EmailTaken", "Email already registered", 409)

    user = User(
        email=email,
        password_hash=hash_password(password),
        full_name=(data.get("full_name") or "").strip()[:120] or None,
        phone_number=(data.get("phone_number") or "").strip()[:30] or None,
    )
    user.roles.append(Role.query.filter_by(name=role.value).one())
    db.session.add(user)
    db.session.commit()

    log_event("REGISTER_SUCCESS", user_id=user.id, metadata={"role": role.value})
    return jsonify(success=True, data=_user_dict(user)), 201


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()

    user = User.query.filter_by(email=email).first()
    if not user or not verify_password(data.get("password") or "", user.password_hash):
        log_event("LOGIN_FAIL", user_id=user.id if user else None, metadata={"email": email})
        return _error("InvalidCredentials", "Invalid credentials", 401)

    # one live session per user
    revoked_count = revoke_all_sessions(user.id)

    resp = jsonify(success=True, data=_user_dict(user))
    resp.set_cookie(
        cookie_name(),
        create_session(user.id),
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        max_age=current_app.config.get("SESSION_LIFETIME_SECONDS", 8 * 60 * 60),
        path="/",
    )
    issue_csrf_token(resp)

    log_event("LOGIN_SUCCESS", user_id=user.id, metadata={"revoked_sessions": revoked_count})
    return resp, 200


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(success=True, data=_user_dict(g.user)), 200


@auth_bp.post("/logout")
@login_required
def logout():
    revoke_session(request.cookies.get(cookie_name()))
    log_event("LOGOUT", user_id=g.user.id)

    resp = jsonify(success=True, data={})
    resp.delete_cookie(cookie_name(), path="/")
    return resp, 200
