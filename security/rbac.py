from functools import wraps
from flask import g, jsonify

from utils.roles import UserRole


def require_roles(*roles):
    """
    Route guard on the caller's effective role.
    Usage: @require_roles(UserRole.ADMIN, UserRole.SERVICE_PROVIDER)
    Anonymous callers get 401, callers with another role 403.
    """
    allowed = frozenset(UserRole(r) for r in roles)

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                return jsonify(success=False, error={"kind": "Unauthenticated", "message": "Authentication required"}), 401
            if user.role not in allowed:
                return jsonify(success=False, error={
                    "kind": "Unauthorized",
                    "message": "This action requires role " + " or ".join(sorted(r.value for r in allowed)),
                }), 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator
