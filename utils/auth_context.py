from functools import wraps
from flask import g, jsonify
from security.session import get_session_from_request
from models import db
from models.user import User
from services.lifecycle import Actor

def load_current_user():
    """before_request hook: resolve the session cookie to ``g.user`` (or None)."""
    sess = get_session_from_request()
    g.session = sess
    g.user = db.session.get(User, sess.user_id) if sess else None

def current_actor() -> Actor:
    """Booking-engine actor for the logged-in user."""
    return Actor(user_id=g.user.id, role=g.user.role)

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(success=False, error={"kind": "Unauthenticated", "message": "Authentication required"}), 401
        return fn(*args, **kwargs)
    return wrapper
