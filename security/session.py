"""Cookie-backed server sessions.

Expiry is judged against the application clock so session lifetimes and
booking times share one notion of "now".
"""
import hashlib
import secrets
from datetime import timedelta
from typing import Optional

from flask import request, current_app

from models import db
from models.session import Session
from utils.clock import get_clock


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def cookie_name() -> str:
    return current_app.config.get("AUTH_COOKIE_NAME", "marketplace_session")


def create_session(user_id: int) -> str:
    """Store a new session and return the raw token for the cookie."""
    raw_token = secrets.token_urlsafe(32)
    now = get_clock().now()
    lifetime = current_app.config.get("SESSION_LIFETIME_SECONDS", 8 * 60 * 60)

    db.session.add(Session(
        user_id=user_id,
        token_hash=_hash_token(raw_token),
        created_at=now,
        last_seen_at=now,
        expires_at=now + timedelta(seconds=lifetime),
        ip=request.headers.get("X-Forwarded-For", request.remote_addr),
        user_agent=(request.headers.get("User-Agent") or "")[:255],
    ))
    db.session.commit()
    return raw_token


def get_session_from_request() -> Optional[Session]:
    raw_token = request.cookies.get(cookie_name())
    if not raw_token:
        return None

    sess = Session.query.filter_by(token_hash=_hash_token(raw_token)).first()
    now = get_clock().now()
    if sess is None or not sess.is_live(now, current_app.config.get("IDLE_TIMEOUT_SECONDS", 20 * 60)):
        return None

    sess.last_seen_at = now
    db.session.commit()
    return sess


def revoke_session(raw_token: Optional[str]) -> bool:
    if not raw_token:
        return False
    revoked = (
        Session.query
        .filter_by(token_hash=_hash_token(raw_token), revoked=False)
        .update({"revoked": True}, synchronize_session=False)
    )
    db.session.commit()
    return revoked == 1


def revoke_all_sessions(user_id: int) -> int:
    revoked = (
        Session.query
        .filter_by(user_id=user_id, revoked=False)
        .update({"revoked": True}, synchronize_session=False)
    )
    db.session.commit()
    return revoked
