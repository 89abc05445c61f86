import secrets
from flask import request, jsonify, current_app, g

CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"

UNSAFE_METHODS = ("POST", "PUT", "PATCH", "DELETE")

# login/register bootstrap the cookies; webhooks carry gateway signatures instead
EXEMPT_PATHS = {"/auth/login", "/auth/register", "/health"}
EXEMPT_PREFIXES = ("/webhooks/",)


def issue_csrf_token(resp):
    resp.set_cookie(
        CSRF_COOKIE,
        secrets.token_urlsafe(32),
        httponly=False,  # read by client JS and echoed in the header
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        path="/",
    )
    return resp


def csrf_protect():
    """before_request hook: double-submit check for cookie-authenticated writes."""
    if not current_app.config.get("CSRF_ENABLED", True) or request.method not in UNSAFE_METHODS:
        return None
    if request.path in EXEMPT_PATHS or request.path.startswith(EXEMPT_PREFIXES):
        return None
    if getattr(g, "user", None) is None:
        return None

    cookie_token = request.cookies.get(CSRF_COOKIE)
    header_token = request.headers.get(CSRF_HEADER)
    if not cookie_token or not header_token or not secrets.compare_digest(cookie_token, header_token):
        return jsonify(success=False, error={"kind": "CsrfFailed", "message": "CSRF validation failed"}), 403
    return None
