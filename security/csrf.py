import hmac
import secrets

from flask import current_app, jsonify, request

from utils.auth_context import current_user

CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"

STATE_CHANGING_METHODS = ("POST", "PUT", "PATCH", "DELETE")

# anonymous entry points, machine callers (signed webhooks, cron secret) and liveness
EXEMPT_PREFIXES = (
    "/auth/login",
    "/auth/register",
    "/health",
    "/webhooks/",
    "/cron/",
)


def issue_csrf_token(resp):
    token = secrets.token_urlsafe(32)
    resp.set_cookie(
        CSRF_COOKIE,
        token,
        httponly=False,  # must be readable by client JS
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        path="/",
    )
    return resp


def require_csrf():
    """Double-submit check; returns an error response or None."""
    if not current_app.config.get("CSRF_ENABLED", True):
        return None
    cookie_token = request.cookies.get(CSRF_COOKIE)
    header_token = request.headers.get(CSRF_HEADER)
    if not cookie_token or not header_token or not hmac.compare_digest(cookie_token, header_token):
        return jsonify(error="CSRF validation failed"), 403
    return None


def csrf_protect():
    """
    before_request hook. Only cookie-authenticated, state-changing requests
    are checked; anonymous bookings carry no session cookie to ride on.
    """
    if request.method not in STATE_CHANGING_METHODS:
        return None
    if request.path.startswith(EXEMPT_PREFIXES):
        return None
    if current_user() is None:
        return None
    return require_csrf()
