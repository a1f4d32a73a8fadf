from flask import Blueprint, current_app, g, jsonify, request

from models import db
from models.user import Role, User
from security.csrf import issue_csrf_token
from security.password import hash_password, verify_password
from security.rate_limit import check_rate_limit
from security.session import create_session, revoke_all_sessions, revoke_session
from utils.audit import log_event
from utils.auth_context import login_required
from utils.seed import ROLE_CUSTOMER

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255


def _cookie_name() -> str:
    return current_app.config.get("AUTH_COOKIE_NAME", "slotguard_session")


@auth_bp.post("/register")
def register():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    full_name = (data.get("full_name") or "").strip() or None
    phone_number = (data.get("phone_number") or "").strip() or None

    if not _is_valid_email(email):
        return jsonify(error="Invalid email"), 400
    min_len = current_app.config.get("PASSWORD_MIN_LEN", 8)
    if len(password) < min_len:
        return jsonify(error=f"Password must be at least {min_len} characters"), 400

    if User.query.filter_by(email=email).first():
        log_event("REGISTER_FAIL_EMAIL_EXISTS", metadata={"email": email})
        return jsonify(error="Email already registered"), 409

    user = User(email=email, password_hash=hash_password(password),
                full_name=full_name, phone_number=phone_number)
    db.session.add(user)
    db.session.flush()

    customer_role = Role.query.filter_by(name=ROLE_CUSTOMER).first()
    if customer_role:
        user.roles.append(customer_role)

    db.session.commit()
    log_event("REGISTER_SUCCESS", actor_id=user.id)

    return jsonify(message="Registered successfully", id=user.id), 201


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    decision = check_rate_limit(
        "login",
        current_app.config.get("LOGIN_RATE_MAX_REQUESTS", 15),
        current_app.config.get("LOGIN_RATE_WINDOW_SECONDS", 60),
    )
    if not decision.allowed:
        log_event("LOGIN_RATE_LIMIT", metadata={"email": email, "retry_after": decision.retry_after})
        resp = jsonify(error="Too many login requests. Slow down.", retry_after_seconds=decision.retry_after)
        resp.headers["Retry-After"] = str(decision.retry_after)
        return resp, 429

    user = User.query.filter_by(email=email).first()
    if not user or not verify_password(password, user.password_hash):
        log_event("LOGIN_FAIL", actor_id=user.id if user else None, metadata={"email": email})
        return jsonify(error="Invalid credentials"), 401

    # Rotate: revoke any existing sessions for this user
    revoked_count = revoke_all_sessions(user.id)
    raw_token = create_session(user.id)

    resp = jsonify(message="Login OK", id=user.id)
    resp.set_cookie(
        _cookie_name(),
        raw_token,
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        max_age=current_app.config.get("SESSION_LIFETIME_SECONDS", 8 * 60 * 60),
        path="/",
    )
    resp = issue_csrf_token(resp)

    log_event("LOGIN_SUCCESS", actor_id=user.id, metadata={"revoked_sessions": revoked_count})
    return resp, 200


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(
        id=g.user.id,
        email=g.user.email,
        roles=[r.name for r in g.user.roles],
        full_name=g.user.full_name,
        phone_number=g.user.phone_number,
    ), 200


@auth_bp.post("/logout")
@login_required
def logout():
    revoke_session(request.cookies.get(_cookie_name()))
    log_event("LOGOUT", actor_id=g.user.id)

    resp = jsonify(message="Logged out")
    resp.delete_cookie(_cookie_name(), path="/")
    return resp, 200
