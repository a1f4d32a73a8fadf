from functools import wraps
from typing import Optional

from flask import g, jsonify

from models import db
from models.user import User
from security.session import get_session_from_request


def load_current_user():
    """before_request hook: resolve the session cookie into g.user (None when anonymous)."""
    sess = get_session_from_request()
    g.session = sess
    g.user = db.session.get(User, sess.user_id) if sess else None


def current_user() -> Optional[User]:
    return getattr(g, "user", None)


def current_user_id() -> Optional[int]:
    user = current_user()
    return user.id if user is not None else None


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if current_user() is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper
