"""
Permission graph: role -> permission names, built once from role_permissions
and permissions and refreshed on a TTL. A user's effective permissions are the
union over their roles; user -> roles is read per call.
"""
import logging
import time
from functools import wraps
from typing import Callable, Dict, FrozenSet, Iterable

from flask import jsonify
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.user import Permission, role_permissions, user_roles
from services.errors import PermissionGraphUnavailable
from utils.auth_context import current_user
from utils.ttl_cache import CachedValue

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60

# Permission names used by the routes
ADMIN_ACCESS = "admin:access"
BOOKINGS_READ = "bookings:read"
BOOKINGS_WRITE = "bookings:write"
BOOKINGS_CONFIRM = "bookings:confirm"
BOOKINGS_REJECT = "bookings:reject"
BOOKINGS_CANCEL = "bookings:cancel"
BOOKINGS_RESCHEDULE = "bookings:reschedule"
BOOKINGS_NO_SHOW = "bookings:no_show"
SLOTS_READ = "slots:read"
SLOTS_WRITE = "slots:write"
PAYMENTS_WRITE = "payments:write"
AUDIT_READ = "audit:read"


def load_role_permissions() -> Dict[int, FrozenSet[str]]:
    names = dict(db.session.query(Permission.id, Permission.name).all())
    grouped: Dict[int, set] = {}
    for role_id, permission_id in db.session.query(
        role_permissions.c.role_id, role_permissions.c.permission_id
    ).all():
        name = names.get(permission_id)
        if name is None:
            continue
        grouped.setdefault(role_id, set()).add(name)
    return {role_id: frozenset(perms) for role_id, perms in grouped.items()}


def load_user_role_ids(user_id: int) -> Iterable[int]:
    rows = db.session.query(user_roles.c.role_id).filter(user_roles.c.user_id == user_id).all()
    return [r.role_id for r in rows]


class PermissionGraph:
    def __init__(self, role_loader: Callable[[], Dict[int, FrozenSet[str]]] = load_role_permissions,
                 user_roles_loader: Callable[[int], Iterable[int]] = load_user_role_ids,
                 ttl_seconds: float = DEFAULT_TTL_SECONDS, clock_fn=time.monotonic):
        self._role_loader = role_loader
        self._user_roles_loader = user_roles_loader
        self._clock = clock_fn
        self._cache = CachedValue(ttl_seconds, clock=clock_fn)

    def init_app(self, app):
        ttl = app.config.get("PERMISSIONS_TTL_SECONDS", DEFAULT_TTL_SECONDS)
        self._cache = CachedValue(ttl, clock=self._clock)
        app.extensions["permission_graph"] = self

    def _role_map(self) -> Dict[int, FrozenSet[str]]:
        role_map = self._cache.get()
        if role_map is not None:
            return role_map
        try:
            role_map = self._role_loader()
        except SQLAlchemyError as exc:
            logger.exception("failed to load role permissions")
            raise PermissionGraphUnavailable("Permission graph could not be loaded") from exc
        self._cache.set(role_map)
        return role_map

    def permissions_for(self, user_id: int) -> FrozenSet[str]:
        try:
            role_ids = list(self._user_roles_loader(user_id))
        except SQLAlchemyError as exc:
            logger.exception("failed to load roles for user %s", user_id)
            raise PermissionGraphUnavailable("User roles could not be loaded") from exc
        if not role_ids:
            return frozenset()
        role_map = self._role_map()
        union = set()
        for role_id in role_ids:
            union.update(role_map.get(role_id, ()))
        return frozenset(union)

    def has_permission(self, user_id: int, permission_name: str) -> bool:
        return permission_name in self.permissions_for(user_id)

    def invalidate(self) -> None:
        """Call after any edit to role -> permission assignments."""
        self._cache.invalidate()


permission_graph = PermissionGraph()


def require_permission(permission_name: str):
    """
    Usage: @require_permission(BOOKINGS_CONFIRM)
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = current_user()
            if user is None:
                return jsonify(error="Authentication required"), 401

            if not permission_graph.has_permission(user.id, permission_name):
                return jsonify(error="Forbidden"), 403

            return fn(*args, **kwargs)
        return wrapper
    return decorator
