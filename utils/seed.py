"""
Default booking graph and RBAC graph. Run explicitly (`flask seed-graph`);
existing rows are left alone, missing ones are added.
"""
import logging

from models import db
from models.booking_state import BookingState, BookingStateTransition
from models.user import Permission, Role
from security import rbac

logger = logging.getLogger(__name__)

# name -> is_terminal
DEFAULT_STATES = {
    "pending": False,
    "confirmed": False,
    "rejected": False,
    "cancelled": True,
    "expired": True,
    "no_show": True,
}

# (from, event, to)
DEFAULT_TRANSITIONS = [
    ("pending", "confirm", "confirmed"),
    ("pending", "reject", "rejected"),
    ("pending", "cancel", "cancelled"),
    ("pending", "expire", "expired"),
    ("pending", "reschedule", "pending"),
    ("confirmed", "cancel", "cancelled"),
    ("confirmed", "reschedule", "confirmed"),
    ("confirmed", "undo_accept", "pending"),
    ("rejected", "undo_reject", "pending"),
    ("confirmed", "no_show", "no_show"),
]

DEFAULT_PERMISSIONS = [
    rbac.ADMIN_ACCESS,
    rbac.BOOKINGS_READ,
    rbac.BOOKINGS_WRITE,
    rbac.BOOKINGS_CONFIRM,
    rbac.BOOKINGS_REJECT,
    rbac.BOOKINGS_CANCEL,
    rbac.BOOKINGS_RESCHEDULE,
    rbac.BOOKINGS_NO_SHOW,
    rbac.SLOTS_READ,
    rbac.SLOTS_WRITE,
    rbac.PAYMENTS_WRITE,
    rbac.AUDIT_READ,
]

ROLE_CUSTOMER = "CUSTOMER"
ROLE_OWNER = "OWNER"
ROLE_ADMIN = "ADMIN"

DEFAULT_ROLES = {
    ROLE_CUSTOMER: [
        rbac.BOOKINGS_READ,
        rbac.BOOKINGS_WRITE,
        rbac.BOOKINGS_CANCEL,
        rbac.BOOKINGS_RESCHEDULE,
        rbac.SLOTS_READ,
        rbac.PAYMENTS_WRITE,
    ],
    ROLE_OWNER: [
        rbac.BOOKINGS_READ,
        rbac.BOOKINGS_CONFIRM,
        rbac.BOOKINGS_REJECT,
        rbac.BOOKINGS_CANCEL,
        rbac.BOOKINGS_RESCHEDULE,
        rbac.BOOKINGS_NO_SHOW,
        rbac.SLOTS_READ,
        rbac.SLOTS_WRITE,
    ],
    ROLE_ADMIN: list(DEFAULT_PERMISSIONS),
}


def seed_states():
    states = {s.name: s for s in BookingState.query.all()}
    for name, is_terminal in DEFAULT_STATES.items():
        if name not in states:
            states[name] = BookingState(name=name, is_terminal=is_terminal)
            db.session.add(states[name])
    db.session.flush()

    existing = {
        (t.from_state_id, t.event)
        for t in BookingStateTransition.query.all()
    }
    added = 0
    for from_name, event, to_name in DEFAULT_TRANSITIONS:
        from_id = states[from_name].id
        if (from_id, event) in existing:
            continue
        db.session.add(BookingStateTransition(
            from_state_id=from_id, event=event, to_state_id=states[to_name].id
        ))
        added += 1
    db.session.commit()
    return added


def seed_roles():
    permissions = {p.name: p for p in Permission.query.all()}
    for name in DEFAULT_PERMISSIONS:
        if name not in permissions:
            permissions[name] = Permission(name=name)
            db.session.add(permissions[name])

    roles = {r.name: r for r in Role.query.all()}
    for role_name, permission_names in DEFAULT_ROLES.items():
        role = roles.get(role_name)
        if role is None:
            role = Role(name=role_name)
            db.session.add(role)
        for name in permission_names:
            if permissions[name] not in role.permissions:
                role.permissions.append(permissions[name])
    db.session.commit()


def seed_graph():
    added = seed_states()
    seed_roles()
    logger.info("seeded booking graph (%s new transitions) and roles", added)
    return added
