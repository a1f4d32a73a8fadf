from datetime import date, time

from flask import Blueprint, g, jsonify, request
from sqlalchemy.exc import IntegrityError

from models import db
from models.booking import Booking
from models.business import Business
from models.slot import Slot
from security.abuse import ACTION_BOOKING, abuse_detector
from security.nonce_store import nonce_protected
from security.rate_limit import client_ip, rate_limited
from security.rbac import (
    ADMIN_ACCESS,
    BOOKINGS_CANCEL,
    BOOKINGS_CONFIRM,
    BOOKINGS_NO_SHOW,
    BOOKINGS_READ,
    BOOKINGS_REJECT,
    BOOKINGS_RESCHEDULE,
    BOOKINGS_WRITE,
    SLOTS_READ,
    SLOTS_WRITE,
    permission_graph,
    require_permission,
)
from services import transitions
from services.errors import AbuseBlocked, AuthorizationError, DuplicateInProgress, NotFound, ValidationError
from services.expiry import expiry_healer
from services.reservations import BookingRequest, Outcome, reservation_service
from services.transitions import transition_service
from utils.audit import log_event
from utils.auth_context import current_user_id, login_required

booking_bp = Blueprint("booking", __name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"

# url action -> (graph event, permission, customer may act on own booking)
TRANSITION_ACTIONS = {
    "accept": (transitions.CONFIRM, BOOKINGS_CONFIRM, False),
    "reject": (transitions.REJECT, BOOKINGS_REJECT, False),
    "cancel": (transitions.CANCEL, BOOKINGS_CANCEL, True),
    "reschedule": (transitions.RESCHEDULE, BOOKINGS_RESCHEDULE, True),
    "undo-accept": (transitions.UNDO_ACCEPT, BOOKINGS_CONFIRM, False),
    "undo-reject": (transitions.UNDO_REJECT, BOOKINGS_REJECT, False),
    "no-show": (transitions.NO_SHOW, BOOKINGS_NO_SHOW, False),
}


def _is_admin(user) -> bool:
    return permission_graph.has_permission(user.id, ADMIN_ACCESS)


def _owns_business(user, business_id: int) -> bool:
    business = db.session.get(Business, business_id)
    return business is not None and business.owner_user_id == user.id


def _can_view(user, booking: Booking) -> bool:
    return (
        booking.customer_user_id == user.id
        or _owns_business(user, booking.business_id)
        or _is_admin(user)
    )


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError("Invalid date. Use YYYY-MM-DD")


def _parse_time(value: str) -> time:
    try:
        return time.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError("Invalid time. Use HH:MM")


# ---------- OWNER: businesses and slots ----------
@booking_bp.post("/businesses")
@login_required
@require_permission(SLOTS_WRITE)
def create_business():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    if not name or len(name) > 120:
        return jsonify(error="Business name required (max 120 characters)"), 400

    business = Business(name=name, owner_user_id=g.user.id)
    db.session.add(business)
    db.session.commit()

    log_event("BUSINESS_CREATE", actor_id=g.user.id, entity="business", entity_id=business.id)
    return jsonify(id=business.id, name=business.name), 201


@booking_bp.post("/slots")
@login_required
@require_permission(SLOTS_WRITE)
def create_slot():
    data = request.get_json(silent=True) or {}
    business_id = data.get("business_id")
    if not business_id:
        return jsonify(error="business_id, date, start_time, end_time are required"), 400

    business = db.session.get(Business, business_id)
    if not business or not business.is_active:
        return jsonify(error="Business not found"), 404
    if business.owner_user_id != g.user.id and not _is_admin(g.user):
        return jsonify(error="Forbidden"), 403

    day = _parse_date(data.get("date"))
    start = _parse_time(data.get("start_time"))
    end = _parse_time(data.get("end_time"))
    if end <= start:
        return jsonify(error="end_time must be after start_time"), 400

    slot = Slot(business_id=business.id, date=day, start_time=start, end_time=end)
    db.session.add(slot)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify(error="Slot already exists for that business and time"), 409

    log_event("SLOT_CREATE", actor_id=g.user.id, entity="slot", entity_id=slot.id)
    return jsonify(slot.to_dict()), 201


@booking_bp.get("/businesses/<int:business_id>/slots")
@login_required
@require_permission(SLOTS_READ)
def list_slots(business_id: int):
    q = Slot.query.filter_by(business_id=business_id)
    date_str = request.args.get("date")
    if date_str:
        q = q.filter(Slot.date == _parse_date(date_str))

    rows = q.order_by(Slot.date.asc(), Slot.start_time.asc()).all()
    return jsonify([s.to_dict() for s in rows]), 200


# ---------- CUSTOMERS: book a slot ----------
@booking_bp.post("/bookings")
@rate_limited("booking_create", "BOOKING_RATE_LIMIT", "BOOKING_RATE_WINDOW_SECONDS", per_user=True)
@nonce_protected
def create_booking():
    # overdue reservations are released before anything is judged on them
    expiry_healer.run_lazy()

    user_id = current_user_id()
    if user_id is not None and not permission_graph.has_permission(user_id, BOOKINGS_WRITE):
        return jsonify(error="Forbidden"), 403

    ip = client_ip()
    verdict = abuse_detector.should_block(user_id, ip, ACTION_BOOKING)
    if verdict.blocked:
        log_event("BOOKING_BLOCKED", actor_id=user_id, metadata={"reason": verdict.reason})
        raise AbuseBlocked(verdict.reason)

    req = BookingRequest.from_payload(request.get_json(silent=True), customer_user_id=user_id, client_ip=ip)
    result = reservation_service.create_booking(req, request.headers.get(IDEMPOTENCY_HEADER))

    if result.outcome is Outcome.IN_PROGRESS:
        raise DuplicateInProgress()

    booking = db.session.get(Booking, result.booking_id)
    status_code = 201 if result.outcome is Outcome.CREATED else 200
    return jsonify(outcome=result.outcome.value, booking=booking.to_dict()), status_code


@booking_bp.get("/bookings/<int:booking_id>")
@login_required
@require_permission(BOOKINGS_READ)
def get_booking(booking_id: int):
    booking = db.session.get(Booking, booking_id)
    if not booking:
        return jsonify(error="Booking not found"), 404
    if not _can_view(g.user, booking):
        return jsonify(error="Forbidden"), 403
    return jsonify(booking.to_dict()), 200


# ---------- OWNER/CUSTOMER: status transitions ----------
@booking_bp.post("/bookings/<int:booking_id>/<action>")
@login_required
@rate_limited("booking_transition", "TRANSITION_RATE_LIMIT", per_user=True)
@nonce_protected
def transition_booking(booking_id: int, action: str):
    if action not in TRANSITION_ACTIONS:
        raise NotFound("Unknown booking action")
    event, permission, customer_allowed = TRANSITION_ACTIONS[action]

    if not permission_graph.has_permission(g.user.id, permission):
        return jsonify(error="Forbidden"), 403

    booking = db.session.get(Booking, booking_id)
    if not booking:
        return jsonify(error="Booking not found"), 404

    is_customer = customer_allowed and booking.customer_user_id == g.user.id
    if not (is_customer or _owns_business(g.user, booking.business_id) or _is_admin(g.user)):
        raise AuthorizationError("Not allowed to change this booking")

    data = request.get_json(silent=True) or {}
    new_slot_id = data.get("new_slot_id")
    if new_slot_id is not None:
        try:
            new_slot_id = int(new_slot_id)
        except (TypeError, ValueError):
            raise ValidationError("new_slot_id must be an integer")
    reason = (data.get("reason") or "").strip()[:255] or None

    result = transition_service.apply(booking_id, event, actor_id=g.user.id,
                                      new_slot_id=new_slot_id, reason=reason)
    return jsonify(
        booking=result.booking.to_dict(),
        changed=result.changed,
        previous_status=result.previous_status,
    ), 200
