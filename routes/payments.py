from flask import Blueprint, g, jsonify, request

from models import db
from models.booking import Booking
from models.business import Business
from models.payment import Payment
from security.abuse import ACTION_PAYMENT, abuse_detector
from security.nonce_store import nonce_protected
from security.rate_limit import client_ip, rate_limited
from security.rbac import ADMIN_ACCESS, BOOKINGS_CONFIRM, PAYMENTS_WRITE, permission_graph, require_permission
from services.errors import AbuseBlocked, AuthorizationError, NotFound, ValidationError
from services.payments import ConfirmOutcome, payment_service
from utils.audit import log_event
from utils.auth_context import login_required

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _owner_or_admin(user, booking: Booking) -> bool:
    business = db.session.get(Business, booking.business_id)
    if business is not None and business.owner_user_id == user.id:
        return True
    return permission_graph.has_permission(user.id, ADMIN_ACCESS)


def _load(payment_id: int):
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Payment not found")
    booking = db.session.get(Booking, payment.booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    return payment, booking


@payments_bp.post("")
@login_required
@rate_limited("payment", "PAYMENT_RATE_LIMIT", per_user=True)
@nonce_protected
@require_permission(PAYMENTS_WRITE)
def create_payment():
    data = request.get_json(silent=True) or {}
    try:
        booking_id = int(data.get("booking_id"))
    except (TypeError, ValueError):
        raise ValidationError("booking_id must be an integer")

    booking = db.session.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    if booking.customer_user_id != g.user.id and not _owner_or_admin(g.user, booking):
        raise AuthorizationError("Not allowed to pay for this booking")

    verdict = abuse_detector.should_block(g.user.id, client_ip(), ACTION_PAYMENT)
    if verdict.blocked:
        log_event("PAYMENT_BLOCKED", actor_id=g.user.id, metadata={"reason": verdict.reason})
        raise AbuseBlocked(verdict.reason)

    key = request.headers.get("Idempotency-Key") or data.get("idempotency_key")
    payment, created = payment_service.initiate_payment(
        booking_id,
        data.get("amount"),
        key,
        actor_id=g.user.id,
        provider=data.get("provider") or "STRIPE",
        currency=(data.get("currency") or "INR").upper(),
        provider_ref=data.get("provider_ref"),
    )
    return jsonify(payment.to_dict()), 201 if created else 200


@payments_bp.post("/<int:payment_id>/confirm")
@login_required
@rate_limited("payment", "PAYMENT_RATE_LIMIT", per_user=True)
@nonce_protected
@require_permission(BOOKINGS_CONFIRM)
def confirm_payment(payment_id: int):
    """Manual confirmation of a payment verified outside the provider webhook."""
    _, booking = _load(payment_id)
    if not _owner_or_admin(g.user, booking):
        raise AuthorizationError("Not allowed to confirm this payment")

    result = payment_service.confirm_with_payment(payment_id, actor_id=g.user.id)
    body = {
        "outcome": result.outcome.value,
        "booking_id": result.booking_id,
        "payment_id": result.payment_id,
    }
    if result.outcome is ConfirmOutcome.CONFLICT:
        return jsonify(error=result.error, **body), 409
    return jsonify(**body), 200


@payments_bp.post("/<int:payment_id>/fail")
@login_required
@rate_limited("payment", "PAYMENT_RATE_LIMIT", per_user=True)
@nonce_protected
def fail_payment(payment_id: int):
    _, booking = _load(payment_id)
    if booking.customer_user_id != g.user.id and not _owner_or_admin(g.user, booking):
        raise AuthorizationError("Not allowed to change this payment")

    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip()[:255] or None
    payment = payment_service.fail_payment(payment_id, reason, actor_id=g.user.id)
    return jsonify(payment.to_dict()), 200
