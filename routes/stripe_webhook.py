import logging

import stripe
from flask import Blueprint, current_app, jsonify, request

from models import db
from models.payment import Payment
from services.payments import payment_service
from utils.audit import log_event

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")

COMPLETED = "checkout.session.completed"
EXPIRED = "checkout.session.expired"


def _find_payment(session):
    meta = session.get("metadata") or {}
    payment_id = meta.get("payment_id")
    if payment_id:
        try:
            payment = db.session.get(Payment, int(payment_id))
        except (TypeError, ValueError):
            payment = None
        if payment is not None:
            return payment
    session_id = session.get("id")
    if session_id:
        return Payment.query.filter_by(provider_ref=session_id).first()
    return None


@webhook_bp.post("/stripe")
def stripe_webhook():
    endpoint_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    sig_header = request.headers.get("Stripe-Signature")
    payload = request.data

    if not endpoint_secret:
        return jsonify(error="Webhook secret not configured"), 500

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
    except (ValueError, stripe.SignatureVerificationError):
        return jsonify(error="Invalid webhook signature"), 400

    event_type = event["type"]
    if event_type not in (COMPLETED, EXPIRED):
        return jsonify(received=True), 200

    session = event["data"]["object"]
    payment = _find_payment(session)
    if payment is None:
        logger.warning("stripe %s for unknown session %s", event_type, session.get("id"))
        return jsonify(received=True), 200

    if event_type == COMPLETED:
        result = payment_service.confirm_with_payment(payment.id)
        log_event("STRIPE_CHECKOUT_COMPLETED", entity="payment", entity_id=payment.id,
                  metadata={"stripe_session_id": session.get("id"), "outcome": result.outcome.value})
        return jsonify(received=True, outcome=result.outcome.value), 200

    payment_service.fail_payment(payment.id, "Checkout session expired")
    log_event("STRIPE_CHECKOUT_EXPIRED", entity="payment", entity_id=payment.id,
              metadata={"stripe_session_id": session.get("id")})
    return jsonify(received=True), 200
