import hmac

from flask import Blueprint, current_app, jsonify, request

from security.nonce_store import get_nonce_store
from security.rate_limit import sweep_expired
from services.expiry import expiry_healer
from services.payments import payment_service
from services.reservations import prune_expired_keys

cron_bp = Blueprint("cron", __name__, url_prefix="/cron")

CRON_HEADER = "X-Cron-Secret"


@cron_bp.before_request
def _require_cron_secret():
    expected = current_app.config.get("CRON_SECRET")
    provided = request.headers.get(CRON_HEADER) or ""
    if not expected or not hmac.compare_digest(provided, expected):
        return jsonify(error="Unauthorized"), 401
    return None


@cron_bp.post("/expire-reservations")
def expire_reservations():
    processed = expiry_healer.run_scheduled()
    return jsonify(processed=processed), 200


@cron_bp.post("/expire-payments")
def expire_payments():
    processed = payment_service.expire_payments()
    return jsonify(processed=processed), 200


@cron_bp.post("/prune-idempotency")
def prune_idempotency():
    deleted = prune_expired_keys()
    nonces = get_nonce_store().cleanup()
    windows = sweep_expired()
    return jsonify(deleted=deleted, nonces_removed=nonces, rate_windows_removed=windows), 200
