"""
Slot reservation and idempotent booking creation.

One idempotency key produces exactly one booking. The key ledger
(idempotency_keys) and the slot compare-and-swap run in a single transaction,
so a slot flipped without its booking row (or the reverse) is never visible.
"""
import enum
import hashlib
import json
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from models import db
from models.booking import ACTIVE_BOOKING_STATUSES, BOOKING_PENDING, Booking
from models.business import Business
from models.idempotency_key import KEY_COMPLETED, KEY_IN_PROGRESS, IdempotencyKey
from models.slot import SLOT_AVAILABLE, SLOT_RESERVED, Slot
from services import slots
from services.errors import NotFound, RetryLater, SlotUnavailable, ValidationError
from services.expiry import ExpiryHealer, expiry_healer
from utils import clock, events
from utils.audit import log_event

logger = logging.getLogger(__name__)

KEY_LENGTH = 40
KEY_RE = re.compile(r"^[A-Za-z0-9_-]{%d}$" % KEY_LENGTH)
PHONE_RE = re.compile(r"^\+?[0-9]{7,15}$")


class Outcome(str, enum.Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class ReservationResult:
    outcome: Outcome
    booking_id: Optional[int] = None


@dataclass(frozen=True)
class BookingRequest:
    business_id: int
    slot_id: int
    customer_name: str
    customer_phone: str
    customer_user_id: Optional[int] = None
    client_ip: Optional[str] = None

    @classmethod
    def from_payload(cls, data: dict, customer_user_id=None, client_ip=None) -> "BookingRequest":
        data = data or {}
        try:
            business_id = int(data.get("business_id"))
            slot_id = int(data.get("slot_id"))
        except (TypeError, ValueError):
            raise ValidationError("business_id and slot_id must be integers")

        name = (data.get("customer_name") or "").strip()
        if not name or len(name) > 120:
            raise ValidationError("customer_name is required (max 120 characters)")

        phone = normalize_phone(data.get("customer_phone") or "")
        if not PHONE_RE.match(phone):
            raise ValidationError("customer_phone must be 7 to 15 digits")

        return cls(business_id, slot_id, name, phone, customer_user_id, client_ip)


def normalize_phone(raw: str) -> str:
    raw = raw.strip()
    digits = re.sub(r"\D", "", raw)
    return ("+" + digits) if raw.startswith("+") else digits


def new_idempotency_key() -> str:
    """A random, well-formed key for clients that want to mint their own."""
    return secrets.token_urlsafe(30)


def derive_idempotency_key(req: BookingRequest, attempt: int = 0) -> str:
    """
    Deterministic key from the fields that identify "the same booking":
    business, slot and customer, plus the attempt number. Editing the display
    name on a retry still lands on the original booking; attempt moves on
    once an earlier booking for the same identity has closed.
    """
    identity = json.dumps(
        {
            "attempt": attempt,
            "business_id": req.business_id,
            "slot_id": req.slot_id,
            "customer_user_id": req.customer_user_id,
            "customer_phone": req.customer_phone,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return "bk-" + hashlib.sha256(identity.encode("utf-8")).hexdigest()[: KEY_LENGTH - 3]


def closed_attempts(req: BookingRequest) -> int:
    """How many earlier bookings of this customer on this slot no longer hold it."""
    query = Booking.query.filter(
        Booking.business_id == req.business_id,
        Booking.slot_id == req.slot_id,
        Booking.customer_phone == req.customer_phone,
        Booking.status.notin_(ACTIVE_BOOKING_STATUSES),
    )
    if req.customer_user_id is None:
        query = query.filter(Booking.customer_user_id.is_(None))
    else:
        query = query.filter(Booking.customer_user_id == req.customer_user_id)
    return query.count()


def validate_idempotency_key(key) -> str:
    if not isinstance(key, str) or not KEY_RE.match(key):
        raise ValidationError(f"Idempotency key must be {KEY_LENGTH} characters of [A-Za-z0-9_-]")
    return key


def booking_ref_for(key: str) -> str:
    return "BK-" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:12].upper()


def _report(row: Optional[IdempotencyKey]) -> ReservationResult:
    if row is not None and row.status == KEY_COMPLETED and row.booking_id is not None:
        return ReservationResult(Outcome.DUPLICATE, row.booking_id)
    # no row (the winner rolled back) or still mid-flight: the caller retries
    return ReservationResult(Outcome.IN_PROGRESS)


class ReservationService:
    def __init__(self, healer: ExpiryHealer = expiry_healer):
        self.healer = healer

    def create_booking(self, req: BookingRequest, idempotency_key: str = None) -> ReservationResult:
        if idempotency_key:
            validate_idempotency_key(idempotency_key)

        self.healer.run_lazy()

        # a client key names one booking for good; a derived one only until that booking closes
        key = idempotency_key or derive_idempotency_key(req, closed_attempts(req))

        business = db.session.get(Business, req.business_id)
        if business is None or not business.is_active:
            raise NotFound("Business not found")
        slot = db.session.get(Slot, req.slot_id)
        if slot is None:
            raise NotFound("Slot not found")
        if slot.business_id != business.id:
            raise ValidationError("Slot does not belong to this business")

        try:
            result = self.reserve_or_report(key, req)
        except OperationalError as exc:
            db.session.rollback()
            logger.warning("reservation for key %s timed out: %s", key, exc)
            raise RetryLater() from exc

        if result.outcome is Outcome.CREATED:
            logger.info("booking %s created for slot %s", result.booking_id, req.slot_id)
            events.emit(events.booking_created, self, booking_id=result.booking_id,
                        slot_id=req.slot_id, business_id=req.business_id)
            log_event("BOOKING_CREATED", actor_id=req.customer_user_id, entity="booking",
                      entity_id=result.booking_id, metadata={"slot_id": req.slot_id})
        return result

    def reserve_or_report(self, key: str, req: BookingRequest) -> ReservationResult:
        """
        The atomic primitive. Either reports an earlier use of key, or claims
        the key, flips the slot available -> reserved and inserts the pending
        booking in one commit. Raises SlotUnavailable when the slot is taken.
        """
        now = clock.utcnow()
        cfg = current_app.config

        try:
            # a consumed key maps to its booking even after the ledger row is pruned
            existing_booking = Booking.query.filter_by(idempotency_key=key).first()
            if existing_booking is not None:
                booking_id = existing_booking.id
                db.session.rollback()
                return ReservationResult(Outcome.DUPLICATE, booking_id)

            row = db.session.get(IdempotencyKey, key)
            if row is not None:
                if row.expires_at > now:
                    result = _report(row)
                    db.session.rollback()
                    return result
                # stale claim from a creator that never finished
                db.session.delete(row)
                db.session.flush()

            claim = IdempotencyKey(
                key=key,
                status=KEY_IN_PROGRESS,
                created_at=now,
                expires_at=now + timedelta(hours=cfg.get("IDEMPOTENCY_TTL_HOURS", 24)),
            )
            db.session.add(claim)
            try:
                db.session.flush()
            except IntegrityError:
                db.session.rollback()
                return _report(db.session.get(IdempotencyKey, key, populate_existing=True))

            if not slots.compare_and_set(
                req.slot_id, SLOT_AVAILABLE, SLOT_RESERVED, now,
                reservation_minutes=cfg.get("SLOT_RESERVATION_MINUTES", 10),
                business_id=req.business_id,
            ):
                db.session.rollback()
                raise SlotUnavailable("Slot is no longer available", slot_id=req.slot_id)

            booking = Booking(
                booking_ref=booking_ref_for(key),
                business_id=req.business_id,
                slot_id=req.slot_id,
                customer_user_id=req.customer_user_id,
                customer_name=req.customer_name,
                customer_phone=req.customer_phone,
                client_ip=req.client_ip,
                status=BOOKING_PENDING,
                status_changed_at=now,
                idempotency_key=key,
                created_at=now,
                updated_at=now,
            )
            db.session.add(booking)
            try:
                db.session.flush()
            except IntegrityError:
                # the active-slot index caught a second live booking
                db.session.rollback()
                raise SlotUnavailable("Slot is no longer available", slot_id=req.slot_id)

            claim.status = KEY_COMPLETED
            claim.booking_id = booking.id
            booking_id = booking.id
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        return ReservationResult(Outcome.CREATED, booking_id)


def prune_expired_keys() -> int:
    """Delete ledger rows past their TTL. Bookings keep their key column."""
    deleted = IdempotencyKey.query.filter(IdempotencyKey.expires_at <= clock.utcnow()).delete(
        synchronize_session=False
    )
    db.session.commit()
    if deleted:
        logger.info("pruned %s expired idempotency key(s)", deleted)
    return deleted


reservation_service = ReservationService()
