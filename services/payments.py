"""
Payment-triggered confirmation.

A verified payment moves its booking pending -> confirmed and its slot
reserved -> booked in one transaction, or the payment is marked failed and
the booking is left where it was. Initiated payments that are never
completed expire after PAYMENT_EXPIRY_MINUTES and take their pending
booking with them.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from models import db
from models.booking import BOOKING_CONFIRMED, BOOKING_PENDING, Booking
from models.payment import (
    OPEN_PAYMENT_STATUSES,
    PAYMENT_COMPLETED,
    PAYMENT_EXPIRED_REASON,
    PAYMENT_FAILED,
    PAYMENT_INITIATED,
    Payment,
)
from models.slot import SLOT_RESERVED
from services import slots
from services.errors import DependencyError, NotFound, PaymentConflict, RetryLater, ValidationError
from services.expiry import EXPIRE_EVENT, ExpiryHealer, expiry_healer
from services.state_machine import BookingStateMachine, state_machine
from utils import clock, events
from utils.audit import log_event

logger = logging.getLogger(__name__)

CONFIRM_EVENT = "confirm"
SUPPORTED_PROVIDERS = ("STRIPE", "MANUAL")


class ConfirmOutcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class ConfirmResult:
    outcome: ConfirmOutcome
    booking_id: int
    payment_id: int
    error: Optional[str] = None


@dataclass(frozen=True)
class PrimitiveResult:
    success: bool
    error: Optional[str] = None


def _fail(reason: str) -> PrimitiveResult:
    db.session.rollback()
    return PrimitiveResult(False, reason)


class PaymentService:
    def __init__(self, machine: BookingStateMachine = state_machine, healer: ExpiryHealer = expiry_healer):
        self.machine = machine
        self.healer = healer

    # ---------- initiate ----------
    def initiate_payment(self, booking_id: int, amount, idempotency_key: str, actor_id=None,
                         provider: str = "STRIPE", currency: str = "INR",
                         provider_ref: str = None) -> Tuple[Payment, bool]:
        """Returns (payment, created). The same idempotency key returns the existing payment."""
        if not idempotency_key or len(idempotency_key) > 64:
            raise ValidationError("idempotency_key is required (max 64 characters)")
        try:
            amount = int(amount)
        except (TypeError, ValueError):
            raise ValidationError("amount must be an integer in the smallest currency unit")
        if amount <= 0:
            raise ValidationError("amount must be positive")
        provider = (provider or "STRIPE").upper()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValidationError("Unsupported payment provider")

        self.healer.run_lazy()

        existing = Payment.query.filter_by(idempotency_key=idempotency_key).first()
        if existing is not None:
            if existing.booking_id != booking_id:
                raise PaymentConflict("Idempotency key already used for another booking")
            return existing, False

        booking = db.session.get(Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        if booking.status != BOOKING_PENDING:
            raise PaymentConflict(f"Booking is {booking.status}", booking_status=booking.status)

        live = Payment.query.filter(
            Payment.booking_id == booking_id, Payment.status != PAYMENT_FAILED
        ).first()
        if live is not None:
            raise PaymentConflict("Booking already has an active payment", payment_id=live.id)

        now = clock.utcnow()
        payment = Payment(
            booking_id=booking_id,
            provider=provider,
            provider_ref=provider_ref,
            amount=amount,
            currency=currency,
            status=PAYMENT_INITIATED,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(minutes=current_app.config.get("PAYMENT_EXPIRY_MINUTES", 10)),
        )
        db.session.add(payment)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            # lost a race on the key or on the one-live-payment index
            existing = Payment.query.filter_by(idempotency_key=idempotency_key).first()
            if existing is not None and existing.booking_id == booking_id:
                return existing, False
            raise PaymentConflict("Booking already has an active payment")

        log_event("PAYMENT_INITIATED", actor_id=actor_id, entity="payment", entity_id=payment.id,
                  metadata={"booking_id": booking_id, "amount": amount, "provider": provider})
        return payment, True

    # ---------- confirm ----------
    def confirm_with_payment(self, payment_id: int, actor_id=None) -> ConfirmResult:
        self.healer.run_lazy()

        payment = db.session.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        booking = db.session.get(Booking, payment.booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        booking_id, slot_id = booking.id, booking.slot_id

        if booking.status == BOOKING_CONFIRMED:
            return ConfirmResult(ConfirmOutcome.ALREADY_CONFIRMED, booking_id, payment_id)

        if payment.status == PAYMENT_FAILED:
            return ConfirmResult(ConfirmOutcome.CONFLICT, booking_id, payment_id,
                                 payment.failure_reason or "Payment already failed")

        try:
            result = self.confirm_primitive(payment_id, booking_id, slot_id)
        except OperationalError as exc:
            db.session.rollback()
            logger.warning("confirmation of payment %s timed out: %s", payment_id, exc)
            raise RetryLater() from exc
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("confirmation of payment %s failed", payment_id)
            self.mark_failed(payment_id, "Booking confirmation failed")
            raise DependencyError("Booking confirmation failed") from exc

        if not result.success:
            logger.info("payment %s could not confirm booking %s: %s", payment_id, booking_id, result.error)
            self.mark_failed(payment_id, result.error)
            log_event("PAYMENT_CONFIRM_CONFLICT", actor_id=actor_id, entity="payment", entity_id=payment_id,
                      metadata={"booking_id": booking_id, "reason": result.error})
            return ConfirmResult(ConfirmOutcome.CONFLICT, booking_id, payment_id, result.error)

        logger.info("booking %s confirmed by payment %s", booking_id, payment_id)
        events.emit(events.booking_confirmed, self, booking_id=booking_id, payment_id=payment_id,
                    slot_id=slot_id)
        log_event("BOOKING_CONFIRMED", actor_id=actor_id, entity="booking", entity_id=booking_id,
                  metadata={"payment_id": payment_id, "slot_id": slot_id})
        return ConfirmResult(ConfirmOutcome.CONFIRMED, booking_id, payment_id)

    def confirm_primitive(self, payment_id: int, booking_id: int, slot_id: int) -> PrimitiveResult:
        """
        All or nothing: graph-checked booking pending -> confirmed, slot
        reserved -> booked (only while the reservation is live), payment
        open -> completed. Any guard failing rolls the whole unit back.
        """
        now = clock.utcnow()
        try:
            booking = db.session.get(Booking, booking_id, populate_existing=True)
            if booking is None or booking.slot_id != slot_id:
                return _fail("Booking does not hold this slot")
            current = booking.status
            next_state = self.machine.next_state(current, CONFIRM_EVENT)
            if next_state is None:
                return _fail(f"Booking cannot be confirmed from {current}")

            paid = Payment.query.filter(
                Payment.id == payment_id,
                Payment.booking_id == booking_id,
                Payment.status.in_(OPEN_PAYMENT_STATUSES),
            ).update(
                {Payment.status: PAYMENT_COMPLETED, Payment.paid_at: now, Payment.updated_at: now},
                synchronize_session=False,
            )
            if paid != 1:
                return _fail("Payment is not awaiting confirmation")

            if not slots.compare_and_set(slot_id, SLOT_RESERVED, slots.slot_status_for(next_state), now):
                return _fail("Slot reservation expired before confirmation")

            moved = Booking.query.filter(Booking.id == booking_id, Booking.status == current).update(
                {Booking.status: next_state, Booking.status_changed_at: now, Booking.updated_at: now},
                synchronize_session=False,
            )
            if moved != 1:
                return _fail("Booking changed during confirmation")

            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return PrimitiveResult(True)

    # ---------- fail ----------
    def mark_failed(self, payment_id: int, reason: str) -> bool:
        """Own transaction; only an open payment is moved. Returns whether a row changed."""
        updated = Payment.query.filter(
            Payment.id == payment_id, Payment.status.in_(OPEN_PAYMENT_STATUSES)
        ).update(
            {Payment.status: PAYMENT_FAILED, Payment.failure_reason: (reason or "")[:255],
             Payment.updated_at: clock.utcnow()},
            synchronize_session=False,
        )
        db.session.commit()
        if updated:
            events.emit(events.payment_failed, self, payment_id=payment_id, reason=reason)
        return bool(updated)

    def fail_payment(self, payment_id: int, reason: str = None, actor_id=None) -> Payment:
        """The provider reported failure. The booking stays pending until it expires or is paid again."""
        payment = db.session.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        if payment.status == PAYMENT_COMPLETED:
            raise PaymentConflict("Payment already completed")
        if payment.status == PAYMENT_FAILED:
            return payment

        reason = reason or "Payment failed"
        if self.mark_failed(payment_id, reason):
            log_event("PAYMENT_FAILED", actor_id=actor_id, entity="payment", entity_id=payment_id,
                      metadata={"booking_id": payment.booking_id, "reason": reason})
        payment = db.session.get(Payment, payment_id, populate_existing=True)
        if payment.status == PAYMENT_COMPLETED:
            raise PaymentConflict("Payment already completed")
        return payment


    # ---------- expire ----------
    def expire_payments(self, limit: int = None) -> int:
        """
        Fail initiated payments left unpaid past expires_at. A booking still
        pending on such a payment is expired along the graph and its slot is
        released. One transaction per payment; returns how many expired.
        """
        now = clock.utcnow()
        limit = limit or current_app.config.get("EXPIRY_BATCH_SIZE", 500)
        due = (
            db.session.query(Payment.id)
            .filter(Payment.status == PAYMENT_INITIATED, Payment.expires_at.isnot(None), Payment.expires_at < now)
            .order_by(Payment.expires_at.asc())
            .limit(limit)
            .all()
        )

        expired = 0
        for (payment_id,) in due:
            try:
                outcome = self._expire_payment(payment_id, now)
            except SQLAlchemyError:
                db.session.rollback()
                logger.exception("payment expiry failed for payment %s", payment_id)
                continue
            if outcome is None:
                continue
            booking_id, slot_id, booking_expired = outcome
            expired += 1
            events.emit(events.payment_failed, self, payment_id=payment_id, reason=PAYMENT_EXPIRED_REASON)
            log_event("PAYMENT_EXPIRED", entity="payment", entity_id=payment_id,
                      metadata={"booking_id": booking_id})
            if booking_expired:
                events.emit(events.booking_expired, self, booking_id=booking_id, slot_id=slot_id)
                log_event("BOOKING_EXPIRED", entity="booking", entity_id=booking_id,
                          metadata={"slot_id": slot_id, "payment_id": payment_id})
        if expired:
            logger.info("expired %s unpaid payment(s)", expired)
        return expired

    def _expire_payment(self, payment_id: int, now):
        """(booking_id, slot_id, booking_expired), or None when the row was skipped."""
        failed = Payment.query.filter(
            Payment.id == payment_id, Payment.status == PAYMENT_INITIATED
        ).update(
            {Payment.status: PAYMENT_FAILED, Payment.failure_reason: PAYMENT_EXPIRED_REASON,
             Payment.updated_at: now},
            synchronize_session=False,
        )
        if failed != 1:
            # completed or failed concurrently
            db.session.rollback()
            return None

        payment = db.session.get(Payment, payment_id, populate_existing=True)
        booking = db.session.get(Booking, payment.booking_id, populate_existing=True)
        booking_id, slot_id = booking.id, booking.slot_id
        if booking.status != BOOKING_PENDING:
            db.session.commit()
            return booking_id, slot_id, False

        next_state = self.machine.next_state(booking.status, EXPIRE_EVENT)
        if next_state is None:
            logger.warning("payment %s expired but booking %s has no %s edge from %s",
                           payment_id, booking_id, EXPIRE_EVENT, booking.status)
            db.session.commit()
            return booking_id, slot_id, False

        moved = Booking.query.filter(Booking.id == booking_id, Booking.status == BOOKING_PENDING).update(
            {Booking.status: next_state, Booking.status_changed_at: now, Booking.updated_at: now},
            synchronize_session=False,
        )
        if moved != 1:
            db.session.rollback()
            return None

        slot_to = slots.slot_status_for(next_state)
        # a reservation that also lapsed only matches release_expired
        if not (slots.compare_and_set(slot_id, SLOT_RESERVED, slot_to, now)
                or slots.release_expired(slot_id, now)):
            db.session.rollback()
            logger.warning("payment %s expired but slot %s is not held by booking %s",
                           payment_id, slot_id, booking_id)
            return None

        db.session.commit()
        return booking_id, slot_id, True


payment_service = PaymentService()
