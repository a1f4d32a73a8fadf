"""
Expiry healing: reclaim slots whose reservation window elapsed without a
confirmation.

run_lazy() is called at the top of every slot-affecting request path with a
small batch; run_scheduled() is the cron/CLI sweep with a large one. Both go
through heal(), so the two paths cannot drift apart.
"""
import logging
from typing import List

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.booking import ACTIVE_BOOKING_STATUSES, Booking
from models.payment import OPEN_PAYMENT_STATUSES, PAYMENT_FAILED, Payment
from models.slot import SLOT_RESERVED, Slot
from services import slots
from services.state_machine import BookingStateMachine, state_machine
from utils import clock, events
from utils.audit import log_event

logger = logging.getLogger(__name__)

EXPIRE_EVENT = "expire"
EXPIRED_PAYMENT_REASON = "Reservation expired"


def fail_open_payments(booking_id: int, reason: str, now) -> int:
    """Close every payment of booking_id that could still confirm it. Caller commits."""
    return Payment.query.filter(
        Payment.booking_id == booking_id,
        Payment.status.in_(OPEN_PAYMENT_STATUSES),
    ).update(
        {Payment.status: PAYMENT_FAILED, Payment.failure_reason: reason, Payment.updated_at: now},
        synchronize_session=False,
    )


class ExpiryHealer:
    def __init__(self, machine: BookingStateMachine = state_machine):
        self.machine = machine

    def _due_slot_ids(self, now, limit: int) -> List[int]:
        rows = (
            db.session.query(Slot.id)
            .filter(Slot.status == SLOT_RESERVED, Slot.reserved_until.isnot(None), Slot.reserved_until < now)
            .order_by(Slot.reserved_until.asc())
            .limit(limit)
            .all()
        )
        return [r.id for r in rows]

    def heal(self, limit: int) -> int:
        """Expire up to limit overdue reservations; returns how many were healed."""
        now = clock.utcnow()
        healed = 0
        for slot_id in self._due_slot_ids(now, limit):
            try:
                expired_booking = self._heal_slot(slot_id, now)
            except SQLAlchemyError:
                db.session.rollback()
                logger.exception("expiry healing failed for slot %s", slot_id)
                continue
            if expired_booking is False:
                continue
            healed += 1
            if expired_booking is not None:
                events.emit(events.booking_expired, self, booking_id=expired_booking, slot_id=slot_id)
                log_event("BOOKING_EXPIRED", entity="booking", entity_id=expired_booking,
                          metadata={"slot_id": slot_id})
        if healed:
            logger.info("expiry healing released %s slot(s)", healed)
        return healed

    def _heal_slot(self, slot_id: int, now):
        """
        Returns the expired booking id, None for an orphaned reservation that
        was released, or False when the row was skipped.
        """
        booking = (
            Booking.query
            .filter(Booking.slot_id == slot_id, Booking.status.in_(ACTIVE_BOOKING_STATUSES))
            .first()
        )
        booking_id = None
        if booking is not None:
            next_state = self.machine.next_state(booking.status, EXPIRE_EVENT)
            if next_state is None:
                logger.warning("skipping slot %s: booking %s has no %s edge from %s",
                               slot_id, booking.id, EXPIRE_EVENT, booking.status)
                db.session.rollback()
                return False
            moved = Booking.query.filter(
                Booking.id == booking.id, Booking.status == booking.status
            ).update(
                {Booking.status: next_state, Booking.status_changed_at: now, Booking.updated_at: now},
                synchronize_session=False,
            )
            if moved != 1:
                db.session.rollback()
                return False
            fail_open_payments(booking.id, EXPIRED_PAYMENT_REASON, now)
            booking_id = booking.id

        if not slots.release_expired(slot_id, now):
            # healed concurrently (or confirmed just in time)
            db.session.rollback()
            return False

        db.session.commit()
        return booking_id

    def run_lazy(self) -> int:
        return self.heal(current_app.config.get("LAZY_EXPIRY_BATCH_SIZE", 50))

    def run_scheduled(self) -> int:
        return self.heal(current_app.config.get("EXPIRY_BATCH_SIZE", 500))


expiry_healer = ExpiryHealer()
