"""
Owner/customer status transitions: accept, reject, cancel, reschedule, the
two undo events and no-show marking. Every event is checked against the
booking state graph, and the slot follows the booking's destination state
in the same transaction.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from models import db
from models.booking import ACTIVE_BOOKING_STATUSES, Booking
from models.payment import PAYMENT_COMPLETED, Payment
from models.slot import SLOT_AVAILABLE, Slot
from services import slots
from services.errors import (
    ConflictError,
    IllegalTransition,
    NotFound,
    RetryLater,
    SlotUnavailable,
    UndoNotAllowed,
    ValidationError,
)
from services.expiry import ExpiryHealer, expiry_healer, fail_open_payments
from services.state_machine import BookingStateMachine, state_machine
from utils import clock, events
from utils.audit import log_event

logger = logging.getLogger(__name__)

CONFIRM = "confirm"
REJECT = "reject"
CANCEL = "cancel"
RESCHEDULE = "reschedule"
UNDO_ACCEPT = "undo_accept"
UNDO_REJECT = "undo_reject"
NO_SHOW = "no_show"

EVENTS = (CONFIRM, REJECT, CANCEL, RESCHEDULE, UNDO_ACCEPT, UNDO_REJECT, NO_SHOW)
UNDO_EVENTS = (UNDO_ACCEPT, UNDO_REJECT)
# repeating one of these on a booking already in its destination is a no-op
REPEATABLE_EVENTS = (CONFIRM, REJECT, CANCEL, NO_SHOW)


@dataclass(frozen=True)
class TransitionResult:
    booking: Booking
    changed: bool
    previous_status: str


class TransitionService:
    def __init__(self, machine: BookingStateMachine = state_machine, healer: ExpiryHealer = expiry_healer):
        self.machine = machine
        self.healer = healer

    def apply(self, booking_id: int, event: str, actor_id=None, new_slot_id: int = None,
              reason: str = None) -> TransitionResult:
        if event not in EVENTS:
            raise ValidationError(f"Unknown event {event!r}")

        self.healer.run_lazy()

        booking = db.session.get(Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        current = booking.status

        next_state = self.machine.next_state(current, event)
        if next_state is None:
            if event in REPEATABLE_EVENTS and self._already_in_destination(current, event):
                return TransitionResult(booking, False, current)
            raise IllegalTransition(f"Cannot {event} a booking that is {current}",
                                    status=current, event=event)

        if event in UNDO_EVENTS:
            self._check_undo(booking, event)
        if event == NO_SHOW:
            self._check_slot_started(booking)

        try:
            if event == RESCHEDULE:
                self._reschedule(booking, next_state, new_slot_id)
            else:
                self._move(booking, event, next_state)
        except OperationalError as exc:
            db.session.rollback()
            logger.warning("%s on booking %s timed out: %s", event, booking_id, exc)
            raise RetryLater() from exc
        except SQLAlchemyError:
            db.session.rollback()
            raise

        booking = db.session.get(Booking, booking_id)
        logger.info("booking %s: %s -(%s)-> %s", booking_id, current, event, booking.status)
        events.emit(events.booking_transitioned, self, booking_id=booking_id, event=event,
                    from_status=current, to_status=booking.status)
        if event == CONFIRM:
            events.emit(events.booking_confirmed, self, booking_id=booking_id, payment_id=None,
                        slot_id=booking.slot_id)
        metadata = {"from": current, "to": booking.status}
        if reason:
            metadata["reason"] = reason
        if event == RESCHEDULE:
            metadata["slot_id"] = booking.slot_id
            metadata["previous_slot_id"] = booking.rescheduled_from_slot_id
        log_event(f"BOOKING_{event.upper()}", actor_id=actor_id, entity="booking",
                  entity_id=booking_id, metadata=metadata)
        return TransitionResult(booking, True, current)

    def _already_in_destination(self, current: str, event: str) -> bool:
        for state in self.machine.states():
            if self.machine.next_state(state, event) == current:
                return True
        return False

    def _check_undo(self, booking: Booking, event: str) -> None:
        if booking.undo_used:
            raise UndoNotAllowed("Undo already used for this booking")
        if event == UNDO_ACCEPT and Payment.query.filter_by(
            booking_id=booking.id, status=PAYMENT_COMPLETED
        ).first() is not None:
            # reopening would strand a captured payment on a pending booking
            raise UndoNotAllowed("Booking was paid for; cancel it instead")
        window = timedelta(minutes=current_app.config.get("UNDO_WINDOW_MINUTES", 15))
        if clock.utcnow() - booking.status_changed_at > window:
            raise UndoNotAllowed("Undo window has passed")

    def _check_slot_started(self, booking: Booking) -> None:
        slot = db.session.get(Slot, booking.slot_id)
        if datetime.combine(slot.date, slot.start_time) > clock.utcnow():
            raise ValidationError("Cannot mark a no-show before the slot starts")

    def _move(self, booking: Booking, event: str, next_state: str) -> None:
        now = clock.utcnow()
        current = booking.status
        slot_from = slots.slot_status_for(current)
        slot_to = slots.slot_status_for(next_state)

        if slot_from != slot_to and not slots.compare_and_set(
            booking.slot_id, slot_from, slot_to, now,
            reservation_minutes=current_app.config.get("SLOT_RESERVATION_MINUTES", 10),
        ):
            db.session.rollback()
            if slot_from == SLOT_AVAILABLE:
                raise SlotUnavailable("Slot is no longer available", slot_id=booking.slot_id)
            raise ConflictError("Slot changed concurrently; reload and try again", slot_id=booking.slot_id)

        values = {Booking.status: next_state, Booking.status_changed_at: now, Booking.updated_at: now}
        if event in UNDO_EVENTS:
            values[Booking.undo_used] = True
        if self._cas_booking(booking.id, current, values) != 1:
            db.session.rollback()
            raise ConflictError("Booking changed concurrently; reload and try again")

        if next_state not in ACTIVE_BOOKING_STATUSES:
            fail_open_payments(booking.id, f"Booking {next_state}", now)

        try:
            db.session.commit()
        except IntegrityError:
            # undo_reject racing a new booking onto the same slot
            db.session.rollback()
            raise SlotUnavailable("Slot is no longer available", slot_id=booking.slot_id)

    def _reschedule(self, booking: Booking, next_state: str, new_slot_id: Optional[int]) -> None:
        if new_slot_id is None:
            raise ValidationError("new_slot_id is required")
        if new_slot_id == booking.slot_id:
            raise ValidationError("Booking is already on this slot")
        target = db.session.get(Slot, new_slot_id)
        if target is None:
            raise NotFound("Slot not found")
        if target.business_id != booking.business_id:
            raise ValidationError("Slot belongs to a different business")

        now = clock.utcnow()
        current = booking.status
        old_slot_id = booking.slot_id

        if not slots.compare_and_set(
            new_slot_id, SLOT_AVAILABLE, slots.slot_status_for(next_state), now,
            reservation_minutes=current_app.config.get("SLOT_RESERVATION_MINUTES", 10),
            business_id=booking.business_id,
        ):
            db.session.rollback()
            raise SlotUnavailable("Slot is no longer available", slot_id=new_slot_id)

        if not slots.compare_and_set(old_slot_id, slots.slot_status_for(current), SLOT_AVAILABLE, now):
            db.session.rollback()
            raise ConflictError("Current slot changed concurrently; reload and try again")

        moved = self._cas_booking(booking.id, current, {
            Booking.slot_id: new_slot_id,
            Booking.rescheduled_from_slot_id: old_slot_id,
            Booking.status: next_state,
            Booking.status_changed_at: now,
            Booking.updated_at: now,
        })
        if moved != 1:
            db.session.rollback()
            raise ConflictError("Booking changed concurrently; reload and try again")

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise SlotUnavailable("Slot is no longer available", slot_id=new_slot_id)

    @staticmethod
    def _cas_booking(booking_id: int, expected_status: str, values: dict) -> int:
        return Booking.query.filter(
            Booking.id == booking_id, Booking.status == expected_status
        ).update(values, synchronize_session=False)


transition_service = TransitionService()
