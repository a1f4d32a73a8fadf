from datetime import datetime, timedelta

import pytest

from models import db
from models.audit_log import AuditLog
from models.booking import Booking
from models.payment import PAYMENT_COMPLETED, PAYMENT_FAILED, Payment
from models.slot import Slot
from services.errors import IllegalTransition, NotFound, SlotUnavailable, UndoNotAllowed, ValidationError
from services.payments import payment_service
from services.reservations import reservation_service
from services.transitions import (
    CANCEL,
    CONFIRM,
    NO_SHOW,
    REJECT,
    RESCHEDULE,
    UNDO_ACCEPT,
    UNDO_REJECT,
    transition_service,
)
from tests.conftest import booking_request


@pytest.fixture
def booking(business, slot, customer):
    result = reservation_service.create_booking(booking_request(business, slot, customer))
    return db.session.get(Booking, result.booking_id)


def _status(booking_id):
    return db.session.get(Booking, booking_id, populate_existing=True).status


def _slot_status(slot_id):
    return db.session.get(Slot, slot_id, populate_existing=True).status


class TestAcceptReject:
    def test_accept_books_slot(self, booking, slot, owner):
        result = transition_service.apply(booking.id, CONFIRM, actor_id=owner.id)
        assert result.changed
        assert result.previous_status == "pending"
        assert _status(booking.id) == "confirmed"
        assert _slot_status(slot.id) == "booked"
        assert AuditLog.query.filter_by(action="BOOKING_CONFIRM").count() == 1

    def test_accept_twice_is_a_no_op(self, booking, owner):
        transition_service.apply(booking.id, CONFIRM, actor_id=owner.id)
        again = transition_service.apply(booking.id, CONFIRM, actor_id=owner.id)
        assert not again.changed
        assert again.previous_status == "confirmed"
        assert AuditLog.query.filter_by(action="BOOKING_CONFIRM").count() == 1

    def test_reject_releases_slot(self, booking, slot, owner):
        transition_service.apply(booking.id, REJECT, actor_id=owner.id, reason="double-booked barber")
        assert _status(booking.id) == "rejected"
        assert _slot_status(slot.id) == "available"

    def test_reject_confirmed_is_illegal(self, booking, slot, owner):
        transition_service.apply(booking.id, CONFIRM, actor_id=owner.id)
        with pytest.raises(IllegalTransition):
            transition_service.apply(booking.id, REJECT, actor_id=owner.id)
        assert _status(booking.id) == "confirmed"
        assert _slot_status(slot.id) == "booked"


class TestCancel:
    def test_cancel_releases_slot_and_fails_payment(self, booking, slot, customer):
        payment, _ = payment_service.initiate_payment(booking.id, 50000, "pay-cancel-1")

        transition_service.apply(booking.id, CANCEL, actor_id=customer.id)

        assert _status(booking.id) == "cancelled"
        assert _slot_status(slot.id) == "available"
        failed = db.session.get(Payment, payment.id, populate_existing=True)
        assert failed.status == PAYMENT_FAILED
        assert failed.failure_reason == "Booking cancelled"

    def test_cancel_confirmed(self, booking, slot, owner, customer):
        transition_service.apply(booking.id, CONFIRM, actor_id=owner.id)
        transition_service.apply(booking.id, CANCEL, actor_id=customer.id)
        assert _slot_status(slot.id) == "available"

    def test_cancel_twice_is_a_no_op(self, booking, customer):
        transition_service.apply(booking.id, CANCEL, actor_id=customer.id)
        assert not transition_service.apply(booking.id, CANCEL, actor_id=customer.id).changed

    def test_terminal_state_rejects_everything_else(self, booking, customer, owner):
        transition_service.apply(booking.id, CANCEL, actor_id=customer.id)
        for event in (CONFIRM, REJECT, UNDO_ACCEPT, UNDO_REJECT):
            with pytest.raises(IllegalTransition):
                transition_service.apply(booking.id, event, actor_id=owner.id)
        assert _status(booking.id) == "cancelled"


class TestUndo:
    def test_undo_accept_once(self, booking, slot, owner):
        transition_service.apply(booking.id, CONFIRM, actor_id=owner.id)
        transition_service.apply(booking.id, UNDO_ACCEPT, actor_id=owner.id)

        assert _status(booking.id) == "pending"
        restored = db.session.get(Slot, slot.id, populate_existing=True)
        assert restored.status == "reserved"
        assert restored.reserved_until is not None

        transition_service.apply(booking.id, CONFIRM, actor_id=owner.id)
        with pytest.raises(UndoNotAllowed, match="already used"):
            transition_service.apply(booking.id, UNDO_ACCEPT, actor_id=owner.id)
        assert _status(booking.id) == "confirmed"

    def test_undo_window(self, booking, owner, frozen_clock):
        transition_service.apply(booking.id, CONFIRM, actor_id=owner.id)
        frozen_clock.advance(minutes=16)
        with pytest.raises(UndoNotAllowed, match="window"):
            transition_service.apply(booking.id, UNDO_ACCEPT, actor_id=owner.id)
        assert _status(booking.id) == "confirmed"

    def test_undo_accept_refused_once_paid(self, booking, slot, owner):
        payment, _ = payment_service.initiate_payment(booking.id, 50000, "pay-undo-1")
        payment_service.confirm_with_payment(payment.id)

        with pytest.raises(UndoNotAllowed, match="paid"):
            transition_service.apply(booking.id, UNDO_ACCEPT, actor_id=owner.id)

        assert _status(booking.id) == "confirmed"
        assert _slot_status(slot.id) == "booked"
        kept = db.session.get(Booking, booking.id, populate_existing=True)
        assert not kept.undo_used
        assert db.session.get(Payment, payment.id, populate_existing=True).status == PAYMENT_COMPLETED

    def test_undo_reject_reclaims_slot(self, booking, slot, owner):
        transition_service.apply(booking.id, REJECT, actor_id=owner.id)
        transition_service.apply(booking.id, UNDO_REJECT, actor_id=owner.id)
        assert _status(booking.id) == "pending"
        assert _slot_status(slot.id) == "reserved"

    def test_undo_reject_after_slot_was_taken(self, booking, business, slot, owner, other_customer):
        transition_service.apply(booking.id, REJECT, actor_id=owner.id)
        reservation_service.create_booking(
            booking_request(business, slot, other_customer, phone="+919800000002")
        )

        with pytest.raises(SlotUnavailable):
            transition_service.apply(booking.id, UNDO_REJECT, actor_id=owner.id)
        assert _status(booking.id) == "rejected"
        assert not db.session.get(Booking, booking.id, populate_existing=True).undo_used

    def test_undo_on_pending_is_illegal(self, booking, owner):
        with pytest.raises(IllegalTransition):
            transition_service.apply(booking.id, UNDO_ACCEPT, actor_id=owner.id)


class TestNoShow:
    def _after_start(self, slot, frozen_clock):
        frozen_clock.now = datetime.combine(slot.date, slot.start_time) + timedelta(minutes=5)

    def test_marks_confirmed_booking_and_frees_slot(self, booking, slot, owner, frozen_clock):
        transition_service.apply(booking.id, CONFIRM, actor_id=owner.id)
        self._after_start(slot, frozen_clock)

        result = transition_service.apply(booking.id, NO_SHOW, actor_id=owner.id)

        assert result.changed
        assert result.previous_status == "confirmed"
        assert _status(booking.id) == "no_show"
        assert _slot_status(slot.id) == "available"
        assert AuditLog.query.filter_by(action="BOOKING_NO_SHOW").count() == 1

    def test_marking_twice_is_a_no_op(self, booking, slot, owner, frozen_clock):
        transition_service.apply(booking.id, CONFIRM, actor_id=owner.id)
        self._after_start(slot, frozen_clock)
        transition_service.apply(booking.id, NO_SHOW, actor_id=owner.id)

        again = transition_service.apply(booking.id, NO_SHOW, actor_id=owner.id)
        assert not again.changed
        assert AuditLog.query.filter_by(action="BOOKING_NO_SHOW").count() == 1

    def test_refused_before_the_slot_starts(self, booking, slot, owner):
        transition_service.apply(booking.id, CONFIRM, actor_id=owner.id)
        with pytest.raises(ValidationError, match="before the slot starts"):
            transition_service.apply(booking.id, NO_SHOW, actor_id=owner.id)
        assert _status(booking.id) == "confirmed"
        assert _slot_status(slot.id) == "booked"

    def test_only_confirmed_bookings(self, booking, owner):
        with pytest.raises(IllegalTransition):
            transition_service.apply(booking.id, NO_SHOW, actor_id=owner.id)

    def test_no_show_is_terminal(self, booking, slot, owner, customer, frozen_clock):
        transition_service.apply(booking.id, CONFIRM, actor_id=owner.id)
        self._after_start(slot, frozen_clock)
        transition_service.apply(booking.id, NO_SHOW, actor_id=owner.id)
        for event in (CANCEL, UNDO_ACCEPT, CONFIRM):
            with pytest.raises(IllegalTransition):
                transition_service.apply(booking.id, event, actor_id=customer.id)


class TestReschedule:
    def test_moves_to_new_slot(self, booking, slots, customer):
        old, new = slots[0], slots[1]
        result = transition_service.apply(booking.id, RESCHEDULE, actor_id=customer.id, new_slot_id=new.id)

        moved = db.session.get(Booking, booking.id, populate_existing=True)
        assert result.changed
        assert moved.status == "pending"
        assert moved.slot_id == new.id
        assert moved.rescheduled_from_slot_id == old.id
        assert _slot_status(old.id) == "available"
        assert _slot_status(new.id) == "reserved"

    def test_confirmed_booking_keeps_booked_status(self, booking, slots, owner, customer):
        transition_service.apply(booking.id, CONFIRM, actor_id=owner.id)
        transition_service.apply(booking.id, RESCHEDULE, actor_id=customer.id, new_slot_id=slots[2].id)
        assert _slot_status(slots[2].id) == "booked"
        assert _slot_status(slots[0].id) == "available"

    def test_target_taken(self, booking, business, slots, customer, other_customer):
        reservation_service.create_booking(
            booking_request(business, slots[1], other_customer, phone="+919800000002")
        )
        with pytest.raises(SlotUnavailable):
            transition_service.apply(booking.id, RESCHEDULE, actor_id=customer.id, new_slot_id=slots[1].id)
        assert db.session.get(Booking, booking.id, populate_existing=True).slot_id == slots[0].id
        assert _slot_status(slots[0].id) == "reserved"

    @pytest.mark.parametrize("new_slot", [None, "same"])
    def test_invalid_target(self, booking, slot, customer, new_slot):
        target = slot.id if new_slot == "same" else None
        with pytest.raises(ValidationError):
            transition_service.apply(booking.id, RESCHEDULE, actor_id=customer.id, new_slot_id=target)


class TestUnknownInputs:
    def test_unknown_event(self, booking):
        with pytest.raises(ValidationError):
            transition_service.apply(booking.id, "teleport")

    def test_unknown_booking(self, app):
        with pytest.raises(NotFound):
            transition_service.apply(9999, CANCEL)
