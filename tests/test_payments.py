from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import DatabaseError, OperationalError

from models import db
from models.audit_log import AuditLog
from models.booking import Booking
from models.payment import PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_INITIATED, Payment
from models.slot import Slot
from services.errors import DependencyError, NotFound, PaymentConflict, RetryLater, ValidationError
from services.expiry import ExpiryHealer
from services.payments import ConfirmOutcome, PaymentService, payment_service
from services.reservations import reservation_service
from utils import events
from tests.conftest import booking_request


@pytest.fixture
def pending_booking(business, slot, customer):
    result = reservation_service.create_booking(booking_request(business, slot, customer))
    return db.session.get(Booking, result.booking_id)


@pytest.fixture
def payment(pending_booking, customer):
    p, _ = payment_service.initiate_payment(pending_booking.id, 50000, "pay-key-1", actor_id=customer.id)
    return p


def _reload(model, pk):
    return db.session.get(model, pk, populate_existing=True)


class TestInitiatePayment:
    def test_creates_initiated_payment(self, pending_booking):
        p, created = payment_service.initiate_payment(pending_booking.id, 50000, "pay-key-1")
        assert created
        assert p.status == PAYMENT_INITIATED
        assert p.provider == "STRIPE"
        assert p.amount == 50000

    def test_initiated_payment_carries_expiry(self, pending_booking, frozen_clock):
        p, _ = payment_service.initiate_payment(pending_booking.id, 50000, "pay-key-1")
        assert p.expires_at == frozen_clock() + timedelta(minutes=10)

    def test_same_key_returns_existing(self, pending_booking, payment):
        again, created = payment_service.initiate_payment(pending_booking.id, 50000, "pay-key-1")
        assert not created
        assert again.id == payment.id
        assert Payment.query.count() == 1

    def test_key_reused_for_another_booking(self, payment, business, slots, other_customer):
        other = reservation_service.create_booking(
            booking_request(business, slots[1], other_customer, phone="+919800000002")
        )
        with pytest.raises(PaymentConflict):
            payment_service.initiate_payment(other.booking_id, 50000, "pay-key-1")

    def test_one_live_payment_per_booking(self, pending_booking, payment):
        with pytest.raises(PaymentConflict):
            payment_service.initiate_payment(pending_booking.id, 50000, "pay-key-2")

    def test_new_payment_allowed_after_failure(self, pending_booking, payment):
        payment_service.fail_payment(payment.id, "card declined")
        retry, created = payment_service.initiate_payment(pending_booking.id, 50000, "pay-key-2")
        assert created
        assert retry.status == PAYMENT_INITIATED

    @pytest.mark.parametrize("amount,key,provider", [
        (0, "k", "STRIPE"),
        ("abc", "k", "STRIPE"),
        (100, "", "STRIPE"),
        (100, "k", "PAYPAL"),
    ])
    def test_validation(self, pending_booking, amount, key, provider):
        with pytest.raises(ValidationError):
            payment_service.initiate_payment(pending_booking.id, amount, key, provider=provider)

    def test_unknown_booking(self, app):
        with pytest.raises(NotFound):
            payment_service.initiate_payment(9999, 100, "k")

    def test_booking_must_be_pending(self, pending_booking, payment):
        payment_service.confirm_with_payment(payment.id)
        with pytest.raises(PaymentConflict):
            payment_service.initiate_payment(pending_booking.id, 100, "pay-key-late")


class TestConfirmWithPayment:
    def test_confirms_booking_and_books_slot(self, pending_booking, payment, slot):
        result = payment_service.confirm_with_payment(payment.id)

        assert result.outcome is ConfirmOutcome.CONFIRMED
        assert _reload(Booking, pending_booking.id).status == "confirmed"
        booked = _reload(Slot, slot.id)
        assert booked.status == "booked"
        assert booked.reserved_until is None
        paid = _reload(Payment, payment.id)
        assert paid.status == PAYMENT_COMPLETED
        assert paid.paid_at is not None
        assert AuditLog.query.filter_by(action="BOOKING_CONFIRMED").count() == 1

    def test_second_confirmation_is_a_no_op(self, pending_booking, payment):
        payment_service.confirm_with_payment(payment.id)
        again = payment_service.confirm_with_payment(payment.id)

        assert again.outcome is ConfirmOutcome.ALREADY_CONFIRMED
        assert _reload(Booking, pending_booking.id).status == "confirmed"
        assert AuditLog.query.filter_by(action="BOOKING_CONFIRMED").count() == 1

    def test_confirmed_signal(self, payment):
        seen = []

        def receiver(sender, **payload):
            seen.append(payload)

        events.booking_confirmed.connect(receiver)
        try:
            payment_service.confirm_with_payment(payment.id)
        finally:
            events.booking_confirmed.disconnect(receiver)
        assert seen[0]["payment_id"] == payment.id

    def test_expired_reservation_races_confirmation(self, pending_booking, payment, slot, frozen_clock):
        # the healer has not run yet; the confirmation itself must see the elapsed window
        healer = MagicMock(spec=ExpiryHealer)
        service = PaymentService(healer=healer)
        frozen_clock.advance(minutes=10, seconds=1)

        result = service.confirm_with_payment(payment.id)

        assert result.outcome is ConfirmOutcome.CONFLICT
        assert result.error == "Slot reservation expired before confirmation"
        assert _reload(Booking, pending_booking.id).status == "pending"
        assert _reload(Slot, slot.id).status == "reserved"
        failed = _reload(Payment, payment.id)
        assert failed.status == PAYMENT_FAILED
        assert failed.failure_reason == "Slot reservation expired before confirmation"

    def test_confirmation_after_lazy_expiry(self, pending_booking, payment, slot, frozen_clock):
        frozen_clock.advance(minutes=11)

        result = payment_service.confirm_with_payment(payment.id)

        assert result.outcome is ConfirmOutcome.CONFLICT
        assert result.error == "Reservation expired"
        assert _reload(Booking, pending_booking.id).status == "expired"
        assert _reload(Slot, slot.id).status == "available"
        assert _reload(Payment, payment.id).status == PAYMENT_FAILED

    def test_cancelled_booking_cannot_be_confirmed(self, pending_booking, payment, customer):
        from services.transitions import CANCEL, transition_service

        transition_service.apply(pending_booking.id, CANCEL, actor_id=customer.id)
        result = payment_service.confirm_with_payment(payment.id)
        assert result.outcome is ConfirmOutcome.CONFLICT
        assert _reload(Booking, pending_booking.id).status == "cancelled"

    def test_store_failure_marks_payment_failed(self, pending_booking, payment):
        with patch.object(PaymentService, "confirm_primitive",
                          side_effect=DatabaseError("UPDATE", {}, Exception("disk I/O error"))):
            with pytest.raises(DependencyError):
                payment_service.confirm_with_payment(payment.id)

        assert _reload(Payment, payment.id).status == PAYMENT_FAILED
        assert _reload(Booking, pending_booking.id).status == "pending"

    def test_timeout_is_retry_later(self, pending_booking, payment):
        with patch.object(PaymentService, "confirm_primitive",
                          side_effect=OperationalError("UPDATE", {}, Exception("lock timeout"))):
            with pytest.raises(RetryLater):
                payment_service.confirm_with_payment(payment.id)
        # outcome unknown, so the payment is left open for the retry
        assert _reload(Payment, payment.id).status == PAYMENT_INITIATED

    def test_failed_payment_cannot_confirm(self, pending_booking, payment):
        payment_service.fail_payment(payment.id, "card declined")
        result = payment_service.confirm_with_payment(payment.id)
        assert result.outcome is ConfirmOutcome.CONFLICT
        assert result.error == "card declined"
        assert _reload(Booking, pending_booking.id).status == "pending"

    def test_unknown_payment(self, app):
        with pytest.raises(NotFound):
            payment_service.confirm_with_payment(9999)


class TestFailPayment:
    def test_marks_failed_and_leaves_booking(self, pending_booking, payment, slot):
        failed = payment_service.fail_payment(payment.id, "card declined")
        assert failed.status == PAYMENT_FAILED
        assert failed.failure_reason == "card declined"
        assert _reload(Booking, pending_booking.id).status == "pending"
        assert _reload(Slot, slot.id).status == "reserved"

    def test_idempotent(self, payment):
        payment_service.fail_payment(payment.id, "card declined")
        again = payment_service.fail_payment(payment.id, "other reason")
        assert again.failure_reason == "card declined"
        assert AuditLog.query.filter_by(action="PAYMENT_FAILED").count() == 1

    def test_completed_payment_cannot_fail(self, payment):
        payment_service.confirm_with_payment(payment.id)
        with pytest.raises(PaymentConflict):
            payment_service.fail_payment(payment.id)


class TestExpirePayments:
    def test_unpaid_payment_expires_and_frees_slot(self, app, pending_booking, slot, frozen_clock):
        app.config["PAYMENT_EXPIRY_MINUTES"] = 5
        p, _ = payment_service.initiate_payment(pending_booking.id, 50000, "pay-expire-1")
        frozen_clock.advance(minutes=6)

        assert payment_service.expire_payments() == 1

        expired = _reload(Payment, p.id)
        assert expired.status == PAYMENT_FAILED
        assert expired.failure_reason == "Payment expired"
        assert _reload(Booking, pending_booking.id).status == "expired"
        freed = _reload(Slot, slot.id)
        assert freed.status == "available"
        assert freed.reserved_until is None
        assert AuditLog.query.filter_by(action="PAYMENT_EXPIRED").count() == 1
        assert AuditLog.query.filter_by(action="BOOKING_EXPIRED").count() == 1

        assert payment_service.expire_payments() == 0

    def test_payment_inside_its_window_is_left_alone(self, pending_booking, payment, slot, frozen_clock):
        frozen_clock.advance(minutes=9)
        assert payment_service.expire_payments() == 0
        assert _reload(Payment, payment.id).status == PAYMENT_INITIATED
        assert _reload(Slot, slot.id).status == "reserved"

    def test_lapsed_reservation_is_released_with_it(self, pending_booking, payment, slot, frozen_clock):
        # payment and reservation both ran out and the healer has not been by
        frozen_clock.advance(minutes=10, seconds=1)

        assert payment_service.expire_payments() == 1
        assert _reload(Booking, pending_booking.id).status == "expired"
        assert _reload(Slot, slot.id).status == "available"

    def test_completed_payment_is_never_expired(self, pending_booking, payment, slot, frozen_clock):
        payment_service.confirm_with_payment(payment.id)
        frozen_clock.advance(minutes=30)

        assert payment_service.expire_payments() == 0
        assert _reload(Payment, payment.id).status == PAYMENT_COMPLETED
        assert _reload(Booking, pending_booking.id).status == "confirmed"
        assert _reload(Slot, slot.id).status == "booked"

    def test_failed_signal_fires_for_each_expiry(self, pending_booking, payment, frozen_clock):
        seen = []

        def receiver(sender, **payload):
            seen.append(payload)

        events.payment_failed.connect(receiver)
        try:
            frozen_clock.advance(minutes=11)
            payment_service.expire_payments()
        finally:
            events.payment_failed.disconnect(receiver)
        assert seen == [{"payment_id": payment.id, "reason": "Payment expired"}]
