"""
Booking lifecycle signals for external collaborators (notifications,
reminders, metrics). Receivers are best effort: a failing receiver is logged
and never reaches the caller, so it cannot undo a committed transition.
"""
import logging

from blinker import Namespace

logger = logging.getLogger(__name__)

_signals = Namespace()

booking_created = _signals.signal("booking-created")
booking_confirmed = _signals.signal("booking-confirmed")
booking_transitioned = _signals.signal("booking-transitioned")
booking_expired = _signals.signal("booking-expired")
payment_failed = _signals.signal("payment-failed")


def emit(signal, sender, **payload) -> None:
    for receiver in signal.receivers_for(sender):
        try:
            receiver(sender, **payload)
        except Exception:
            logger.exception("receiver %r for %s failed", receiver, signal.name)
