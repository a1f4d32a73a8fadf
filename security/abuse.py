"""
Query-time abuse heuristics. Advisory gates in front of booking creation and
payments; they are not part of the atomicity guarantees.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from flask import current_app
from sqlalchemy import func

from models import db
from models.booking import BOOKING_EXPIRED, Booking
from models.payment import PAYMENT_FAILED, Payment
from utils import clock

logger = logging.getLogger(__name__)

ACTION_BOOKING = "booking"
ACTION_PAYMENT = "payment"


@dataclass(frozen=True)
class AbuseVerdict:
    blocked: bool
    reason: Optional[str] = None


ALLOW = AbuseVerdict(False)


def _cfg(name: str, default):
    return current_app.config.get(name, default)


def _identity_filter(user_id, ip):
    if user_id is not None:
        return Booking.customer_user_id == user_id
    return Booking.client_ip == ip


class AbuseDetector:
    def detect_excessive_bookings(self, user_id, ip) -> bool:
        since = clock.utcnow() - timedelta(hours=1)
        count = (
            db.session.query(func.count(Booking.id))
            .filter(_identity_filter(user_id, ip), Booking.created_at >= since)
            .scalar()
        )
        return count >= _cfg("ABUSE_MAX_BOOKINGS_PER_HOUR", 10)

    def detect_slot_hoarding(self, user_id, ip) -> bool:
        """Many recent reservations by one identity, most of them left to expire."""
        since = clock.utcnow() - timedelta(minutes=_cfg("ABUSE_HOARDING_WINDOW_MINUTES", 10))
        rows = (
            db.session.query(Booking.status, func.count(Booking.id))
            .filter(_identity_filter(user_id, ip), Booking.created_at >= since)
            .group_by(Booking.status)
            .all()
        )
        total = sum(count for _, count in rows)
        expired = sum(count for status, count in rows if status == BOOKING_EXPIRED)
        return (
            total >= _cfg("ABUSE_HOARDING_MIN_RESERVATIONS", 5)
            and expired >= _cfg("ABUSE_HOARDING_MIN_EXPIRED", 3)
        )

    def detect_failed_payments(self, user_id) -> bool:
        if user_id is None:
            return False
        since = clock.utcnow() - timedelta(hours=1)
        count = (
            db.session.query(func.count(Payment.id))
            .join(Booking, Payment.booking_id == Booking.id)
            .filter(
                Booking.customer_user_id == user_id,
                Payment.status == PAYMENT_FAILED,
                Payment.updated_at >= since,
            )
            .scalar()
        )
        return count >= _cfg("MAX_PAYMENT_ATTEMPTS", 3)

    def should_block(self, user_id, ip, action: str) -> AbuseVerdict:
        if action == ACTION_BOOKING:
            if self.detect_excessive_bookings(user_id, ip):
                return self._blocked(user_id, ip, action, "Excessive booking attempts detected")
            if self.detect_slot_hoarding(user_id, ip):
                return self._blocked(user_id, ip, action, "Slot hoarding pattern detected")

        if action == ACTION_PAYMENT and self.detect_failed_payments(user_id):
            return self._blocked(user_id, ip, action, "Multiple failed payment attempts")

        return ALLOW

    @staticmethod
    def _blocked(user_id, ip, action, reason) -> AbuseVerdict:
        logger.warning("abuse gate blocked %s for user=%s ip=%s: %s", action, user_id, ip, reason)
        return AbuseVerdict(True, reason)


abuse_detector = AbuseDetector()
