from models.db import db
from utils import clock

PAYMENT_INITIATED = "initiated"
PAYMENT_PROCESSING = "processing"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"

PAYMENT_EXPIRED_REASON = "Payment expired"

# Payments that can still lead to a confirmation
OPEN_PAYMENT_STATUSES = (PAYMENT_INITIATED, PAYMENT_PROCESSING)

_NOT_FAILED = db.text("status <> 'failed'")


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=False, index=True)

    provider = db.Column(db.String(20), nullable=False, default="STRIPE")
    provider_ref = db.Column(db.String(255), nullable=True, unique=True, index=True)
    amount = db.Column(db.Integer, nullable=False)   # smallest unit
    currency = db.Column(db.String(10), nullable=False, default="INR")

    status = db.Column(db.String(20), nullable=False, default=PAYMENT_INITIATED)
    # status values: initiated, processing, completed, failed
    failure_reason = db.Column(db.String(255), nullable=True)
    idempotency_key = db.Column(db.String(64), nullable=False, unique=True)

    created_at = db.Column(db.DateTime, default=clock.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=clock.utcnow, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
    # initiated payments left unpaid past this are expired by the payment sweep
    expires_at = db.Column(db.DateTime, nullable=True, index=True)

    __table_args__ = (
        # a booking has at most one payment that can still lead to confirmation
        db.Index(
            "uq_payments_live_booking",
            "booking_id",
            unique=True,
            sqlite_where=_NOT_FAILED,
            postgresql_where=_NOT_FAILED,
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "provider": self.provider,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
