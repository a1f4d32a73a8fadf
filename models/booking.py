from models.db import db
from utils import clock

BOOKING_PENDING = "pending"
BOOKING_CONFIRMED = "confirmed"
BOOKING_EXPIRED = "expired"

# Bookings in these states hold their slot
ACTIVE_BOOKING_STATUSES = (BOOKING_PENDING, BOOKING_CONFIRMED)

_ACTIVE_PREDICATE = db.text("status IN ('pending', 'confirmed')")


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)
    booking_ref = db.Column(db.String(32), unique=True, nullable=False, index=True)

    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    slot_id = db.Column(db.Integer, db.ForeignKey("slots.id"), nullable=False, index=True)

    customer_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    customer_name = db.Column(db.String(120), nullable=False)
    customer_phone = db.Column(db.String(30), nullable=False)
    client_ip = db.Column(db.String(64), nullable=True)

    # status values come from the booking_states graph
    status = db.Column(db.String(20), nullable=False, default=BOOKING_PENDING)
    status_changed_at = db.Column(db.DateTime, default=clock.utcnow, nullable=False)
    undo_used = db.Column(db.Boolean, default=False, nullable=False)
    rescheduled_from_slot_id = db.Column(db.Integer, db.ForeignKey("slots.id"), nullable=True)

    idempotency_key = db.Column(db.String(64), unique=True, nullable=False)

    created_at = db.Column(db.DateTime, default=clock.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=clock.utcnow, nullable=False)

    __table_args__ = (
        # Hard business rule: one pending/confirmed booking per slot (prevents double booking)
        db.Index(
            "uq_bookings_active_slot",
            "slot_id",
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "booking_ref": self.booking_ref,
            "business_id": self.business_id,
            "slot_id": self.slot_id,
            "customer_user_id": self.customer_user_id,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "status": self.status,
            "undo_used": self.undo_used,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
