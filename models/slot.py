from models.db import db
from utils import clock

SLOT_AVAILABLE = "available"
SLOT_RESERVED = "reserved"
SLOT_BOOKED = "booked"
SLOT_EXPIRED = "expired"


class Slot(db.Model):
    __tablename__ = "slots"

    id = db.Column(db.Integer, primary_key=True)

    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    date = db.Column(db.Date, nullable=False, index=True)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)

    status = db.Column(db.String(20), nullable=False, default=SLOT_AVAILABLE)
    # status values: available, reserved, booked, expired
    reserved_until = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=clock.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=clock.utcnow, nullable=False)

    __table_args__ = (
        # Prevent duplicate slot times for same business
        db.UniqueConstraint("business_id", "date", "start_time", name="uq_business_slot_time"),
        db.Index("ix_slots_status_reserved_until", "status", "reserved_until"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "business_id": self.business_id,
            "date": self.date.isoformat(),
            "start_time": self.start_time.isoformat(timespec="minutes"),
            "end_time": self.end_time.isoformat(timespec="minutes"),
            "status": self.status,
            "reserved_until": self.reserved_until.isoformat() if self.reserved_until else None,
        }
