from models.db import db
from utils import clock

KEY_IN_PROGRESS = "in_progress"
KEY_COMPLETED = "completed"


class IdempotencyKey(db.Model):
    __tablename__ = "idempotency_keys"

    key = db.Column(db.String(64), primary_key=True)
    status = db.Column(db.String(20), nullable=False, default=KEY_IN_PROGRESS)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=True)

    created_at = db.Column(db.DateTime, default=clock.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
