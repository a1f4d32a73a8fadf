from models.db import db
from utils import clock


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.Integer, nullable=True)  # nullable for system actions (expiry sweep)
    action = db.Column(db.String(80), nullable=False)  # e.g. BOOKING_CREATED, SLOT_RELEASED
    entity = db.Column(db.String(40), nullable=True)   # e.g. booking, slot, payment
    entity_id = db.Column(db.String(80), nullable=True, index=True)

    ip = db.Column(db.String(64), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)

    timestamp = db.Column(db.DateTime, default=clock.utcnow, nullable=False)
