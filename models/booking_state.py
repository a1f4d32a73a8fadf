from models.db import db


class BookingState(db.Model):
    __tablename__ = "booking_states"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(20), unique=True, nullable=False)
    is_terminal = db.Column(db.Boolean, default=False, nullable=False)


class BookingStateTransition(db.Model):
    __tablename__ = "booking_state_transitions"

    id = db.Column(db.Integer, primary_key=True)
    from_state_id = db.Column(db.Integer, db.ForeignKey("booking_states.id"), nullable=False)
    event = db.Column(db.String(40), nullable=False)
    to_state_id = db.Column(db.Integer, db.ForeignKey("booking_states.id"), nullable=False)

    __table_args__ = (
        # An event leads to exactly one destination from a given state
        db.UniqueConstraint("from_state_id", "event", name="uq_transition_from_event"),
    )
