from models.db import db


class RateLimitEntry(db.Model):
    __tablename__ = "rate_limit_entries"

    id = db.Column(db.Integer, primary_key=True)
    # "<prefix>:<ip|user>:<identity>:<window index>"
    key = db.Column(db.String(200), unique=True, nullable=False, index=True)

    count = db.Column(db.Integer, default=0, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
