from models.db import db


class RequestNonce(db.Model):
    __tablename__ = "request_nonces"

    id = db.Column(db.Integer, primary_key=True)
    nonce = db.Column(db.String(128), unique=True, nullable=False, index=True)
    owner = db.Column(db.String(80), nullable=True)  # "user:<id>" or "ip:<addr>"

    expires_at = db.Column(db.DateTime, nullable=False, index=True)
