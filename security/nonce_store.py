"""
Request nonce store: a nonce value is accepted once while it is live.

MemoryNonceStore is per process (bounded, oldest entries evicted first);
DatabaseNonceStore shares state across processes through request_nonces and
relies on its unique constraint for the check-and-store.
"""
import enum
import threading
import time
from collections import OrderedDict
from datetime import timedelta
from functools import wraps

from flask import current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from models import db
from models.request_nonce import RequestNonce
from utils import clock
from utils.auth_context import current_user_id

NONCE_HEADER = "X-Request-Nonce"
MAX_NONCE_LENGTH = 128


class NonceResult(enum.Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


class NonceStore:
    def check_and_store(self, nonce: str, owner: str = None) -> NonceResult:
        raise NotImplementedError

    def cleanup(self) -> int:
        raise NotImplementedError


class MemoryNonceStore(NonceStore):
    def __init__(self, ttl_seconds: float = 300, max_entries: int = 10_000, clock_fn=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock_fn
        self._lock = threading.Lock()
        # nonce -> (expires_at, owner); insertion order doubles as age order
        self._entries: "OrderedDict[str, tuple]" = OrderedDict()

    def check_and_store(self, nonce: str, owner: str = None) -> NonceResult:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(nonce)
            if entry is not None and entry[0] > now:
                return NonceResult.DUPLICATE
            if entry is not None:
                del self._entries[nonce]

            if len(self._entries) >= self.max_entries:
                self._drop_expired(now)
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)

            self._entries[nonce] = (now + self.ttl_seconds, owner)
            return NonceResult.ACCEPTED

    def _drop_expired(self, now) -> int:
        expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def cleanup(self) -> int:
        with self._lock:
            return self._drop_expired(self._clock())

    def __len__(self):
        return len(self._entries)


class DatabaseNonceStore(NonceStore):
    def __init__(self, ttl_seconds: float = 300):
        self.ttl_seconds = ttl_seconds

    def check_and_store(self, nonce: str, owner: str = None) -> NonceResult:
        now = clock.utcnow()
        # a dead row for the same value must not block reuse after its TTL
        RequestNonce.query.filter(RequestNonce.nonce == nonce, RequestNonce.expires_at <= now).delete(
            synchronize_session=False
        )
        db.session.add(RequestNonce(
            nonce=nonce,
            owner=owner,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        ))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return NonceResult.DUPLICATE
        return NonceResult.ACCEPTED

    def cleanup(self) -> int:
        deleted = RequestNonce.query.filter(RequestNonce.expires_at <= clock.utcnow()).delete(
            synchronize_session=False
        )
        db.session.commit()
        return deleted


def create_nonce_store(app) -> NonceStore:
    ttl = app.config.get("NONCE_TTL_SECONDS", 300)
    if app.config.get("CACHE_BACKEND") == "database":
        return DatabaseNonceStore(ttl_seconds=ttl)
    return MemoryNonceStore(ttl_seconds=ttl, max_entries=app.config.get("NONCE_MAX_ENTRIES", 10_000))


def init_app(app):
    app.extensions["nonce_store"] = create_nonce_store(app)


def get_nonce_store() -> NonceStore:
    return current_app.extensions["nonce_store"]


def _request_owner() -> str:
    user_id = current_user_id()
    if user_id is not None:
        return f"user:{user_id}"
    ip = request.headers.get("X-Forwarded-For", request.remote_addr) or "unknown"
    return f"ip:{ip.split(',')[0].strip()}"


def nonce_protected(fn):
    """Rejects a replayed X-Request-Nonce. Requests without the header pass through."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        nonce = request.headers.get(NONCE_HEADER)
        if nonce:
            if len(nonce) > MAX_NONCE_LENGTH:
                return jsonify(error="Invalid request nonce"), 400
            if get_nonce_store().check_and_store(nonce, _request_owner()) is NonceResult.DUPLICATE:
                return jsonify(error="Duplicate request"), 409
        return fn(*args, **kwargs)
    return wrapper
