"""
Fixed-window rate limiting.

Counters are keyed by "<prefix>:<ip|user>:<identity>:<window index>" where the
window index is floor(now / window). The store is swappable: MemoryRateLimitStore
is per process, DatabaseRateLimitStore shares counters through rate_limit_entries.
"""
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from typing import Callable, List, Optional

from flask import current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from models import db
from models.rate_limit_entry import RateLimitEntry
from utils.auth_context import current_user_id


def _utc(epoch_seconds: float) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, timezone.utc).replace(tzinfo=None)


class RateLimitStore:
    def incr(self, key: str, window_seconds: int, now: float) -> int:
        """Increment the counter for key and return the new count."""
        raise NotImplementedError

    def sweep(self, now: float) -> int:
        """Drop windows that ended before now; returns how many were removed."""
        raise NotImplementedError


class MemoryRateLimitStore(RateLimitStore):
    def __init__(self, max_keys: int = 10_000):
        self.max_keys = max_keys
        self._lock = threading.Lock()
        # key -> [count, reset_at]
        self._entries = {}

    def _prune(self, now: float) -> None:
        if len(self._entries) <= self.max_keys:
            return
        for key in [k for k, (_, reset_at) in self._entries.items() if reset_at <= now]:
            del self._entries[key]
        if len(self._entries) > self.max_keys:
            by_reset = sorted(self._entries.items(), key=lambda item: item[1][1])
            for key, _ in by_reset[: len(self._entries) - self.max_keys]:
                del self._entries[key]

    def incr(self, key: str, window_seconds: int, now: float) -> int:
        with self._lock:
            self._prune(now)
            entry = self._entries.get(key)
            if entry is None or entry[1] <= now:
                window_start = math.floor(now / window_seconds) * window_seconds
                entry = [0, window_start + window_seconds]
                self._entries[key] = entry
            entry[0] += 1
            return entry[0]

    def sweep(self, now: float) -> int:
        with self._lock:
            expired = [k for k, (_, reset_at) in self._entries.items() if reset_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self):
        return len(self._entries)


class DatabaseRateLimitStore(RateLimitStore):
    def incr(self, key: str, window_seconds: int, now: float) -> int:
        window_start = math.floor(now / window_seconds) * window_seconds
        expires_at = _utc(window_start + window_seconds)

        updated = RateLimitEntry.query.filter_by(key=key).update(
            {RateLimitEntry.count: RateLimitEntry.count + 1}, synchronize_session=False
        )
        if not updated:
            db.session.add(RateLimitEntry(key=key, count=1, expires_at=expires_at))
            try:
                db.session.commit()
                return 1
            except IntegrityError:
                # another process created the window row first
                db.session.rollback()
                RateLimitEntry.query.filter_by(key=key).update(
                    {RateLimitEntry.count: RateLimitEntry.count + 1}, synchronize_session=False
                )
        db.session.commit()
        row = RateLimitEntry.query.filter_by(key=key).first()
        return row.count if row else 1

    def sweep(self, now: float) -> int:
        deleted = RateLimitEntry.query.filter(
            RateLimitEntry.expires_at <= _utc(now)
        ).delete(synchronize_session=False)
        db.session.commit()
        return deleted


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    count: int = 0


class RateLimiter:
    def __init__(self, store: RateLimitStore, clock_fn: Callable[[], float] = time.time):
        self.store = store
        self.clock_fn = clock_fn

    @staticmethod
    def window_key(base_key: str, window_seconds: int, now: float) -> str:
        return f"{base_key}:{math.floor(now / window_seconds)}"

    def hit(self, base_key: str, max_requests: int, window_seconds: int) -> RateLimitDecision:
        now = self.clock_fn()
        count = self.store.incr(self.window_key(base_key, window_seconds, now), window_seconds, now)
        if count > max_requests:
            window_end = (math.floor(now / window_seconds) + 1) * window_seconds
            return RateLimitDecision(False, max(int(math.ceil(window_end - now)), 1), count)
        return RateLimitDecision(True, 0, count)


def identity_keys(prefix: str, ip: Optional[str], user_id=None,
                  per_ip: bool = True, per_user: bool = False) -> List[str]:
    keys = []
    if per_ip:
        keys.append(f"{prefix}:ip:{ip or 'unknown'}")
    if per_user and user_id is not None:
        keys.append(f"{prefix}:user:{user_id}")
    return keys


def init_app(app):
    if app.config.get("CACHE_BACKEND") == "database":
        store = DatabaseRateLimitStore()
    else:
        store = MemoryRateLimitStore(max_keys=app.config.get("RATE_LIMIT_MAX_KEYS", 10_000))
    app.extensions["rate_limiter"] = RateLimiter(store)


def get_rate_limiter() -> RateLimiter:
    return current_app.extensions["rate_limiter"]


def client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", request.remote_addr) or "unknown"
    return forwarded.split(",")[0].strip()


def check_rate_limit(prefix: str, max_requests: int, window_seconds: int,
                     per_ip: bool = True, per_user: bool = False) -> RateLimitDecision:
    """
    Returns the first rejecting decision, or an allowing one.
    Every identity key is counted even when an earlier one already rejected.
    """
    limiter = get_rate_limiter()
    decision = RateLimitDecision(True)
    for key in identity_keys(prefix, client_ip(), current_user_id(), per_ip, per_user):
        result = limiter.hit(key, max_requests, window_seconds)
        if not result.allowed and decision.allowed:
            decision = result
    return decision


def rate_limited(prefix: str, limit_config: str, window_config: str = None,
                 default_limit: int = 10, default_window: int = 60,
                 per_ip: bool = True, per_user: bool = False):
    """
    Usage: @rate_limited("booking_create", "BOOKING_RATE_LIMIT", "BOOKING_RATE_WINDOW_SECONDS", per_user=True)
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            max_requests = current_app.config.get(limit_config, default_limit)
            window = current_app.config.get(window_config, default_window) if window_config else default_window
            decision = check_rate_limit(prefix, max_requests, window, per_ip=per_ip, per_user=per_user)
            if not decision.allowed:
                resp = jsonify(error="Too many requests. Please try again later.",
                               retry_after_seconds=decision.retry_after)
                resp.headers["Retry-After"] = str(decision.retry_after)
                return resp, 429
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def sweep_expired(now: float = None) -> int:
    now = time.time() if now is None else now
    return get_rate_limiter().store.sweep(now)
