import threading
import time


class CachedValue:
    """
    Process-local holder for one value with a TTL.

    get() returns None once the TTL elapsed or after invalidate(). A shared
    store implementation only needs the same three methods.
    """

    def __init__(self, ttl_seconds: float, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._value = None
        self._built_at = 0.0

    def get(self):
        with self._lock:
            if self._value is None:
                return None
            if self._clock() - self._built_at >= self.ttl_seconds:
                return None
            return self._value

    def set(self, value):
        with self._lock:
            self._value = value
            self._built_at = self._clock()

    def invalidate(self):
        with self._lock:
            self._value = None
            self._built_at = 0.0
