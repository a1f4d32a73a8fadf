"""
Error taxonomy for the booking core.

Every error carries the HTTP status the transport layer renders it with, so
routes can let them propagate to the app-level error handler.
"""


class BookingCoreError(Exception):
    status_code = 500

    def __init__(self, message: str = None, **details):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self):
        body = {"error": self.message}
        body.update(self.details)
        return body


# ---------- validation ----------
class ValidationError(BookingCoreError):
    status_code = 400


class NotFound(BookingCoreError):
    status_code = 404


# ---------- authorization ----------
class AuthorizationError(BookingCoreError):
    status_code = 403


# ---------- conflicts (legitimate races, retriable by the user) ----------
class ConflictError(BookingCoreError):
    status_code = 409


class SlotUnavailable(ConflictError):
    pass


class IllegalTransition(ConflictError):
    pass


class DuplicateInProgress(ConflictError):
    """Another request holds the same idempotency key and has not finished."""

    def __init__(self, message: str = "Booking is still being processed; retry shortly", retry_after: int = 2):
        super().__init__(message, outcome="in_progress")
        self.retry_after = retry_after


class PaymentConflict(ConflictError):
    pass


class UndoNotAllowed(ConflictError):
    pass


# ---------- throttling ----------
class RateLimited(BookingCoreError):
    status_code = 429

    def __init__(self, message: str = "Too many requests. Please try again later.", retry_after: int = 1):
        super().__init__(message, retry_after_seconds=retry_after)
        self.retry_after = retry_after


class AbuseBlocked(BookingCoreError):
    status_code = 429


# ---------- dependencies (store unreachable / unexpected shape) ----------
class DependencyError(BookingCoreError):
    status_code = 503


class StateGraphUnavailable(DependencyError):
    pass


class PermissionGraphUnavailable(DependencyError):
    pass


class RetryLater(DependencyError):
    """The store timed out; the operation may or may not have committed."""

    def __init__(self, message: str = "Request is still being processed; try again shortly", retry_after: int = 2):
        super().__init__(message, retry_after_seconds=retry_after)
        self.retry_after = retry_after
