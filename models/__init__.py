from .db import db
from .user import User, Role, Permission, user_roles, role_permissions
from .audit_log import AuditLog
from .session import Session
from .business import Business
from .slot import Slot
from .booking import Booking
from .payment import Payment
from .booking_state import BookingState, BookingStateTransition
from .idempotency_key import IdempotencyKey
from .request_nonce import RequestNonce
from .rate_limit_entry import RateLimitEntry
