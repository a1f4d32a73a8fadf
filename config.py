import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as slotguard.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "slotguard.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "slotguard_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 20 minutes
    IDLE_TIMEOUT_SECONDS = 20 * 60

    # Session/cookie security defaults
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() == "true"
    CSRF_ENABLED = True

    # In-memory graph caches (booking state machine, role -> permissions)
    STATE_MACHINE_TTL_SECONDS = _int_env("STATE_MACHINE_TTL_SECONDS", 60)
    PERMISSIONS_TTL_SECONDS = _int_env("PERMISSIONS_TTL_SECONDS", 60)

    # Reservation window before an unconfirmed booking is reclaimed
    SLOT_RESERVATION_MINUTES = _int_env("SLOT_RESERVATION_MINUTES", 10)
    IDEMPOTENCY_TTL_HOURS = _int_env("IDEMPOTENCY_TTL_HOURS", 24)

    # Initiated payments not completed within this window are expired
    PAYMENT_EXPIRY_MINUTES = _int_env("PAYMENT_EXPIRY_MINUTES", 10)

    # Expiry healing batch sizes
    LAZY_EXPIRY_BATCH_SIZE = _int_env("LAZY_EXPIRY_BATCH_SIZE", 50)
    EXPIRY_BATCH_SIZE = _int_env("EXPIRY_BATCH_SIZE", 500)

    # Owner undo (accept/reject) window
    UNDO_WINDOW_MINUTES = _int_env("UNDO_WINDOW_MINUTES", 15)

    # "memory" keeps nonces and rate-limit counters per process,
    # "database" shares them between processes through their tables
    CACHE_BACKEND = os.getenv("CACHE_BACKEND", "memory")

    # Request nonces
    NONCE_TTL_SECONDS = _int_env("NONCE_TTL_SECONDS", 300)
    NONCE_MAX_ENTRIES = _int_env("NONCE_MAX_ENTRIES", 10_000)

    # Fixed-window rate limits (max requests per window)
    RATE_LIMIT_MAX_KEYS = _int_env("RATE_LIMIT_MAX_KEYS", 10_000)
    BOOKING_RATE_LIMIT = _int_env("BOOKING_RATE_LIMIT", 10)
    BOOKING_RATE_WINDOW_SECONDS = _int_env("BOOKING_RATE_WINDOW_SECONDS", 60)
    TRANSITION_RATE_LIMIT = _int_env("TRANSITION_RATE_LIMIT", 10)
    PAYMENT_RATE_LIMIT = _int_env("PAYMENT_RATE_LIMIT", 20)
    LOGIN_RATE_WINDOW_SECONDS = 60      # window size
    LOGIN_RATE_MAX_REQUESTS = 15        # max login requests per IP per window

    # Abuse heuristics
    MAX_PAYMENT_ATTEMPTS = _int_env("MAX_PAYMENT_ATTEMPTS", 3)
    ABUSE_MAX_BOOKINGS_PER_HOUR = _int_env("ABUSE_MAX_BOOKINGS_PER_HOUR", 10)
    ABUSE_HOARDING_WINDOW_MINUTES = _int_env("ABUSE_HOARDING_WINDOW_MINUTES", 10)
    ABUSE_HOARDING_MIN_RESERVATIONS = 5
    ABUSE_HOARDING_MIN_EXPIRED = 3

    # Scheduler / cron trigger secret
    CRON_SECRET = os.getenv("CRON_SECRET")

    # Payment provider webhook
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

    # Password hashing cost
    BCRYPT_ROUNDS = _int_env("BCRYPT_ROUNDS", 12)
    PASSWORD_MIN_LEN = _int_env("PASSWORD_MIN_LEN", 8)

    # Basic app settings
    DEBUG = False


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    CRON_SECRET = "test-cron-secret"
    STRIPE_WEBHOOK_SECRET = "whsec_test"
    # tests drive requests through the client without the CSRF cookie dance
    CSRF_ENABLED = False
    BCRYPT_ROUNDS = 4
