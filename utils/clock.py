from datetime import datetime, timezone


def utcnow() -> datetime:
    # Naive UTC, matching the DateTime columns (SQLite has no tz support)
    return datetime.now(timezone.utc).replace(tzinfo=None)
