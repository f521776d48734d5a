from __future__ import annotations

import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    # Timestamps are stored as "UTC-naive" datetimes (tzinfo stripped) for simplicity with
    # SQLite + SQLAlchemy. Treat any tz-naive timestamp emitted by the app as UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def now_epoch_ms() -> int:
    return int(time.time() * 1000)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_rfc3339(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return to_utc_naive(parsed) if parsed.tzinfo else parsed
