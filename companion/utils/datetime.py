"""UTC datetime utilities used across the package."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def epoch_now() -> float:
    """Return the current time as POSIX seconds; the default clock for stateful components."""
    return time.time()


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Coerce a datetime to UTC, attaching tzinfo when missing."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def from_epoch(seconds: float) -> datetime:
    """Convert POSIX seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(float(seconds), tz=timezone.utc)


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    """Return an ISO 8601 string in UTC with a trailing 'Z'."""
    coerced = ensure_utc(value)
    if coerced is None:
        return None
    return coerced.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def isoformat_epoch(seconds: Optional[float]) -> Optional[str]:
    """ISO 8601 rendering of POSIX seconds, ``None`` passes through."""
    if seconds is None:
        return None
    return isoformat_utc(from_epoch(seconds))


def isoformat_utc_now() -> str:
    """Convenience helper to return the current UTC time as an ISO string."""
    # isoformat_utc never returns None when provided a datetime
    return isoformat_utc(utc_now())  # type: ignore[return-value]
