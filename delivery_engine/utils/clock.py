"""Time helpers. All engine timestamps are timezone-aware UTC."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes coming from the store as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def next_utc_midnight(now: datetime) -> datetime:
    """The day boundary at which per-destination daily counters reset."""
    now = ensure_utc(now)
    return now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
