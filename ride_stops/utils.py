"""General utility helpers shared across modules."""

from __future__ import annotations

from datetime import datetime, timezone


def format_duration(seconds: float) -> str:
    """Format seconds as ``45s``, ``2m 5s`` or ``1h 5m``, dropping zero tails."""

    total = max(0, int(seconds))
    if total < 60:
        return f"{total}s"
    if total < 3600:
        mins, sec = divmod(total, 60)
        return f"{mins}m" if sec == 0 else f"{mins}m {sec}s"
    hours, rem = divmod(total, 3600)
    mins = rem // 60
    return f"{hours}h" if mins == 0 else f"{hours}h {mins}m"


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""

    return datetime.now(timezone.utc)


def to_utc_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_seconds(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds()
