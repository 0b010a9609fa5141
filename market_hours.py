"""Trading-session helpers for the forex lane."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

# datetime.weekday(): Monday == 0 ... Sunday == 6
FRIDAY = 4
SATURDAY = 5
SUNDAY = 6


def is_forex_weekend(
    now: Optional[datetime] = None,
    *,
    close_weekday: int = FRIDAY,
    close_hour: int = 22,
    open_weekday: int = SUNDAY,
    open_hour: int = 22,
) -> bool:
    """Return ``True`` while the interbank market is closed.

    The default window runs from Friday 22:00 UTC to Sunday 22:00 UTC.
    Naive datetimes are treated as UTC.
    """

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    day = now.weekday()
    if day == close_weekday:
        return now.hour >= close_hour
    if day == open_weekday:
        return now.hour < open_hour
    # Days strictly between close and open (wrapping through Sunday).
    span = (open_weekday - close_weekday) % 7
    offset = (day - close_weekday) % 7
    return 0 < offset < span


__all__ = ["is_forex_weekend"]
