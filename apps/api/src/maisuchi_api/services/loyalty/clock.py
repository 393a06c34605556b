"""Time helpers shared by the loyalty components."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from maisuchi_api.models.loyalty import utcnow

Clock = Callable[[], datetime]


def ensure_aware(value: datetime) -> datetime:
    """Treat naive values (SQLite round-trips) as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_clock(clock: Clock | None) -> Clock:
    """Default to wall-clock UTC; injected clocks are normalized to UTC."""

    if clock is None:
        return utcnow
    return lambda: ensure_aware(clock())
