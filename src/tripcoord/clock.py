"""Time source and elapsed-time helpers.

All timestamps handled by tripcoord are timezone-aware UTC datetimes.
Components take a ``clock`` callable so tests can drive time by hand.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def elapsed_seconds(since: datetime | None, now: datetime) -> int:
    """Whole seconds between *since* and *now*.

    Returns ``0`` when *since* is ``None``.  A *since* in the future (clock
    skew between writer and reader) also yields ``0``.
    """
    if since is None:
        return 0
    delta = (ensure_aware(now) - ensure_aware(since)).total_seconds()
    if delta <= 0:
        return 0
    return math.floor(delta)


def format_elapsed(seconds: int) -> str:
    """Render a countdown/elapsed value as ``m:ss``."""
    seconds = max(0, int(seconds))
    minutes, secs = divmod(seconds, 60)
    return f"{minutes}:{secs:02d}"


def epoch_millis(value: datetime) -> int:
    return int(ensure_aware(value).timestamp() * 1000)
