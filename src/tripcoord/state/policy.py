"""Deterministic last-write-wins policy.

Within one key, writes are ordered by the timestamp the writer observed,
not by arrival order, so a delayed retry can never roll a record back.
"""

from __future__ import annotations

from datetime import datetime


def should_accept_write(
    *,
    cached_at: datetime | None,
    incoming_at: datetime | None,
) -> bool:
    """Decide whether an incoming timestamped write replaces the cached one.

    Policy:
    - nothing cached: accept.
    - incoming carries no timestamp: accept (arrival order is all we have).
    - both timestamped: accept unless the incoming write is strictly older.
    """
    if cached_at is None or incoming_at is None:
        return True
    return incoming_at >= cached_at
