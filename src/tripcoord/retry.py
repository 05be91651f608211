"""Bounded exponential backoff for transient store failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tripcoord.exceptions import StoreUnavailableError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delays(attempts: int, base_delay: float, max_delay: float) -> list[float]:
    """Delays slept between *attempts* tries: base, 2*base, 4*base, ... capped."""
    return [min(max_delay, base_delay * (2**index)) for index in range(max(0, attempts - 1))]


async def call_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.2,
    max_delay: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *fn*, retrying only on :class:`StoreUnavailableError`.

    Every other exception propagates immediately.  After the last attempt
    the final ``StoreUnavailableError`` is re-raised.  Callers must re-read
    state afterwards instead of assuming whether a failed write applied.
    """
    delays = backoff_delays(attempts, base_delay, max_delay)
    for attempt, delay in enumerate([*delays, None], start=1):
        try:
            return await fn()
        except StoreUnavailableError:
            if delay is None:
                raise
            _logger.warning("Store unavailable (attempt %d/%d); retrying in %.2fs", attempt, attempts, delay)
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
