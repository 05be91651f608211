"""Custom exception hierarchy for tripcoord.

Validation errors are terminal for the call that raised them.
:class:`StoreUnavailableError` is the only retryable class.
"""

from __future__ import annotations

from enum import StrEnum
from typing import ClassVar


class TripCoordError(Exception):
    """Base exception for all tripcoord errors."""

    kind: ClassVar[str] = "error"
    retryable: ClassVar[bool] = False

    def __init__(
        self,
        message: str,
        *,
        trip_id: str | None = None,
        carrier_id: str | None = None,
        rider_id: str | None = None,
        stop_id: str | None = None,
    ) -> None:
        self.trip_id = trip_id
        self.carrier_id = carrier_id
        self.rider_id = rider_id
        self.stop_id = stop_id
        super().__init__(message)


class ConfigError(TripCoordError):
    """Invalid or missing configuration."""

    kind = "config"


class NotFoundError(TripCoordError):
    """Unknown trip, carrier, stop or rider."""

    kind = "not_found"


class AlreadyActiveError(TripCoordError):
    """The carrier already has a trip that has not ended."""

    kind = "already_active"


class TripEndedError(TripCoordError):
    """The trip has ended; it cannot be mutated any more."""

    kind = "trip_ended"


class NotAtStopError(TripCoordError):
    """Departure requested while the carrier is in transit."""

    kind = "not_at_stop"


class AlreadyAbsentError(TripCoordError):
    """The rider has marked absence for this trip."""

    kind = "already_absent"


class WaitIneligibility(StrEnum):
    """Which precondition of a wait request failed."""

    TRIP_ENDED = "trip_ended"
    NOT_ASSIGNED_STOP = "not_assigned_stop"
    NOT_AT_STOP = "not_at_stop"
    NOT_CURRENT_STOP = "not_current_stop"
    WINDOW_CLOSED = "window_closed"
    ABSENT = "absent"


class NotEligibleError(TripCoordError):
    """A rider signal was rejected by an eligibility rule.

    ``reason`` names the failed precondition so clients can tell
    "the carrier isn't at your stop yet" from "the window has closed"
    without re-deriving eligibility themselves.
    """

    kind = "not_eligible"

    def __init__(self, message: str, *, reason: WaitIneligibility, **context: str | None) -> None:
        self.reason = reason
        super().__init__(message, **context)


class UnauthorizedError(TripCoordError):
    """Caller has the wrong role or identity for the operation."""

    kind = "unauthorized"


class StoreUnavailableError(TripCoordError):
    """Transient failure of a backing store.

    Callers should retry with bounded backoff and re-read state before
    assuming the write did or did not apply.
    """

    kind = "store_unavailable"
    retryable = True
