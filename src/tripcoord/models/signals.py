"""Atomic rider facts.

Both signals are keyed by ``(trip_id, rider_id)`` so concurrent writers
for different riders never touch the same record.
"""

from __future__ import annotations

from pydantic import Field

from tripcoord.models._base import TripCoordModel, UtcDatetime


class WaitSignal(TripCoordModel):
    """A rider asked the operator for extra time at a stop.

    At most one per ``(trip_id, rider_id)``; a newer signal overwrites.
    """

    trip_id: str
    rider_id: str = Field(min_length=1)
    stop_id: str
    signaled_at: UtcDatetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.trip_id, self.rider_id)


class AbsenceSignal(TripCoordModel):
    """A rider will not board on this trip.  Permanent once written."""

    trip_id: str
    rider_id: str = Field(min_length=1)
    stop_id: str
    marked_at: UtcDatetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.trip_id, self.rider_id)
