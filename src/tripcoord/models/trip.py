"""Trip record and lifecycle phase."""

from __future__ import annotations

from enum import StrEnum

from pydantic import Field, model_validator

from tripcoord.models._base import TripCoordModel, UtcDatetime
from tripcoord.models.route import GeoPoint


class TripPhase(StrEnum):
    IN_TRANSIT = "IN_TRANSIT"
    AT_STOP = "AT_STOP"


class Trip(TripCoordModel):
    """One journey instance of a carrier.

    Mutated only by :class:`tripcoord.coordinator.TripCoordinator`, which
    produces a new record per transition.  Trips are never deleted.

    Parameters
    ----------
    trip_id : str
        Trip identity.
    carrier_id : str
        Carrier running the trip.
    operator_id : str
        Operator who started the trip; the only identity allowed to drive it.
    started_at : datetime
        Start time.
    ended_at : datetime or None
        End time; ``None`` while the trip is live.
    current_stop_id : str or None
        Stop the carrier is at, or the last stop it departed from.
    stop_arrived_at : datetime or None
        Arrival time at ``current_stop_id``; cleared on departure.
    phase : TripPhase
        ``AT_STOP`` exactly when ``stop_arrived_at`` is set.
    position : GeoPoint or None
        Last known position.
    position_at : datetime or None
        Observation time of ``position`` (last-write-wins guard).
    """

    trip_id: str = Field(min_length=1)
    carrier_id: str
    operator_id: str
    started_at: UtcDatetime
    ended_at: UtcDatetime | None = None
    current_stop_id: str | None = None
    stop_arrived_at: UtcDatetime | None = None
    phase: TripPhase = TripPhase.IN_TRANSIT
    position: GeoPoint | None = None
    position_at: UtcDatetime | None = None

    @model_validator(mode="after")
    def _check_stop_invariants(self) -> Trip:
        if self.stop_arrived_at is not None and self.current_stop_id is None:
            raise ValueError("stop_arrived_at requires current_stop_id")
        if (self.phase == TripPhase.AT_STOP) != (self.stop_arrived_at is not None):
            raise ValueError("phase AT_STOP must coincide with a stop arrival time")
        if self.ended_at is not None and (self.current_stop_id is not None or self.phase != TripPhase.IN_TRANSIT):
            raise ValueError("an ended trip has no current stop")
        return self

    @property
    def is_ended(self) -> bool:
        return self.ended_at is not None

    def is_at(self, stop_id: str) -> bool:
        """Whether the carrier is currently stopped at *stop_id*."""
        return self.phase == TripPhase.AT_STOP and self.current_stop_id == stop_id
