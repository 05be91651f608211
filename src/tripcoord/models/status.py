"""Derived, never-stored views."""

from __future__ import annotations

from enum import StrEnum

from pydantic import Field

from tripcoord.exceptions import WaitIneligibility
from tripcoord.models._base import TripCoordModel, UtcDatetime
from tripcoord.models.trip import TripPhase


class StopColor(StrEnum):
    """Operator-facing stop state, highest priority first."""

    GREY = "GREY"
    RED = "RED"
    YELLOW = "YELLOW"
    GREEN = "GREEN"


class DerivedStopStatus(TripCoordModel):
    """Status of one stop, computed on read from trip state, fact counts and time."""

    stop_id: str
    stop_name: str
    color: StopColor
    is_current_stop: bool = False
    elapsed_seconds: int = Field(default=0, ge=0)
    remaining_seconds: int = Field(default=0, ge=0)
    wait_count: int = Field(default=0, ge=0)
    rider_count: int = Field(default=0, ge=0)
    absent_count: int = Field(default=0, ge=0)

    @property
    def all_absent(self) -> bool:
        return self.color == StopColor.GREY


class WaitEligibility(TripCoordModel):
    """Outcome of a wait-request precondition check."""

    allowed: bool
    reason: WaitIneligibility | None = None
    message: str | None = None


class LiveUpdate(TripCoordModel):
    """One push to a live view subscriber.

    ``stops`` only lists the stops of the subscriber's view whose status
    changed since the previous push (all of them on the first push).
    """

    trip_id: str
    phase: TripPhase
    current_stop_id: str | None = None
    ended: bool = False
    generated_at: UtcDatetime
    stops: tuple[DerivedStopStatus, ...] = ()
