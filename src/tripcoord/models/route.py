"""Static route records: positions, stops, carriers and riders."""

from __future__ import annotations

from pydantic import AliasChoices, Field, field_validator

from tripcoord.models._base import TripCoordModel


class GeoPoint(TripCoordModel):
    """A WGS84 position."""

    lat: float = Field(ge=-90.0, le=90.0, validation_alias=AliasChoices("lat", "latitude"))
    lng: float = Field(ge=-180.0, le=180.0, validation_alias=AliasChoices("lng", "lon", "longitude"))


class Stop(TripCoordModel):
    """A fixed waypoint on a carrier's route.

    Parameters
    ----------
    stop_id : str
        Stable identity of the stop.
    name : str
        Display name.
    position : GeoPoint
        Where the stop is.
    scheduled_time : str or None
        Timetable hint ("HH:MM"), display only.
    """

    stop_id: str = Field(min_length=1)
    name: str
    position: GeoPoint
    scheduled_time: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$")


class Carrier(TripCoordModel):
    """A vehicle/route entity with an ordered, immutable list of stops."""

    carrier_id: str = Field(min_length=1)
    label: str | None = None
    stops: tuple[Stop, ...] = Field(min_length=1)
    operator_ids: frozenset[str] = frozenset()

    @field_validator("stops")
    @classmethod
    def _unique_stop_ids(cls, value: tuple[Stop, ...]) -> tuple[Stop, ...]:
        seen: set[str] = set()
        for stop in value:
            if stop.stop_id in seen:
                raise ValueError(f"duplicate stop_id {stop.stop_id!r}")
            seen.add(stop.stop_id)
        return value

    def stop(self, stop_id: str) -> Stop | None:
        for stop in self.stops:
            if stop.stop_id == stop_id:
                return stop
        return None

    def stop_index(self, stop_id: str) -> int | None:
        for index, stop in enumerate(self.stops):
            if stop.stop_id == stop_id:
                return index
        return None

    def may_operate(self, operator_id: str) -> bool:
        """Whether *operator_id* may start trips; an empty roster admits anyone."""
        return not self.operator_ids or operator_id in self.operator_ids


class Rider(TripCoordModel):
    """A party assigned to board a carrier at a specific stop."""

    rider_id: str = Field(min_length=1)
    carrier_id: str
    stop_id: str
    display_name: str | None = None
