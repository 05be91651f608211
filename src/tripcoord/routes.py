"""Static route data: carriers, their stops, and rider assignments.

Route data is owned by an external system and never changes during a
trip; the coordinator only reads it.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from tripcoord.exceptions import NotFoundError
from tripcoord.models.route import Carrier, Rider


class RouteDirectory(Protocol):
    """Read-only view of carriers and rider assignments."""

    async def get_carrier(self, carrier_id: str) -> Carrier | None: ...

    async def get_rider(self, rider_id: str) -> Rider | None: ...

    async def riders_at_stop(self, carrier_id: str, stop_id: str) -> list[Rider]: ...


class StaticRouteDirectory:
    """:class:`RouteDirectory` over fixed, in-process data."""

    def __init__(self, carriers: Iterable[Carrier] = (), riders: Iterable[Rider] = ()) -> None:
        self._carriers: dict[str, Carrier] = {carrier.carrier_id: carrier for carrier in carriers}
        self._riders: dict[str, Rider] = {}
        for rider in riders:
            carrier = self._carriers.get(rider.carrier_id)
            if carrier is None:
                raise NotFoundError(
                    f"Rider {rider.rider_id} assigned to unknown carrier {rider.carrier_id}",
                    carrier_id=rider.carrier_id,
                    rider_id=rider.rider_id,
                )
            if carrier.stop(rider.stop_id) is None:
                raise NotFoundError(
                    f"Rider {rider.rider_id} assigned to unknown stop {rider.stop_id}",
                    carrier_id=rider.carrier_id,
                    rider_id=rider.rider_id,
                    stop_id=rider.stop_id,
                )
            self._riders[rider.rider_id] = rider

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> StaticRouteDirectory:
        """Build from ``{"carriers": [...], "riders": [...]}`` in wire (camelCase) form."""
        carriers = [Carrier.model_validate(item) for item in data.get("carriers", ())]
        riders = [Rider.model_validate(item) for item in data.get("riders", ())]
        return cls(carriers, riders)

    async def get_carrier(self, carrier_id: str) -> Carrier | None:
        return self._carriers.get(carrier_id)

    async def get_rider(self, rider_id: str) -> Rider | None:
        return self._riders.get(rider_id)

    async def riders_at_stop(self, carrier_id: str, stop_id: str) -> list[Rider]:
        return [r for r in self._riders.values() if r.carrier_id == carrier_id and r.stop_id == stop_id]
