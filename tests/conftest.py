from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tripcoord.config import CoordinatorConfig
from tripcoord.coordinator import TripCoordinator
from tripcoord.models.identity import Actor
from tripcoord.models.route import Carrier, GeoPoint, Rider, Stop
from tripcoord.routes import StaticRouteDirectory
from tripcoord.state.store import InMemoryFactStore, InMemoryTripStore

T0 = datetime(2026, 3, 2, 7, 30, tzinfo=UTC)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _stop(stop_id: str, lat: float) -> Stop:
    return Stop(stop_id=stop_id, name=stop_id.replace("_", " ").title(), position=GeoPoint(lat=lat, lng=4.9))


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def carrier() -> Carrier:
    return Carrier(
        carrier_id="bus_1",
        label="Route 1",
        stops=(_stop("stop_1", 52.10), _stop("stop_2", 52.20), _stop("stop_3", 52.30)),
        operator_ids=frozenset({"driver_1", "driver_2"}),
    )


@pytest.fixture
def riders() -> list[Rider]:
    return [
        Rider(rider_id="rider_a", carrier_id="bus_1", stop_id="stop_1"),
        Rider(rider_id="rider_b", carrier_id="bus_1", stop_id="stop_2"),
        Rider(rider_id="rider_c", carrier_id="bus_1", stop_id="stop_2"),
    ]


@pytest.fixture
def routes(carrier: Carrier, riders: list[Rider]) -> StaticRouteDirectory:
    other = Carrier(carrier_id="bus_2", stops=(_stop("stop_9", 51.0),))
    return StaticRouteDirectory(
        [carrier, other],
        [*riders, Rider(rider_id="rider_z", carrier_id="bus_2", stop_id="stop_9")],
    )


@pytest.fixture
def trip_store() -> InMemoryTripStore:
    return InMemoryTripStore()


@pytest.fixture
def fact_store() -> InMemoryFactStore:
    return InMemoryFactStore()


@pytest.fixture
def config() -> CoordinatorConfig:
    return CoordinatorConfig(tick_interval=0.01, coalesce_delay=0.0, retry_base_delay=0.0, retry_max_delay=0.0)


@pytest.fixture
def coordinator(
    trip_store: InMemoryTripStore,
    fact_store: InMemoryFactStore,
    routes: StaticRouteDirectory,
    config: CoordinatorConfig,
    clock: ManualClock,
) -> TripCoordinator:
    return TripCoordinator(trip_store, fact_store, routes, config=config, clock=clock)


@pytest.fixture
def operator() -> Actor:
    return Actor.operator("driver_1")
