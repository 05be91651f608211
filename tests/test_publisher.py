from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from tripcoord.config import CoordinatorConfig
from tripcoord.coordinator import TripCoordinator
from tripcoord.exceptions import TripEndedError, UnauthorizedError
from tripcoord.models.identity import Actor
from tripcoord.models.route import Rider
from tripcoord.models.status import LiveUpdate, StopColor
from tripcoord.models.trip import Trip, TripPhase
from tripcoord.publisher import LiveViewPublisher, Subscription
from tripcoord.routes import StaticRouteDirectory
from tripcoord.state.store import InMemoryFactStore, StopFactCounts

RIDER_A = Actor.rider("rider_a")
RIDER_B = Actor.rider("rider_b")
RIDER_C = Actor.rider("rider_c")


async def _next(subscription: Subscription, timeout: float = 1.0) -> LiveUpdate | None:
    return await asyncio.wait_for(subscription.next(), timeout)


async def _until(
    subscription: Subscription,
    predicate: Callable[[LiveUpdate], bool],
    timeout: float = 1.0,
) -> LiveUpdate:
    async def _scan() -> LiveUpdate:
        while True:
            update = await subscription.next()
            assert update is not None, "subscription finished early"
            if predicate(update):
                return update

    return await asyncio.wait_for(_scan(), timeout)


async def _assert_quiet(subscription: Subscription, window: float = 0.1) -> None:
    with pytest.raises(TimeoutError):
        await asyncio.wait_for(subscription.next(), window)


def _stop(update: LiveUpdate, stop_id: str):
    return next(s for s in update.stops if s.stop_id == stop_id)


async def _start(coordinator: TripCoordinator, operator: Actor) -> Trip:
    return await coordinator.start_trip(operator, "bus_1")


class _FlakyFacts(InMemoryFactStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def counts_at_stop(self, trip_id: str, stop_id: str) -> StopFactCounts:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("fact store offline")
        return await super().counts_at_stop(trip_id, stop_id)


class _ControlledRoutes(StaticRouteDirectory):
    """Route directory whose next rider lookup can be held, and whose stop lookups can fail."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.hold_next_rider = False
        self.held = asyncio.Event()
        self.release = asyncio.Event()
        self.stop_errors: list[Exception] = []

    async def get_rider(self, rider_id: str) -> Rider | None:
        if self.hold_next_rider:
            self.hold_next_rider = False
            self.held.set()
            await self.release.wait()
        return await super().get_rider(rider_id)

    async def riders_at_stop(self, carrier_id: str, stop_id: str) -> list[Rider]:
        if self.stop_errors:
            raise self.stop_errors.pop(0)
        return await super().riders_at_stop(carrier_id, stop_id)


@pytest.fixture
def controlled(trip_store, fact_store, carrier, riders, config, clock) -> tuple[TripCoordinator, _ControlledRoutes]:
    routes = _ControlledRoutes([carrier], riders)
    return TripCoordinator(trip_store, fact_store, routes, config=config, clock=clock), routes


@pytest.mark.asyncio
async def test_operator_snapshot_covers_every_stop(coordinator, operator) -> None:
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)

    async with await publisher.subscribe(operator, trip.trip_id) as subscription:
        snapshot = await _next(subscription)

        assert snapshot is not None
        assert snapshot.trip_id == trip.trip_id
        assert snapshot.phase == TripPhase.IN_TRANSIT
        assert [s.stop_id for s in snapshot.stops] == ["stop_1", "stop_2", "stop_3"]
        assert {s.color for s in snapshot.stops} == {StopColor.GREEN}


@pytest.mark.asyncio
async def test_rider_view_is_own_stop_only(coordinator, operator) -> None:
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)

    async with await publisher.subscribe(RIDER_B, trip.trip_id) as subscription:
        snapshot = await _next(subscription)
        assert snapshot is not None
        assert [s.stop_id for s in snapshot.stops] == ["stop_2"]

        await coordinator.arrive_at_stop(operator, trip.trip_id, "stop_1")
        await _assert_quiet(subscription)

        await coordinator.arrive_at_stop(operator, trip.trip_id, "stop_2")
        update = await _next(subscription)
        assert update is not None
        assert [s.stop_id for s in update.stops] == ["stop_2"]
        assert update.stops[0].color == StopColor.RED


@pytest.mark.asyncio
async def test_trip_change_pushes_only_changed_stops(coordinator, operator) -> None:
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)

    async with await publisher.subscribe(operator, trip.trip_id) as subscription:
        await _next(subscription)
        await coordinator.arrive_at_stop(operator, trip.trip_id, "stop_1")

        update = await _next(subscription)

        assert update is not None
        assert update.phase == TripPhase.AT_STOP
        assert update.current_stop_id == "stop_1"
        assert [s.stop_id for s in update.stops] == ["stop_1"]
        assert update.stops[0].color == StopColor.RED
        assert update.stops[0].is_current_stop is True


@pytest.mark.asyncio
async def test_tick_advances_countdown_without_writes(coordinator, operator, clock) -> None:
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)
    await coordinator.arrive_at_stop(operator, trip.trip_id, "stop_1")

    async with await publisher.subscribe(operator, trip.trip_id) as subscription:
        snapshot = await _next(subscription)
        assert snapshot is not None
        assert _stop(snapshot, "stop_1").remaining_seconds == 300

        clock.advance(5)
        update = await _until(subscription, lambda u: any(s.elapsed_seconds == 5 for s in u.stops))
        assert _stop(update, "stop_1").remaining_seconds == 295

        clock.advance(300)
        update = await _until(subscription, lambda u: any(s.stop_id == "stop_1" for s in u.stops))
        assert _stop(update, "stop_1").color == StopColor.GREEN


@pytest.mark.asyncio
async def test_burst_of_signals_is_coalesced(coordinator, operator) -> None:
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)

    async with await publisher.subscribe(operator, trip.trip_id) as subscription:
        await _next(subscription)

        await coordinator.mark_absent(RIDER_B, trip.trip_id, "rider_b", "stop_2")
        await coordinator.mark_absent(RIDER_C, trip.trip_id, "rider_c", "stop_2")
        await coordinator.mark_absent(RIDER_A, trip.trip_id, "rider_a", "stop_1")

        update = await _next(subscription)
        assert update is not None
        assert _stop(update, "stop_2").absent_count == 2
        assert _stop(update, "stop_1").absent_count == 1
        await _assert_quiet(subscription)


@pytest.mark.asyncio
async def test_subscribers_receive_independent_views(coordinator, operator, clock) -> None:
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)
    await coordinator.arrive_at_stop(operator, trip.trip_id, "stop_1")

    async with (
        await publisher.subscribe(operator, trip.trip_id) as operator_feed,
        await publisher.subscribe(RIDER_A, trip.trip_id) as rider_feed,
    ):
        await _next(operator_feed)
        await _next(rider_feed)
        assert publisher.feed_count() == 1
        assert publisher.subscriber_count(trip.trip_id) == 2

        clock.advance(310)
        await coordinator.request_wait(RIDER_A, trip.trip_id, "rider_a", "stop_1")

        for feed in (operator_feed, rider_feed):
            update = await _until(feed, lambda u: any(s.wait_count == 1 for s in u.stops))
            assert _stop(update, "stop_1").color == StopColor.YELLOW


@pytest.mark.asyncio
async def test_last_close_tears_down_feed(coordinator, operator, trip_store, fact_store) -> None:
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)

    first = await publisher.subscribe(operator, trip.trip_id)
    second = await publisher.subscribe(RIDER_A, trip.trip_id)
    assert trip_store.listener_count(trip.trip_id) == 1
    assert fact_store.listener_count(trip.trip_id) == 1

    await first.close()
    assert publisher.feed_count() == 1
    await second.close()
    await second.close()

    assert publisher.feed_count() == 0
    assert trip_store.listener_count(trip.trip_id) == 0
    assert fact_store.listener_count(trip.trip_id) == 0
    await _next(second)
    assert await second.next() is None
    assert second.closed


@pytest.mark.asyncio
async def test_trip_end_sends_final_update_and_closes(coordinator, operator, trip_store) -> None:
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)
    await coordinator.arrive_at_stop(operator, trip.trip_id, "stop_1")
    subscription = await publisher.subscribe(RIDER_B, trip.trip_id)
    await _next(subscription)

    await coordinator.end_trip(operator, trip.trip_id)

    received = [update async for update in subscription]
    assert received[-1].ended is True
    await asyncio.sleep(0)
    assert publisher.feed_count() == 0
    assert trip_store.listener_count(trip.trip_id) == 0
    await subscription.close()


@pytest.mark.asyncio
async def test_subscribe_rejections(coordinator, operator) -> None:
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)

    with pytest.raises(UnauthorizedError):
        await publisher.subscribe(Actor.operator("driver_2"), trip.trip_id)
    with pytest.raises(UnauthorizedError):
        await publisher.subscribe(Actor.rider("rider_z"), trip.trip_id)
    assert publisher.feed_count() == 0

    await coordinator.end_trip(operator, trip.trip_id)
    with pytest.raises(TripEndedError):
        await publisher.subscribe(operator, trip.trip_id)


@pytest.mark.asyncio
async def test_slow_subscriber_keeps_newest_update(trip_store, fact_store, routes, clock, operator) -> None:
    config = CoordinatorConfig(tick_interval=0.01, coalesce_delay=0.0, subscriber_queue_size=1)
    coordinator = TripCoordinator(trip_store, fact_store, routes, config=config, clock=clock)
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)

    async with await publisher.subscribe(operator, trip.trip_id) as subscription:
        await coordinator.arrive_at_stop(operator, trip.trip_id, "stop_1")
        await asyncio.sleep(0.05)

        update = await _next(subscription)

        assert subscription.dropped == 1
        assert update is not None
        assert update.phase == TripPhase.AT_STOP


@pytest.mark.asyncio
async def test_store_outage_during_refresh_is_retried(trip_store, routes, config, clock, operator) -> None:
    facts = _FlakyFacts(failures=0)
    coordinator = TripCoordinator(trip_store, facts, routes, config=config, clock=clock)
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)

    async with await publisher.subscribe(operator, trip.trip_id) as subscription:
        await _next(subscription)
        facts.failures = 2
        await coordinator.arrive_at_stop(operator, trip.trip_id, "stop_2")

        update = await _next(subscription)

        assert update is not None
        assert _stop(update, "stop_2").color == StopColor.RED
        assert facts.failures == 0


@pytest.mark.asyncio
async def test_publisher_close_finishes_subscriptions(coordinator, operator) -> None:
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)
    subscription = await publisher.subscribe(operator, trip.trip_id)

    await publisher.close()

    assert await _next(subscription) is not None
    assert await _next(subscription) is None
    assert publisher.feed_count() == 0


@pytest.mark.asyncio
async def test_arrival_while_subscribing_is_in_first_view(controlled, operator) -> None:
    coordinator, routes = controlled
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)

    routes.hold_next_rider = True
    pending = asyncio.create_task(publisher.subscribe(RIDER_A, trip.trip_id))
    await asyncio.wait_for(routes.held.wait(), 1.0)
    await coordinator.arrive_at_stop(operator, trip.trip_id, "stop_1")
    routes.release.set()

    async with await pending as subscription:
        update = await _until(subscription, lambda u: u.phase == TripPhase.AT_STOP)
        assert update.current_stop_id == "stop_1"
        assert _stop(update, "stop_1").color == StopColor.RED


@pytest.mark.asyncio
async def test_trip_ending_while_subscribing_is_rejected(controlled, operator, trip_store, fact_store) -> None:
    coordinator, routes = controlled
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)

    routes.hold_next_rider = True
    pending = asyncio.create_task(publisher.subscribe(RIDER_A, trip.trip_id))
    await asyncio.wait_for(routes.held.wait(), 1.0)
    await coordinator.end_trip(operator, trip.trip_id)
    routes.release.set()

    with pytest.raises(TripEndedError):
        await pending
    assert publisher.feed_count() == 0
    assert trip_store.listener_count(trip.trip_id) == 0
    assert fact_store.listener_count(trip.trip_id) == 0


@pytest.mark.asyncio
async def test_route_directory_outage_during_refresh_is_retried(controlled, operator) -> None:
    coordinator, routes = controlled
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)

    async with await publisher.subscribe(operator, trip.trip_id) as subscription:
        await _next(subscription)
        routes.stop_errors.append(ConnectionError("route store offline"))
        await coordinator.arrive_at_stop(operator, trip.trip_id, "stop_1")

        update = await _until(subscription, lambda u: u.phase == TripPhase.AT_STOP)

        assert _stop(update, "stop_1").color == StopColor.RED
        assert routes.stop_errors == []


@pytest.mark.asyncio
async def test_failed_feed_finishes_its_subscriptions(controlled, operator, trip_store, fact_store) -> None:
    coordinator, routes = controlled
    publisher = LiveViewPublisher(coordinator)
    trip = await _start(coordinator, operator)
    subscription = await publisher.subscribe(operator, trip.trip_id)
    await _next(subscription)

    routes.stop_errors.append(RuntimeError("directory bug"))
    await coordinator.arrive_at_stop(operator, trip.trip_id, "stop_1")

    assert await _next(subscription) is None
    assert publisher.feed_count() == 0
    assert trip_store.listener_count(trip.trip_id) == 0
    assert fact_store.listener_count(trip.trip_id) == 0
