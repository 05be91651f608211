#!/usr/bin/env python3
"""Drive one trip through the demo route and print the operator's live feed.

Time is simulated: the script advances a manual clock instead of
sleeping, so a full run takes a few seconds.  Along the way one rider
asks the operator to wait and both riders of one stop mark themselves
absent, which shows every stop colour.

Usage
-----
::

    python scripts/simulate_trip.py
    python scripts/simulate_trip.py --routes routes.json --carrier bus_1 --operator driver_1
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from tripcoord import (  # noqa: E402
    Actor,
    CoordinatorConfig,
    InMemoryFactStore,
    InMemoryTripStore,
    LiveUpdate,
    LiveViewPublisher,
    StaticRouteDirectory,
    Subscription,
    TripCoordError,
    TripCoordinator,
    format_elapsed,
)

_DEFAULT_ROUTES = Path(__file__).resolve().parent / "demo_routes.json"


class _SimClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 5, 7, 30, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _render(update: LiveUpdate) -> str:
    where = update.current_stop_id or "-"
    header = f"[{update.generated_at:%H:%M:%S}] {update.phase.value:<10} at {where}"
    if update.ended:
        header += " (ended)"
    lines = [header]
    for stop in update.stops:
        countdown = f" {format_elapsed(stop.remaining_seconds)} left" if stop.remaining_seconds else ""
        lines.append(
            f"    {stop.stop_id:<8} {stop.color.value:<6}"
            f" riders={stop.rider_count} waiting={stop.wait_count} absent={stop.absent_count}{countdown}"
        )
    return "\n".join(lines)


async def _print_feed(subscription: Subscription) -> None:
    async for update in subscription:
        print(_render(update), flush=True)


async def _settle(config: CoordinatorConfig) -> None:
    # Give the feed one coalescing window plus a tick to push.
    await asyncio.sleep(config.coalesce_delay + config.tick_interval)


async def simulate(routes: StaticRouteDirectory, carrier_id: str, operator_id: str) -> None:
    clock = _SimClock()
    config = CoordinatorConfig(tick_interval=0.2, coalesce_delay=0.05)
    coordinator = TripCoordinator(InMemoryTripStore(), InMemoryFactStore(), routes, config=config, clock=clock)
    publisher = LiveViewPublisher(coordinator)
    operator = Actor.operator(operator_id)

    carrier = await routes.get_carrier(carrier_id)
    if carrier is None:
        raise SystemExit(f"unknown carrier {carrier_id!r}")

    trip = await coordinator.start_trip(operator, carrier_id, carrier.stops[0].position)
    subscription = await publisher.subscribe(operator, trip.trip_id)
    printer = asyncio.create_task(_print_feed(subscription))

    for index, stop in enumerate(carrier.stops):
        await coordinator.update_position(operator, trip.trip_id, stop.position)
        await coordinator.arrive_at_stop(operator, trip.trip_id, stop.stop_id)
        await _settle(config)

        riders = await routes.riders_at_stop(carrier_id, stop.stop_id)
        if index % 2 == 1:
            # Everybody at odd stops stays home.
            for rider in riders:
                await coordinator.mark_absent(Actor.rider(rider.rider_id), trip.trip_id, rider.rider_id, stop.stop_id)
        elif riders:
            clock.advance(200)
            await _settle(config)
            rider = riders[0]
            try:
                await coordinator.request_wait(Actor.rider(rider.rider_id), trip.trip_id, rider.rider_id, stop.stop_id)
            except TripCoordError as exc:
                logging.getLogger(__name__).warning("wait request refused: %s", exc)
            clock.advance(150)
        await _settle(config)

        await coordinator.depart_stop(operator, trip.trip_id)
        clock.advance(240)
        await _settle(config)

    await coordinator.end_trip(operator, trip.trip_id)
    await printer
    await publisher.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Simulate a trip and print the operator live feed.")
    parser.add_argument("--routes", type=Path, default=_DEFAULT_ROUTES, help="route data JSON file")
    parser.add_argument("--carrier", default="bus_1", help="carrier to run")
    parser.add_argument("--operator", default="driver_1", help="operator identity")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    routes = StaticRouteDirectory.from_mapping(json.loads(args.routes.read_text(encoding="utf-8")))
    asyncio.run(simulate(routes, args.carrier, args.operator))


if __name__ == "__main__":
    main()
