"""Trip lifecycle and rider signal operations."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any, TypeVar

from tripcoord.clock import Clock, elapsed_seconds, epoch_millis, utcnow
from tripcoord.config import CoordinatorConfig
from tripcoord.derive import build_stop_status
from tripcoord.derive import has_passed_stop as _has_passed_stop
from tripcoord.exceptions import (
    AlreadyAbsentError,
    NotAtStopError,
    NotEligibleError,
    NotFoundError,
    StoreUnavailableError,
    TripEndedError,
    UnauthorizedError,
    WaitIneligibility,
)
from tripcoord.models.identity import Actor, Role
from tripcoord.models.route import Carrier, GeoPoint, Rider
from tripcoord.models.signals import AbsenceSignal, WaitSignal
from tripcoord.models.status import DerivedStopStatus, WaitEligibility
from tripcoord.models.trip import Trip, TripPhase
from tripcoord.routes import RouteDirectory
from tripcoord.state.policy import should_accept_write
from tripcoord.state.store import FactStore, TripStore

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_INELIGIBLE_MESSAGES: dict[WaitIneligibility, str] = {
    WaitIneligibility.ABSENT: "You have marked yourself as absent for this trip",
    WaitIneligibility.TRIP_ENDED: "The trip has ended",
    WaitIneligibility.NOT_ASSIGNED_STOP: "That is not your stop",
    WaitIneligibility.NOT_AT_STOP: "The carrier is not at a stop",
    WaitIneligibility.NOT_CURRENT_STOP: "The carrier is not at your stop yet",
    WaitIneligibility.WINDOW_CLOSED: "The wait request window has closed",
}


def generate_trip_id(carrier_id: str, now: datetime) -> str:
    """``trip_{carrier}_{YYYY_MM_DD}_{epoch_ms}``; unique per start even on the same day."""
    return f"trip_{carrier_id}_{now:%Y_%m_%d}_{epoch_millis(now)}"


def _evolve(trip: Trip, **changes: Any) -> Trip:
    """Copy *trip* with *changes*, re-running model validation."""
    return Trip.model_validate({**trip.model_dump(), **changes})


async def _store_call(awaitable: Awaitable[T]) -> T:
    """Await a store or route directory call, mapping I/O failures to ``StoreUnavailableError``."""
    try:
        return await awaitable
    except (OSError, TimeoutError) as exc:
        raise StoreUnavailableError(f"Store call failed: {exc}") from exc


class TripCoordinator:
    """Enforces trip invariants and rider signal rules.

    Every mutating operation takes the calling :class:`Actor` first and
    raises :class:`UnauthorizedError` when its role or identity does not
    fit.  Return values are the stored records, which callers should treat
    as the source of truth.

    Usage::

        coordinator = TripCoordinator(InMemoryTripStore(), InMemoryFactStore(), directory)
        trip = await coordinator.start_trip(Actor.operator("op-1"), "bus_1", GeoPoint(lat=0, lng=0))
        await coordinator.arrive_at_stop(Actor.operator("op-1"), trip.trip_id, "stop_1")
    """

    def __init__(
        self,
        trips: TripStore,
        facts: FactStore,
        routes: RouteDirectory,
        *,
        config: CoordinatorConfig | None = None,
        clock: Clock = utcnow,
        trip_id_factory: Callable[[str, datetime], str] = generate_trip_id,
    ) -> None:
        self._trips = trips
        self._facts = facts
        self._routes = routes
        self._config = config or CoordinatorConfig()
        self._clock = clock
        self._trip_id_factory = trip_id_factory

    @property
    def trips(self) -> TripStore:
        return self._trips

    @property
    def facts(self) -> FactStore:
        return self._facts

    @property
    def routes(self) -> RouteDirectory:
        return self._routes

    @property
    def config(self) -> CoordinatorConfig:
        return self._config

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Lookups and capability checks
    # ------------------------------------------------------------------

    async def _require_trip(self, trip_id: str) -> Trip:
        trip = await _store_call(self._trips.get(trip_id))
        if trip is None:
            raise NotFoundError(f"Unknown trip {trip_id}", trip_id=trip_id)
        return trip

    async def _require_carrier(self, carrier_id: str) -> Carrier:
        carrier = await _store_call(self._routes.get_carrier(carrier_id))
        if carrier is None:
            raise NotFoundError(f"Unknown carrier {carrier_id}", carrier_id=carrier_id)
        return carrier

    @staticmethod
    def _require_operator(actor: Actor, trip: Trip | None = None) -> None:
        if actor.role != Role.OPERATOR:
            raise UnauthorizedError(f"{actor.identity} is not an operator")
        if trip is not None and actor.identity != trip.operator_id:
            raise UnauthorizedError(
                f"{actor.identity} does not operate trip {trip.trip_id}",
                trip_id=trip.trip_id,
                carrier_id=trip.carrier_id,
            )

    async def _require_rider(self, actor: Actor, rider_id: str, trip: Trip) -> Rider:
        if actor.role != Role.RIDER or actor.identity != rider_id:
            raise UnauthorizedError(
                f"{actor.identity} may not act for rider {rider_id}",
                trip_id=trip.trip_id,
                rider_id=rider_id,
            )
        rider = await self.find_rider(rider_id)
        if rider is None:
            raise NotFoundError(f"Unknown rider {rider_id}", rider_id=rider_id)
        if rider.carrier_id != trip.carrier_id:
            raise UnauthorizedError(
                f"Rider {rider_id} does not ride carrier {trip.carrier_id}",
                trip_id=trip.trip_id,
                carrier_id=trip.carrier_id,
                rider_id=rider_id,
            )
        return rider

    # ------------------------------------------------------------------
    # Operator operations
    # ------------------------------------------------------------------

    async def start_trip(self, actor: Actor, carrier_id: str, initial_position: GeoPoint | None = None) -> Trip:
        """Start a trip; fails with ``AlreadyActiveError`` if one is live."""
        self._require_operator(actor)
        carrier = await self._require_carrier(carrier_id)
        if not carrier.may_operate(actor.identity):
            raise UnauthorizedError(
                f"{actor.identity} may not operate carrier {carrier_id}",
                carrier_id=carrier_id,
            )
        now = self._clock()
        trip = Trip(
            trip_id=self._trip_id_factory(carrier_id, now),
            carrier_id=carrier_id,
            operator_id=actor.identity,
            started_at=now,
            position=initial_position,
            position_at=now if initial_position is not None else None,
        )
        created = await _store_call(self._trips.create(trip))
        _logger.info("Trip %s started for carrier %s by %s", created.trip_id, carrier_id, actor.identity)
        return created

    async def update_position(
        self,
        actor: Actor,
        trip_id: str,
        position: GeoPoint,
        observed_at: datetime | None = None,
    ) -> Trip:
        """Record the carrier position (last-write-wins).

        No-op on an ended trip; a fix older than the stored one is dropped.
        Neither case raises.  An *observed_at* in the future is clamped
        to now.
        """
        trip = await self._require_trip(trip_id)
        self._require_operator(actor, trip)
        now = self._clock()
        observed = min(observed_at, now) if observed_at is not None else now

        def _apply(current: Trip) -> Trip | None:
            if current.is_ended:
                return None
            if not should_accept_write(cached_at=current.position_at, incoming_at=observed):
                return None
            return _evolve(current, position=position, position_at=observed)

        return await _store_call(self._trips.mutate(trip_id, _apply))

    async def arrive_at_stop(self, actor: Actor, trip_id: str, stop_id: str) -> Trip:
        """Mark arrival at *stop_id*.

        Re-arriving at the stop the carrier is already at keeps the
        original arrival time; any other arrival restarts the clock.
        """
        trip = await self._require_trip(trip_id)
        self._require_operator(actor, trip)
        carrier = await self._require_carrier(trip.carrier_id)
        if carrier.stop(stop_id) is None:
            raise NotFoundError(
                f"Stop {stop_id} is not on carrier {trip.carrier_id}'s route",
                trip_id=trip_id,
                carrier_id=trip.carrier_id,
                stop_id=stop_id,
            )
        now = self._clock()

        def _apply(current: Trip) -> Trip | None:
            if current.is_ended:
                raise TripEndedError(f"Trip {trip_id} has ended", trip_id=trip_id, stop_id=stop_id)
            if current.is_at(stop_id):
                return None
            return _evolve(
                current,
                phase=TripPhase.AT_STOP,
                current_stop_id=stop_id,
                stop_arrived_at=now,
            )

        updated = await _store_call(self._trips.mutate(trip_id, _apply))
        _logger.debug("Trip %s at stop %s since %s", trip_id, stop_id, updated.stop_arrived_at)
        return updated

    async def depart_stop(self, actor: Actor, trip_id: str) -> Trip:
        """Leave the current stop; its id is kept for display."""
        trip = await self._require_trip(trip_id)
        self._require_operator(actor, trip)

        def _apply(current: Trip) -> Trip:
            if current.is_ended:
                raise TripEndedError(f"Trip {trip_id} has ended", trip_id=trip_id)
            if current.phase != TripPhase.AT_STOP:
                raise NotAtStopError(f"Trip {trip_id} is not at a stop", trip_id=trip_id)
            return _evolve(current, phase=TripPhase.IN_TRANSIT, stop_arrived_at=None)

        updated = await _store_call(self._trips.mutate(trip_id, _apply))
        _logger.debug("Trip %s departed stop %s", trip_id, updated.current_stop_id)
        return updated

    async def end_trip(self, actor: Actor, trip_id: str) -> Trip:
        """End the trip.  Terminal: a new trip must be started afterwards."""
        trip = await self._require_trip(trip_id)
        self._require_operator(actor, trip)
        now = self._clock()

        def _apply(current: Trip) -> Trip:
            if current.is_ended:
                raise TripEndedError(f"Trip {trip_id} has already ended", trip_id=trip_id)
            return _evolve(
                current,
                ended_at=now,
                phase=TripPhase.IN_TRANSIT,
                current_stop_id=None,
                stop_arrived_at=None,
            )

        updated = await _store_call(self._trips.mutate(trip_id, _apply))
        _logger.info("Trip %s ended", trip_id)
        return updated

    # ------------------------------------------------------------------
    # Rider operations
    # ------------------------------------------------------------------

    def _wait_ineligibility(self, trip: Trip, rider: Rider, stop_id: str, now: datetime) -> WaitIneligibility | None:
        """First reason the rider may not request a wait, or ``None``."""
        if trip.is_ended:
            return WaitIneligibility.TRIP_ENDED
        if rider.stop_id != stop_id:
            return WaitIneligibility.NOT_ASSIGNED_STOP
        if trip.phase != TripPhase.AT_STOP:
            return WaitIneligibility.NOT_AT_STOP
        if trip.current_stop_id != stop_id:
            return WaitIneligibility.NOT_CURRENT_STOP
        if elapsed_seconds(trip.stop_arrived_at, now) > self._config.extended_window_seconds:
            return WaitIneligibility.WINDOW_CLOSED
        return None

    async def check_wait_eligibility(
        self,
        actor: Actor,
        trip_id: str,
        rider_id: str,
        stop_id: str,
    ) -> WaitEligibility:
        """Non-raising version of the :meth:`request_wait` preconditions."""
        trip = await self._require_trip(trip_id)
        rider = await self._require_rider(actor, rider_id, trip)
        if await _store_call(self._facts.get_absence(trip_id, rider_id)) is not None:
            reason: WaitIneligibility | None = WaitIneligibility.ABSENT
        else:
            reason = self._wait_ineligibility(trip, rider, stop_id, self._clock())
        if reason is None:
            return WaitEligibility(allowed=True)
        return WaitEligibility(allowed=False, reason=reason, message=_INELIGIBLE_MESSAGES[reason])

    async def request_wait(self, actor: Actor, trip_id: str, rider_id: str, stop_id: str) -> WaitSignal:
        """Ask the operator to wait at the rider's stop.

        Raises ``AlreadyAbsentError`` for absent riders and
        ``NotEligibleError`` (with ``reason``) outside the window.
        Repeating the request refreshes ``signaled_at``.
        """
        trip = await self._require_trip(trip_id)
        rider = await self._require_rider(actor, rider_id, trip)
        if await _store_call(self._facts.get_absence(trip_id, rider_id)) is not None:
            raise AlreadyAbsentError(
                f"Rider {rider_id} is absent for trip {trip_id}",
                trip_id=trip_id,
                rider_id=rider_id,
                stop_id=stop_id,
            )
        now = self._clock()
        reason = self._wait_ineligibility(trip, rider, stop_id, now)
        if reason is not None:
            raise NotEligibleError(
                _INELIGIBLE_MESSAGES[reason],
                reason=reason,
                trip_id=trip_id,
                rider_id=rider_id,
                stop_id=stop_id,
            )
        # The store re-checks absence atomically with the write.
        signal = await _store_call(
            self._facts.upsert_wait(WaitSignal(trip_id=trip_id, rider_id=rider_id, stop_id=stop_id, signaled_at=now))
        )
        _logger.debug("Wait requested trip=%s rider=%s stop=%s", trip_id, rider_id, stop_id)
        return signal

    async def mark_absent(self, actor: Actor, trip_id: str, rider_id: str, stop_id: str) -> AbsenceSignal:
        """Mark the rider absent for the rest of the trip.

        Re-marking is an idempotent no-op that returns the existing
        absence unchanged.  Any wait signal of the rider is deleted in the
        same store step that creates the absence.
        """
        trip = await self._require_trip(trip_id)
        rider = await self._require_rider(actor, rider_id, trip)
        if trip.is_ended:
            raise TripEndedError(f"Trip {trip_id} has ended", trip_id=trip_id, rider_id=rider_id)
        if rider.stop_id != stop_id:
            reason = WaitIneligibility.NOT_ASSIGNED_STOP
            raise NotEligibleError(
                _INELIGIBLE_MESSAGES[reason],
                reason=reason,
                trip_id=trip_id,
                rider_id=rider_id,
                stop_id=stop_id,
            )
        absence, created = await _store_call(
            self._facts.mark_absent(
                AbsenceSignal(trip_id=trip_id, rider_id=rider_id, stop_id=stop_id, marked_at=self._clock())
            )
        )
        if created:
            _logger.debug("Absence marked trip=%s rider=%s stop=%s", trip_id, rider_id, stop_id)
        return absence

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_trip(self, trip_id: str) -> Trip:
        return await self._require_trip(trip_id)

    async def get_active_trip(self, carrier_id: str) -> Trip | None:
        """The live trip of *carrier_id*, or ``None`` if none has started."""
        await self._require_carrier(carrier_id)
        return await _store_call(self._trips.get_active(carrier_id))

    async def trip_history(self, carrier_id: str) -> list[Trip]:
        await self._require_carrier(carrier_id)
        return await _store_call(self._trips.list_for_carrier(carrier_id))

    async def carrier_for(self, trip: Trip) -> Carrier:
        return await self._require_carrier(trip.carrier_id)

    async def find_rider(self, rider_id: str) -> Rider | None:
        return await _store_call(self._routes.get_rider(rider_id))

    async def compute_stop_statuses(
        self,
        trip: Trip,
        carrier: Carrier,
        stop_ids: Iterable[str] | None = None,
    ) -> list[DerivedStopStatus]:
        """Derive the status of *stop_ids* (default: every stop), in route order."""
        wanted = set(stop_ids) if stop_ids is not None else None
        now = self._clock()
        statuses: list[DerivedStopStatus] = []
        for stop in carrier.stops:
            if wanted is not None and stop.stop_id not in wanted:
                continue
            riders = await _store_call(self._routes.riders_at_stop(carrier.carrier_id, stop.stop_id))
            counts = await _store_call(self._facts.counts_at_stop(trip.trip_id, stop.stop_id))
            statuses.append(
                build_stop_status(
                    stop,
                    trip,
                    now,
                    rider_count=len(riders),
                    absent_count=counts.absent_count,
                    wait_count=counts.wait_count,
                    red_window=self._config.red_window_seconds,
                    extended_window=self._config.extended_window_seconds,
                )
            )
        return statuses

    async def stop_status(self, trip_id: str, stop_id: str) -> DerivedStopStatus:
        trip = await self._require_trip(trip_id)
        carrier = await self._require_carrier(trip.carrier_id)
        if carrier.stop(stop_id) is None:
            raise NotFoundError(f"Unknown stop {stop_id}", trip_id=trip_id, stop_id=stop_id)
        statuses = await self.compute_stop_statuses(trip, carrier, [stop_id])
        return statuses[0]

    async def route_status(self, trip_id: str) -> list[DerivedStopStatus]:
        trip = await self._require_trip(trip_id)
        carrier = await self._require_carrier(trip.carrier_id)
        return await self.compute_stop_statuses(trip, carrier)

    async def has_passed_stop(self, trip_id: str, stop_id: str) -> bool:
        """Whether the carrier has already left *stop_id* on this trip."""
        trip = await self._require_trip(trip_id)
        carrier = await self._require_carrier(trip.carrier_id)
        return _has_passed_stop(carrier.stops, trip, stop_id)
