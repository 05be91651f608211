"""Trip state store and rider fact store.

The protocols describe what the coordinator needs from persistence: keyed
records, a handful of atomic primitives, and change notification.  The
in-memory implementations are deterministic and complete; durable
backends implement the same protocols.  A backend that cannot reach its
storage raises :class:`~tripcoord.exceptions.StoreUnavailableError`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Protocol

from tripcoord.exceptions import AlreadyAbsentError, AlreadyActiveError, NotFoundError
from tripcoord.models.signals import AbsenceSignal, WaitSignal
from tripcoord.models.trip import Trip
from tripcoord.state.events import ChangeAction, ChangeEvent, ChangeKind
from tripcoord.state.policy import should_accept_write

_logger = logging.getLogger(__name__)

Listener = Callable[[ChangeEvent], None]
Unsubscribe = Callable[[], None]
TripMutation = Callable[[Trip], Trip | None]


@dataclass(frozen=True, slots=True)
class StopFactCounts:
    """Fact counts for one stop of one trip."""

    wait_count: int = 0
    absent_count: int = 0


class TripStore(Protocol):
    """Durable record of trips, at most one non-ended trip per carrier."""

    async def create(self, trip: Trip) -> Trip:
        """Insert *trip*; raise ``AlreadyActiveError`` if its carrier has a live trip."""
        ...

    async def get(self, trip_id: str) -> Trip | None: ...

    async def get_active(self, carrier_id: str) -> Trip | None: ...

    async def list_for_carrier(self, carrier_id: str) -> list[Trip]: ...

    async def mutate(self, trip_id: str, mutation: TripMutation) -> Trip:
        """Atomically replace a trip with ``mutation(current)``.

        The mutation may raise to abort (nothing is written) or return
        ``None`` to signal "no change" (nothing is written or announced).
        Returns the stored trip after the call.
        """
        ...

    def subscribe(self, trip_id: str, listener: Listener) -> Unsubscribe: ...


class FactStore(Protocol):
    """Atomic rider signals keyed by ``(trip_id, rider_id)``."""

    async def upsert_wait(self, signal: WaitSignal) -> WaitSignal:
        """Store *signal* unless the rider is absent (``AlreadyAbsentError``).

        Last-write-wins on ``signaled_at``; returns the stored signal.
        """
        ...

    async def get_wait(self, trip_id: str, rider_id: str) -> WaitSignal | None: ...

    async def list_waits(self, trip_id: str, stop_id: str | None = None) -> list[WaitSignal]: ...

    async def mark_absent(self, signal: AbsenceSignal) -> tuple[AbsenceSignal, bool]:
        """Create the absence if missing and delete the rider's wait signal.

        Returns ``(stored_absence, created)``.  An existing absence is
        returned untouched with ``created=False``.
        """
        ...

    async def get_absence(self, trip_id: str, rider_id: str) -> AbsenceSignal | None: ...

    async def list_absences(self, trip_id: str, stop_id: str | None = None) -> list[AbsenceSignal]: ...

    async def counts_at_stop(self, trip_id: str, stop_id: str) -> StopFactCounts: ...

    def subscribe(self, trip_id: str, listener: Listener) -> Unsubscribe: ...


class _ListenerRegistry:
    """Keyed listener sets with idempotent unsubscribe handles."""

    def __init__(self) -> None:
        self._listeners: dict[Hashable, dict[int, Listener]] = {}
        self._next_id = 0

    def add(self, key: Hashable, listener: Listener) -> Unsubscribe:
        self._next_id += 1
        token = self._next_id
        self._listeners.setdefault(key, {})[token] = listener

        def _unsubscribe() -> None:
            bucket = self._listeners.get(key)
            if bucket is None:
                return
            bucket.pop(token, None)
            if not bucket:
                self._listeners.pop(key, None)

        return _unsubscribe

    def emit(self, key: Hashable, event: ChangeEvent) -> None:
        for listener in list(self._listeners.get(key, {}).values()):
            try:
                listener(event)
            except Exception:
                _logger.warning("Change listener failed for %s", key, exc_info=True)

    def count(self, key: Hashable) -> int:
        return len(self._listeners.get(key, {}))


class InMemoryTripStore:
    """In-memory :class:`TripStore`.

    Each primitive completes without yielding to the event loop, which makes
    it atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self._trips: dict[str, Trip] = {}
        self._active: dict[str, str] = {}
        self._listeners = _ListenerRegistry()

    async def create(self, trip: Trip) -> Trip:
        active_id = self._active.get(trip.carrier_id)
        if active_id is not None:
            raise AlreadyActiveError(
                f"Carrier {trip.carrier_id} already has active trip {active_id}",
                trip_id=active_id,
                carrier_id=trip.carrier_id,
            )
        if trip.trip_id in self._trips:
            raise AlreadyActiveError(
                f"Trip {trip.trip_id} already exists",
                trip_id=trip.trip_id,
                carrier_id=trip.carrier_id,
            )
        self._trips[trip.trip_id] = trip
        if not trip.is_ended:
            self._active[trip.carrier_id] = trip.trip_id
        _logger.debug("Trip created trip=%s carrier=%s", trip.trip_id, trip.carrier_id)
        self._announce(trip)
        return trip

    async def get(self, trip_id: str) -> Trip | None:
        return self._trips.get(trip_id)

    async def get_active(self, carrier_id: str) -> Trip | None:
        trip_id = self._active.get(carrier_id)
        return self._trips.get(trip_id) if trip_id is not None else None

    async def list_for_carrier(self, carrier_id: str) -> list[Trip]:
        trips = [trip for trip in self._trips.values() if trip.carrier_id == carrier_id]
        return sorted(trips, key=lambda trip: trip.started_at)

    async def mutate(self, trip_id: str, mutation: TripMutation) -> Trip:
        current = self._trips.get(trip_id)
        if current is None:
            raise NotFoundError(f"Unknown trip {trip_id}", trip_id=trip_id)
        updated = mutation(current)
        if updated is None or updated == current:
            return current
        if updated.trip_id != current.trip_id or updated.carrier_id != current.carrier_id:
            raise ValueError("a trip mutation cannot change trip_id or carrier_id")
        self._trips[trip_id] = updated
        if updated.is_ended and self._active.get(updated.carrier_id) == trip_id:
            del self._active[updated.carrier_id]
        self._announce(updated)
        return updated

    def subscribe(self, trip_id: str, listener: Listener) -> Unsubscribe:
        return self._listeners.add(trip_id, listener)

    def listener_count(self, trip_id: str) -> int:
        return self._listeners.count(trip_id)

    def _announce(self, trip: Trip) -> None:
        event = ChangeEvent(
            kind=ChangeKind.TRIP,
            trip_id=trip.trip_id,
            carrier_id=trip.carrier_id,
            stop_id=trip.current_stop_id,
        )
        self._listeners.emit(trip.trip_id, event)


class InMemoryFactStore:
    """In-memory :class:`FactStore`.

    Waits and absences live in separate keyed maps; the only operation
    touching both (``mark_absent``) runs without an intervening await.
    """

    def __init__(self) -> None:
        self._waits: dict[tuple[str, str], WaitSignal] = {}
        self._absences: dict[tuple[str, str], AbsenceSignal] = {}
        self._listeners = _ListenerRegistry()

    async def upsert_wait(self, signal: WaitSignal) -> WaitSignal:
        if signal.key in self._absences:
            raise AlreadyAbsentError(
                f"Rider {signal.rider_id} is absent for trip {signal.trip_id}",
                trip_id=signal.trip_id,
                rider_id=signal.rider_id,
                stop_id=signal.stop_id,
            )
        cached = self._waits.get(signal.key)
        if cached is not None and not should_accept_write(
            cached_at=cached.signaled_at,
            incoming_at=signal.signaled_at,
        ):
            _logger.debug("Stale wait signal ignored trip=%s rider=%s", signal.trip_id, signal.rider_id)
            return cached
        self._waits[signal.key] = signal
        self._listeners.emit(
            signal.trip_id,
            ChangeEvent(
                kind=ChangeKind.WAIT,
                trip_id=signal.trip_id,
                rider_id=signal.rider_id,
                stop_id=signal.stop_id,
            ),
        )
        # A moved wait signal also changes the count of the stop it left.
        if cached is not None and cached.stop_id != signal.stop_id:
            self._listeners.emit(
                signal.trip_id,
                ChangeEvent(
                    kind=ChangeKind.WAIT,
                    action=ChangeAction.DELETE,
                    trip_id=cached.trip_id,
                    rider_id=cached.rider_id,
                    stop_id=cached.stop_id,
                ),
            )
        return signal

    async def get_wait(self, trip_id: str, rider_id: str) -> WaitSignal | None:
        return self._waits.get((trip_id, rider_id))

    async def list_waits(self, trip_id: str, stop_id: str | None = None) -> list[WaitSignal]:
        return [
            signal
            for (key_trip, _), signal in self._waits.items()
            if key_trip == trip_id and (stop_id is None or signal.stop_id == stop_id)
        ]

    async def mark_absent(self, signal: AbsenceSignal) -> tuple[AbsenceSignal, bool]:
        existing = self._absences.get(signal.key)
        if existing is not None:
            return existing, False
        self._absences[signal.key] = signal
        removed_wait = self._waits.pop(signal.key, None)
        self._listeners.emit(
            signal.trip_id,
            ChangeEvent(
                kind=ChangeKind.ABSENCE,
                trip_id=signal.trip_id,
                rider_id=signal.rider_id,
                stop_id=signal.stop_id,
            ),
        )
        if removed_wait is not None:
            self._listeners.emit(
                signal.trip_id,
                ChangeEvent(
                    kind=ChangeKind.WAIT,
                    action=ChangeAction.DELETE,
                    trip_id=removed_wait.trip_id,
                    rider_id=removed_wait.rider_id,
                    stop_id=removed_wait.stop_id,
                ),
            )
        return signal, True

    async def get_absence(self, trip_id: str, rider_id: str) -> AbsenceSignal | None:
        return self._absences.get((trip_id, rider_id))

    async def list_absences(self, trip_id: str, stop_id: str | None = None) -> list[AbsenceSignal]:
        return [
            signal
            for (key_trip, _), signal in self._absences.items()
            if key_trip == trip_id and (stop_id is None or signal.stop_id == stop_id)
        ]

    async def counts_at_stop(self, trip_id: str, stop_id: str) -> StopFactCounts:
        waits = sum(1 for s in self._waits.values() if s.trip_id == trip_id and s.stop_id == stop_id)
        absences = sum(1 for s in self._absences.values() if s.trip_id == trip_id and s.stop_id == stop_id)
        return StopFactCounts(wait_count=waits, absent_count=absences)

    def subscribe(self, trip_id: str, listener: Listener) -> Unsubscribe:
        return self._listeners.add(trip_id, listener)

    def listener_count(self, trip_id: str) -> int:
        return self._listeners.count(trip_id)
