"""Live per-subscriber status feeds.

One :class:`_TripFeed` exists per trip that has at least one subscriber.
It listens to the trip store and the fact store, marks affected stops
dirty, and a single background task recomputes each dirty stop once per
coalescing window.  While the carrier is at a stop the task also ticks
at a fixed cadence so countdowns keep moving without any write.

Nothing here mutates trip state; every push is a fresh derivation.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from tripcoord.coordinator import TripCoordinator
from tripcoord.exceptions import StoreUnavailableError, TripEndedError, UnauthorizedError
from tripcoord.models.identity import Actor, Role
from tripcoord.models.route import Carrier
from tripcoord.models.status import DerivedStopStatus, LiveUpdate
from tripcoord.models.trip import Trip, TripPhase
from tripcoord.retry import call_with_backoff
from tripcoord.state.events import ChangeEvent, ChangeKind
from tripcoord.state.store import Unsubscribe

_logger = logging.getLogger(__name__)


class Subscription:
    """A subscriber's private queue of :class:`LiveUpdate`s.

    Iterate it (``async for update in subscription``) or call
    :meth:`next`.  Iteration stops after :meth:`close` or once the trip
    has ended and its final update was consumed.

    Usage::

        async with await publisher.subscribe(actor, trip_id) as feed:
            async for update in feed:
                render(update)
    """

    def __init__(
        self,
        feed: _TripFeed,
        *,
        actor: Actor,
        stop_ids: frozenset[str],
        queue_size: int,
    ) -> None:
        self._feed = feed
        self.actor = actor
        self.stop_ids = stop_ids
        self._queue: asyncio.Queue[LiveUpdate | None] = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        # Last status sent per stop; empty until the snapshot is queued.
        self._sent: dict[str, DerivedStopStatus] = {}
        self._primed = False
        self.dropped = 0

    @property
    def trip_id(self) -> str:
        return self._feed.trip_id

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, item: LiveUpdate | None) -> None:
        """Enqueue without blocking the feed; drop the oldest update when full."""
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                with contextlib.suppress(asyncio.QueueEmpty):
                    self._queue.get_nowait()
                    self.dropped += 1
                    _logger.warning("Subscriber of trip %s is slow; dropped an update", self.trip_id)

    def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._offer(None)

    async def next(self) -> LiveUpdate | None:
        """Next update, or ``None`` once the subscription is finished."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is None:
            self._closed = True
        return item

    def __aiter__(self) -> AsyncIterator[LiveUpdate]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[LiveUpdate]:
        while True:
            item = await self.next()
            if item is None:
                return
            yield item

    async def close(self) -> None:
        """Stop receiving updates and release the subscription.  Idempotent."""
        self._finish()
        await self._feed.detach(self)

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()


class _TripFeed:
    """Fan-out of one trip's derived statuses to its subscribers."""

    def __init__(
        self,
        publisher: LiveViewPublisher,
        trip: Trip,
        carrier: Carrier,
    ) -> None:
        self._publisher = publisher
        self._coordinator = publisher.coordinator
        self.trip_id = trip.trip_id
        self._trip = trip
        self._carrier = carrier
        self._subscribers: list[Subscription] = []
        self._dirty: set[str] = set()
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._unsubscribers: list[Unsubscribe] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def start(self) -> None:
        coordinator = self._coordinator
        self._unsubscribers = [
            coordinator.trips.subscribe(self.trip_id, self._on_change),
            coordinator.facts.subscribe(self.trip_id, self._on_change),
        ]
        self._task = asyncio.create_task(self._run(), name=f"tripcoord-feed-{self.trip_id}")
        _logger.debug("Live feed started for trip %s", self.trip_id)

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for subscription in list(self._subscribers):
            subscription._finish()
        self._subscribers.clear()
        _logger.debug("Live feed stopped for trip %s", self.trip_id)

    async def attach(self, subscription: Subscription) -> None:
        """Register *subscription* and give it a full snapshot of its view.

        The trip is read again here, after the store listeners are in place,
        so a write made while the subscriber was being authorised is either
        in the snapshot or marks its stops dirty.
        """
        self._subscribers.append(subscription)
        trip = await self._publisher._reload(self.trip_id)
        if trip.is_ended:
            raise TripEndedError(f"Trip {self.trip_id} has ended", trip_id=self.trip_id)
        statuses = await self._publisher._recompute(trip, self._carrier, subscription.stop_ids)
        if subscription.closed:
            # The feed stopped while the snapshot was being built.
            return
        subscription._sent = {status.stop_id: status for status in statuses}
        subscription._primed = True
        subscription._offer(self._make_update(trip, statuses))
        # Catch up on anything flushed between the read above and now.
        self._dirty.update(subscription.stop_ids)
        self._wake.set()

    async def detach(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        if not self._subscribers:
            await self._publisher._drop_feed(self)

    def _on_change(self, event: ChangeEvent) -> None:
        if event.kind == ChangeKind.TRIP or event.stop_id is None:
            # A transition can affect the stop left behind as well as the new one.
            self._dirty.update(stop.stop_id for stop in self._carrier.stops)
        else:
            self._dirty.add(event.stop_id)
        self._wake.set()

    def _make_update(self, trip: Trip, statuses: list[DerivedStopStatus]) -> LiveUpdate:
        return LiveUpdate(
            trip_id=self.trip_id,
            phase=trip.phase,
            current_stop_id=trip.current_stop_id,
            ended=trip.is_ended,
            generated_at=self._coordinator.now(),
            stops=tuple(statuses),
        )

    async def _run(self) -> None:
        try:
            await self._loop()
        except Exception:
            _logger.exception("Live feed for trip %s failed; closing its subscriptions", self.trip_id)
            await self.stop()
            await self._publisher._forget_feed(self)

    async def _loop(self) -> None:
        config = self._coordinator.config
        while True:
            # Dirty stops left over from a failed flush are retried on the next tick.
            ticking = self._trip.phase == TripPhase.AT_STOP or bool(self._dirty)
            timeout = config.tick_interval if ticking else None
            try:
                if timeout is None:
                    await self._wake.wait()
                else:
                    await asyncio.wait_for(self._wake.wait(), timeout)
                # Let the rest of a burst land before recomputing.
                if config.coalesce_delay > 0:
                    await asyncio.sleep(config.coalesce_delay)
            except TimeoutError:
                pass
            self._wake.clear()
            if self._trip.phase == TripPhase.AT_STOP and self._trip.current_stop_id is not None:
                self._dirty.add(self._trip.current_stop_id)
            if not self._dirty:
                continue
            if await self._flush():
                await self.stop()
                await self._publisher._forget_feed(self)
                return

    async def _flush(self) -> bool:
        """Recompute dirty stops and push changes.  Returns True once the trip has ended."""
        dirty = self._dirty
        self._dirty = set()
        try:
            trip = await self._publisher._reload(self.trip_id)
            self._trip = trip
            statuses = await self._publisher._recompute(trip, self._carrier, dirty)
        except StoreUnavailableError:
            _logger.warning("Store unavailable while refreshing trip %s; will retry", self.trip_id)
            self._dirty |= dirty
            return False

        pushed = 0
        for subscription in list(self._subscribers):
            if not subscription._primed:
                continue
            view = [
                status
                for status in statuses
                if status.stop_id in subscription.stop_ids and subscription._sent.get(status.stop_id) != status
            ]
            subscription._sent.update((status.stop_id, status) for status in view)
            if view or trip.is_ended:
                subscription._offer(self._make_update(trip, view))
                pushed += 1
        if pushed:
            _logger.debug("Pushed updates to %d subscriber(s) of trip %s", pushed, self.trip_id)
        return trip.is_ended


class LiveViewPublisher:
    """Maintains live status feeds for subscribers of active trips.

    Operators of a trip see every stop; riders see only their own stop.
    """

    def __init__(self, coordinator: TripCoordinator) -> None:
        self.coordinator = coordinator
        self._feeds: dict[str, _TripFeed] = {}
        self._lock = asyncio.Lock()

    def feed_count(self) -> int:
        return len(self._feeds)

    def subscriber_count(self, trip_id: str) -> int:
        feed = self._feeds.get(trip_id)
        return feed.subscriber_count if feed is not None else 0

    async def subscribe(self, actor: Actor, trip_id: str) -> Subscription:
        """Open a live feed of *trip_id* for *actor*.

        The first update is a full snapshot of the actor's view.  Ended
        trips cannot be subscribed to (``TripEndedError``).
        """
        trip = await self.coordinator.get_trip(trip_id)
        if trip.is_ended:
            raise TripEndedError(f"Trip {trip_id} has ended", trip_id=trip_id)
        carrier = await self.coordinator.carrier_for(trip)
        stop_ids = await self._view_for(actor, trip, carrier)

        async with self._lock:
            feed = self._feeds.get(trip_id)
            if feed is None:
                feed = _TripFeed(self, trip, carrier)
                self._feeds[trip_id] = feed
                feed.start()
            subscription = Subscription(
                feed,
                actor=actor,
                stop_ids=stop_ids,
                queue_size=self.coordinator.config.subscriber_queue_size,
            )
            try:
                await feed.attach(subscription)
            except BaseException:
                await feed.detach(subscription)
                raise
        _logger.debug("%s subscribed to trip %s (%d stop(s))", actor.identity, trip_id, len(stop_ids))
        return subscription

    async def _view_for(self, actor: Actor, trip: Trip, carrier: Carrier) -> frozenset[str]:
        if actor.role == Role.OPERATOR:
            if actor.identity != trip.operator_id:
                raise UnauthorizedError(
                    f"{actor.identity} does not operate trip {trip.trip_id}",
                    trip_id=trip.trip_id,
                )
            return frozenset(stop.stop_id for stop in carrier.stops)
        rider = await self.coordinator.find_rider(actor.identity)
        if rider is None or rider.carrier_id != trip.carrier_id:
            raise UnauthorizedError(
                f"{actor.identity} does not ride carrier {trip.carrier_id}",
                trip_id=trip.trip_id,
                rider_id=actor.identity,
            )
        return frozenset({rider.stop_id})

    async def _reload(self, trip_id: str) -> Trip:
        config = self.coordinator.config
        return await call_with_backoff(
            lambda: self.coordinator.get_trip(trip_id),
            attempts=config.retry_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )

    async def _recompute(
        self,
        trip: Trip,
        carrier: Carrier,
        stop_ids: set[str] | frozenset[str],
    ) -> list[DerivedStopStatus]:
        config = self.coordinator.config
        return await call_with_backoff(
            lambda: self.coordinator.compute_stop_statuses(trip, carrier, stop_ids),
            attempts=config.retry_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )

    async def _drop_feed(self, feed: _TripFeed) -> None:
        if self._feeds.get(feed.trip_id) is feed:
            del self._feeds[feed.trip_id]
        await feed.stop()

    async def _forget_feed(self, feed: _TripFeed) -> None:
        if self._feeds.get(feed.trip_id) is feed:
            del self._feeds[feed.trip_id]

    async def close(self) -> None:
        """Tear down every feed and finish every subscription."""
        feeds = list(self._feeds.values())
        self._feeds.clear()
        for feed in feeds:
            await feed.stop()
