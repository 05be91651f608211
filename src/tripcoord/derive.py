"""Stop status derivation.

Colours are never stored.  They are recomputed from trip state, fact
counts and the current time every time somebody looks, which makes the
result safe under eventual consistency: as more absence facts arrive the
status can only tighten toward GREY, and as time passes it can only move
toward GREEN.

Priority order (first match wins):

1. not at this stop                              -> GREEN
2. every assigned rider marked absent            -> GREY
3. within the standard window                    -> RED
4. within the extended window and a wait request -> YELLOW
5. otherwise                                     -> GREEN
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from tripcoord._constants import EXTENDED_WINDOW_SECONDS, RED_WINDOW_SECONDS
from tripcoord.clock import elapsed_seconds
from tripcoord.models.route import Stop
from tripcoord.models.status import DerivedStopStatus, StopColor
from tripcoord.models.trip import Trip, TripPhase


def derive_status(
    phase: TripPhase,
    is_current_stop: bool,
    arrival_time: datetime | None,
    now: datetime,
    rider_count: int,
    absent_count: int,
    wait_count: int,
    *,
    red_window: int = RED_WINDOW_SECONDS,
    extended_window: int = EXTENDED_WINDOW_SECONDS,
) -> StopColor:
    """Compute the colour of one stop.  Pure and memoryless."""
    if phase != TripPhase.AT_STOP or not is_current_stop or arrival_time is None:
        return StopColor.GREEN

    # riderCount == 0 never yields GREY.
    if rider_count > 0 and absent_count >= rider_count:
        return StopColor.GREY

    elapsed = elapsed_seconds(arrival_time, now)
    if elapsed <= red_window:
        return StopColor.RED
    if wait_count > 0 and elapsed <= extended_window:
        return StopColor.YELLOW
    return StopColor.GREEN


def remaining_seconds(
    color: StopColor,
    elapsed: int,
    *,
    red_window: int = RED_WINDOW_SECONDS,
    extended_window: int = EXTENDED_WINDOW_SECONDS,
) -> int:
    """Seconds left in the current colour window (0 outside RED/YELLOW)."""
    if color == StopColor.RED:
        return max(0, red_window - elapsed)
    if color == StopColor.YELLOW:
        return max(0, extended_window - elapsed)
    return 0


def build_stop_status(
    stop: Stop,
    trip: Trip | None,
    now: datetime,
    *,
    rider_count: int,
    absent_count: int,
    wait_count: int,
    red_window: int = RED_WINDOW_SECONDS,
    extended_window: int = EXTENDED_WINDOW_SECONDS,
) -> DerivedStopStatus:
    """Assemble the full :class:`DerivedStopStatus` of *stop*.

    With no trip (or an ended one) every stop is GREEN with zero counts
    except ``rider_count``, which is static route data.
    """
    if trip is None or trip.is_ended:
        return DerivedStopStatus(
            stop_id=stop.stop_id,
            stop_name=stop.name,
            color=StopColor.GREEN,
            rider_count=rider_count,
        )

    is_current = trip.current_stop_id == stop.stop_id
    arrived_at = trip.stop_arrived_at if is_current else None
    elapsed = elapsed_seconds(arrived_at, now)
    color = derive_status(
        trip.phase,
        is_current,
        arrived_at,
        now,
        rider_count,
        absent_count,
        wait_count,
        red_window=red_window,
        extended_window=extended_window,
    )
    return DerivedStopStatus(
        stop_id=stop.stop_id,
        stop_name=stop.name,
        color=color,
        is_current_stop=is_current,
        elapsed_seconds=elapsed,
        remaining_seconds=remaining_seconds(
            color,
            elapsed,
            red_window=red_window,
            extended_window=extended_window,
        ),
        wait_count=wait_count,
        rider_count=rider_count,
        absent_count=absent_count,
    )


def has_passed_stop(stops: Sequence[Stop], trip: Trip | None, stop_id: str) -> bool:
    """Whether the carrier has already left *stop_id* behind on this trip.

    True when the current (or last departed) stop lies further down the
    route than *stop_id*, or when it is *stop_id* itself and the carrier
    has departed from it.
    """
    if trip is None or trip.is_ended or trip.current_stop_id is None:
        return False
    order = [stop.stop_id for stop in stops]
    if stop_id not in order or trip.current_stop_id not in order:
        return False
    current_index = order.index(trip.current_stop_id)
    target_index = order.index(stop_id)
    if current_index > target_index:
        return True
    return current_index == target_index and trip.phase == TripPhase.IN_TRANSIT
