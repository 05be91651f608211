"""Data models for tripcoord."""

from tripcoord.models._base import TripCoordModel, UtcDatetime, parse_timestamp
from tripcoord.models.identity import Actor, Role
from tripcoord.models.route import Carrier, GeoPoint, Rider, Stop
from tripcoord.models.signals import AbsenceSignal, WaitSignal
from tripcoord.models.status import DerivedStopStatus, LiveUpdate, StopColor, WaitEligibility
from tripcoord.models.trip import Trip, TripPhase

__all__ = [
    "AbsenceSignal",
    "Actor",
    "Carrier",
    "DerivedStopStatus",
    "GeoPoint",
    "LiveUpdate",
    "Rider",
    "Role",
    "Stop",
    "StopColor",
    "Trip",
    "TripCoordModel",
    "TripPhase",
    "UtcDatetime",
    "WaitEligibility",
    "WaitSignal",
    "parse_timestamp",
]
