"""State/store layer.

The trip store and the fact store are the only places trip state and
rider signals live.  Every write is a single keyed primitive (conditional
create, keyed mutate, upsert, create-and-delete) and every accepted write
is announced to listeners as a :class:`~tripcoord.state.events.ChangeEvent`.
"""

from tripcoord.state.events import ChangeAction, ChangeEvent, ChangeKind
from tripcoord.state.store import (
    FactStore,
    InMemoryFactStore,
    InMemoryTripStore,
    StopFactCounts,
    TripStore,
    Unsubscribe,
)

__all__ = [
    "ChangeAction",
    "ChangeEvent",
    "ChangeKind",
    "FactStore",
    "InMemoryFactStore",
    "InMemoryTripStore",
    "StopFactCounts",
    "TripStore",
    "Unsubscribe",
]
