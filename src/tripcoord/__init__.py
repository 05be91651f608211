"""tripcoord - Real-time trip coordination between an operator and waiting riders."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tripcoord")
except PackageNotFoundError:
    __version__ = "0+local"
from tripcoord.clock import format_elapsed
from tripcoord.config import CoordinatorConfig
from tripcoord.coordinator import TripCoordinator, generate_trip_id
from tripcoord.derive import build_stop_status, derive_status, has_passed_stop, remaining_seconds
from tripcoord.exceptions import (
    AlreadyAbsentError,
    AlreadyActiveError,
    ConfigError,
    NotAtStopError,
    NotEligibleError,
    NotFoundError,
    StoreUnavailableError,
    TripCoordError,
    TripEndedError,
    UnauthorizedError,
    WaitIneligibility,
)
from tripcoord.models import (
    AbsenceSignal,
    Actor,
    Carrier,
    DerivedStopStatus,
    GeoPoint,
    LiveUpdate,
    Rider,
    Role,
    Stop,
    StopColor,
    Trip,
    TripPhase,
    WaitEligibility,
    WaitSignal,
)
from tripcoord.publisher import LiveViewPublisher, Subscription
from tripcoord.routes import RouteDirectory, StaticRouteDirectory
from tripcoord.state import FactStore, InMemoryFactStore, InMemoryTripStore, TripStore

__all__ = [
    "__version__",
    "AbsenceSignal",
    "Actor",
    "AlreadyAbsentError",
    "AlreadyActiveError",
    "Carrier",
    "ConfigError",
    "CoordinatorConfig",
    "DerivedStopStatus",
    "FactStore",
    "GeoPoint",
    "InMemoryFactStore",
    "InMemoryTripStore",
    "LiveUpdate",
    "LiveViewPublisher",
    "NotAtStopError",
    "NotEligibleError",
    "NotFoundError",
    "Rider",
    "Role",
    "RouteDirectory",
    "StaticRouteDirectory",
    "Stop",
    "StopColor",
    "StoreUnavailableError",
    "Subscription",
    "Trip",
    "TripCoordError",
    "TripCoordinator",
    "TripEndedError",
    "TripPhase",
    "TripStore",
    "UnauthorizedError",
    "WaitEligibility",
    "WaitIneligibility",
    "WaitSignal",
    "build_stop_status",
    "derive_status",
    "format_elapsed",
    "generate_trip_id",
    "has_passed_stop",
    "remaining_seconds",
]
