"""pyfleetsync - Async driver location tracking and change feeds for fleet apps."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyfleetsync")
except PackageNotFoundError:
    __version__ = "0+local"
from pyfleetsync.board import LiveLocationBoard
from pyfleetsync.client import FleetClient
from pyfleetsync.config import FleetConfig, MqttSettings
from pyfleetsync.exceptions import (
    FleetConfigError,
    FleetError,
    FleetInsertError,
    FleetLocationError,
    FleetLocationTimeoutError,
    FleetLocationUnsupportedError,
    FleetPermissionDeniedError,
    FleetPositionUnavailableError,
    FleetSelectError,
    FleetStoreError,
    FleetTransportError,
    FleetUpdateError,
    FleetUpsertError,
)
from pyfleetsync.geolocation import (
    GeolocationSampler,
    PositionSource,
    PositionSourceError,
    Sampler,
    SyntheticSampler,
    build_sampler,
)
from pyfleetsync.models import (
    ChangeEvent,
    ChangeEventType,
    ChangePredicate,
    ConnectionState,
    LocationFields,
    LocationFix,
    PermissionStatus,
    Position,
    TrackingSession,
)
from pyfleetsync.realtime import ChangeSubscriberRegistry, ChangeSubscription, MqttChangeFeed
from pyfleetsync.store import LocationStore
from pyfleetsync.tracking import LocationTracker
from pyfleetsync.updates import TaskUpdateMonitor

__all__ = [
    "__version__",
    "ChangeEvent",
    "ChangeEventType",
    "ChangePredicate",
    "ChangeSubscriberRegistry",
    "ChangeSubscription",
    "ConnectionState",
    "FleetClient",
    "FleetConfig",
    "FleetConfigError",
    "FleetError",
    "FleetInsertError",
    "FleetLocationError",
    "FleetLocationTimeoutError",
    "FleetLocationUnsupportedError",
    "FleetPermissionDeniedError",
    "FleetPositionUnavailableError",
    "FleetSelectError",
    "FleetStoreError",
    "FleetTransportError",
    "FleetUpdateError",
    "FleetUpsertError",
    "GeolocationSampler",
    "LiveLocationBoard",
    "LocationFields",
    "LocationFix",
    "LocationStore",
    "LocationTracker",
    "MqttChangeFeed",
    "MqttSettings",
    "PermissionStatus",
    "Position",
    "PositionSource",
    "PositionSourceError",
    "Sampler",
    "SyntheticSampler",
    "TaskUpdateMonitor",
    "TrackingSession",
    "build_sampler",
]
