"""Data models for locations, change events and tracking state."""

from pyfleetsync.models._base import FleetModel, parse_timestamp, safe_float
from pyfleetsync.models.changes import ChangeEvent, ChangeEventType, ChangePredicate, ConnectionState
from pyfleetsync.models.location import LocationFields, LocationFix, Position
from pyfleetsync.models.tracking import PermissionStatus, TrackingSession

__all__ = [
    "ChangeEvent",
    "ChangeEventType",
    "ChangePredicate",
    "ConnectionState",
    "FleetModel",
    "LocationFields",
    "LocationFix",
    "PermissionStatus",
    "Position",
    "TrackingSession",
    "parse_timestamp",
    "safe_float",
]
