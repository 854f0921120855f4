"""Client-side tracking session state."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from pyfleetsync._constants import DEFAULT_TRACKING_INTERVAL
from pyfleetsync.models.location import LocationFix


class PermissionStatus(StrEnum):
    GRANTED = "granted"
    DENIED = "denied"
    PROMPT = "prompt"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> PermissionStatus:
        return cls.UNKNOWN


class TrackingSession(BaseModel):
    """Ephemeral state of one tracking loop. Never persisted."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    driver_id: str | None = None
    enabled: bool = False
    interval: float = DEFAULT_TRACKING_INTERVAL
    last_fix: LocationFix | None = None
    last_error: str | None = None
    permission_status: PermissionStatus = PermissionStatus.UNKNOWN

    @property
    def is_tracking(self) -> bool:
        return self.enabled and bool(self.driver_id)
