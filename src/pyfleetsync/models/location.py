"""Location records."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import AliasChoices, Field, field_validator, model_validator

from pyfleetsync.models._base import FleetModel, OptionalFloat, Timestamp


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Position(FleetModel):
    """A single reading produced by a position source.

    Parameters
    ----------
    latitude : float
        Latitude in degrees.
    longitude : float
        Longitude in degrees.
    accuracy : float or None
        Horizontal accuracy radius in metres.
    heading : float or None
        Direction of travel in degrees clockwise from true north.
    speed : float or None
        Ground speed as reported by the platform.
    timestamp : datetime
        When the reading was taken.
    """

    latitude: float = Field(validation_alias=AliasChoices("latitude", "lat"))
    longitude: float = Field(validation_alias=AliasChoices("longitude", "lng", "lon"))
    accuracy: OptionalFloat = None
    heading: OptionalFloat = Field(default=None, validation_alias=AliasChoices("heading", "direction", "course"))
    speed: OptionalFloat = None
    timestamp: Timestamp = Field(default_factory=_utcnow)

    @field_validator("latitude")
    @classmethod
    def _check_latitude(cls, value: float) -> float:
        if not -90.0 <= value <= 90.0:
            raise ValueError(f"latitude out of range: {value}")
        return value

    @field_validator("longitude")
    @classmethod
    def _check_longitude(cls, value: float) -> float:
        if not -180.0 <= value <= 180.0:
            raise ValueError(f"longitude out of range: {value}")
        return value

    def fields(self) -> LocationFields:
        """The part of this reading that is written to the store."""
        return LocationFields(
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy=self.accuracy,
            heading=self.heading,
            speed=self.speed,
        )


class LocationFields(FleetModel):
    """Write payload for a driver's current location."""

    latitude: float
    longitude: float
    accuracy: OptionalFloat = None
    heading: OptionalFloat = None
    speed: OptionalFloat = None


class LocationFix(FleetModel):
    """One driver's most recent position, as stored in the locations table.

    At most one row exists per ``driver_id``; each new sample overwrites
    it. Extra columns (``id``, ``created_at``) are ignored but kept in
    ``raw``.
    """

    driver_id: str
    latitude: float
    longitude: float
    accuracy: OptionalFloat = None
    heading: OptionalFloat = None
    speed: OptionalFloat = None
    timestamp: Timestamp
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _stash_raw(cls, values: Any) -> Any:
        if isinstance(values, dict) and "raw" not in values:
            return {**values, "raw": dict(values)}
        return values

    @field_validator("driver_id", mode="before")
    @classmethod
    def _normalize_driver_id(cls, value: Any) -> str:
        driver_id = str(value).strip() if value is not None else ""
        if not driver_id:
            raise ValueError("driver_id must be non-empty")
        return driver_id

    @classmethod
    def from_position(cls, driver_id: str, position: Position) -> LocationFix:
        return cls(
            driver_id=driver_id,
            latitude=position.latitude,
            longitude=position.longitude,
            accuracy=position.accuracy,
            heading=position.heading,
            speed=position.speed,
            timestamp=position.timestamp,
        )

    def to_row(self) -> dict[str, Any]:
        """Serialise to the column layout of the locations table."""
        return self.model_dump(mode="json", exclude={"raw"})
