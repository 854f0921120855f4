"""Base model and shared coercion helpers.

Rows coming back from the hosted backend are loosely typed: numeric
columns may arrive as strings, optional columns as ``null`` and
timestamps either as ISO-8601 text or epoch numbers. The helpers here
normalise those shapes at the pydantic boundary so the rest of the
library only sees clean values.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def safe_float(value: Any) -> float | None:
    """Convert *value* to ``float``; ``None`` for blanks, NaN and garbage."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result):
        return None
    return result


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce ISO-8601 text or an epoch (seconds **or** milliseconds) to a UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts >= _MS_THRESHOLD:
            ts /= 1000.0
        return datetime.fromtimestamp(ts, tz=UTC)
    text = str(value).strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def utc_timestamp(value: Any) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError("timestamp is required")
    return parsed


OptionalFloat = Annotated[float | None, BeforeValidator(safe_float)]
"""Float column that tolerates blanks and numeric strings."""

Timestamp = Annotated[datetime, BeforeValidator(utc_timestamp)]
"""Required UTC-aware timestamp accepting ISO text or epoch numbers."""

OptionalTimestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]


class FleetModel(BaseModel):
    """Base for immutable records exchanged with the backend."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )
