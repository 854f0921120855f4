"""Data-access facade for the driver locations table.

The table keeps exactly one row per driver. :meth:`LocationStore.upsert_location`
maintains that with a read-then-write:

1. select up to two rows for the driver;
2. a select failure aborts with ``FleetSelectError``;
3. when any row exists, every row of the driver is updated in place
   (``FleetUpdateError``);
4. otherwise a new row is inserted (``FleetInsertError``).

Two overlapping upserts for the same driver (a timer tick and a manual
refresh, say) may both see "no row" and both insert, or both update the
same row. Last write wins; nothing here serialises writers. Duplicate
rows left by such a race are all rewritten by the next update, so the
table converges back to one value per driver. Configure
``conditional_upsert=True`` to use a single native upsert keyed on
``driver_id`` instead, which closes that window.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError

from pyfleetsync._constants import LOCATIONS_TABLE, RECENT_LOCATION_WINDOW_SECONDS
from pyfleetsync._transport import StoreTransport, eq, gte
from pyfleetsync.exceptions import (
    FleetInsertError,
    FleetSelectError,
    FleetStoreError,
    FleetTransportError,
    FleetUpdateError,
    FleetUpsertError,
)
from pyfleetsync.models.location import LocationFields, LocationFix

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _wrap(
    error_cls: type[FleetStoreError],
    prefix: str,
    exc: FleetStoreError | FleetTransportError,
) -> FleetStoreError:
    if isinstance(exc, FleetTransportError):
        return error_cls(f"{prefix}: {exc}", details=exc.endpoint or None)
    return error_cls(
        f"{prefix}: {exc}",
        code=exc.code,
        table=exc.table,
        details=exc.details,
        hint=exc.hint,
    )


class LocationStore:
    """Reads and writes the single current-location row of each driver."""

    def __init__(
        self,
        transport: StoreTransport,
        *,
        table: str = LOCATIONS_TABLE,
        clock: Callable[[], datetime] = _utcnow,
        conditional_upsert: bool = False,
    ) -> None:
        self._transport = transport
        self._table = table
        self._clock = clock
        self._conditional_upsert = conditional_upsert

    @property
    def table(self) -> str:
        return self._table

    async def get_location(self, driver_id: str) -> LocationFix | None:
        """Return the driver's current row, or ``None`` when there is none."""
        row = await self._select_current(driver_id)
        if row is None:
            return None
        return LocationFix.model_validate(row)

    async def _select_current(self, driver_id: str) -> dict[str, Any] | None:
        # PGRST116 covers both "no rows" and "several rows", so select a list.
        params = {"driver_id": eq(driver_id), "order": "timestamp.desc", "limit": "2"}
        try:
            rows = await self._transport.select(self._table, params)
        except (FleetStoreError, FleetTransportError) as exc:
            _logger.warning("Location select failed driver=%s: %s", driver_id, exc)
            raise _wrap(FleetSelectError, "Database select error", exc) from exc
        if not isinstance(rows, list) or not rows:
            return None
        if len(rows) > 1:
            _logger.warning("Found duplicate location rows for driver %s", driver_id)
        return rows[0]

    async def upsert_location(
        self,
        driver_id: str,
        fields: LocationFields | Mapping[str, Any],
    ) -> LocationFix:
        """Write *fields* as the driver's current location.

        Returns
        -------
        LocationFix
            The fix as written, carrying the write timestamp.

        Raises
        ------
        FleetSelectError
            Reading the existing row failed.
        FleetInsertError
            There was no row and inserting one failed.
        FleetUpdateError
            Updating the existing row failed.
        FleetUpsertError
            The native upsert failed (``conditional_upsert`` only).
        """
        payload = fields if isinstance(fields, LocationFields) else LocationFields.model_validate(fields)
        fix = LocationFix(driver_id=driver_id, timestamp=self._clock(), **payload.model_dump())
        row = fix.to_row()

        if self._conditional_upsert:
            try:
                await self._transport.upsert(self._table, row, on_conflict="driver_id")
            except (FleetStoreError, FleetTransportError) as exc:
                raise _wrap(FleetUpsertError, "Database upsert error", exc) from exc
            _logger.debug("Upserted location for driver %s", fix.driver_id)
            return fix

        existing = await self._select_current(fix.driver_id)
        if existing is not None:
            try:
                await self._transport.update(self._table, row, {"driver_id": eq(fix.driver_id)})
            except (FleetStoreError, FleetTransportError) as exc:
                _logger.warning("Location update failed driver=%s: %s", fix.driver_id, exc)
                raise _wrap(FleetUpdateError, "Database update error", exc) from exc
            _logger.debug("Updated location for driver %s", fix.driver_id)
        else:
            try:
                await self._transport.insert(self._table, row)
            except (FleetStoreError, FleetTransportError) as exc:
                _logger.warning("Location insert failed driver=%s: %s", fix.driver_id, exc)
                raise _wrap(FleetInsertError, "Database insert error", exc) from exc
            _logger.debug("Inserted new location for driver %s", fix.driver_id)
        return fix

    async def recent_locations(
        self,
        max_age: timedelta = timedelta(seconds=RECENT_LOCATION_WINDOW_SECONDS),
    ) -> list[LocationFix]:
        """Latest fix per driver among rows newer than *max_age*, newest first."""
        cutoff = (self._clock() - max_age).isoformat()
        rows = await self._transport.select(
            self._table,
            {"timestamp": gte(cutoff), "order": "timestamp.desc"},
        )
        latest: dict[str, LocationFix] = {}
        for row in rows if isinstance(rows, list) else []:
            try:
                fix = LocationFix.model_validate(row)
            except ValidationError:
                _logger.debug("Skipping malformed location row %s", row, exc_info=True)
                continue
            current = latest.get(fix.driver_id)
            if current is None or fix.timestamp > current.timestamp:
                latest[fix.driver_id] = fix
        return sorted(latest.values(), key=lambda item: item.timestamp, reverse=True)
