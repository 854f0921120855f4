"""Live view of every driver's latest position for the operations screen."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta

from pydantic import ValidationError

from pyfleetsync._constants import RECENT_LOCATION_WINDOW_SECONDS
from pyfleetsync.models.changes import ChangeEvent, ChangeEventType
from pyfleetsync.models.location import LocationFix
from pyfleetsync.realtime import ChangeSubscriberRegistry, ChangeSubscription
from pyfleetsync.store import LocationStore

_logger = logging.getLogger(__name__)


class LiveLocationBoard:
    """Seeds from the store, then follows the locations table's change feed.

    Holds at most one fix per driver. An incoming change only replaces
    the held fix when it is not older, so a late-delivered event cannot
    move a driver backwards.
    """

    def __init__(
        self,
        store: LocationStore,
        registry: ChangeSubscriberRegistry,
        *,
        on_change: Callable[[list[LocationFix]], None] | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._on_change = on_change
        self._fixes: dict[str, LocationFix] = {}
        self._subscription: ChangeSubscription | None = None

    def __len__(self) -> int:
        return len(self._fixes)

    @property
    def locations(self) -> list[LocationFix]:
        return sorted(self._fixes.values(), key=lambda fix: fix.timestamp, reverse=True)

    def get(self, driver_id: str) -> LocationFix | None:
        return self._fixes.get(driver_id)

    @property
    def is_connected(self) -> bool:
        return self._subscription is not None and self._subscription.connected

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.locations)

    async def load(
        self,
        max_age: timedelta = timedelta(seconds=RECENT_LOCATION_WINDOW_SECONDS),
    ) -> list[LocationFix]:
        """Replace the board with the latest fix per driver from the store."""
        fixes = await self._store.recent_locations(max_age)
        self._fixes = {fix.driver_id: fix for fix in fixes}
        _logger.debug("Loaded %d driver locations", len(self._fixes))
        self._notify()
        return self.locations

    def start(self) -> ChangeSubscription:
        if self._subscription is not None and not self._subscription.closed:
            return self._subscription
        self._subscription = self._registry.subscribe_driver_locations(self.apply)
        return self._subscription

    def stop(self) -> None:
        subscription = self._subscription
        self._subscription = None
        if subscription is not None and self._registry.get(subscription.key) is subscription:
            self._registry.unsubscribe(subscription.key)

    def apply(self, event: ChangeEvent) -> bool:
        """Fold one change event into the board. Returns whether it changed."""
        if event.event_type == ChangeEventType.DELETE:
            driver_id = str(event.old.get("driver_id") or "").strip()
            if not driver_id or self._fixes.pop(driver_id, None) is None:
                return False
            self._notify()
            return True

        try:
            fix = LocationFix.model_validate(event.new)
        except ValidationError:
            _logger.debug("Ignoring malformed location change %s", event.new, exc_info=True)
            return False
        current = self._fixes.get(fix.driver_id)
        if current is not None and fix.timestamp < current.timestamp:
            return False
        self._fixes[fix.driver_id] = fix
        self._notify()
        return True
