"""High-level async client wiring the location and change-feed components."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Mapping
from datetime import timedelta
from typing import Any

import aiohttp

from pyfleetsync._constants import RECENT_LOCATION_WINDOW_SECONDS
from pyfleetsync._transport import RestTransport, StoreTransport
from pyfleetsync.board import LiveLocationBoard
from pyfleetsync.config import FleetConfig
from pyfleetsync.exceptions import FleetError
from pyfleetsync.geolocation import PositionSource, Sampler, build_sampler
from pyfleetsync.models.location import LocationFields, LocationFix
from pyfleetsync.models.tracking import TrackingSession
from pyfleetsync.realtime import ChangeFeed, ChangeSubscriberRegistry, MqttChangeFeed
from pyfleetsync.store import LocationStore
from pyfleetsync.tracking import LocationTracker
from pyfleetsync.updates import TaskUpdateMonitor

_logger = logging.getLogger(__name__)


class FleetClient:
    """Async entry point for driver tracking and live operations data.

    Usage::

        async with FleetClient(config) as client:
            tracker = await client.create_tracker("D1", source=my_gps)
            tracker.enable()
            ...

    The client owns one :class:`ChangeSubscriberRegistry`; every monitor
    and board it creates shares it, and leaving the context (or calling
    :meth:`logout`) tears all subscriptions down.
    """

    def __init__(
        self,
        config: FleetConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        transport: StoreTransport | None = None,
        feed: ChangeFeed | None = None,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._transport = transport
        self._external_transport = transport is not None
        self._feed = feed
        self._store: LocationStore | None = None
        self._registry: ChangeSubscriberRegistry | None = None
        self._trackers: list[LocationTracker] = []

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> FleetClient:
        config = self._config
        if self._transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._transport = RestTransport(config, self._http_session)
        self._store = LocationStore(
            self._transport,
            table=config.locations_table,
            conditional_upsert=config.conditional_upsert,
        )
        if self._feed is None and config.mqtt_enabled:
            self._feed = MqttChangeFeed(config.mqtt)
        if self._feed is not None:
            self._registry = ChangeSubscriberRegistry(
                self._feed,
                schema=config.schema,
                tasks_table=config.tasks_table,
                locations_table=config.locations_table,
            )
        return self

    async def __aexit__(self, *exc: Any) -> None:
        for tracker in self._trackers:
            await tracker.aclose()
        self._trackers.clear()
        self.logout()
        if self._feed is not None:
            await self._feed.close()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        if not self._external_transport:
            self._transport = None
        self._store = None
        self._registry = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> FleetConfig:
        return self._config

    @property
    def store(self) -> LocationStore:
        if self._store is None:
            raise FleetError("Client not initialized. Use 'async with FleetClient(...) as client:'")
        return self._store

    @property
    def registry(self) -> ChangeSubscriberRegistry:
        if self._registry is None:
            if self._store is None:
                raise FleetError("Client not initialized. Use 'async with FleetClient(...) as client:'")
            raise FleetError("No change feed configured (mqtt_enabled is off and no feed was given)")
        return self._registry

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    def create_sampler(self, source: PositionSource | None = None, *, rng: random.Random | None = None) -> Sampler:
        config = self._config
        return build_sampler(
            source,
            simulate=config.simulate_location,
            enable_high_accuracy=config.geo_high_accuracy,
            timeout=config.geo_timeout,
            maximum_age=config.geo_maximum_age,
            rng=rng,
        )

    async def create_tracker(
        self,
        driver_id: str | None = None,
        *,
        source: PositionSource | None = None,
        sampler: Sampler | None = None,
        enabled: bool = False,
        on_change: Callable[[TrackingSession], None] | None = None,
    ) -> LocationTracker:
        """Create a location tracker publishing through this client's store.

        The tracker queries the platform permission before it is returned
        and follows later permission changes. It is closed together with
        the client.
        """
        tracker = LocationTracker(
            sampler or self.create_sampler(source),
            self.store,
            driver_id=driver_id,
            interval=self._config.tracking_interval,
            on_change=on_change,
        )
        await tracker.watch_permission()
        self._trackers.append(tracker)
        if enabled:
            tracker.enable()
        return tracker

    def create_task_monitor(self, driver_id: str) -> TaskUpdateMonitor:
        return TaskUpdateMonitor(self.registry, driver_id)

    def create_location_board(self) -> LiveLocationBoard:
        return LiveLocationBoard(self.store, self.registry)

    # ------------------------------------------------------------------
    # Direct operations
    # ------------------------------------------------------------------

    async def upsert_location(self, driver_id: str, fields: LocationFields | Mapping[str, Any]) -> LocationFix:
        return await self.store.upsert_location(driver_id, fields)

    async def get_location(self, driver_id: str) -> LocationFix | None:
        return await self.store.get_location(driver_id)

    async def recent_locations(
        self,
        max_age: timedelta = timedelta(seconds=RECENT_LOCATION_WINDOW_SECONDS),
    ) -> list[LocationFix]:
        return await self.store.recent_locations(max_age)

    def logout(self) -> None:
        """Tear down every live subscription."""
        if self._registry is not None:
            self._registry.cleanup()
        _logger.debug("Released all subscriptions")

