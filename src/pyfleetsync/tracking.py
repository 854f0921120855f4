"""Periodic location publishing for one driver.

:class:`LocationTracker` is a small state machine, ``Idle -> Tracking ->
Idle``, driven by two inputs: the driver id and the ``enabled`` toggle.
Entering *Tracking* runs one sample-and-publish cycle immediately and
then one every ``interval`` seconds. Leaving it cancels the timer and any
in-flight cycle synchronously; a generation counter makes sure a sample
that completes after cancellation is never published.

Cycles are not serialised: a slow store write can still be in flight
when the next tick starts. Failures of a cycle are recorded on the
session (``last_error``) and never stop the loop; the next tick (or a
manual :meth:`LocationTracker.refresh_location`) is the only retry.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

from pyfleetsync._constants import (
    DEFAULT_TRACKING_INTERVAL,
    MSG_PERMISSION_REQUEST_FAILED,
    MSG_PUBLISH_FAILED,
    MSG_SAMPLE_FAILED,
    MSG_UNSUPPORTED,
)
from pyfleetsync.exceptions import FleetError, FleetLocationError
from pyfleetsync.geolocation import Sampler
from pyfleetsync.models.location import LocationFields, LocationFix
from pyfleetsync.models.tracking import PermissionStatus, TrackingSession

_logger = logging.getLogger(__name__)


class LocationWriter(Protocol):
    async def upsert_location(
        self,
        driver_id: str,
        fields: LocationFields | Mapping[str, Any],
    ) -> LocationFix: ...


def _normalize_driver(driver_id: str | None) -> str | None:
    if driver_id is None:
        return None
    stripped = driver_id.strip()
    return stripped or None


class LocationTracker:
    """Samples a driver's position on an interval and publishes it to the store.

    Usage::

        async with LocationTracker(sampler, store, driver_id="D1") as tracker:
            tracker.enable()
            ...

    Parameters
    ----------
    sampler : Sampler
        Sampling strategy (see :func:`pyfleetsync.geolocation.build_sampler`).
    store : LocationWriter
        Where fixes are published, normally a :class:`~pyfleetsync.store.LocationStore`.
    driver_id : str or None
        Initial driver.
    interval : float
        Seconds between two cycles while tracking.
    on_change : callable or None
        Called with a snapshot of the session after every state change.
    sleep : callable
        Awaitable sleep used by the timer.
    """

    def __init__(
        self,
        sampler: Sampler,
        store: LocationWriter,
        *,
        driver_id: str | None = None,
        interval: float = DEFAULT_TRACKING_INTERVAL,
        on_change: Callable[[TrackingSession], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._sampler = sampler
        self._store = store
        self._on_change = on_change
        self._sleep = sleep
        self._session = TrackingSession(
            driver_id=_normalize_driver(driver_id),
            interval=interval,
            permission_status=sampler.permission_status,
        )
        if not sampler.is_supported:
            self._session.last_error = MSG_UNSUPPORTED
        self._generation = 0
        self._timer: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[bool]] = set()
        self._cancelled: set[asyncio.Task[Any]] = set()
        sampler.add_permission_listener(self._on_permission)

    async def __aenter__(self) -> LocationTracker:
        await self.watch_permission()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def session(self) -> TrackingSession:
        return self._session.model_copy()

    @property
    def location(self) -> LocationFix | None:
        return self._session.last_fix

    @property
    def error(self) -> str | None:
        return self._session.last_error

    @property
    def is_supported(self) -> bool:
        return self._sampler.is_supported

    @property
    def permission_status(self) -> PermissionStatus:
        return self._session.permission_status

    @property
    def is_tracking(self) -> bool:
        return self._session.is_tracking

    @property
    def timer_active(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.session)
        except Exception:
            _logger.warning("Tracking change callback failed", exc_info=True)

    def _on_permission(self, status: PermissionStatus) -> None:
        self._session.permission_status = status
        self._notify()

    async def watch_permission(self) -> PermissionStatus:
        """Query the platform permission once and follow its changes."""
        status = await self._sampler.watch_permission()
        if status != self._session.permission_status:
            self._on_permission(status)
        return status

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def set_tracking(self, driver_id: str | None, enabled: bool) -> None:
        """Apply new inputs; starts or stops the loop as needed."""
        driver = _normalize_driver(driver_id)
        session = self._session
        if driver == session.driver_id and enabled == session.enabled:
            return
        was_tracking = session.is_tracking
        self._stop_timer()
        session.driver_id = driver
        session.enabled = enabled
        if session.is_tracking:
            self._arm()
        elif was_tracking:
            self._reset()
        self._notify()

    def enable(self) -> None:
        self.set_tracking(self._session.driver_id, True)

    def disable(self) -> None:
        self.set_tracking(self._session.driver_id, False)

    def set_driver(self, driver_id: str | None) -> None:
        self.set_tracking(driver_id, self._session.enabled)

    def stop(self) -> None:
        """Leave *Tracking* now; cancels the timer and any in-flight cycle."""
        self.set_tracking(self._session.driver_id, False)

    def _reset(self) -> None:
        session = self._session
        session.last_fix = None
        session.last_error = None if self._sampler.is_supported else MSG_UNSUPPORTED

    def _arm(self) -> None:
        if not self._sampler.is_supported:
            self._session.last_error = MSG_UNSUPPORTED
            _logger.warning("Tracking requested but geolocation is not supported")
            return
        driver_id = self._session.driver_id
        if driver_id is None:
            return
        self._generation += 1
        generation = self._generation
        self._timer = asyncio.get_running_loop().create_task(
            self._run_timer(driver_id, generation),
            name=f"location-tracker-{driver_id}",
        )
        _logger.debug("Tracking started driver=%s interval=%ss", driver_id, self._session.interval)

    def _stop_timer(self) -> None:
        self._generation += 1
        timer = self._timer
        self._timer = None
        if timer is not None and not timer.done():
            timer.cancel()
            self._track_cancelled(timer)
            _logger.debug("Tracking stopped driver=%s", self._session.driver_id)
        for task in list(self._inflight):
            if not task.done():
                task.cancel()
                self._track_cancelled(task)
        self._inflight.clear()

    def _track_cancelled(self, task: asyncio.Task[Any]) -> None:
        self._cancelled.add(task)
        task.add_done_callback(self._cancelled.discard)

    async def _run_timer(self, driver_id: str, generation: int) -> None:
        while generation == self._generation:
            task = asyncio.get_running_loop().create_task(self._cycle(driver_id, generation))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            await self._sleep(self._session.interval)

    def _is_stale(self, generation: int | None) -> bool:
        return generation is not None and generation != self._generation

    def _record_error(self, message: str) -> None:
        self._session.last_error = message
        self._notify()

    async def _cycle(self, driver_id: str, generation: int | None) -> bool:
        """Sample once and publish. Returns whether a fix was published."""
        try:
            position = await self._sampler.get_current_fix()
        except FleetLocationError as exc:
            if not self._is_stale(generation):
                _logger.warning("Location sample failed driver=%s: %s", driver_id, exc)
                self._record_error(str(exc))
            return False
        except Exception:
            if not self._is_stale(generation):
                _logger.warning("Location sample failed driver=%s", driver_id, exc_info=True)
                self._record_error(MSG_SAMPLE_FAILED)
            return False

        if self._is_stale(generation):
            return False

        session = self._session
        session.last_fix = LocationFix.from_position(driver_id, position)
        session.last_error = self._sampler.notice
        self._notify()

        try:
            await self._store.upsert_location(driver_id, position.fields())
        except FleetError as exc:
            if not self._is_stale(generation):
                _logger.warning("Location publish failed driver=%s: %s", driver_id, exc)
                self._record_error(str(exc))
            return False
        except Exception:
            if not self._is_stale(generation):
                _logger.warning("Location publish failed driver=%s", driver_id, exc_info=True)
                self._record_error(MSG_PUBLISH_FAILED)
            return False
        return True

    # ------------------------------------------------------------------
    # One-shot operations
    # ------------------------------------------------------------------

    async def refresh_location(self) -> bool:
        """Run one sample-and-publish cycle now, independent of the timer."""
        driver_id = self._session.driver_id
        if driver_id is None:
            return False
        return await self._cycle(driver_id, None)

    async def request_permission(self) -> bool:
        """Sample once to trigger the platform prompt. Nothing is published."""
        if not self._sampler.is_supported:
            self._record_error(MSG_UNSUPPORTED)
            return False
        try:
            await self._sampler.get_current_fix()
        except FleetLocationError as exc:
            self._record_error(str(exc))
            return False
        except Exception:
            _logger.warning("Permission request failed", exc_info=True)
            self._record_error(MSG_PERMISSION_REQUEST_FAILED)
            return False
        return True

    async def aclose(self) -> None:
        """Stop tracking and wait for cancelled work to unwind."""
        self.stop()
        if self._cancelled:
            await asyncio.gather(*list(self._cancelled), return_exceptions=True)
