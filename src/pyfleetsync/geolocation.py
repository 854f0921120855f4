"""Geolocation sampling.

The platform's location capability is reached through the
:class:`PositionSource` protocol. Two sampler strategies sit on top of
it and are chosen once, at construction time, by :func:`build_sampler`:

* :class:`GeolocationSampler` asks the platform for a single fix per call
  and tracks the platform's permission state.
* :class:`SyntheticSampler` produces jittered positions around a fixed
  base coordinate, for development builds without location hardware.

Neither retries internally; retry policy belongs to the caller.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from pyfleetsync._constants import (
    DEFAULT_GEO_MAXIMUM_AGE,
    DEFAULT_GEO_TIMEOUT,
    MSG_PERMISSION_DENIED,
    MSG_POSITION_UNAVAILABLE,
    MSG_SIMULATED,
    MSG_TIMEOUT,
    MSG_UNKNOWN_LOCATION,
    MSG_UNSUPPORTED,
    SIMULATION_ACCURACY_METERS,
    SIMULATION_BASE_LATITUDE,
    SIMULATION_BASE_LONGITUDE,
    SIMULATION_JITTER_DEGREES,
    SIMULATION_MAX_SPEED,
)
from pyfleetsync.exceptions import (
    FleetLocationError,
    FleetLocationTimeoutError,
    FleetLocationUnsupportedError,
    FleetPermissionDeniedError,
    FleetPositionUnavailableError,
)
from pyfleetsync.models.location import Position
from pyfleetsync.models.tracking import PermissionStatus

_logger = logging.getLogger(__name__)

PermissionListener = Callable[[PermissionStatus], None]


class PositionSourceError(Exception):
    """Raised by position sources; ``code`` uses the W3C geolocation codes."""

    PERMISSION_DENIED = 1
    POSITION_UNAVAILABLE = 2
    TIMEOUT = 3

    def __init__(self, code: int, message: str = "") -> None:
        self.code = code
        super().__init__(message or f"position error {code}")


@runtime_checkable
class PermissionQuery(Protocol):
    """Result of a platform permission query."""

    @property
    def state(self) -> str: ...

    def add_change_listener(self, callback: Callable[[], None]) -> None: ...


class PositionSource(Protocol):
    """Platform location capability."""

    async def get_current_position(
        self,
        *,
        enable_high_accuracy: bool,
        timeout: float,
        maximum_age: float,
    ) -> Position: ...

    async def query_permission(self) -> PermissionQuery: ...


_ERROR_BY_CODE: dict[int, tuple[type[FleetLocationError], str]] = {
    PositionSourceError.PERMISSION_DENIED: (FleetPermissionDeniedError, MSG_PERMISSION_DENIED),
    PositionSourceError.POSITION_UNAVAILABLE: (FleetPositionUnavailableError, MSG_POSITION_UNAVAILABLE),
    PositionSourceError.TIMEOUT: (FleetLocationTimeoutError, MSG_TIMEOUT),
}


def map_position_error(exc: PositionSourceError) -> FleetLocationError:
    """Translate a source error code into the library's typed error."""
    error_cls, message = _ERROR_BY_CODE.get(exc.code, (FleetLocationError, MSG_UNKNOWN_LOCATION))
    return error_cls(message, code=exc.code)


class Sampler(Protocol):
    """What the tracking loop needs from a sampling strategy."""

    @property
    def is_supported(self) -> bool: ...

    @property
    def notice(self) -> str | None: ...

    @property
    def permission_status(self) -> PermissionStatus: ...

    async def get_current_fix(self) -> Position: ...

    async def watch_permission(self) -> PermissionStatus: ...

    def add_permission_listener(self, listener: PermissionListener) -> None: ...


class _PermissionMixin:
    _permission_status: PermissionStatus
    _permission_listeners: list[PermissionListener]

    @property
    def permission_status(self) -> PermissionStatus:
        return self._permission_status

    def add_permission_listener(self, listener: PermissionListener) -> None:
        self._permission_listeners.append(listener)

    def _set_permission(self, status: PermissionStatus) -> None:
        if status == self._permission_status:
            return
        self._permission_status = status
        for listener in list(self._permission_listeners):
            try:
                listener(status)
            except Exception:
                _logger.warning("Permission listener failed", exc_info=True)


class GeolocationSampler(_PermissionMixin):
    """Capability-backed sampler.

    Parameters
    ----------
    source : PositionSource or None
        Platform location capability; ``None`` when the platform has none.
    enable_high_accuracy : bool
        Forwarded to the source.
    timeout : float
        Seconds the source may take to produce a fix.
    maximum_age : float
        Maximum age in seconds of a cached device fix the source may reuse.
    """

    def __init__(
        self,
        source: PositionSource | None,
        *,
        enable_high_accuracy: bool = True,
        timeout: float = DEFAULT_GEO_TIMEOUT,
        maximum_age: float = DEFAULT_GEO_MAXIMUM_AGE,
    ) -> None:
        self._source = source
        self._enable_high_accuracy = enable_high_accuracy
        self._timeout = timeout
        self._maximum_age = maximum_age
        self._permission_status = PermissionStatus.UNKNOWN if source is not None else PermissionStatus.DENIED
        self._permission_listeners = []
        self._watching = False

    @property
    def is_supported(self) -> bool:
        return self._source is not None

    @property
    def notice(self) -> str | None:
        return None

    async def get_current_fix(self) -> Position:
        """Take one fix from the platform.

        Raises
        ------
        FleetLocationUnsupportedError
            The platform has no location capability.
        FleetPermissionDeniedError, FleetPositionUnavailableError, FleetLocationTimeoutError
            The platform reported the matching failure.
        FleetLocationError
            Any other platform failure.
        """
        if self._source is None:
            raise FleetLocationUnsupportedError(MSG_UNSUPPORTED)
        try:
            position = await self._source.get_current_position(
                enable_high_accuracy=self._enable_high_accuracy,
                timeout=self._timeout,
                maximum_age=self._maximum_age,
            )
        except PositionSourceError as exc:
            error = map_position_error(exc)
            if isinstance(error, FleetPermissionDeniedError):
                self._set_permission(PermissionStatus.DENIED)
            raise error from exc
        except TimeoutError as exc:
            raise FleetLocationTimeoutError(MSG_TIMEOUT) from exc
        if self._permission_status != PermissionStatus.GRANTED:
            self._set_permission(PermissionStatus.GRANTED)
        return position

    async def watch_permission(self) -> PermissionStatus:
        """Query the permission state once and follow platform changes."""
        if self._source is None or self._watching:
            return self._permission_status
        try:
            query = await self._source.query_permission()
        except Exception:
            _logger.warning("Could not check geolocation permission", exc_info=True)
            return self._permission_status

        self._watching = True
        self._set_permission(PermissionStatus(query.state))

        def _on_change() -> None:
            self._set_permission(PermissionStatus(query.state))

        query.add_change_listener(_on_change)
        return self._permission_status


class SyntheticSampler(_PermissionMixin):
    """Development sampler producing plausible fixes without hardware.

    Each fix perturbs the base coordinate by at most ``jitter / 2``
    degrees on both axes.
    """

    def __init__(
        self,
        *,
        base_latitude: float = SIMULATION_BASE_LATITUDE,
        base_longitude: float = SIMULATION_BASE_LONGITUDE,
        jitter: float = SIMULATION_JITTER_DEGREES,
        rng: random.Random | None = None,
    ) -> None:
        self._base_latitude = base_latitude
        self._base_longitude = base_longitude
        self._jitter = jitter
        self._rng = rng or random.Random()
        self._permission_status = PermissionStatus.GRANTED
        self._permission_listeners = []

    @property
    def is_supported(self) -> bool:
        return True

    @property
    def notice(self) -> str | None:
        return MSG_SIMULATED

    async def get_current_fix(self) -> Position:
        rng = self._rng
        return Position(
            latitude=self._base_latitude + (rng.random() - 0.5) * self._jitter,
            longitude=self._base_longitude + (rng.random() - 0.5) * self._jitter,
            accuracy=SIMULATION_ACCURACY_METERS,
            heading=rng.random() * 360.0,
            speed=rng.random() * SIMULATION_MAX_SPEED,
        )

    async def watch_permission(self) -> PermissionStatus:
        return self._permission_status


def build_sampler(
    source: PositionSource | None,
    *,
    simulate: bool = False,
    enable_high_accuracy: bool = True,
    timeout: float = DEFAULT_GEO_TIMEOUT,
    maximum_age: float = DEFAULT_GEO_MAXIMUM_AGE,
    rng: random.Random | None = None,
) -> Sampler:
    """Pick the sampling strategy once, from capability and configuration."""
    if source is None and simulate:
        _logger.info("No position source available, using synthetic positions")
        return SyntheticSampler(rng=rng)
    return GeolocationSampler(
        source,
        enable_high_accuracy=enable_high_accuracy,
        timeout=timeout,
        maximum_age=maximum_age,
    )
