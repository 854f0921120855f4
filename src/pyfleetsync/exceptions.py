"""Custom exception hierarchy for pyfleetsync."""

from __future__ import annotations


class FleetError(Exception):
    """Base exception for all pyfleetsync errors."""


class FleetConfigError(FleetError):
    """Invalid or missing configuration."""


class FleetTransportError(FleetError):
    """HTTP-level failure (network, invalid JSON, unexpected body)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class FleetStoreError(FleetError):
    """The storage collaborator rejected a request.

    ``code`` carries the backend error code (PostgREST codes such as
    ``PGRST116`` or Postgres SQLSTATE values such as ``23505``).
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "",
        table: str = "",
        details: str | None = None,
        hint: str | None = None,
    ) -> None:
        self.code = code
        self.table = table
        self.details = details
        self.hint = hint
        super().__init__(message)


class FleetSelectError(FleetStoreError):
    """Reading the current row failed for a reason other than "no rows"."""


class FleetInsertError(FleetStoreError):
    """Inserting a new row failed."""


class FleetUpdateError(FleetStoreError):
    """Updating the existing row failed."""


class FleetUpsertError(FleetStoreError):
    """The native conditional upsert failed."""


class FleetLocationError(FleetError):
    """A position could not be sampled.

    ``code`` follows the W3C geolocation error codes
    (1 permission denied, 2 position unavailable, 3 timeout) and is
    ``0`` when the platform has no location capability at all.
    """

    code: int = 2

    def __init__(self, message: str, *, code: int | None = None) -> None:
        if code is not None:
            self.code = code
        super().__init__(message)


class FleetLocationUnsupportedError(FleetLocationError):
    """The platform offers no location capability."""

    code = 0


class FleetPermissionDeniedError(FleetLocationError):
    """The user (or platform policy) denied location access."""

    code = 1


class FleetPositionUnavailableError(FleetLocationError):
    """The platform could not determine a position."""

    code = 2


class FleetLocationTimeoutError(FleetLocationError):
    """No position was produced within the configured timeout."""

    code = 3
