"""HTTP transport to the hosted relational store (PostgREST dialect)."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from pyfleetsync._constants import REST_PATH, USER_AGENT
from pyfleetsync._redact import redact_for_log
from pyfleetsync.config import FleetConfig
from pyfleetsync.exceptions import FleetStoreError, FleetTransportError

_logger = logging.getLogger(__name__)

_SINGLE_OBJECT = "application/vnd.pgrst.object+json"


def eq(value: Any) -> str:
    """PostgREST equality filter value."""
    return f"eq.{value}"


def gte(value: Any) -> str:
    """PostgREST greater-or-equal filter value."""
    return f"gte.{value}"


class StoreTransport(Protocol):
    """Structural interface of the storage collaborator.

    ``params`` use PostgREST query syntax (``{"driver_id": "eq.D1"}``,
    ``{"order": "timestamp.desc"}``). Every method raises
    :class:`FleetStoreError` when the backend rejects the request.
    """

    async def select(
        self,
        table: str,
        params: Mapping[str, str],
        *,
        single: bool = False,
    ) -> Any: ...

    async def insert(self, table: str, row: Mapping[str, Any]) -> list[dict[str, Any]]: ...

    async def update(
        self,
        table: str,
        row: Mapping[str, Any],
        params: Mapping[str, str],
    ) -> list[dict[str, Any]]: ...

    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        *,
        on_conflict: str,
    ) -> list[dict[str, Any]]: ...


class RestTransport:
    """aiohttp implementation of :class:`StoreTransport`."""

    def __init__(self, config: FleetConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._base = f"{config.base_url.rstrip('/')}{REST_PATH}"
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    def _headers(self, *, accept: str = "application/json", prefer: str | None = None) -> dict[str, str]:
        headers: dict[str, str] = {
            "apikey": self._config.api_key,
            "authorization": f"Bearer {self._config.bearer_token}",
            "accept": accept,
            "content-type": "application/json",
            "user-agent": USER_AGENT,
        }
        if self._config.schema != "public":
            headers["accept-profile"] = self._config.schema
            headers["content-profile"] = self._config.schema
        if prefer:
            headers["prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Mapping[str, str] | None = None,
        body: Any = None,
        accept: str = "application/json",
        prefer: str | None = None,
    ) -> Any:
        url = f"{self._base}/{table}"
        headers = self._headers(accept=accept, prefer=prefer)
        _logger.debug(
            "%s %s params=%s headers=%s",
            method,
            url,
            redact_for_log(dict(params or {})),
            redact_for_log(headers),
        )

        try:
            async with self._http.request(
                method,
                url,
                params=dict(params or {}),
                data=json.dumps(body) if body is not None else None,
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                status = resp.status
                text = await resp.text()
        except aiohttp.ClientError as exc:
            raise FleetTransportError(f"{method} {table} failed: {exc}", endpoint=table) from exc
        except TimeoutError as exc:
            raise FleetTransportError(f"{method} {table} timed out", endpoint=table) from exc

        payload: Any = None
        if text.strip():
            try:
                payload = json.loads(text)
            except json.JSONDecodeError as exc:
                raise FleetTransportError(
                    f"Invalid JSON from {table}: {text[:200]}",
                    status_code=status,
                    endpoint=table,
                ) from exc

        if status >= 400:
            raise _store_error(table, status, payload)
        return payload

    async def select(
        self,
        table: str,
        params: Mapping[str, str],
        *,
        single: bool = False,
    ) -> Any:
        query = {"select": "*", **params}
        accept = _SINGLE_OBJECT if single else "application/json"
        return await self._request("GET", table, params=query, accept=accept)

    async def insert(self, table: str, row: Mapping[str, Any]) -> list[dict[str, Any]]:
        result = await self._request("POST", table, body=dict(row), prefer="return=representation")
        return _as_rows(result)

    async def update(
        self,
        table: str,
        row: Mapping[str, Any],
        params: Mapping[str, str],
    ) -> list[dict[str, Any]]:
        result = await self._request("PATCH", table, params=params, body=dict(row), prefer="return=representation")
        return _as_rows(result)

    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        *,
        on_conflict: str,
    ) -> list[dict[str, Any]]:
        result = await self._request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            body=dict(row),
            prefer="resolution=merge-duplicates,return=representation",
        )
        return _as_rows(result)


def _as_rows(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        return [payload]
    return []


def _store_error(table: str, status: int, payload: Any) -> FleetStoreError:
    if not isinstance(payload, dict):
        return FleetStoreError(f"HTTP {status} from {table}", code=str(status), table=table)
    return FleetStoreError(
        str(payload.get("message") or f"HTTP {status} from {table}"),
        code=str(payload.get("code") or status),
        table=table,
        details=payload.get("details"),
        hint=payload.get("hint"),
    )
