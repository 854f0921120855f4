from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest

from pyfleetsync._constants import NO_ROWS_CODE
from pyfleetsync.exceptions import FleetError, FleetStoreError
from pyfleetsync.models._base import parse_timestamp
from pyfleetsync.models.changes import ChangeEvent, ChangePredicate, ConnectionState
from pyfleetsync.realtime import EventCallback, StateCallback


def _matches(row: Mapping[str, Any], column: str, expression: str) -> bool:
    operator, _, value = expression.partition(".")
    current = row.get(column)
    if operator == "eq":
        return current is not None and str(current) == value
    if operator == "gte":
        left = parse_timestamp(current)
        right = parse_timestamp(value)
        return left is not None and right is not None and left >= right
    raise AssertionError(f"unsupported operator {operator}")


@dataclass
class FakeStoreBackend:
    """In-memory PostgREST stand-in implementing ``StoreTransport``."""

    tables: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)
    failures: dict[str, FleetError] = field(default_factory=dict)
    delay: float = 0.0

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(table, [])

    async def _enter(self, method: str, table: str) -> None:
        self.calls.append((method, table))
        if self.delay:
            await asyncio.sleep(self.delay)
        else:
            await asyncio.sleep(0)
        error = self.failures.get(method)
        if error is not None:
            raise error

    def _filter(self, table: str, params: Mapping[str, str]) -> list[dict[str, Any]]:
        rows = list(self.rows(table))
        for column, expression in params.items():
            if column in {"order", "limit", "select", "on_conflict"}:
                continue
            rows = [row for row in rows if _matches(row, column, expression)]
        order = params.get("order")
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda row: parse_timestamp(row.get(column)) or 0, reverse=direction == "desc")
        limit = params.get("limit")
        if limit:
            rows = rows[: int(limit)]
        return rows

    async def select(self, table: str, params: Mapping[str, str], *, single: bool = False) -> Any:
        await self._enter("select", table)
        rows = self._filter(table, params)
        if not single:
            return [dict(row) for row in rows]
        if len(rows) != 1:
            raise FleetStoreError(
                "JSON object requested, multiple (or no) rows returned",
                code=NO_ROWS_CODE,
                table=table,
            )
        return dict(rows[0])

    async def insert(self, table: str, row: Mapping[str, Any]) -> list[dict[str, Any]]:
        await self._enter("insert", table)
        stored = dict(row)
        self.rows(table).append(stored)
        return [dict(stored)]

    async def update(self, table: str, row: Mapping[str, Any], params: Mapping[str, str]) -> list[dict[str, Any]]:
        await self._enter("update", table)
        updated = []
        for existing in self._filter(table, params):
            existing.update(row)
            updated.append(dict(existing))
        return updated

    async def upsert(self, table: str, row: Mapping[str, Any], *, on_conflict: str) -> list[dict[str, Any]]:
        await self._enter("upsert", table)
        for existing in self.rows(table):
            if existing.get(on_conflict) == row.get(on_conflict):
                existing.update(row)
                return [dict(existing)]
        stored = dict(row)
        self.rows(table).append(stored)
        return [dict(stored)]


@dataclass(eq=False)
class FakeChannel:
    feed: FakeChangeFeed
    predicate: ChangePredicate
    on_event: EventCallback
    on_state: StateCallback
    closed: bool = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.feed.channels.remove(self)
        self.on_state(ConnectionState.DISCONNECTED)


@dataclass(eq=False)
class FakeChangeFeed:
    """Change feed that connects channels on demand and delivers events synchronously."""

    auto_connect: bool = True
    channels: list[FakeChannel] = field(default_factory=list)
    opened: int = 0
    closed: bool = False

    @property
    def open_channels(self) -> int:
        return len(self.channels)

    def open(self, predicate: ChangePredicate, on_event: EventCallback, on_state: StateCallback) -> FakeChannel:
        channel = FakeChannel(self, predicate, on_event, on_state)
        self.channels.append(channel)
        self.opened += 1
        on_state(ConnectionState.CONNECTING)
        if self.auto_connect:
            on_state(ConnectionState.CONNECTED)
        return channel

    def emit(self, payload: dict[str, Any]) -> int:
        event = ChangeEvent.model_validate(payload)
        delivered = 0
        for channel in list(self.channels):
            if channel.predicate.matches(event):
                channel.on_event(event)
                delivered += 1
        return delivered

    def drop_connection(self) -> None:
        for channel in list(self.channels):
            channel.on_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        self.closed = True
        for channel in list(self.channels):
            channel.close()


@pytest.fixture
def backend() -> FakeStoreBackend:
    return FakeStoreBackend()


@pytest.fixture
def feed() -> FakeChangeFeed:
    return FakeChangeFeed()
