from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from conftest import FakeStoreBackend

from pyfleetsync.exceptions import (
    FleetInsertError,
    FleetSelectError,
    FleetStoreError,
    FleetTransportError,
    FleetUpdateError,
    FleetUpsertError,
)
from pyfleetsync.models.location import LocationFields
from pyfleetsync.store import LocationStore

_TABLE = "driver_locations"


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _fields(lat: float = 41.0, lon: float = 29.0) -> LocationFields:
    return LocationFields(latitude=lat, longitude=lon, accuracy=5.0)


@pytest.fixture
def clock() -> _Clock:
    return _Clock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.mark.asyncio
async def test_first_upsert_inserts_then_updates_in_place(backend: FakeStoreBackend, clock: _Clock) -> None:
    store = LocationStore(backend, clock=clock)

    first = await store.upsert_location("D1", _fields(41.0, 29.0))
    clock.advance(30)
    second = await store.upsert_location("D1", _fields(41.1, 29.1))

    rows = backend.rows(_TABLE)
    assert len(rows) == 1
    assert rows[0]["latitude"] == 41.1
    assert backend.calls == [
        ("select", _TABLE),
        ("insert", _TABLE),
        ("select", _TABLE),
        ("update", _TABLE),
    ]
    assert second.timestamp - first.timestamp == timedelta(seconds=30)


@pytest.mark.asyncio
async def test_upsert_is_idempotent_apart_from_timestamp(backend: FakeStoreBackend, clock: _Clock) -> None:
    store = LocationStore(backend, clock=clock)

    await store.upsert_location("D1", _fields())
    before = dict(backend.rows(_TABLE)[0])
    clock.advance(1)
    await store.upsert_location("D1", _fields())
    after = backend.rows(_TABLE)[0]

    assert len(backend.rows(_TABLE)) == 1
    assert {k: v for k, v in after.items() if k != "timestamp"} == {
        k: v for k, v in before.items() if k != "timestamp"
    }
    assert after["timestamp"] != before["timestamp"]


@pytest.mark.asyncio
async def test_upsert_accepts_plain_mapping(backend: FakeStoreBackend, clock: _Clock) -> None:
    store = LocationStore(backend, clock=clock)
    fix = await store.upsert_location("D2", {"latitude": 1.0, "longitude": 2.0})
    assert fix.driver_id == "D2"
    assert fix.timestamp == clock.now
    assert backend.rows(_TABLE)[0]["heading"] is None


@pytest.mark.asyncio
async def test_select_failure_aborts_without_writing(backend: FakeStoreBackend) -> None:
    backend.failures["select"] = FleetStoreError("permission denied for table", code="42501", table=_TABLE)
    store = LocationStore(backend)

    with pytest.raises(FleetSelectError, match="Database select error") as exc_info:
        await store.upsert_location("D1", _fields())

    assert exc_info.value.code == "42501"
    assert backend.calls == [("select", _TABLE)]
    assert backend.rows(_TABLE) == []


@pytest.mark.asyncio
async def test_insert_failure_is_reported(backend: FakeStoreBackend) -> None:
    backend.failures["insert"] = FleetStoreError("violates foreign key", code="23503", table=_TABLE)
    store = LocationStore(backend)

    with pytest.raises(FleetInsertError, match="Database insert error"):
        await store.upsert_location("D1", _fields())


@pytest.mark.asyncio
async def test_update_failure_is_reported(backend: FakeStoreBackend, clock: _Clock) -> None:
    store = LocationStore(backend, clock=clock)
    await store.upsert_location("D1", _fields())
    backend.failures["update"] = FleetStoreError("row locked", code="55P03", table=_TABLE)

    with pytest.raises(FleetUpdateError, match="Database update error"):
        await store.upsert_location("D1", _fields(42.0, 30.0))
    assert backend.rows(_TABLE)[0]["latitude"] == 41.0


@pytest.mark.asyncio
async def test_overlapping_upserts_can_both_insert(backend: FakeStoreBackend) -> None:
    # Read-then-write is not atomic; concurrent writers may both see "no row".
    store = LocationStore(backend)

    await asyncio.gather(
        store.upsert_location("D1", _fields(41.0, 29.0)),
        store.upsert_location("D1", _fields(41.5, 29.5)),
    )

    assert len(backend.rows(_TABLE)) == 2


@pytest.mark.asyncio
async def test_upserts_after_a_race_update_every_duplicate(backend: FakeStoreBackend, clock: _Clock) -> None:
    store = LocationStore(backend, clock=clock)
    await asyncio.gather(
        store.upsert_location("D1", _fields(41.0, 29.0)),
        store.upsert_location("D1", _fields(41.5, 29.5)),
    )

    for step in range(3):
        clock.advance(10)
        await store.upsert_location("D1", _fields(42.0 + step, 30.0))

    rows = backend.rows(_TABLE)
    assert len(rows) == 2
    assert {row["latitude"] for row in rows} == {44.0}
    assert ("insert", _TABLE) not in backend.calls[-6:]

    fix = await store.get_location("D1")
    assert fix is not None
    assert fix.latitude == 44.0


@pytest.mark.asyncio
async def test_conditional_upsert_keeps_one_row_under_overlap(backend: FakeStoreBackend) -> None:
    store = LocationStore(backend, conditional_upsert=True)

    await asyncio.gather(
        store.upsert_location("D1", _fields(41.0, 29.0)),
        store.upsert_location("D1", _fields(41.5, 29.5)),
    )

    assert len(backend.rows(_TABLE)) == 1
    assert {method for method, _ in backend.calls} == {"upsert"}


@pytest.mark.asyncio
async def test_conditional_upsert_failure_is_reported(backend: FakeStoreBackend) -> None:
    backend.failures["upsert"] = FleetStoreError("no unique constraint", code="42P10", table=_TABLE)
    store = LocationStore(backend, conditional_upsert=True)

    with pytest.raises(FleetUpsertError, match="Database upsert error"):
        await store.upsert_location("D1", _fields())


@pytest.mark.asyncio
async def test_get_location_returns_none_without_row(backend: FakeStoreBackend) -> None:
    store = LocationStore(backend)
    assert await store.get_location("nobody") is None


@pytest.mark.asyncio
async def test_recent_locations_keeps_newest_per_driver(backend: FakeStoreBackend, clock: _Clock) -> None:
    now = clock.now
    backend.rows(_TABLE).extend(
        [
            {"driver_id": "D1", "latitude": 1, "longitude": 1, "timestamp": (now - timedelta(minutes=30)).isoformat()},
            {"driver_id": "D1", "latitude": 2, "longitude": 2, "timestamp": (now - timedelta(minutes=5)).isoformat()},
            {"driver_id": "D2", "latitude": 3, "longitude": 3, "timestamp": (now - timedelta(minutes=1)).isoformat()},
            {"driver_id": "D3", "latitude": 4, "longitude": 4, "timestamp": (now - timedelta(hours=3)).isoformat()},
            {"driver_id": "", "latitude": 5, "longitude": 5, "timestamp": now.isoformat()},
        ]
    )
    store = LocationStore(backend, clock=clock)

    fixes = await store.recent_locations()

    assert [fix.driver_id for fix in fixes] == ["D2", "D1"]
    assert fixes[1].latitude == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("method", "error_cls", "prefix"),
    [
        ("select", FleetSelectError, "Database select error"),
        ("insert", FleetInsertError, "Database insert error"),
        ("upsert", FleetUpsertError, "Database upsert error"),
    ],
)
async def test_transport_failures_are_reported_as_store_errors(
    backend: FakeStoreBackend,
    method: str,
    error_cls: type[FleetStoreError],
    prefix: str,
) -> None:
    backend.failures[method] = FleetTransportError("Request failed: connection reset", endpoint=f"/rest/v1/{_TABLE}")
    store = LocationStore(backend, conditional_upsert=method == "upsert")

    with pytest.raises(error_cls, match=prefix) as exc_info:
        await store.upsert_location("D1", _fields())

    assert "connection reset" in str(exc_info.value)
    assert isinstance(exc_info.value.__cause__, FleetTransportError)


@pytest.mark.asyncio
async def test_transport_failure_on_update_is_reported(backend: FakeStoreBackend, clock: _Clock) -> None:
    store = LocationStore(backend, clock=clock)
    await store.upsert_location("D1", _fields())
    backend.failures["update"] = FleetTransportError("Invalid JSON in response", status_code=200)

    with pytest.raises(FleetUpdateError, match="Database update error"):
        await store.upsert_location("D1", _fields(42.0, 30.0))
