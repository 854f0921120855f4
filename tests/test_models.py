from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from pyfleetsync.models import (
    ChangeEvent,
    ChangeEventType,
    ChangePredicate,
    LocationFix,
    PermissionStatus,
    Position,
    TrackingSession,
)
from pyfleetsync.models._base import parse_timestamp, safe_float


def test_parse_timestamp_accepts_iso_and_epoch() -> None:
    expected = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    assert parse_timestamp("2026-03-01T12:00:00Z") == expected
    assert parse_timestamp("2026-03-01T12:00:00+00:00") == expected
    assert parse_timestamp(expected.timestamp()) == expected
    assert parse_timestamp(expected.timestamp() * 1000) == expected
    assert parse_timestamp(datetime(2026, 3, 1, 12, 0)) == expected
    assert parse_timestamp("") is None


def test_safe_float_tolerates_strings_and_blanks() -> None:
    assert safe_float("12.5") == 12.5
    assert safe_float("") is None
    assert safe_float("n/a") is None
    assert safe_float(float("nan")) is None
    assert safe_float(True) is None


def test_location_fix_parses_backend_row_and_keeps_raw() -> None:
    row = {
        "id": 17,
        "driver_id": " D1 ",
        "latitude": "41.01",
        "longitude": 28.97,
        "accuracy": None,
        "heading": "",
        "speed": "3.5",
        "timestamp": "2026-03-01T12:00:00Z",
        "created_at": "2026-02-01T00:00:00Z",
    }

    fix = LocationFix.model_validate(row)

    assert fix.driver_id == "D1"
    assert fix.latitude == 41.01
    assert fix.accuracy is None
    assert fix.heading is None
    assert fix.speed == 3.5
    assert fix.timestamp == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    assert fix.raw["id"] == 17
    assert "raw" not in fix.to_row()
    assert "id" not in fix.to_row()


def test_location_fix_requires_driver_id() -> None:
    with pytest.raises(ValidationError):
        LocationFix.model_validate({"driver_id": "  ", "latitude": 1, "longitude": 2, "timestamp": 0})


def test_position_rejects_out_of_range_coordinates() -> None:
    with pytest.raises(ValidationError):
        Position(latitude=91.0, longitude=0.0)
    with pytest.raises(ValidationError):
        Position(latitude=0.0, longitude=-180.5)


def test_position_accepts_short_aliases() -> None:
    position = Position.model_validate({"lat": 1.5, "lng": 2.5, "course": 90})
    assert (position.latitude, position.longitude, position.heading) == (1.5, 2.5, 90.0)
    assert position.fields().model_dump() == {
        "latitude": 1.5,
        "longitude": 2.5,
        "accuracy": None,
        "heading": 90.0,
        "speed": None,
    }


def test_change_event_accepts_webhook_and_realtime_shapes() -> None:
    webhook = ChangeEvent.model_validate(
        {"type": "insert", "schema": "public", "table": "tasks", "record": {"id": 1}, "old_record": None}
    )
    realtime = ChangeEvent.model_validate(
        {"eventType": "DELETE", "schema": "public", "table": "tasks", "new": {}, "old": {"id": 2}}
    )

    assert webhook.event_type is ChangeEventType.INSERT
    assert webhook.row == {"id": 1}
    assert webhook.old == {}
    assert realtime.event_type is ChangeEventType.DELETE
    assert realtime.row == {"id": 2}


def test_change_predicate_parse_and_match() -> None:
    predicate = ChangePredicate.parse("tasks", "assigned_driver_id=eq.7")

    assert predicate.column == "assigned_driver_id"
    assert predicate.value == "7"
    assert predicate.filter_string == "assigned_driver_id=eq.7"
    assert predicate.describe() == "public.tasks[assigned_driver_id=eq.7]"

    hit = ChangeEvent(event_type="UPDATE", table="tasks", new={"assigned_driver_id": 7})
    miss = ChangeEvent(event_type="UPDATE", table="tasks", new={"assigned_driver_id": 8})
    other_table = ChangeEvent(event_type="UPDATE", table="task_files", new={"assigned_driver_id": 7})
    assert predicate.matches(hit)
    assert not predicate.matches(miss)
    assert not predicate.matches(other_table)


def test_change_predicate_rejects_unsupported_operators() -> None:
    with pytest.raises(ValueError, match="only 'eq'"):
        ChangePredicate.parse("tasks", "assigned_driver_id=gt.7")
    with pytest.raises(ValueError, match="Malformed"):
        ChangePredicate.parse("tasks", "assigned_driver_id")


def test_tracking_session_is_tracking_needs_driver_and_toggle() -> None:
    session = TrackingSession()
    assert not session.is_tracking
    session.driver_id = "D1"
    assert not session.is_tracking
    session.enabled = True
    assert session.is_tracking
    assert PermissionStatus("bogus") is PermissionStatus.UNKNOWN
