"""Row-level change events and subscription predicates."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, Field, field_validator, model_validator

from pyfleetsync._constants import DEFAULT_SCHEMA
from pyfleetsync.models._base import FleetModel, OptionalTimestamp


class ChangeEventType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @classmethod
    def _missing_(cls, value: object) -> ChangeEventType | None:
        if isinstance(value, str):
            upper = value.strip().upper()
            for member in cls:
                if member.value == upper:
                    return member
        return None


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ChangeEvent(FleetModel):
    """A single insert/update/delete observed on a table.

    Accepts both the database-webhook shape (``type``, ``record``,
    ``old_record``) and the realtime shape (``eventType``, ``new``,
    ``old``).
    """

    event_type: ChangeEventType = Field(validation_alias=AliasChoices("event_type", "eventType", "type"))
    schema_name: str = Field(default=DEFAULT_SCHEMA, validation_alias=AliasChoices("schema_name", "schema"))
    table: str
    new: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("new", "record"))
    old: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("old", "old_record"))
    commit_timestamp: OptionalTimestamp = None

    @field_validator("new", "old", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def row(self) -> dict[str, Any]:
        """The row the event is about: the old image for deletes, the new one otherwise."""
        if self.event_type == ChangeEventType.DELETE:
            return self.old
        return self.new


class ChangePredicate(FleetModel):
    """Which change events a subscription wants.

    A table (within a schema), optionally narrowed by an equality filter
    on one column and by event type.
    """

    table: str
    schema_name: str = DEFAULT_SCHEMA
    column: str | None = None
    value: str | None = None
    events: frozenset[ChangeEventType] = frozenset(ChangeEventType)

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, value: Any) -> str | None:
        return None if value is None else str(value)

    @model_validator(mode="after")
    def _check_filter(self) -> ChangePredicate:
        if (self.column is None) != (self.value is None):
            raise ValueError("column and value must be given together")
        if not self.table.strip():
            raise ValueError("table must be non-empty")
        return self

    @classmethod
    def parse(cls, table: str, filter: str | None = None, *, schema: str = DEFAULT_SCHEMA) -> ChangePredicate:
        """Build a predicate from a ``column=eq.value`` filter string."""
        if not filter:
            return cls(table=table, schema_name=schema)
        column, sep, expression = filter.partition("=")
        operator, dot, value = expression.partition(".")
        if not sep or not dot or not column:
            raise ValueError(f"Malformed filter: {filter!r}")
        if operator != "eq":
            raise ValueError(f"Unsupported filter operator {operator!r} (only 'eq')")
        return cls(table=table, schema_name=schema, column=column, value=value)

    @property
    def filter_string(self) -> str | None:
        if self.column is None:
            return None
        return f"{self.column}=eq.{self.value}"

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.schema_name != self.schema_name:
            return False
        if event.event_type not in self.events:
            return False
        if self.column is None:
            return True
        candidate = event.row.get(self.column)
        return candidate is not None and str(candidate) == self.value

    def describe(self) -> str:
        target = f"{self.schema_name}.{self.table}"
        return f"{target}[{self.filter_string}]" if self.column else target
