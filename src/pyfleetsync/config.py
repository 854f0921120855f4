"""Client configuration for pyfleetsync."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pyfleetsync._constants import (
    DEFAULT_GEO_MAXIMUM_AGE,
    DEFAULT_GEO_TIMEOUT,
    DEFAULT_SCHEMA,
    DEFAULT_TRACKING_INTERVAL,
    LOCATIONS_TABLE,
    TASKS_TABLE,
)
from pyfleetsync.exceptions import FleetConfigError


def _env_bool(env_key: str, value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    raise FleetConfigError(f"{env_key} must be a boolean, got {value!r}")


def _env_number(env_key: str, value: str, kind: type[int] | type[float]) -> int | float:
    try:
        return kind(value)
    except ValueError as exc:
        raise FleetConfigError(f"{env_key} must be a number, got {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class MqttSettings:
    """Connection details for the MQTT change-feed broker.

    The broker carries row-change events published by the database
    (one topic per ``<prefix>/<schema>/<table>``).
    """

    host: str = "localhost"
    port: int = 8883
    username: str | None = None
    password: str | None = None
    tls: bool = True
    keepalive: int = 60
    topic_prefix: str = "realtime"
    client_id: str | None = None


@dataclasses.dataclass(frozen=True)
class FleetConfig:
    """Client configuration.

    Parameters
    ----------
    base_url : str
        Base URL of the hosted backend. The PostgREST API is expected
        under ``/rest/v1``.
    api_key : str
        Public (anon) API key sent as the ``apikey`` header.
    access_token : str or None
        Bearer token of the signed-in user. Falls back to ``api_key``.
    schema : str
        Database schema holding the tables.
    locations_table : str
        Table holding one current-location row per driver.
    tasks_table : str
        Table holding trip tasks.
    tracking_interval : float
        Seconds between two location samples while tracking.
    geo_timeout : float
        Seconds the platform may take to produce a position.
    geo_maximum_age : float
        Maximum age in seconds of a cached device position that may be reused.
    geo_high_accuracy : bool
        Ask the platform for its most accurate positioning method.
    simulate_location : bool
        Substitute synthetic positions when the platform has no location
        capability. Meant for development builds only.
    conditional_upsert : bool
        Write locations with a single native upsert keyed on the driver
        instead of select-then-insert/update.
    request_timeout : float
        Total timeout in seconds for a single HTTP request.
    mqtt_enabled : bool
        Connect to the MQTT change feed.
    mqtt : MqttSettings
        Broker connection details.
    """

    base_url: str
    api_key: str
    access_token: str | None = None
    schema: str = DEFAULT_SCHEMA
    locations_table: str = LOCATIONS_TABLE
    tasks_table: str = TASKS_TABLE
    tracking_interval: float = DEFAULT_TRACKING_INTERVAL
    geo_timeout: float = DEFAULT_GEO_TIMEOUT
    geo_maximum_age: float = DEFAULT_GEO_MAXIMUM_AGE
    geo_high_accuracy: bool = True
    simulate_location: bool = False
    conditional_upsert: bool = False
    request_timeout: float = 15.0
    mqtt_enabled: bool = True
    mqtt: MqttSettings = dataclasses.field(default_factory=MqttSettings)

    def __post_init__(self) -> None:
        if not self.base_url.strip():
            raise FleetConfigError("base_url must be non-empty")
        if self.tracking_interval <= 0:
            raise FleetConfigError("tracking_interval must be positive")
        if self.geo_timeout <= 0:
            raise FleetConfigError("geo_timeout must be positive")
        if self.geo_maximum_age < 0:
            raise FleetConfigError("geo_maximum_age must not be negative")

    @property
    def bearer_token(self) -> str:
        return self.access_token or self.api_key

    @classmethod
    def from_env(cls, **overrides: Any) -> FleetConfig:
        """Create configuration from environment variables.

        Reads ``FLEET_BASE_URL``, ``FLEET_API_KEY`` and the optional
        ``FLEET_*`` variables. Explicit keyword arguments override
        environment values.

        Raises
        ------
        FleetConfigError
            If a numeric or boolean variable cannot be parsed or a
            required value is missing.
        """
        env = os.environ

        mqtt_kwargs: dict[str, Any] = {}
        _ENV_MQTT_MAP = {
            "FLEET_MQTT_HOST": "host",
            "FLEET_MQTT_USERNAME": "username",
            "FLEET_MQTT_PASSWORD": "password",
            "FLEET_MQTT_TOPIC_PREFIX": "topic_prefix",
            "FLEET_MQTT_CLIENT_ID": "client_id",
        }
        for env_key, field_name in _ENV_MQTT_MAP.items():
            val = env.get(env_key)
            if val is not None:
                mqtt_kwargs[field_name] = val
        for env_key, field_name in (("FLEET_MQTT_PORT", "port"), ("FLEET_MQTT_KEEPALIVE", "keepalive")):
            val = env.get(env_key)
            if val is not None:
                mqtt_kwargs[field_name] = _env_number(env_key, val, int)
        if "FLEET_MQTT_TLS" in env:
            mqtt_kwargs["tls"] = _env_bool("FLEET_MQTT_TLS", env.get("FLEET_MQTT_TLS"), True)

        mqtt_overrides = overrides.pop("mqtt", None)
        if isinstance(mqtt_overrides, dict):
            mqtt_kwargs.update(mqtt_overrides)
        elif isinstance(mqtt_overrides, MqttSettings):
            mqtt_kwargs = dataclasses.asdict(mqtt_overrides)

        config_kwargs: dict[str, Any] = {"mqtt": MqttSettings(**mqtt_kwargs)}

        _ENV_CONFIG_MAP = {
            "FLEET_BASE_URL": "base_url",
            "FLEET_API_KEY": "api_key",
            "FLEET_ACCESS_TOKEN": "access_token",
            "FLEET_SCHEMA": "schema",
            "FLEET_LOCATIONS_TABLE": "locations_table",
            "FLEET_TASKS_TABLE": "tasks_table",
        }
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        _ENV_FLOAT_MAP = {
            "FLEET_TRACKING_INTERVAL": "tracking_interval",
            "FLEET_GEO_TIMEOUT": "geo_timeout",
            "FLEET_GEO_MAXIMUM_AGE": "geo_maximum_age",
            "FLEET_REQUEST_TIMEOUT": "request_timeout",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_number(env_key, val, float)

        _ENV_BOOL_MAP = {
            "FLEET_GEO_HIGH_ACCURACY": ("geo_high_accuracy", True),
            "FLEET_SIMULATE_LOCATION": ("simulate_location", False),
            "FLEET_CONDITIONAL_UPSERT": ("conditional_upsert", False),
            "FLEET_MQTT_ENABLED": ("mqtt_enabled", True),
        }
        for env_key, (field_name, default) in _ENV_BOOL_MAP.items():
            if field_name not in overrides:
                config_kwargs[field_name] = _env_bool(env_key, env.get(env_key), default)

        config_kwargs.update(overrides)

        for required in ("base_url", "api_key"):
            if not config_kwargs.get(required):
                raise FleetConfigError(f"Missing required setting {required!r} (FLEET_{required.upper()})")

        return cls(**config_kwargs)
