"""Internal MQTT runtime carrying the row-change feed."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import threading
from collections.abc import Callable
from typing import Any, cast

import paho.mqtt.client as mqtt

from pyfleetsync.config import MqttSettings
from pyfleetsync.exceptions import FleetError


def decode_change_payload(payload: bytes) -> dict[str, Any]:
    """Parse MQTT payload bytes into a JSON object."""
    parsed = json.loads(payload.decode("utf-8"))
    if not isinstance(parsed, dict):
        raise FleetError("Change payload is not a JSON object")
    return parsed


class MqttChangeFeedRuntime:
    """Threaded paho-mqtt runtime that hands change messages to an asyncio loop.

    One runtime is one broker connection; every topic subscription of
    the process is multiplexed over it. All callbacks are scheduled onto
    *loop* with ``call_soon_threadsafe``.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        settings: MqttSettings,
        on_message: Callable[[str, dict[str, Any]], None],
        on_connection: Callable[[bool], None],
        on_subscribed: Callable[[str], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._settings = settings
        self._on_message = on_message
        self._on_connection = on_connection
        self._on_subscribed = on_subscribed
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._connected = False
        self._lock = threading.Lock()
        self._topics: set[str] = set()
        self._pending: dict[int, str] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _dispatch(self, callback: Callable[..., None], *args: Any) -> None:
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(callback, *args)

    def _send_subscribe(self, client: mqtt.Client, topic: str) -> None:
        # Caller holds self._lock.
        result, mid = client.subscribe(topic, qos=1)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._logger.debug("MQTT subscribe deferred topic=%s rc=%s", topic, result)
            return
        self._pending[mid] = topic

    def start(self) -> None:
        """Connect in the background; reconnects are handled by paho."""
        self.stop()
        settings = self._settings
        client_id = settings.client_id or f"pyfleetsync-{secrets.token_hex(6)}"
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s client_id=%s",
            settings.host,
            settings.port,
            client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if settings.username:
            client.username_pw_set(settings.username, settings.password)
        if settings.tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.is_failure:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected reason=%s", reason_code)
            self._connected = True
            self._dispatch(self._on_connection, True)
            with self._lock:
                self._pending.clear()
                for topic in sorted(self._topics):
                    self._send_subscribe(c, topic)

        def on_subscribe(
            _c: mqtt.Client,
            _userdata: Any,
            mid: int,
            reason_codes: list[Any],
            _properties: Any,
        ) -> None:
            with self._lock:
                topic = self._pending.pop(mid, None)
                wanted = topic is not None and topic in self._topics
            if not wanted or topic is None:
                return
            if any(code.is_failure for code in reason_codes):
                self._logger.warning("MQTT subscribe rejected topic=%s codes=%s", topic, reason_codes)
                return
            self._dispatch(self._on_subscribed, topic)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                payload = decode_change_payload(msg.payload)
            except Exception:
                self._logger.debug("MQTT payload parse failure topic=%s", msg.topic, exc_info=True)
                return
            self._dispatch(self._on_message, msg.topic, payload)

        def on_disconnect(
            _c: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            was_connected = self._connected
            self._connected = False
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)
            if was_connected:
                self._dispatch(self._on_connection, False)

        client.on_connect = on_connect
        client.on_subscribe = on_subscribe
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        client.connect_async(settings.host, settings.port, keepalive=settings.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def subscribe(self, topic: str) -> None:
        with self._lock:
            if topic in self._topics:
                return
            self._topics.add(topic)
            client = self._client
            if client is not None and self._connected:
                self._send_subscribe(client, topic)

    def unsubscribe(self, topic: str) -> None:
        with self._lock:
            if topic not in self._topics:
                return
            self._topics.discard(topic)
            client = self._client
            if client is not None and self._connected:
                client.unsubscribe(topic)

    def stop(self) -> None:
        """Stop and disconnect the current client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._connected = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
