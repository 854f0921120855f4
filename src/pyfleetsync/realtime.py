"""Named live subscriptions to the row-change feed.

A :class:`ChangeSubscriberRegistry` is constructed by its owner (usually
:class:`~pyfleetsync.client.FleetClient`) and handed to whichever
component needs it. It keeps at most one live subscription per key:
subscribing again under a key tears the previous subscription down
first, and :meth:`~ChangeSubscriberRegistry.cleanup` releases everything.

Each subscription is both a callback target and an async iterator::

    sub = registry.subscribe_task_updates("D1")
    async for event in sub:
        ...

Iteration ends when the subscription is torn down.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol

from pyfleetsync._constants import DEFAULT_SCHEMA, LOCATIONS_TABLE, TASK_FILES_TABLE, TASKS_TABLE
from pyfleetsync._mqtt import MqttChangeFeedRuntime
from pyfleetsync.config import MqttSettings
from pyfleetsync.models.changes import ChangeEvent, ChangePredicate, ConnectionState

_logger = logging.getLogger(__name__)

EventCallback = Callable[[ChangeEvent], None]
StateCallback = Callable[[ConnectionState], None]

_CLOSED: Any = object()


class FeedChannel(Protocol):
    def close(self) -> None: ...


class ChangeFeed(Protocol):
    """The change-feed collaborator: one channel per live subscription."""

    def open(
        self,
        predicate: ChangePredicate,
        on_event: EventCallback,
        on_state: StateCallback,
    ) -> FeedChannel: ...

    @property
    def open_channels(self) -> int: ...

    async def close(self) -> None: ...


# ------------------------------------------------------------------
# MQTT-backed feed
# ------------------------------------------------------------------


class _MqttChannel:
    def __init__(
        self,
        feed: MqttChangeFeed,
        topic: str,
        predicate: ChangePredicate,
        on_event: EventCallback,
        on_state: StateCallback,
    ) -> None:
        self.topic = topic
        self.predicate = predicate
        self.on_event = on_event
        self.on_state = on_state
        self._feed = feed
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed._release(self)  # noqa: SLF001


class MqttChangeFeed:
    """Change feed over one shared MQTT connection.

    Events for ``<schema>.<table>`` arrive on ``<prefix>/<schema>/<table>``.
    Row filters are evaluated client-side; topic subscriptions are shared
    by every channel on the same table.
    """

    def __init__(
        self,
        settings: MqttSettings,
        *,
        runtime_factory: Callable[..., MqttChangeFeedRuntime] = MqttChangeFeedRuntime,
    ) -> None:
        self._settings = settings
        self._runtime_factory = runtime_factory
        self._runtime: MqttChangeFeedRuntime | None = None
        self._channels: dict[str, list[_MqttChannel]] = {}
        self._acked: set[str] = set()

    @property
    def open_channels(self) -> int:
        return sum(len(channels) for channels in self._channels.values())

    @property
    def is_connected(self) -> bool:
        return self._runtime is not None and self._runtime.is_connected

    def topic_for(self, predicate: ChangePredicate) -> str:
        prefix = self._settings.topic_prefix.strip("/")
        return f"{prefix}/{predicate.schema_name}/{predicate.table}"

    def _ensure_runtime(self) -> MqttChangeFeedRuntime:
        runtime = self._runtime
        if runtime is not None and runtime.is_running:
            return runtime
        runtime = self._runtime_factory(
            loop=asyncio.get_running_loop(),
            settings=self._settings,
            on_message=self._on_message,
            on_connection=self._on_connection,
            on_subscribed=self._on_subscribed,
            logger=_logger,
        )
        runtime.start()
        self._runtime = runtime
        return runtime

    def open(
        self,
        predicate: ChangePredicate,
        on_event: EventCallback,
        on_state: StateCallback,
    ) -> FeedChannel:
        runtime = self._ensure_runtime()
        topic = self.topic_for(predicate)
        channel = _MqttChannel(self, topic, predicate, on_event, on_state)
        self._channels.setdefault(topic, []).append(channel)
        on_state(ConnectionState.CONNECTING)
        if topic in self._acked:
            on_state(ConnectionState.CONNECTED)
        else:
            runtime.subscribe(topic)
        _logger.debug("Opened change channel topic=%s predicate=%s", topic, predicate.describe())
        return channel

    def _release(self, channel: _MqttChannel) -> None:
        channels = self._channels.get(channel.topic)
        if channels is None or channel not in channels:
            return
        channels.remove(channel)
        if not channels:
            self._channels.pop(channel.topic, None)
            self._acked.discard(channel.topic)
            if self._runtime is not None:
                self._runtime.unsubscribe(channel.topic)
        channel.on_state(ConnectionState.DISCONNECTED)
        _logger.debug("Closed change channel topic=%s", channel.topic)

    def _on_message(self, topic: str, payload: dict[str, Any]) -> None:
        channels = self._channels.get(topic)
        if not channels:
            return
        data = dict(payload)
        # The table and schema are implied by the topic when the payload omits them.
        parts = topic.rsplit("/", 2)
        if len(parts) == 3:
            data.setdefault("schema", parts[1])
            data.setdefault("table", parts[2])
        try:
            event = ChangeEvent.model_validate(data)
        except ValueError:
            _logger.debug("Dropping malformed change payload topic=%s", topic, exc_info=True)
            return
        for channel in list(channels):
            if not channel.closed and channel.predicate.matches(event):
                channel.on_event(event)

    def _on_connection(self, connected: bool) -> None:
        if connected:
            return
        self._acked.clear()
        for channels in self._channels.values():
            for channel in channels:
                channel.on_state(ConnectionState.DISCONNECTED)

    def _on_subscribed(self, topic: str) -> None:
        channels = self._channels.get(topic)
        if not channels:
            return
        self._acked.add(topic)
        for channel in channels:
            channel.on_state(ConnectionState.CONNECTED)

    async def close(self) -> None:
        for channels in list(self._channels.values()):
            for channel in list(channels):
                channel.close()
        runtime = self._runtime
        self._runtime = None
        if runtime is None:
            return
        try:
            await asyncio.get_running_loop().run_in_executor(None, runtime.stop)
        except Exception:
            _logger.debug("MQTT runtime stop failed", exc_info=True)


# ------------------------------------------------------------------
# Subscriptions and registry
# ------------------------------------------------------------------


class ChangeSubscription:
    """A live, named registration for change events."""

    def __init__(
        self,
        key: str,
        predicate: ChangePredicate,
        handler: EventCallback | None = None,
        *,
        buffered: bool | None = None,
    ) -> None:
        self.key = key
        self.predicate = predicate
        self.handler = handler
        self._state = ConnectionState.CONNECTING
        self._channel: FeedChannel | None = None
        self._closed = False
        self._buffered = handler is None if buffered is None else buffered
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._state_listeners: list[StateCallback] = []
        self.events_received = 0

    def __repr__(self) -> str:
        return f"ChangeSubscription(key={self.key!r}, predicate={self.predicate.describe()!r}, state={self._state})"

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def closed(self) -> bool:
        return self._closed

    def add_state_listener(self, listener: StateCallback) -> None:
        self._state_listeners.append(listener)

    def _attach(self, channel: FeedChannel) -> None:
        self._channel = channel

    def _set_state(self, state: ConnectionState) -> None:
        if self._closed and state != ConnectionState.DISCONNECTED:
            return
        if state == self._state:
            return
        self._state = state
        _logger.debug("Subscription %s is %s", self.key, state)
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                _logger.warning("State listener for %s failed", self.key, exc_info=True)

    def _deliver(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        self.events_received += 1
        if self._buffered:
            self._queue.put_nowait(event)
        if self.handler is not None:
            try:
                self.handler(event)
            except Exception:
                _logger.warning("Change handler for %s failed", self.key, exc_info=True)

    def _close(self) -> None:
        if self._closed:
            return
        channel = self._channel
        self._channel = None
        if channel is not None:
            channel.close()
        self._set_state(ConnectionState.DISCONNECTED)
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def next_event(self, timeout: float | None = None) -> ChangeEvent | None:
        """Wait for the next buffered event; ``None`` once the subscription is closed.

        Raises ``TimeoutError`` when *timeout* elapses first.
        """
        if self._closed and self._queue.empty():
            return None
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            # Keep the marker for other waiters.
            self._queue.put_nowait(_CLOSED)
            return None
        event: ChangeEvent = item
        return event

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeEvent]:
        while True:
            event = await self.next_event()
            if event is None:
                return
            yield event


class ChangeSubscriberRegistry:
    """Keyed registry of live change subscriptions over one feed."""

    def __init__(
        self,
        feed: ChangeFeed,
        *,
        schema: str = DEFAULT_SCHEMA,
        tasks_table: str = TASKS_TABLE,
        locations_table: str = LOCATIONS_TABLE,
    ) -> None:
        self._feed = feed
        self._schema = schema
        self._tasks_table = tasks_table
        self._locations_table = locations_table
        self._subscriptions: dict[str, ChangeSubscription] = {}

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, key: object) -> bool:
        return key in self._subscriptions

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    @property
    def keys(self) -> list[str]:
        return list(self._subscriptions)

    @property
    def is_connected(self) -> bool:
        return any(sub.connected for sub in self._subscriptions.values())

    def get(self, key: str) -> ChangeSubscription | None:
        return self._subscriptions.get(key)

    def subscribe(
        self,
        key: str,
        predicate: ChangePredicate,
        handler: EventCallback | None = None,
        *,
        buffered: bool | None = None,
    ) -> ChangeSubscription:
        """Open a live subscription under *key*, replacing any previous one."""
        previous = self._subscriptions.pop(key, None)
        if previous is not None:
            _logger.debug("Replacing subscription %s", key)
            previous._close()  # noqa: SLF001

        subscription = ChangeSubscription(key, predicate, handler, buffered=buffered)
        channel = self._feed.open(predicate, subscription._deliver, subscription._set_state)  # noqa: SLF001
        subscription._attach(channel)  # noqa: SLF001
        self._subscriptions[key] = subscription
        _logger.debug("Subscribed %s to %s", key, predicate.describe())
        return subscription

    def unsubscribe(self, key: str) -> bool:
        """Tear down the subscription under *key*. Returns whether one existed."""
        subscription = self._subscriptions.pop(key, None)
        if subscription is None:
            return False
        subscription._close()  # noqa: SLF001
        _logger.debug("Unsubscribed %s", key)
        return True

    def cleanup(self) -> None:
        """Tear down every subscription (e.g. on logout)."""
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            subscription._close()  # noqa: SLF001
        if subscriptions:
            _logger.debug("Cleaned up %d subscriptions", len(subscriptions))

    # ------------------------------------------------------------------
    # Channels used by the driver and operations screens
    # ------------------------------------------------------------------

    def subscribe_task_updates(self, driver_id: str, handler: EventCallback | None = None) -> ChangeSubscription:
        predicate = ChangePredicate(
            table=self._tasks_table,
            schema_name=self._schema,
            column="assigned_driver_id",
            value=driver_id,
        )
        return self.subscribe(f"tasks-{driver_id}", predicate, handler)

    def subscribe_file_updates(self, task_id: str, handler: EventCallback | None = None) -> ChangeSubscription:
        predicate = ChangePredicate(
            table=TASK_FILES_TABLE,
            schema_name=self._schema,
            column="task_id",
            value=task_id,
        )
        return self.subscribe(f"files-{task_id}", predicate, handler)

    def subscribe_all_task_updates(self, handler: EventCallback | None = None) -> ChangeSubscription:
        return self.subscribe("all-tasks", ChangePredicate(table=self._tasks_table, schema_name=self._schema), handler)

    def subscribe_driver_locations(self, handler: EventCallback | None = None) -> ChangeSubscription:
        predicate = ChangePredicate(table=self._locations_table, schema_name=self._schema)
        return self.subscribe("driver-locations", predicate, handler)
