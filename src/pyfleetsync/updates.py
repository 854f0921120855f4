"""Task change flags for the driver screen."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from pyfleetsync.models.changes import ChangeEvent, ChangeEventType, ConnectionState
from pyfleetsync.realtime import ChangeSubscriberRegistry, ChangeSubscription

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TaskUpdateMonitor:
    """Watches the tasks assigned to one driver and raises flags on change.

    A newly assigned task sets :attr:`has_new_tasks`, an edit to an existing
    one sets :attr:`has_task_updates`. Both stay set until cleared by the
    caller, typically after it has reloaded its task list.
    """

    def __init__(
        self,
        registry: ChangeSubscriberRegistry,
        driver_id: str,
        *,
        clock: Callable[[], datetime] = _utcnow,
        on_change: Callable[[TaskUpdateMonitor], None] | None = None,
    ) -> None:
        self._registry = registry
        self._driver_id = driver_id
        self._clock = clock
        self._on_change = on_change
        self._subscription: ChangeSubscription | None = None
        self.has_new_tasks = False
        self.has_task_updates = False
        self.last_update_time: datetime | None = None
        self.is_connected = False

    @property
    def driver_id(self) -> str:
        return self._driver_id

    @property
    def subscription_key(self) -> str:
        return f"tasks-{self._driver_id}"

    @property
    def running(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self)

    def start(self) -> ChangeSubscription:
        if self.running and self._subscription is not None:
            return self._subscription
        subscription = self._registry.subscribe_task_updates(self._driver_id, self._handle_event)
        subscription.add_state_listener(self._handle_state)
        self._subscription = subscription
        self.is_connected = subscription.connected
        return subscription

    def stop(self) -> None:
        subscription = self._subscription
        self._subscription = None
        # The key may already belong to a newer subscription.
        if subscription is not None and self._registry.get(subscription.key) is subscription:
            self._registry.unsubscribe(subscription.key)
        self.is_connected = False

    def _handle_state(self, state: ConnectionState) -> None:
        connected = state == ConnectionState.CONNECTED
        if connected != self.is_connected:
            self.is_connected = connected
            self._notify()

    def _handle_event(self, event: ChangeEvent) -> None:
        _logger.debug("Task change for driver %s: %s", self._driver_id, event.event_type)
        if event.event_type == ChangeEventType.INSERT:
            self.has_new_tasks = True
        elif event.event_type == ChangeEventType.UPDATE:
            self.has_task_updates = True
        self.last_update_time = self._clock()
        self._notify()

    def clear_new_tasks_flag(self) -> None:
        self.has_new_tasks = False
        self._notify()

    def clear_task_updates_flag(self) -> None:
        self.has_task_updates = False
        self._notify()

    def trigger_refresh(self) -> datetime:
        """Bump :attr:`last_update_time` so listeners reload."""
        self.last_update_time = self._clock()
        self._notify()
        return self.last_update_time
