"""
Emitter - Per-run pub/sub channel.

A run publishes two progress streams on it and receives external events
through it:

- ``watch``: legacy snapshots of the whole workflow state
- ``watch-v2``: typed step lifecycle events (start, result, finish, ...)
- ``user-event-{name}``: events sent by callers to wake a waitForEvent entry

Subscribers are observers. A failing handler is logged and never affects
the run.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

USER_EVENT_PREFIX = "user-event-"


class EventName(StrEnum):
    """Built-in channel names."""

    WATCH = "watch"
    WATCH_V2 = "watch-v2"


class WatchEventType(StrEnum):
    """Payload types published on the ``watch-v2`` channel."""

    WORKFLOW_START = "workflow-start"
    WORKFLOW_FINISH = "workflow-finish"
    STEP_START = "workflow-step-start"
    STEP_WAITING = "workflow-step-waiting"
    STEP_SUSPENDED = "workflow-step-suspended"
    STEP_RESULT = "workflow-step-result"
    STEP_FINISH = "workflow-step-finish"
    STEP_OUTPUT = "workflow-step-output"
    STEP_SCORE = "workflow-step-score"


def user_event(name: str) -> str:
    """Channel name a waitForEvent entry listens on."""
    return f"{USER_EVENT_PREFIX}{name}"


@dataclass
class WorkflowEvent:
    """An event published on a run's emitter."""

    name: str
    data: Any = None
    run_id: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def type(self) -> str | None:
        """Payload type for ``watch``/``watch-v2`` events."""
        if isinstance(self.data, dict):
            return self.data.get("type")
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "run_id": self.run_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Handlers may be plain functions or coroutines
EventHandler = Callable[[WorkflowEvent], Awaitable[None] | None]


@dataclass
class Subscription:
    """A subscription to one or more channels."""

    id: str
    event_names: set[str]
    handler: EventHandler
    once: bool = False


class Emitter:
    """
    Pub/sub channel owned by one run.

    Example:
        emitter = Emitter(run_id="run_1")

        def on_step(event: WorkflowEvent):
            print(event.type, event.data["payload"])

        emitter.on(EventName.WATCH_V2, on_step)
        await emitter.emit(EventName.WATCH_V2, {"type": "workflow-start", "payload": {}})
    """

    def __init__(
        self,
        run_id: str | None = None,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize the emitter.

        Args:
            run_id: Run the emitter belongs to, stamped on every event
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self.run_id = run_id
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[WorkflowEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0

    def on(self, event_names: str | list[str], handler: EventHandler) -> str:
        """
        Subscribe to one or more channels.

        Returns:
            Subscription ID (use with ``off``)
        """
        return self._add(event_names, handler, once=False)

    def once(self, event_name: str, handler: EventHandler) -> str:
        """Subscribe for a single delivery; the subscription removes itself."""
        return self._add(event_name, handler, once=True)

    def _add(self, event_names: str | list[str], handler: EventHandler, once: bool) -> str:
        names = {event_names} if isinstance(event_names, str) else set(event_names)
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id, event_names=names, handler=handler, once=once
        )
        logger.debug(f"Subscription {sub_id} registered for {sorted(names)}")
        return sub_id

    def off(self, subscription_id: str) -> bool:
        """
        Unsubscribe.

        Returns:
            True if the subscription was found and removed
        """
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    def listener_count(self, event_name: str) -> int:
        return sum(1 for s in self._subscriptions.values() if event_name in s.event_names)

    async def emit(self, event_name: str, data: Any = None) -> WorkflowEvent:
        """
        Publish an event to all matching subscribers.

        Handlers run concurrently; the call returns once all of them have
        finished.
        """
        event = WorkflowEvent(name=str(event_name), data=data, run_id=self.run_id)

        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history :]

        matching: list[EventHandler] = []
        for subscription in list(self._subscriptions.values()):
            if event.name not in subscription.event_names:
                continue
            if subscription.once:
                self._subscriptions.pop(subscription.id, None)
            matching.append(subscription.handler)

        if matching:
            await self._execute_handlers(event, matching)
        return event

    async def _execute_handlers(self, event: WorkflowEvent, handlers: list[EventHandler]) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    result = handler(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"Handler error for {event.name}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    def get_history(self, event_name: str | None = None, limit: int = 100) -> list[WorkflowEvent]:
        """
        Get event history, most recent first.

        Args:
            event_name: Filter by channel
            limit: Maximum events to return
        """
        events = self._event_history[::-1]
        if event_name:
            events = [e for e in events if e.name == event_name]
        return events[:limit]

    def get_stats(self) -> dict:
        """Get emitter statistics."""
        counts: dict[str, int] = {}
        for event in self._event_history:
            counts[event.name] = counts.get(event.name, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_name": counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(self, event_name: str, timeout: float | None = None) -> WorkflowEvent | None:
        """
        Wait for the next event on a channel.

        Args:
            event_name: Channel to wait on
            timeout: Maximum time to wait (seconds); None waits indefinitely

        Returns:
            The event if received, None on timeout. The listener is removed
            either way.
        """
        result: WorkflowEvent | None = None
        event_received = asyncio.Event()

        def handler(event: WorkflowEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.once(event_name, handler)

        try:
            if timeout is not None:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.off(sub_id)
