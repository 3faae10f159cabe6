"""Async event bus for trigger dispatch and workflow lifecycle.

Features:
- Pub/sub with async handlers
- Priority queue for billing and critical events
- Correlation IDs linking a trigger delivery to the runs it caused
- Event history for replay/debugging
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of events in the system. Values are the wire event names."""

    # Trigger fabric
    TRIGGER_FIRE = "agent/trigger.fire"
    AGENT_INVOKE = "agent/invoke.async"
    WORKFLOW_TRIGGER = "workflow/trigger.fire"
    TRIGGER_REJECTED = "trigger/rejected"

    # Workflow lifecycle
    WORKFLOW_RUN_START = "workflow/run.start"
    WORKFLOW_STEP = "workflow/run.step"
    WORKFLOW_RUN_COMPLETE = "workflow/run.complete"
    WORKFLOW_RUN_FAILED = "workflow/run.failed"
    WORKFLOW_RUN_SUSPENDED = "workflow/run.suspended"
    WORKFLOW_RUN_RESUMED = "workflow/run.resumed"

    # Agent runs
    AGENT_RUN_COMPLETE = "agent/run.complete"
    AGENT_RUN_FAILED = "agent/run.failed"

    # Billing
    SUBSCRIPTION_UPDATED = "billing/subscription.updated"


class PriorityLevel(Enum):
    """Priority levels for events."""
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3  # Processed before anything in the normal queue


@dataclass
class Event:
    """An event in the system."""

    type: EventType
    source: str  # Component name
    data: dict[str, Any] = field(default_factory=dict)
    priority: PriorityLevel = PriorityLevel.NORMAL
    correlation_id: str = ""  # Links related events
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def __post_init__(self) -> None:
        if not self.correlation_id:
            self.correlation_id = self.id

    @property
    def name(self) -> str:
        return self.type.value

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "name": self.type.value,
            "source": self.source,
            "data": self.data,
            "priority": self.priority.name,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Event:
        """Create from dict."""
        return cls(
            id=d.get("id", ""),
            type=EventType(d["name"]),
            source=d["source"],
            data=d.get("data", {}),
            priority=PriorityLevel[d.get("priority", "NORMAL")],
            correlation_id=d.get("correlation_id", ""),
            timestamp=d.get("timestamp", time.time()),
        )


# Type alias for event handlers
EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """Async pub/sub event bus with priority queue.

    Usage:
        bus = EventBus()

        async def on_trigger_fire(event: Event):
            run_id = event.data["run_id"]
            ...

        bus.subscribe(EventType.TRIGGER_FIRE, on_trigger_fire)

        await bus.emit(Event(
            type=EventType.TRIGGER_FIRE,
            source="dispatcher",
            data={"run_id": "abc"},
        ))

        asyncio.create_task(bus.run())
    """

    def __init__(
        self,
        max_history: int = 1000,
        enable_priority_queue: bool = True,
    ):
        self._subscribers: dict[EventType, list[EventHandler]] = {}
        self._global_subscribers: list[EventHandler] = []
        self._queue: asyncio.PriorityQueue[tuple[int, float, str, Event]] = asyncio.PriorityQueue()
        self._priority_queue: asyncio.Queue[Event] = asyncio.Queue()
        self._running = False
        self._history: list[Event] = []
        self._max_history = max_history
        self._enable_priority_queue = enable_priority_queue

        # Metrics
        self._events_processed = 0
        self._events_by_type: dict[EventType, int] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(
        self,
        event_type: EventType,
        handler: EventHandler,
    ) -> Callable[[], None]:
        """Subscribe to a specific event type.

        Args:
            event_type: Type of event to subscribe to
            handler: Async function to call when event occurs

        Returns:
            Unsubscribe function
        """
        self._subscribers.setdefault(event_type, []).append(handler)
        logger.debug("Subscribed handler to %s", event_type.value)

        def unsubscribe() -> None:
            self._subscribers[event_type].remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to ALL events (useful for logging/audit)."""
        self._global_subscribers.append(handler)

        def unsubscribe() -> None:
            self._global_subscribers.remove(handler)

        return unsubscribe

    def _record(self, event: Event) -> None:
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history.pop(0)
        self._events_by_type[event.type] = self._events_by_type.get(event.type, 0) + 1

    async def emit(self, event: Event) -> None:
        """Emit an event (non-blocking, queued)."""
        self._record(event)

        if event.priority == PriorityLevel.CRITICAL:
            await self._priority_queue.put(event)
            logger.info("Critical event queued: %s from %s", event.name, event.source)
        else:
            # Negated so higher priority is processed first; id breaks ties
            await self._queue.put((-event.priority.value, event.timestamp, event.id, event))

        logger.debug("Event emitted: %s from %s", event.name, event.source)

    async def emit_and_wait(self, event: Event) -> list[Any]:
        """Emit event and wait for all handlers to complete.

        Returns:
            List of handler results (or exceptions)
        """
        self._record(event)

        handlers = self._get_handlers(event.type)
        if not handlers:
            return []

        results = await asyncio.gather(
            *[h(event) for h in handlers],
            return_exceptions=True,
        )
        self._log_failures(event, results)
        self._events_processed += 1
        return results

    def _get_handlers(self, event_type: EventType) -> list[EventHandler]:
        specific = self._subscribers.get(event_type, [])
        return specific + self._global_subscribers

    def _log_failures(self, event: Event, results: list[Any]) -> None:
        for result in results:
            if isinstance(result, Exception):
                logger.error(
                    "Handler error for %s: %s",
                    event.name,
                    result,
                    exc_info=result,
                )

    async def _process_event(self, event: Event) -> None:
        """Process a single event by calling all handlers concurrently."""
        handlers = self._get_handlers(event.type)

        if not handlers:
            logger.debug("No handlers for %s", event.name)
            return

        results = await asyncio.gather(
            *[h(event) for h in handlers],
            return_exceptions=True,
        )
        self._log_failures(event, results)
        self._events_processed += 1

    async def drain(self) -> int:
        """Process everything currently queued, then return the count."""
        processed = 0
        while not self._priority_queue.empty():
            await self._process_event(self._priority_queue.get_nowait())
            processed += 1
        while not self._queue.empty():
            _, _, _, event = self._queue.get_nowait()
            await self._process_event(event)
            processed += 1
        return processed

    async def run(self) -> None:
        """Run the event processing loop.

        Use asyncio.create_task(bus.run()) to run in background.
        """
        self._running = True
        logger.info("EventBus started")

        while self._running:
            if self._enable_priority_queue:
                try:
                    priority_event = self._priority_queue.get_nowait()
                    await self._process_event(priority_event)
                    continue
                except asyncio.QueueEmpty:
                    pass

            try:
                _, _, _, event = await asyncio.wait_for(
                    self._queue.get(),
                    timeout=0.1,
                )
                await self._process_event(event)
            except asyncio.TimeoutError:
                pass
            except Exception as e:
                logger.error("Error in event loop: %s", e)

        logger.info("EventBus stopped")

    def stop(self) -> None:
        """Stop the event processing loop."""
        self._running = False

    def get_history(
        self,
        event_type: EventType | None = None,
        correlation_id: str | None = None,
        limit: int = 100,
    ) -> list[Event]:
        """Get event history with optional filtering (newest first)."""
        events = self._history.copy()

        if event_type:
            events = [e for e in events if e.type == event_type]

        if correlation_id:
            events = [e for e in events if e.correlation_id == correlation_id]

        return events[-limit:][::-1]

    def get_metrics(self) -> dict[str, Any]:
        """Get event bus metrics."""
        return {
            "events_processed": self._events_processed,
            "events_queued": self._queue.qsize(),
            "priority_queued": self._priority_queue.qsize(),
            "history_size": len(self._history),
            "events_by_type": {
                t.value: c for t, c in self._events_by_type.items()
            },
            "running": self._running,
        }
