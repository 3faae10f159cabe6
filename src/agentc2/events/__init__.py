"""Event bus for AgentC2.

Carries trigger fire / agent invoke events from the dispatch fabric to the
background invokers, and workflow lifecycle events to subscribers.
"""

from agentc2.events.bus import (
    Event,
    EventBus,
    EventHandler,
    EventType,
    PriorityLevel,
)

__all__ = [
    "Event",
    "EventBus",
    "EventHandler",
    "EventType",
    "PriorityLevel",
]
