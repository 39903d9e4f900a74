"""
Event Bus - typed outbound keeper events.

Provides:
- EventBus: bounded priority queue plus consumer task
- Event / EventType / EventPriority: the event values producers emit
- EventHandler, CallbackHandler, LoggingEventHandler: subscriber side
"""

from perp_keeper.event_bus.event_bus import (
    EventBus,
    Event,
    EventType,
    EventPriority,
    EventHandler,
    CallbackHandler,
    LoggingEventHandler,
)

__all__ = [
    "EventBus",
    "Event",
    "EventType",
    "EventPriority",
    "EventHandler",
    "CallbackHandler",
    "LoggingEventHandler",
]
