"""Event system for workspace change notification.

This package provides the event infrastructure between the workflow core
(graph, bundles, execution engine) and the presentation layer. The event
system is an async pub/sub pattern built on asyncio.Queue.

Key Components:
    - EventType: Enum of all event types in the system
    - WorkflowEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution

Usage:
    >>> from events import EventType, WorkflowEvent, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("ws_123")
    >>>
    >>> await bus.publish(WorkflowEvent(
    ...     type=EventType.BUNDLE_RUN_STARTED,
    ...     workspace_id="ws_123",
    ...     bundle_id=1,
    ... ))
    >>>
    >>> event = await queue.get()
    >>> print(f"Received: {event.type.value}")
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    WorkflowEvent,
)

__all__ = [
    # Event types
    "EventType",
    "WorkflowEvent",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
