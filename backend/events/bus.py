"""Async event bus for workspace pub/sub communication.

This module provides an EventBus class that enables asynchronous
publish/subscribe communication between the workflow core (graph, bundles,
execution engine) and presentation consumers (via WebSocket).

The event bus is thread-safe and supports:
- Multiple subscribers per workspace
- Async event delivery via asyncio.Queue
- Synchronous publishing for the non-async graph and bundle mutations
- Workspace lifecycle management (closing a workspace terminates all subscribers)
"""

import asyncio
import contextlib
import threading
from collections import defaultdict

import structlog

from events.types import EventType, WorkflowEvent

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for workflow events.

    Event Buffering:
        Events published before any subscriber connects are buffered, up to
        MAX_HISTORY_PER_WORKSPACE (oldest dropped first). When the first
        subscriber connects, all buffered events are delivered immediately.

    Thread Safety:
        All registry operations hold a threading.Lock. Synchronous
        publishes hand queue puts to the event loop thread.

    Attributes:
        _subscribers: Dict mapping workspace_id to list of subscriber queues
        _event_buffer: Dict mapping workspace_id to list of buffered events
        _event_history: Dict mapping workspace_id to replayable events
        _lock: Threading lock for thread-safe subscriber management
    """

    # Maximum number of events to retain per workspace for replay on reconnect.
    MAX_HISTORY_PER_WORKSPACE = 5000

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[WorkflowEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[WorkflowEvent]] = defaultdict(list)
        self._event_history: dict[str, list[WorkflowEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        logger.info("event_bus_initialized")

    def subscribe(self, workspace_id: str) -> asyncio.Queue[WorkflowEvent]:
        """Subscribe to events for a workspace.

        Buffered events (published before any subscriber connected) are
        delivered to the new subscriber immediately.

        Args:
            workspace_id: The workspace to subscribe to

        Returns:
            An asyncio.Queue that will receive WorkflowEvent objects
        """
        queue: asyncio.Queue[WorkflowEvent] = asyncio.Queue()
        buffered_events: list[WorkflowEvent] = []

        with self._lock:
            self._subscribers[workspace_id].append(queue)
            subscriber_count = len(self._subscribers[workspace_id])

            if workspace_id in self._event_buffer:
                buffered_events = self._event_buffer.pop(workspace_id)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            workspace_id=workspace_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, workspace_id: str, queue: asyncio.Queue[WorkflowEvent]) -> None:
        """Unsubscribe a queue from workspace events.

        If the queue is not registered, this is a no-op.
        """
        with self._lock:
            queues = self._subscribers.get(workspace_id)
            if queues is None:
                return
            try:
                queues.remove(queue)
            except ValueError:
                logger.warning("unsubscribe_queue_not_found", workspace_id=workspace_id)
                return
            logger.info(
                "subscriber_removed",
                workspace_id=workspace_id,
                subscriber_count=len(queues),
            )
            if not queues:
                del self._subscribers[workspace_id]

    def _record(self, event: WorkflowEvent) -> list[asyncio.Queue[WorkflowEvent]]:
        """Store an event in history and return the current subscribers.

        Must be called with the lock held. When there are no subscribers the
        event is buffered and an empty list is returned.
        """
        if event.type != EventType.WORKSPACE_CLOSED:
            history = self._event_history[event.workspace_id]
            history.append(event)
            if len(history) > self.MAX_HISTORY_PER_WORKSPACE:
                self._event_history[event.workspace_id] = history[
                    -self.MAX_HISTORY_PER_WORKSPACE:
                ]

        subscribers = list(self._subscribers.get(event.workspace_id, []))
        if not subscribers:
            buffer = self._event_buffer[event.workspace_id]
            buffer.append(event)
            if len(buffer) > self.MAX_HISTORY_PER_WORKSPACE:
                del buffer[: len(buffer) - self.MAX_HISTORY_PER_WORKSPACE]
            logger.debug(
                "event_buffered",
                workspace_id=event.workspace_id,
                event_type=event.type.value,
                buffer_size=len(self._event_buffer[event.workspace_id]),
            )
        return subscribers

    async def publish(self, event: WorkflowEvent) -> None:
        """Publish an event to all subscribers of its workspace.

        A stalled consumer cannot block the publisher for more than the
        delivery timeout, and a failing consumer does not affect the others.

        Args:
            event: The WorkflowEvent to publish
        """
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        with self._lock:
            subscribers = self._record(event)

        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    workspace_id=event.workspace_id,
                    event_type=event.type.value,
                )
            except Exception:
                logger.warning(
                    "event_delivery_failed",
                    workspace_id=event.workspace_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            workspace_id=event.workspace_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def publish_sync(self, event: WorkflowEvent) -> None:
        """Synchronously publish an event (for use from non-async code).

        Graph and bundle mutations are synchronous so that they run to
        completion without suspension points; they publish through here.
        asyncio.Queue is not thread-safe, so a call from outside the event loop
        thread schedules the put with call_soon_threadsafe; on the loop thread
        the put happens immediately, preserving publish order.

        Args:
            event: The WorkflowEvent to publish
        """
        with self._lock:
            subscribers = self._record(event)
            loop = self._loop

        if not subscribers:
            return

        try:
            running_loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if loop is not None and not loop.is_closed() and running_loop is not loop:
            for queue in subscribers:
                with contextlib.suppress(RuntimeError):
                    loop.call_soon_threadsafe(queue.put_nowait, event)
        else:
            for queue in subscribers:
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    logger.warning(
                        "queue_full_event_dropped",
                        workspace_id=event.workspace_id,
                        event_type=event.type.value,
                    )

        logger.debug(
            "event_published_sync",
            workspace_id=event.workspace_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, workspace_id: str) -> list[WorkflowEvent]:
        """Get all stored events for a workspace in chronological order."""
        with self._lock:
            return list(self._event_history.get(workspace_id, []))

    async def close_workspace(self, workspace_id: str) -> None:
        """Close a workspace and notify all subscribers.

        Puts a WORKSPACE_CLOSED sentinel into each subscriber queue so that
        consumers can break out of their read loops, then removes all
        subscribers and buffered events. Event history is preserved.

        Args:
            workspace_id: The workspace to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(workspace_id, [])
            buffered = self._event_buffer.pop(workspace_id, [])

        for queue in queues_to_signal:
            sentinel = WorkflowEvent(
                type=EventType.WORKSPACE_CLOSED,
                workspace_id=workspace_id,
                data={"reason": "workspace_closed"},
            )
            try:
                await queue.put(sentinel)
            except Exception:
                logger.warning("close_sentinel_failed", workspace_id=workspace_id)

        logger.info(
            "workspace_events_closed",
            workspace_id=workspace_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=len(buffered),
        )

    def get_subscriber_count(self, workspace_id: str) -> int:
        """Get the number of subscribers for a workspace."""
        with self._lock:
            return len(self._subscribers.get(workspace_id, []))

    def get_active_workspaces(self) -> list[str]:
        """Get list of workspaces with active subscribers."""
        with self._lock:
            return list(self._subscribers.keys())

    def clear_event_history(self, workspace_id: str) -> None:
        """Clear stored event history for a workspace."""
        with self._lock:
            self._event_history.pop(workspace_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first call."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
