"""WebSocket handler for real-time event streaming.

This module handles WebSocket connections for streaming workflow events to
the frontend and receiving commands (cancel, ping) from clients.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import EventType, WorkflowEvent, get_event_bus

if TYPE_CHECKING:
    from workspace_manager import WorkspaceManager

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_workspace_manager: "WorkspaceManager | None" = None


def set_workspace_manager(manager: "WorkspaceManager") -> None:
    """Set the workspace manager used by WebSocket command handlers."""
    global _workspace_manager
    _workspace_manager = manager
    logger.info("websocket_workspace_manager_configured")


def get_workspace_manager() -> "WorkspaceManager":
    """Return configured workspace manager for WebSocket command handlers."""
    if _workspace_manager is None:
        raise RuntimeError(
            "WorkspaceManager not configured for WebSocket handlers. "
            "Call set_workspace_manager() during startup."
        )
    return _workspace_manager


@websocket_router.websocket("/ws/{workspace_id}")
async def websocket_endpoint(websocket: WebSocket, workspace_id: str) -> None:
    """WebSocket endpoint for real-time event streaming.

    This endpoint handles bidirectional communication:
    - Server -> Client: Workflow events (graph edits, bundle runs, unit results)
    - Client -> Server: Commands (cancel, ping)

    Args:
        websocket: The WebSocket connection.
        workspace_id: The workspace to stream events for.
    """
    await websocket.accept()

    logger.info("websocket_connected", workspace_id=workspace_id)

    event_bus = get_event_bus()

    # Subscribe first, then replay history; duplicates are dropped by timestamp
    # in send_events.
    queue = event_bus.subscribe(workspace_id)

    try:
        last_replay_timestamp: float = 0.0
        history = event_bus.get_event_history(workspace_id)
        if history:
            logger.info(
                "replaying_event_history",
                workspace_id=workspace_id,
                event_count=len(history),
            )
            for event in history:
                try:
                    await websocket.send_json(event.model_dump(mode="json"))
                    last_replay_timestamp = event.timestamp
                except WebSocketDisconnect:
                    logger.info("websocket_disconnect_during_replay", workspace_id=workspace_id)
                    return
                except Exception as e:
                    logger.error("websocket_replay_error", workspace_id=workspace_id, error=str(e))
                    return

        async def send_events() -> None:
            """Forward events from the event bus to the WebSocket client.

            Events with timestamp <= last_replay_timestamp were already
            replayed from history.
            """
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.WORKSPACE_CLOSED:
                        logger.info("workspace_closed_sentinel", workspace_id=workspace_id)
                        await websocket.send_json(event.model_dump(mode="json"))
                        break

                    if event.timestamp <= last_replay_timestamp:
                        logger.debug(
                            "event_skipped_duplicate",
                            workspace_id=workspace_id,
                            event_type=event.type.value,
                        )
                        continue

                    await websocket.send_json(event.model_dump(mode="json"))
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", workspace_id=workspace_id)
            except Exception as e:
                logger.error("websocket_send_error", workspace_id=workspace_id, error=str(e))

        async def receive_commands() -> None:
            """Receive and process commands from the WebSocket client."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", workspace_id=workspace_id)
                        continue
                    command_type = data.get("type")

                    logger.info(
                        "command_received",
                        workspace_id=workspace_id,
                        command_type=command_type,
                    )

                    if command_type == "cancel":
                        await handle_cancel_command(workspace_id)
                    elif command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command",
                            workspace_id=workspace_id,
                            command_type=command_type,
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", workspace_id=workspace_id)
            except Exception as e:
                logger.error("websocket_receive_error", workspace_id=workspace_id, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        # Usually one side finishes because the client disconnected
        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", workspace_id=workspace_id)
    except Exception as e:
        logger.error("websocket_error", workspace_id=workspace_id, error=str(e))
    finally:
        event_bus.unsubscribe(workspace_id, queue)
        logger.info("websocket_cleanup_complete", workspace_id=workspace_id)


async def handle_cancel_command(workspace_id: str) -> None:
    """Handle a cancel command from the WebSocket client.

    Args:
        workspace_id: The workspace whose run should stop.
    """
    logger.info("cancel_command_processing", workspace_id=workspace_id)

    workspace_manager = get_workspace_manager()
    event_bus = get_event_bus()

    if workspace_manager.get_workspace(workspace_id) is None:
        logger.warning("cancel_command_workspace_not_found", workspace_id=workspace_id)
        await event_bus.publish(
            WorkflowEvent(
                type=EventType.RUN_CANCELLED,
                workspace_id=workspace_id,
                data={"error": f"Workspace {workspace_id} not found", "accepted": False},
            )
        )
        return

    accepted = await workspace_manager.cancel_run(workspace_id)
    if not accepted:
        await event_bus.publish(
            WorkflowEvent(
                type=EventType.RUN_CANCELLED,
                workspace_id=workspace_id,
                data={"error": "No run in progress", "accepted": False},
            )
        )
