"""Event type definitions for the workflow builder event system.

This module defines all event types that flow from the graph, bundle and
execution layers to the presentation layer. Every meaningful state change
produces an event.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the workflow builder.

    Events are categorized by:
    - Workspace lifecycle: creation and closing
    - Graph structure: node and edge changes
    - Bundles: creation, edits and deletion
    - Execution: bundle runs, run units and run-all sequencing
    - History: undo/redo stack changes
    """

    # Workspace lifecycle
    WORKSPACE_CREATED = "workspace_created"
    WORKSPACE_CLOSED = "workspace_closed"

    # Graph structure
    NODE_ADDED = "node_added"
    NODE_UPDATED = "node_updated"
    NODE_REMOVED = "node_removed"
    NODE_STATUS_CHANGED = "node_status_changed"
    EDGE_ADDED = "edge_added"
    EDGE_REMOVED = "edge_removed"

    # Bundles
    BUNDLE_CREATED = "bundle_created"
    BUNDLE_UPDATED = "bundle_updated"
    BUNDLE_DELETED = "bundle_deleted"

    # Execution
    BUNDLE_RUN_STARTED = "bundle_run_started"
    BUNDLE_RUN_COMPLETE = "bundle_run_complete"
    UNIT_STARTED = "unit_started"
    UNIT_TOOLS_INVOKED = "unit_tools_invoked"
    UNIT_SUCCEEDED = "unit_succeeded"
    UNIT_FAILED = "unit_failed"
    RUN_ALL_STARTED = "run_all_started"
    RUN_ALL_COMPLETE = "run_all_complete"
    RUN_CANCELLED = "run_cancelled"

    # History
    HISTORY_CHANGED = "history_changed"


class WorkflowEvent(BaseModel):
    """An event emitted while editing or running a workspace.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - workspace_id: Which workspace this event belongs to
    - node_id: Which node the event concerns (if applicable)
    - bundle_id: Which bundle the event concerns (if applicable)
    - data: Event-specific payload

    Payload schemas by event type:

    NODE_ADDED / NODE_UPDATED:
        - node: dict - The node as serialized by the API

    NODE_STATUS_CHANGED:
        - status: str - New node status
        - error_kind: Optional[str] - Failure classification

    EDGE_ADDED / EDGE_REMOVED:
        - edge_id: str
        - source: str
        - target: str

    BUNDLE_CREATED / BUNDLE_UPDATED:
        - bundle: dict - The bundle as serialized by the API

    BUNDLE_DELETED:
        - reason: str - "explicit" or "emptied"

    UNIT_FAILED:
        - agent_node_id: str
        - output_node_id: Optional[str]
        - error_kind: str
        - error: str

    BUNDLE_RUN_COMPLETE:
        - succeeded: int
        - failed: int
        - error: Optional[str] - Bundle-level guard failure
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    workspace_id: str
    node_id: str | None = None
    bundle_id: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "unit_failed",
                    "timestamp": 1699876543.123,
                    "workspace_id": "ws_abc123def456",
                    "node_id": "output_1a2b3c4d",
                    "bundle_id": 1,
                    "data": {
                        "agent_node_id": "yaml_agent_9f8e7d6c",
                        "output_node_id": "output_1a2b3c4d",
                        "error_kind": "rate_limited",
                        "error": "429 Too Many Requests",
                    },
                }
            ]
        }
    }
