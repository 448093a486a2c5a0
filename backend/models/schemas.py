"""Pydantic schemas for API request/response models.

This module defines the data models used by the HTTP API and WebSocket
handlers. Domain models (nodes, edges, bundles, run results) are returned
as-is; the schemas here describe requests and the envelopes around them.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

from models.agent import AgentConfig, Variable
from models.execution import BundleRunResult
from models.graph import Bundle, BundleColor, Edge, Node, NodeRole


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    active_workspaces: int = Field(
        default=0,
        description="Number of open workspaces",
    )
    mock_provider: bool = Field(
        default=False,
        description="Whether runs use the scripted mock provider",
    )


# -----------------------------------------------------------------------------
# Workspaces
# -----------------------------------------------------------------------------


class CreateWorkspaceRequest(BaseModel):
    """Request body for creating a workspace."""

    name: str | None = Field(
        default=None,
        max_length=200,
        description="Display name for the workspace",
        examples=["Research flows"],
    )


class WorkspaceResponse(BaseModel):
    """Response for workspace creation and listing."""

    workspace_id: str = Field(
        description="Unique workspace identifier",
        examples=["ws_abc123def456"],
    )
    name: str = Field(description="Display name")
    websocket_url: str = Field(
        description="WebSocket URL for real-time event streaming",
        examples=["/ws/ws_abc123def456"],
    )
    created_at: float = Field(description="Unix timestamp of workspace creation")
    is_running: bool = Field(default=False, description="Whether a run is in progress")


class WorkspaceStateResponse(BaseModel):
    """Full state of a workspace."""

    workspace_id: str = Field(description="Unique workspace identifier")
    name: str = Field(description="Display name")
    nodes: list[Node] = Field(default_factory=list, description="Nodes in insertion order")
    edges: list[Edge] = Field(default_factory=list, description="Edges in insertion order")
    bundles: list[Bundle] = Field(default_factory=list, description="Bundles in creation order")
    is_running: bool = Field(default=False, description="Whether a run is in progress")
    can_undo: bool = Field(default=False, description="Whether an edit can be undone")
    can_redo: bool = Field(default=False, description="Whether an undone edit can be redone")
    last_results: list[BundleRunResult] = Field(
        default_factory=list,
        description="Results of the most recent completed run",
    )
    last_run_error: str | None = Field(
        default=None,
        description="Error message if the last run task crashed",
    )


# -----------------------------------------------------------------------------
# Nodes and edges
# -----------------------------------------------------------------------------


class CreateNodeRequest(BaseModel):
    """Request body for adding a node."""

    role: NodeRole = Field(
        description="What the node does",
        examples=["input", "output"],
    )
    label: str = Field(default="", max_length=200, description="Display label")
    prompt_template: str | None = Field(
        default=None,
        description="Prompt with {name}, {{name}} or ${name} placeholders",
        examples=["Summarize {topic} in three bullet points"],
    )
    model: str | None = Field(default=None, description="Model override", examples=["gpt-4o-mini"])
    variables: dict[str, Any] = Field(
        default_factory=dict,
        description="Values substituted into the prompt",
    )
    position: dict[str, float] | None = Field(
        default=None,
        description="Canvas position carried for the UI",
        examples=[{"x": 120.0, "y": 80.0}],
    )


class UpdateNodeRequest(BaseModel):
    """Request body for editing a node. Only fields that are sent are changed."""

    label: str | None = Field(default=None, max_length=200, description="Display label")
    prompt_template: str | None = Field(default=None, description="Prompt template")
    model: str | None = Field(default=None, description="Model override")
    variables: dict[str, Any] | None = Field(
        default=None,
        description="Node-local variable overrides",
    )
    position: dict[str, float] | None = Field(default=None, description="Canvas position")
    agent_config: dict[str, Any] | None = Field(
        default=None,
        description="Partial agent definition merged over a YAML agent's definition",
        examples=[{"schedule": "0 9 * * 1-5", "public": False, "vars": {"topic": "tides"}}],
    )


class NodeRemovalResponse(BaseModel):
    """What removing a node took with it."""

    node_id: str = Field(description="The removed node")
    removed_edge_ids: list[str] = Field(
        default_factory=list,
        description="Incident edges removed by the cascade",
    )
    emptied_bundles: list[int] = Field(
        default_factory=list,
        description="Bundles deleted because they became empty",
    )


class CreateEdgeRequest(BaseModel):
    """Request body for connecting two nodes."""

    source_node_id: str = Field(description="Edge source", examples=["yaml_agent_9f8e7d6c"])
    target_node_id: str = Field(description="Edge target", examples=["output_1a2b3c4d"])


# -----------------------------------------------------------------------------
# Agent definitions
# -----------------------------------------------------------------------------


class AgentYamlRequest(BaseModel):
    """Request body carrying a YAML agent definition."""

    content: str = Field(
        min_length=1,
        max_length=200_000,
        description="YAML agent definition",
        examples=["id: summarizer\ntitle: Summarizer\nprompt: Summarize {topic}\nvars:\n  topic: AI\n"],
    )
    position: dict[str, float] | None = Field(
        default=None,
        description="Canvas position of the agent node (upload only)",
    )


class AgentUploadResponse(BaseModel):
    """Nodes created by uploading a YAML agent."""

    agent_node: Node = Field(description="The yaml_agent node")
    output_node: Node = Field(description="The auto-paired output node")
    edge: Edge = Field(description="Edge from the agent to its output")
    variables: list[Variable] = Field(default_factory=list, description="Prompt variables")
    warnings: list[str] = Field(default_factory=list, description="Non-blocking validation warnings")


class ParseErrorDetail(BaseModel):
    message: str = Field(description="What went wrong")
    line: int | None = Field(default=None, description="1-based line of the error")
    column: int | None = Field(default=None, description="1-based column of the error")


class AgentValidationResponse(BaseModel):
    """Result of validating a YAML agent without adding it to a workspace."""

    valid: bool = Field(description="True when there are no errors")
    errors: list[str] = Field(default_factory=list, description="Blocking problems")
    warnings: list[str] = Field(default_factory=list, description="Non-blocking problems")
    config: AgentConfig | None = Field(default=None, description="Parsed definition")
    variables: list[Variable] = Field(default_factory=list, description="Prompt variables")
    parse_error: ParseErrorDetail | None = Field(
        default=None,
        description="Set when the text could not be parsed",
    )


class AgentTemplateRequest(BaseModel):
    """Request body for generating a new agent definition."""

    title: str = Field(min_length=1, max_length=200, description="Agent title")
    prompt: str = Field(default="", description="Prompt template")
    vars: dict[str, Any] = Field(default_factory=dict, description="Variable defaults")


class AgentExportResponse(BaseModel):
    """A serialized agent definition."""

    filename: str = Field(description="Suggested file name", examples=["summarizer.yaml"])
    content: str = Field(description="YAML text")


# -----------------------------------------------------------------------------
# Bundles and runs
# -----------------------------------------------------------------------------


class CreateBundleRequest(BaseModel):
    """Request body for grouping nodes into a bundle."""

    node_ids: list[str] = Field(description="Nodes to bundle, in execution order")
    name: str | None = Field(default=None, max_length=200, description="Bundle name")
    color: BundleColor | str | None = Field(
        default=None,
        description="Palette colour name, hex value or full colour",
        examples=["Emerald", "#10B981"],
    )


class UpdateBundleRequest(BaseModel):
    """Request body for renaming or recolouring a bundle."""

    name: str | None = Field(default=None, max_length=200, description="New name")
    color: BundleColor | str | None = Field(default=None, description="New colour")


class RunResponse(BaseModel):
    """Acknowledgement that a run was scheduled."""

    workspace_id: str = Field(description="Workspace being run")
    bundle_id: int | None = Field(default=None, description="Bundle being run, if only one")
    status: Literal["started", "cancelling", "idle"] = Field(description="Run status")


class HistoryResponse(BaseModel):
    """Outcome of an undo or redo request."""

    action: str | None = Field(description="Label of the command undone or redone")
    can_undo: bool = Field(description="Whether another undo is possible")
    can_redo: bool = Field(description="Whether another redo is possible")
