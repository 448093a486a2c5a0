"""HTTP API routes for the workflow builder backend.

This module defines the HTTP endpoints for workspaces, graph editing, YAML
agents, bundles, runs and undo/redo. Real-time events are handled via
WebSocket in websocket.py.

Error mapping:
- unknown workspace, node, edge or bundle ids -> 404
- YAML parse errors, failed validation, bundle composition errors -> 422
- starting or editing while a run is in progress -> 409
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated, Any

import structlog
from fastapi import APIRouter, HTTPException, Path, status

from agents.config_service import ParseError
from config import settings
from models.graph import Bundle, Edge, Node, NodeRole
from models.schemas import (
    AgentExportResponse,
    AgentTemplateRequest,
    AgentUploadResponse,
    AgentValidationResponse,
    AgentYamlRequest,
    CreateBundleRequest,
    CreateEdgeRequest,
    CreateNodeRequest,
    CreateWorkspaceRequest,
    HealthResponse,
    HistoryResponse,
    NodeRemovalResponse,
    ParseErrorDetail,
    RunResponse,
    UpdateBundleRequest,
    UpdateNodeRequest,
    WorkspaceResponse,
    WorkspaceStateResponse,
)
from workflow.errors import (
    BundleNotFoundError,
    BundleValidationError,
    EdgeNotFoundError,
    InvalidEdgeError,
    NodeNotFoundError,
)
from workspace_manager import AgentValidationError, RunInProgressError, WorkspaceNotFoundError

if TYPE_CHECKING:
    from workspace_manager import Workspace, WorkspaceManager

logger = structlog.get_logger(__name__)

router = APIRouter()

WorkspaceId = Annotated[str, Path(description="The workspace ID")]
NodeId = Annotated[str, Path(description="The node ID")]
EdgeId = Annotated[str, Path(description="The edge ID")]
BundleId = Annotated[int, Path(description="The bundle ID")]

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _http_error(error: Exception) -> HTTPException:
    """Translate a domain exception into an HTTPException."""
    if isinstance(
        error,
        WorkspaceNotFoundError | NodeNotFoundError | EdgeNotFoundError | BundleNotFoundError,
    ):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, RunInProgressError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, ParseError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(error), "line": error.line, "column": error.column},
        )
    if isinstance(error, AgentValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": str(error),
                "errors": error.validation.errors,
                "warnings": error.validation.warnings,
            },
        )
    if isinstance(error, BundleValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(error), "kind": error.kind.value},
        )
    if isinstance(error, InvalidEdgeError | ValueError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Unexpected error: {error}",
    )


_DOMAIN_ERRORS = (
    WorkspaceNotFoundError,
    NodeNotFoundError,
    EdgeNotFoundError,
    BundleNotFoundError,
    RunInProgressError,
    ParseError,
    AgentValidationError,
    BundleValidationError,
    InvalidEdgeError,
    ValueError,
)


def _workspace_response(manager: WorkspaceManager, workspace: Workspace) -> WorkspaceResponse:
    return WorkspaceResponse(
        workspace_id=workspace.workspace_id,
        name=workspace.name,
        websocket_url=f"/ws/{workspace.workspace_id}",
        created_at=workspace.created_at,
        is_running=manager.is_running(workspace.workspace_id),
    )


def _history_response(workspace: Workspace, action: str | None) -> HistoryResponse:
    return HistoryResponse(
        action=action,
        can_undo=workspace.history.can_undo(),
        can_redo=workspace.history.can_redo(),
    )


# Workspace manager dependency (set during application startup)
_workspace_manager: WorkspaceManager | None = None


def set_workspace_manager(manager: WorkspaceManager) -> None:
    """Set the workspace manager instance for the routes.

    This should be called during application startup to inject the
    workspace manager dependency.

    Args:
        manager: The WorkspaceManager instance to use for all routes.
    """
    global _workspace_manager
    _workspace_manager = manager
    logger.info("workspace_manager_configured")


def get_workspace_manager() -> WorkspaceManager:
    """Get the workspace manager instance.

    Raises:
        RuntimeError: If the workspace manager has not been configured.
    """
    if _workspace_manager is None:
        logger.error("workspace_manager_not_configured")
        raise RuntimeError(
            "WorkspaceManager not configured. Call set_workspace_manager() during startup."
        )
    return _workspace_manager


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with workspace count.",
)
async def health_check() -> HealthResponse:
    active_workspaces = 0
    healthy = True
    try:
        active_workspaces = len(get_workspace_manager().get_all_workspaces())
    except RuntimeError:
        # WorkspaceManager not configured yet (e.g., during startup)
        healthy = False

    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        timestamp=time.time(),
        active_workspaces=active_workspaces,
        mock_provider=settings.use_mock_provider,
    )


# -----------------------------------------------------------------------------
# Workspaces
# -----------------------------------------------------------------------------


@router.post(
    "/api/workspaces",
    response_model=WorkspaceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workspace",
)
async def create_workspace(request: CreateWorkspaceRequest | None = None) -> WorkspaceResponse:
    manager = get_workspace_manager()
    workspace = await manager.create_workspace(name=request.name if request else None)
    return _workspace_response(manager, workspace)


@router.get(
    "/api/workspaces",
    response_model=list[WorkspaceResponse],
    summary="List workspaces",
)
async def list_workspaces() -> list[WorkspaceResponse]:
    manager = get_workspace_manager()
    return [
        _workspace_response(manager, workspace)
        for workspace in sorted(manager.get_all_workspaces(), key=lambda w: w.created_at)
    ]


@router.get(
    "/api/workspaces/{workspace_id}",
    response_model=WorkspaceStateResponse,
    summary="Get workspace state",
    description="Nodes, edges, bundles, run state and undo/redo availability.",
)
async def get_workspace(workspace_id: WorkspaceId) -> WorkspaceStateResponse:
    manager = get_workspace_manager()
    try:
        workspace = manager.require_workspace(workspace_id)
    except WorkspaceNotFoundError as e:
        raise _http_error(e) from e

    return WorkspaceStateResponse(
        workspace_id=workspace.workspace_id,
        name=workspace.name,
        nodes=workspace.graph.nodes,
        edges=workspace.graph.edges,
        bundles=workspace.bundles.bundles,
        is_running=manager.is_running(workspace_id),
        can_undo=workspace.history.can_undo(),
        can_redo=workspace.history.can_redo(),
        last_results=workspace.last_results,
        last_run_error=workspace.last_run_error,
    )


@router.delete(
    "/api/workspaces/{workspace_id}",
    status_code=status.HTTP_200_OK,
    summary="Delete a workspace",
    description="Stop any run, drop the workspace and close its event stream.",
)
async def delete_workspace(workspace_id: WorkspaceId) -> dict[str, str]:
    manager = get_workspace_manager()
    try:
        await manager.delete_workspace(workspace_id)
    except WorkspaceNotFoundError as e:
        raise _http_error(e) from e
    return {"message": f"Workspace {workspace_id} deleted"}


# -----------------------------------------------------------------------------
# Nodes and edges
# -----------------------------------------------------------------------------


@router.post(
    "/api/workspaces/{workspace_id}/nodes",
    response_model=Node,
    status_code=status.HTTP_201_CREATED,
    summary="Add a node",
)
async def create_node(workspace_id: WorkspaceId, request: CreateNodeRequest) -> Node:
    manager = get_workspace_manager()
    if request.role == NodeRole.YAML_AGENT:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="YAML agents are added by uploading their definition",
        )
    try:
        return manager.add_node(
            workspace_id,
            role=request.role,
            label=request.label,
            prompt_template=request.prompt_template,
            model=request.model,
            variables=request.variables,
            position=request.position,
        )
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e


@router.patch(
    "/api/workspaces/{workspace_id}/nodes/{node_id}",
    response_model=Node,
    summary="Edit a node",
    description="Changes only the fields that are sent. On a YAML agent, agent_config "
    "is merged over its definition and re-validated.",
)
async def update_node(
    workspace_id: WorkspaceId,
    node_id: NodeId,
    request: UpdateNodeRequest,
) -> Node:
    manager = get_workspace_manager()
    changes: dict[str, Any] = request.model_dump(exclude_unset=True)
    try:
        return manager.update_node(workspace_id, node_id, **changes)
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e


@router.delete(
    "/api/workspaces/{workspace_id}/nodes/{node_id}",
    response_model=NodeRemovalResponse,
    summary="Remove a node",
    description="Removes the node, its edges and its bundle membership.",
)
async def delete_node(workspace_id: WorkspaceId, node_id: NodeId) -> NodeRemovalResponse:
    manager = get_workspace_manager()
    try:
        removal = manager.editable(workspace_id).history.remove_node(node_id)
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e
    return NodeRemovalResponse(
        node_id=removal.node.id,
        removed_edge_ids=[edge.id for edge in removal.edges],
        emptied_bundles=removal.emptied_bundles,
    )


@router.post(
    "/api/workspaces/{workspace_id}/edges",
    response_model=Edge,
    status_code=status.HTTP_201_CREATED,
    summary="Connect two nodes",
)
async def create_edge(workspace_id: WorkspaceId, request: CreateEdgeRequest) -> Edge:
    manager = get_workspace_manager()
    try:
        return manager.editable(workspace_id).history.add_edge(
            request.source_node_id, request.target_node_id
        )
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e


@router.delete(
    "/api/workspaces/{workspace_id}/edges/{edge_id}",
    response_model=Edge,
    summary="Remove an edge",
)
async def delete_edge(workspace_id: WorkspaceId, edge_id: EdgeId) -> Edge:
    manager = get_workspace_manager()
    try:
        return manager.editable(workspace_id).history.remove_edge(edge_id)
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e


# -----------------------------------------------------------------------------
# YAML agents
# -----------------------------------------------------------------------------


@router.post(
    "/api/workspaces/{workspace_id}/agents",
    response_model=AgentUploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a YAML agent",
    description="Adds a yaml_agent node with an auto-paired output node.",
)
async def upload_agent(workspace_id: WorkspaceId, request: AgentYamlRequest) -> AgentUploadResponse:
    manager = get_workspace_manager()
    try:
        agent, output, edge = manager.add_yaml_agent(
            workspace_id, request.content, position=request.position
        )
    except _DOMAIN_ERRORS as e:
        if isinstance(e, ParseError | AgentValidationError):
            logger.info("agent_upload_rejected", workspace_id=workspace_id, error=str(e))
        raise _http_error(e) from e

    config = agent.agent_config
    service = manager.config_service
    return AgentUploadResponse(
        agent_node=agent,
        output_node=output,
        edge=edge,
        variables=service.extract_variables(config) if config else [],
        warnings=service.validate(config).warnings if config else [],
    )


@router.post(
    "/api/agents/validate",
    response_model=AgentValidationResponse,
    summary="Validate a YAML agent",
    description="Parse and validate a definition without adding it to a workspace.",
)
async def validate_agent(request: AgentYamlRequest) -> AgentValidationResponse:
    service = get_workspace_manager().config_service
    try:
        parsed = service.load(request.content)
    except ParseError as e:
        return AgentValidationResponse(
            valid=False,
            errors=[str(e)],
            parse_error=ParseErrorDetail(message=str(e), line=e.line, column=e.column),
        )
    return AgentValidationResponse(
        valid=parsed.validation.valid,
        errors=parsed.validation.errors,
        warnings=parsed.validation.warnings,
        config=parsed.config,
        variables=parsed.variables,
    )


@router.post(
    "/api/agents/template",
    response_model=AgentExportResponse,
    summary="Generate a YAML agent",
    description="Create a new definition with a generated id.",
)
async def create_agent_template(request: AgentTemplateRequest) -> AgentExportResponse:
    service = get_workspace_manager().config_service
    config = service.create_template(request.title, request.prompt, request.vars)
    return AgentExportResponse(filename=f"{config.id}.yaml", content=service.serialize(config))


@router.get(
    "/api/agents/schema",
    summary="Agent definition schema",
    description="Required and optional keys with descriptions.",
)
async def agent_schema() -> dict[str, Any]:
    return get_workspace_manager().config_service.schema_info()


@router.get(
    "/api/workspaces/{workspace_id}/nodes/{node_id}/export",
    response_model=AgentExportResponse,
    summary="Export a YAML agent",
)
async def export_agent(workspace_id: WorkspaceId, node_id: NodeId) -> AgentExportResponse:
    manager = get_workspace_manager()
    try:
        node = manager.require_workspace(workspace_id).graph.require_node(node_id)
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e

    if node.agent_config is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Node {node_id} has no agent definition",
        )
    config = node.agent_config
    if node.variables:
        config = manager.config_service.merge(config, {"vars": node.variables})
    return AgentExportResponse(
        filename=f"{config.id or node.id}.yaml",
        content=manager.config_service.serialize(config),
    )


# -----------------------------------------------------------------------------
# Bundles
# -----------------------------------------------------------------------------


@router.post(
    "/api/workspaces/{workspace_id}/bundles",
    response_model=Bundle,
    status_code=status.HTTP_201_CREATED,
    summary="Create a bundle",
)
async def create_bundle(workspace_id: WorkspaceId, request: CreateBundleRequest) -> Bundle:
    manager = get_workspace_manager()
    try:
        return manager.editable(workspace_id).history.create_bundle(
            request.node_ids, name=request.name, color=request.color
        )
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e


@router.patch(
    "/api/workspaces/{workspace_id}/bundles/{bundle_id}",
    response_model=Bundle,
    summary="Rename or recolour a bundle",
)
async def update_bundle(
    workspace_id: WorkspaceId,
    bundle_id: BundleId,
    request: UpdateBundleRequest,
) -> Bundle:
    manager = get_workspace_manager()
    try:
        workspace = manager.editable(workspace_id)
        bundle = workspace.bundles.require_bundle(bundle_id)
        if request.name is not None:
            bundle = workspace.history.rename_bundle(bundle_id, request.name)
        if request.color is not None:
            bundle = workspace.history.recolor_bundle(bundle_id, request.color)
        return bundle
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e


@router.delete(
    "/api/workspaces/{workspace_id}/bundles/{bundle_id}",
    response_model=Bundle,
    summary="Delete a bundle",
    description="Deletes the bundle; its nodes stay in the graph.",
)
async def delete_bundle(workspace_id: WorkspaceId, bundle_id: BundleId) -> Bundle:
    manager = get_workspace_manager()
    try:
        return manager.editable(workspace_id).history.delete_bundle(bundle_id)
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e


# -----------------------------------------------------------------------------
# Runs
# -----------------------------------------------------------------------------


@router.post(
    "/api/workspaces/{workspace_id}/bundles/{bundle_id}/run",
    response_model=RunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run a bundle",
    description="Runs in the background; progress streams over the WebSocket.",
)
async def run_bundle(workspace_id: WorkspaceId, bundle_id: BundleId) -> RunResponse:
    manager = get_workspace_manager()
    try:
        await manager.start_bundle_run(workspace_id, bundle_id)
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e
    return RunResponse(workspace_id=workspace_id, bundle_id=bundle_id, status="started")


@router.post(
    "/api/workspaces/{workspace_id}/run",
    response_model=RunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run all bundles",
    description="Runs every bundle in creation order, one at a time.",
)
async def run_all(workspace_id: WorkspaceId) -> RunResponse:
    manager = get_workspace_manager()
    try:
        await manager.start_run_all(workspace_id)
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e
    return RunResponse(workspace_id=workspace_id, status="started")


@router.post(
    "/api/workspaces/{workspace_id}/cancel",
    response_model=RunResponse,
    summary="Cancel the active run",
    description="The unit in flight finishes; remaining units fail as cancelled.",
)
async def cancel_run(workspace_id: WorkspaceId) -> RunResponse:
    manager = get_workspace_manager()
    try:
        accepted = await manager.cancel_run(workspace_id)
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e
    return RunResponse(workspace_id=workspace_id, status="cancelling" if accepted else "idle")


# -----------------------------------------------------------------------------
# History
# -----------------------------------------------------------------------------


@router.post(
    "/api/workspaces/{workspace_id}/undo",
    response_model=HistoryResponse,
    summary="Undo the last edit",
)
async def undo(workspace_id: WorkspaceId) -> HistoryResponse:
    manager = get_workspace_manager()
    try:
        workspace = manager.editable(workspace_id)
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e
    return _history_response(workspace, workspace.history.undo())


@router.post(
    "/api/workspaces/{workspace_id}/redo",
    response_model=HistoryResponse,
    summary="Redo the last undone edit",
)
async def redo(workspace_id: WorkspaceId) -> HistoryResponse:
    manager = get_workspace_manager()
    try:
        workspace = manager.editable(workspace_id)
    except _DOMAIN_ERRORS as e:
        raise _http_error(e) from e
    return _history_response(workspace, workspace.history.redo())
