"""Workspace manager for in-memory workflow builder sessions.

This module provides the WorkspaceManager class that owns every open
workspace and runs bundle executions in background tasks.

A workspace bundles together:
- GraphModel: nodes and edges
- BundleManager: bundle membership
- ExecutionEngine: bundle runs against the ToolRunnerClient
- WorkflowHistory: undo/redo of edits

Usage:
    >>> from events import get_event_bus
    >>> from workspace_manager import WorkspaceManager
    >>>
    >>> manager = WorkspaceManager(get_event_bus())
    >>> workspace = await manager.create_workspace(name="Research flows")
    >>> agent, output, edge = manager.add_yaml_agent(workspace.workspace_id, yaml_text)
    >>> bundle = workspace.history.create_bundle([agent.id, output.id])
    >>> await manager.start_bundle_run(workspace.workspace_id, bundle.id)
    >>>
    >>> # Cleanup when done
    >>> await manager.cleanup_all()
"""

import asyncio
import contextlib
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from agents.config_service import AgentConfigService, ParseError
from agents.tool_runner import LiteLLMToolRunner, MockToolRunner, ToolRunnerClient
from config import settings
from events import EventBus, EventType, WorkflowEvent
from models.agent import AgentConfig, ValidationResult
from models.execution import BundleRunResult
from models.graph import Edge, Node, NodeRole
from workflow import (
    BundleManager,
    ExecutionEngine,
    GraphModel,
    WorkflowHistory,
    new_node_id,
)

logger = structlog.get_logger()

# Horizontal distance between an uploaded agent and its paired output node.
OUTPUT_NODE_OFFSET_X = 320.0


class WorkspaceNotFoundError(KeyError):
    def __init__(self, workspace_id: str) -> None:
        super().__init__(f"Workspace '{workspace_id}' not found")
        self.workspace_id = workspace_id

    def __str__(self) -> str:
        return str(self.args[0])


class RunInProgressError(RuntimeError):
    """A run is active, so the workspace cannot start another or be edited."""


class AgentValidationError(ValueError):
    """A YAML agent parsed but failed validation.

    Attributes:
        validation: The full validation report
    """

    def __init__(self, validation: ValidationResult) -> None:
        super().__init__("; ".join(validation.errors) or "Agent definition is invalid")
        self.validation = validation


@dataclass
class Workspace:
    """One in-memory builder session.

    Attributes:
        workspace_id: Unique identifier (e.g., "ws_abc123def456")
        name: Display name
        graph: Nodes and edges
        bundles: Bundle membership
        engine: Bundle execution
        history: Undo/redo of edits
        created_at: Unix timestamp when the workspace was created
        last_results: Results of the most recent completed run
        last_run_error: Error message if the last run task crashed
    """

    workspace_id: str
    name: str
    graph: GraphModel
    bundles: BundleManager
    engine: ExecutionEngine
    history: WorkflowHistory
    created_at: float = field(default_factory=time.time)
    last_results: list[BundleRunResult] = field(default_factory=list)
    last_run_error: str | None = None


def default_client_factory() -> ToolRunnerClient:
    if settings.use_mock_provider:
        return MockToolRunner()
    return LiteLLMToolRunner()


class WorkspaceManager:
    """Owns workspaces and their background run tasks.

    Thread Safety:
        The registry is guarded by an asyncio.Lock. Each workspace has at
        most one run task at a time.

    Attributes:
        event_bus: Event bus shared by all workspaces
        config_service: Parses and validates uploaded agents
    """

    def __init__(
        self,
        event_bus: EventBus,
        client_factory: Callable[[], ToolRunnerClient] | None = None,
        config_service: AgentConfigService | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.client_factory = client_factory or default_client_factory
        self.config_service = config_service or AgentConfigService()
        self._workspaces: dict[str, Workspace] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()
        logger.info("workspace_manager_initialized")

    def _generate_workspace_id(self) -> str:
        """Generate an id in the format "ws_{12 hex chars}"."""
        return f"ws_{uuid.uuid4().hex[:12]}"

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def create_workspace(self, name: str | None = None) -> Workspace:
        """Create a workspace and initialize its provider client."""
        workspace_id = self._generate_workspace_id()
        graph = GraphModel(workspace_id, event_bus=self.event_bus)
        bundles = BundleManager(graph)
        engine = ExecutionEngine(
            graph,
            bundles,
            client=self.client_factory(),
            config_service=self.config_service,
        )
        workspace = Workspace(
            workspace_id=workspace_id,
            name=name or "Untitled workflow",
            graph=graph,
            bundles=bundles,
            engine=engine,
            history=WorkflowHistory(graph, bundles),
        )

        async with self._lock:
            self._workspaces[workspace_id] = workspace

        initialized = await engine.initialize_client(
            settings.openai_api_key,
            settings.toolhouse_api_key,
            metadata={"id": "workflow-builder", "workspace_id": workspace_id},
        )
        if not initialized:
            logger.warning("workspace_client_not_initialized", workspace_id=workspace_id)

        await self.event_bus.publish(
            WorkflowEvent(
                type=EventType.WORKSPACE_CREATED,
                workspace_id=workspace_id,
                data={"name": workspace.name, "client_initialized": initialized},
            )
        )
        logger.info("workspace_created", workspace_id=workspace_id, name=workspace.name)
        return workspace

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        return self._workspaces.get(workspace_id)

    def require_workspace(self, workspace_id: str) -> Workspace:
        """Return a workspace or raise WorkspaceNotFoundError."""
        workspace = self._workspaces.get(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(workspace_id)
        return workspace

    def get_all_workspaces(self) -> list[Workspace]:
        return list(self._workspaces.values())

    def is_running(self, workspace_id: str) -> bool:
        workspace = self.require_workspace(workspace_id)
        task = self._tasks.get(workspace_id)
        return workspace.engine.is_running or (task is not None and not task.done())

    def editable(self, workspace_id: str) -> Workspace:
        """Return a workspace whose graph may be edited.

        Raises:
            WorkspaceNotFoundError: If the workspace does not exist
            RunInProgressError: While a run is active
        """
        workspace = self.require_workspace(workspace_id)
        if self.is_running(workspace_id):
            raise RunInProgressError(
                f"Workspace '{workspace_id}' is running and cannot be edited"
            )
        return workspace

    # ------------------------------------------------------------------
    # Editing helpers
    # ------------------------------------------------------------------

    def add_node(
        self,
        workspace_id: str,
        role: NodeRole,
        label: str = "",
        prompt_template: str | None = None,
        model: str | None = None,
        variables: dict[str, Any] | None = None,
        position: dict[str, float] | None = None,
    ) -> Node:
        workspace = self.editable(workspace_id)
        node = Node(
            id=new_node_id(role),
            role=role,
            label=label or role.value.replace("_", " ").title(),
            prompt_template=prompt_template,
            model=model,
            variables=variables or {},
            position=position,
        )
        return workspace.history.add_node(node)

    def add_yaml_agent(
        self,
        workspace_id: str,
        raw_text: str,
        position: dict[str, float] | None = None,
    ) -> tuple[Node, Node, Edge]:
        """Upload a YAML agent with an auto-paired output node.

        Nothing enters the graph unless the definition parses and validates.
        The three additions form one undo step.

        Raises:
            ParseError: If the text is not a structurally valid definition
            AgentValidationError: If validation reports errors
        """
        workspace = self.editable(workspace_id)
        parsed = self.config_service.load(raw_text)
        if not parsed.validation.valid:
            logger.info(
                "yaml_agent_rejected",
                workspace_id=workspace_id,
                errors=parsed.validation.errors,
            )
            raise AgentValidationError(parsed.validation)

        config = parsed.config
        agent = Node(
            id=new_node_id(NodeRole.YAML_AGENT),
            role=NodeRole.YAML_AGENT,
            label=config.title or config.id or "YAML Agent",
            prompt_template=config.prompt,
            model=config.model,
            agent_config=config,
            position=position,
        )
        output_position = (
            {"x": position.get("x", 0.0) + OUTPUT_NODE_OFFSET_X, "y": position.get("y", 0.0)}
            if position
            else None
        )
        output = Node(
            id=new_node_id(NodeRole.OUTPUT),
            role=NodeRole.OUTPUT,
            label=f"{agent.label} Output",
            position=output_position,
        )

        with workspace.history.group("add_yaml_agent"):
            workspace.history.add_node(agent)
            workspace.history.add_node(output)
            edge = workspace.history.add_edge(agent.id, output.id)

        logger.info(
            "yaml_agent_added",
            workspace_id=workspace_id,
            agent_id=config.id,
            node_id=agent.id,
            output_node_id=output.id,
            warnings=len(parsed.validation.warnings),
        )
        return agent, output, edge

    def update_node(self, workspace_id: str, node_id: str, **changes: Any) -> Node:
        """Edit a node as one undo step.

        On a ``yaml_agent`` node, ``agent_config`` is a partial definition
        merged over the current one and ``prompt_template`` edits the
        definition's prompt. The merged definition must validate, and the
        node's ``prompt_template`` (and ``model``, when edited) follow it.

        Raises:
            NodeNotFoundError: If the node does not exist
            ParseError: If the merged definition has fields of the wrong type
            AgentValidationError: If the merged definition fails validation
            ValueError: For ``agent_config`` on a node that is not a YAML agent
        """
        workspace = self.editable(workspace_id)
        node = workspace.graph.require_node(node_id)
        if not changes:
            return node

        override = changes.pop("agent_config", None)
        if node.role != NodeRole.YAML_AGENT:
            if override is not None:
                raise ValueError(f"Node {node_id} is not a YAML agent and has no agent definition")
        else:
            override = dict(override or {})
            if "prompt_template" in changes:
                override.setdefault("prompt", changes["prompt_template"])
            if override:
                changes.update(self._merged_agent_changes(workspace_id, node, override))

        if not changes:
            return node
        return workspace.history.update_node(node_id, **changes)

    def _merged_agent_changes(
        self, workspace_id: str, node: Node, override: dict[str, Any]
    ) -> dict[str, Any]:
        base = node.agent_config or AgentConfig(prompt=node.prompt_template)
        try:
            config = self.config_service.merge(base, override)
        except PydanticValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            raise ParseError(f"Invalid field types: {', '.join(fields)}") from e

        validation = self.config_service.validate(config)
        if not validation.valid:
            logger.info(
                "agent_config_edit_rejected",
                workspace_id=workspace_id,
                node_id=node.id,
                errors=validation.errors,
            )
            raise AgentValidationError(validation)

        changes: dict[str, Any] = {"agent_config": config, "prompt_template": config.prompt}
        if "model" in override:
            changes["model"] = config.model
        return changes

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def _schedule_run(
        self,
        workspace: Workspace,
        label: str,
        run: Callable[[], Awaitable[list[BundleRunResult]]],
    ) -> None:
        """Create and register the background task for a run."""
        workspace_id = workspace.workspace_id

        async def _runner() -> None:
            try:
                workspace.last_results = await run()
                workspace.last_run_error = None
            except asyncio.CancelledError:
                logger.info("run_task_cancelled", workspace_id=workspace_id, run=label)
                raise
            except Exception as e:
                workspace.last_run_error = str(e)
                logger.error(
                    "run_task_failed",
                    workspace_id=workspace_id,
                    run=label,
                    error_type=type(e).__name__,
                    error=str(e),
                )

        async with self._lock:
            existing = self._tasks.get(workspace_id)
            if (existing is not None and not existing.done()) or workspace.engine.is_running:
                raise RunInProgressError(f"Workspace '{workspace_id}' already has a run in progress")

            workspace.engine.clear_cancel()
            task = asyncio.create_task(_runner(), name=f"run_{workspace_id}_{label}")
            self._tasks[workspace_id] = task

            def _remove_task(t: asyncio.Task[None], wid: str = workspace_id) -> None:
                if self._tasks.get(wid) is t:
                    self._tasks.pop(wid, None)

            task.add_done_callback(_remove_task)

        logger.info("run_scheduled", workspace_id=workspace_id, run=label)

    async def start_bundle_run(self, workspace_id: str, bundle_id: int) -> None:
        """Run one bundle in the background.

        Raises:
            WorkspaceNotFoundError: If the workspace does not exist
            BundleNotFoundError: If the bundle does not exist
            RunInProgressError: If the workspace is already running
        """
        workspace = self.require_workspace(workspace_id)
        workspace.bundles.require_bundle(bundle_id)

        async def _run() -> list[BundleRunResult]:
            return [await workspace.engine.run_bundle(bundle_id)]

        await self._schedule_run(workspace, f"bundle_{bundle_id}", _run)

    async def start_run_all(self, workspace_id: str) -> None:
        """Run every bundle of the workspace in the background, in creation order."""
        workspace = self.require_workspace(workspace_id)
        await self._schedule_run(workspace, "all", workspace.engine.run_all_bundles)

    async def wait_for_run(self, workspace_id: str) -> list[BundleRunResult]:
        """Wait for the active run task, if any, and return the latest results."""
        workspace = self.require_workspace(workspace_id)
        task = self._tasks.get(workspace_id)
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        return workspace.last_results

    async def cancel_run(self, workspace_id: str) -> bool:
        """Ask the active run to stop before its next unit.

        Returns:
            True if a run was active
        """
        workspace = self.require_workspace(workspace_id)
        if not self.is_running(workspace_id):
            logger.info("cancel_run_noop", workspace_id=workspace_id)
            return False
        # A scheduled task may not have reached the engine yet
        workspace.engine.request_cancel(pending=True)
        logger.info("cancel_run_requested", workspace_id=workspace_id)
        return True

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def delete_workspace(self, workspace_id: str) -> None:
        """Stop any run, drop the workspace and close its event stream.

        Raises:
            WorkspaceNotFoundError: If the workspace does not exist
        """
        async with self._lock:
            if workspace_id not in self._workspaces:
                raise WorkspaceNotFoundError(workspace_id)
            self._workspaces.pop(workspace_id)
            task = self._tasks.pop(workspace_id, None)

        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self.event_bus.close_workspace(workspace_id)
        self.event_bus.clear_event_history(workspace_id)
        logger.info("workspace_deleted", workspace_id=workspace_id)

    async def cleanup_all(self) -> None:
        """Delete every workspace. Called on application shutdown."""
        workspace_ids = list(self._workspaces)
        logger.info("cleanup_all_start", workspace_count=len(workspace_ids))
        for workspace_id in workspace_ids:
            try:
                await self.delete_workspace(workspace_id)
            except Exception as e:
                logger.error("cleanup_workspace_failed", workspace_id=workspace_id, error=str(e))
        logger.info("cleanup_all_complete")
