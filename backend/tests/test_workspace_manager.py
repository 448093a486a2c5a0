"""Tests for workspace_manager.py -- workspace registry and background runs."""

import asyncio
from typing import Any

import pytest

from agents.config_service import ParseError
from agents.tool_runner import CompletionResponse, MockToolRunner
from events.bus import EventBus
from events.types import EventType
from models.execution import ExecutionErrorKind
from models.graph import NodeRole, NodeStatus
from tests.conftest import SUMMARIZER_YAML, drain
from workflow.errors import BundleNotFoundError
from workspace_manager import (
    AgentValidationError,
    RunInProgressError,
    WorkspaceManager,
    WorkspaceNotFoundError,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class GatedRunner(MockToolRunner):
    """MockToolRunner whose completions wait until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None = None,
    ) -> CompletionResponse:
        self.started.set()
        await self.release.wait()
        return await super().complete(messages, model, tools)


@pytest.fixture()
def runners() -> list[MockToolRunner]:
    return []


@pytest.fixture()
def manager(event_bus: EventBus, runners: list[MockToolRunner]) -> WorkspaceManager:
    def factory() -> MockToolRunner:
        runner = GatedRunner()
        runners.append(runner)
        return runner

    return WorkspaceManager(event_bus, client_factory=factory)


async def _workspace_with_bundle(manager: WorkspaceManager) -> tuple[str, int]:
    workspace = await manager.create_workspace(name="Flows")
    agent, output, _ = manager.add_yaml_agent(workspace.workspace_id, SUMMARIZER_YAML)
    bundle = workspace.history.create_bundle([agent.id, output.id])
    return workspace.workspace_id, bundle.id


# =========================================================================
# Registry
# =========================================================================


class TestCreateWorkspace:
    async def test_create(self, manager: WorkspaceManager, runners: list[MockToolRunner]) -> None:
        workspace = await manager.create_workspace(name="Research flows")

        assert workspace.workspace_id.startswith("ws_")
        assert len(workspace.workspace_id) == 15
        assert workspace.name == "Research flows"
        assert manager.get_workspace(workspace.workspace_id) is workspace
        assert runners[0].is_initialized()

    async def test_default_name(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        assert workspace.name == "Untitled workflow"

    async def test_created_event(self, manager: WorkspaceManager, event_bus: EventBus) -> None:
        workspace = await manager.create_workspace(name="Evented")
        history = event_bus.get_event_history(workspace.workspace_id)
        assert history[0].type == EventType.WORKSPACE_CREATED
        assert history[0].data == {"name": "Evented", "client_initialized": True}

    async def test_unknown_workspace(self, manager: WorkspaceManager) -> None:
        assert manager.get_workspace("ws_missing") is None
        with pytest.raises(WorkspaceNotFoundError, match="ws_missing"):
            manager.require_workspace("ws_missing")

    async def test_get_all(self, manager: WorkspaceManager) -> None:
        first = await manager.create_workspace()
        second = await manager.create_workspace()
        assert manager.get_all_workspaces() == [first, second]


# =========================================================================
# Editing helpers
# =========================================================================


class TestAddNodes:
    async def test_add_node_default_label(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        node = manager.add_node(workspace.workspace_id, NodeRole.YAML_AGENT)
        assert node.label == "Yaml Agent"
        assert workspace.history.undo_labels == ["add_node"]

    async def test_add_yaml_agent(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()

        agent, output, edge = manager.add_yaml_agent(
            workspace.workspace_id, SUMMARIZER_YAML, position={"x": 10.0, "y": 20.0}
        )

        assert agent.role == NodeRole.YAML_AGENT
        assert agent.label == "Summarizer"
        assert agent.agent_config is not None
        assert agent.agent_config.vars == {"topic": "quantum computing", "count": 3}
        assert output.label == "Summarizer Output"
        assert output.position == {"x": 330.0, "y": 20.0}
        assert (edge.source_node_id, edge.target_node_id) == (agent.id, output.id)
        assert workspace.history.undo_labels == ["add_yaml_agent"]

    async def test_add_yaml_agent_is_one_undo_step(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        manager.add_yaml_agent(workspace.workspace_id, SUMMARIZER_YAML)

        workspace.history.undo()

        assert workspace.graph.nodes == []
        assert workspace.graph.edges == []

    async def test_unparseable_yaml_adds_nothing(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        with pytest.raises(ParseError):
            manager.add_yaml_agent(workspace.workspace_id, "id: [unclosed")
        assert workspace.graph.nodes == []

    async def test_invalid_yaml_adds_nothing(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        with pytest.raises(AgentValidationError) as exc_info:
            manager.add_yaml_agent(workspace.workspace_id, "id: lonely\ntitle: Lonely\n")
        assert exc_info.value.validation.errors
        assert workspace.graph.nodes == []
        assert not workspace.history.can_undo()


class TestUpdateNode:
    async def test_prompt_edit_reaches_runs(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        agent, _, _ = manager.add_yaml_agent(workspace.workspace_id, SUMMARIZER_YAML)

        updated = manager.update_node(
            workspace.workspace_id, agent.id, prompt_template="Explain {topic} to a child"
        )

        assert updated.agent_config is not None
        assert updated.agent_config.prompt == "Explain {topic} to a child"
        assert updated.prompt_template == "Explain {topic} to a child"
        assert workspace.engine.build_prompt(updated) == "Explain quantum computing to a child"

    async def test_agent_config_merged(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        agent, _, _ = manager.add_yaml_agent(workspace.workspace_id, SUMMARIZER_YAML)

        updated = manager.update_node(
            workspace.workspace_id,
            agent.id,
            agent_config={"vars": {"count": 5}, "model": "gpt-4o", "toolhouse_id": "search"},
        )

        assert updated.agent_config is not None
        assert updated.agent_config.vars == {"topic": "quantum computing", "count": 5}
        assert updated.agent_config.toolhouse_id == "search"
        assert updated.model == "gpt-4o"
        assert workspace.engine.build_prompt(updated) == (
            "Summarize quantum computing in 5 bullet points"
        )

    async def test_invalid_edit_leaves_node_unchanged(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        agent, _, _ = manager.add_yaml_agent(workspace.workspace_id, SUMMARIZER_YAML)

        with pytest.raises(AgentValidationError) as exc_info:
            manager.update_node(
                workspace.workspace_id, agent.id, prompt_template="Write about {subject} today"
            )

        assert exc_info.value.validation.errors == [
            'Variable "subject" used in prompt but not defined in vars'
        ]
        assert agent.prompt_template == "Summarize {topic} in {count} bullet points"
        assert workspace.history.undo_labels == ["add_yaml_agent"]

    async def test_wrong_field_type(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        agent, _, _ = manager.add_yaml_agent(workspace.workspace_id, SUMMARIZER_YAML)
        with pytest.raises(ParseError):
            manager.update_node(workspace.workspace_id, agent.id, agent_config={"tags": 5})

    async def test_edit_is_undoable(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        agent, _, _ = manager.add_yaml_agent(workspace.workspace_id, SUMMARIZER_YAML)
        manager.update_node(workspace.workspace_id, agent.id, agent_config={"public": False})

        workspace.history.undo()

        node = workspace.graph.require_node(agent.id)
        assert node.agent_config is not None
        assert node.agent_config.public is True

    async def test_agent_config_on_plain_node(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        node = manager.add_node(workspace.workspace_id, NodeRole.INPUT)
        with pytest.raises(ValueError, match="not a YAML agent"):
            manager.update_node(workspace.workspace_id, node.id, agent_config={"public": False})

    async def test_plain_node_edit(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        node = manager.add_node(workspace.workspace_id, NodeRole.INPUT)
        updated = manager.update_node(workspace.workspace_id, node.id, prompt_template="Hi {who}")
        assert updated.prompt_template == "Hi {who}"


# =========================================================================
# Runs
# =========================================================================


class TestRuns:
    async def test_bundle_run_in_background(
        self, manager: WorkspaceManager, runners: list[GatedRunner]
    ) -> None:
        workspace_id, bundle_id = await _workspace_with_bundle(manager)
        runner = runners[0]

        await manager.start_bundle_run(workspace_id, bundle_id)
        await runner.started.wait()
        assert manager.is_running(workspace_id)

        runner.release.set()
        results = await manager.wait_for_run(workspace_id)

        assert [r.bundle_id for r in results] == [bundle_id]
        assert len(results[0].succeeded) == 1
        assert not manager.is_running(workspace_id)
        workspace = manager.require_workspace(workspace_id)
        output = workspace.bundles.output_nodes(bundle_id)[0]
        assert output.status == NodeStatus.READY
        assert output.runtime_output == "Echo: Summarize quantum computing in 3 bullet points"

    async def test_second_run_rejected(
        self, manager: WorkspaceManager, runners: list[GatedRunner]
    ) -> None:
        workspace_id, bundle_id = await _workspace_with_bundle(manager)
        await manager.start_bundle_run(workspace_id, bundle_id)
        await runners[0].started.wait()

        with pytest.raises(RunInProgressError):
            await manager.start_run_all(workspace_id)

        runners[0].release.set()
        await manager.wait_for_run(workspace_id)

    async def test_edits_rejected_while_running(
        self, manager: WorkspaceManager, runners: list[GatedRunner]
    ) -> None:
        workspace_id, bundle_id = await _workspace_with_bundle(manager)
        await manager.start_bundle_run(workspace_id, bundle_id)
        await runners[0].started.wait()

        with pytest.raises(RunInProgressError):
            manager.editable(workspace_id)
        with pytest.raises(RunInProgressError):
            manager.add_node(workspace_id, NodeRole.OUTPUT)

        runners[0].release.set()
        await manager.wait_for_run(workspace_id)
        assert manager.editable(workspace_id).workspace_id == workspace_id

    async def test_run_all(self, manager: WorkspaceManager, runners: list[GatedRunner]) -> None:
        workspace_id, first = await _workspace_with_bundle(manager)
        workspace = manager.require_workspace(workspace_id)
        agent, output, _ = manager.add_yaml_agent(workspace_id, SUMMARIZER_YAML)
        second = workspace.history.create_bundle([agent.id, output.id]).id
        runners[0].release.set()

        await manager.start_run_all(workspace_id)
        results = await manager.wait_for_run(workspace_id)

        assert [r.bundle_id for r in results] == [first, second]

    async def test_unknown_bundle(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        with pytest.raises(BundleNotFoundError):
            await manager.start_bundle_run(workspace.workspace_id, 7)

    async def test_wait_without_run(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        assert await manager.wait_for_run(workspace.workspace_id) == []

    async def test_cancel_run(self, manager: WorkspaceManager, runners: list[GatedRunner]) -> None:
        workspace_id, first = await _workspace_with_bundle(manager)
        workspace = manager.require_workspace(workspace_id)
        agent, output, _ = manager.add_yaml_agent(workspace_id, SUMMARIZER_YAML)
        workspace.history.create_bundle([agent.id, output.id])

        await manager.start_run_all(workspace_id)
        await runners[0].started.wait()
        assert await manager.cancel_run(workspace_id) is True
        runners[0].release.set()
        results = await manager.wait_for_run(workspace_id)

        assert [r.bundle_id for r in results] == [first]
        assert output.status == NodeStatus.IDLE

    async def test_cancel_right_after_start(
        self, manager: WorkspaceManager, runners: list[GatedRunner]
    ) -> None:
        workspace_id, first = await _workspace_with_bundle(manager)
        workspace = manager.require_workspace(workspace_id)
        agent, output, _ = manager.add_yaml_agent(workspace_id, SUMMARIZER_YAML)
        second = workspace.history.create_bundle([agent.id, output.id]).id
        runners[0].release.set()

        await manager.start_bundle_run(workspace_id, first)
        assert await manager.cancel_run(workspace_id) is True
        results = await manager.wait_for_run(workspace_id)

        assert [u.error_kind for u in results[0].units] == [ExecutionErrorKind.CANCELLED]
        assert not runners[0].started.is_set()
        assert not workspace.engine.cancel_requested

        # The consumed cancel does not leak into the next run
        await manager.start_bundle_run(workspace_id, second)
        results = await manager.wait_for_run(workspace_id)
        assert len(results[0].succeeded) == 1

    async def test_cancel_without_run(self, manager: WorkspaceManager) -> None:
        workspace = await manager.create_workspace()
        assert await manager.cancel_run(workspace.workspace_id) is False


# =========================================================================
# Teardown
# =========================================================================


class TestTeardown:
    async def test_delete_workspace(self, manager: WorkspaceManager, event_bus: EventBus) -> None:
        workspace = await manager.create_workspace()
        queue = event_bus.subscribe(workspace.workspace_id)
        drain(queue)

        await manager.delete_workspace(workspace.workspace_id)

        assert manager.get_workspace(workspace.workspace_id) is None
        assert [e.type for e in drain(queue)] == [EventType.WORKSPACE_CLOSED]
        assert event_bus.get_event_history(workspace.workspace_id) == []

    async def test_delete_unknown(self, manager: WorkspaceManager) -> None:
        with pytest.raises(WorkspaceNotFoundError):
            await manager.delete_workspace("ws_missing")

    async def test_delete_cancels_active_run(
        self, manager: WorkspaceManager, runners: list[GatedRunner]
    ) -> None:
        workspace_id, bundle_id = await _workspace_with_bundle(manager)
        await manager.start_bundle_run(workspace_id, bundle_id)
        await runners[0].started.wait()

        await manager.delete_workspace(workspace_id)

        assert manager.get_all_workspaces() == []

    async def test_cleanup_all(self, manager: WorkspaceManager) -> None:
        await manager.create_workspace()
        await manager.create_workspace()

        await manager.cleanup_all()

        assert manager.get_all_workspaces() == []
