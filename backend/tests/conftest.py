"""Shared test fixtures for backend tests.

Provides a fresh EventBus, a wired graph/bundle/engine stack for one
workspace, and scripted MockToolRunner clients so tests never call a real
LLM or tool provider.
"""

import asyncio
import sys
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from workflow.graph import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.config_service import AgentConfigService  # noqa: E402
from agents.tool_runner import CompletionResponse, MockToolRunner, ToolCallData  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import WorkflowEvent  # noqa: E402
from models.graph import Node, NodeRole  # noqa: E402
from workflow.bundles import BundleManager  # noqa: E402
from workflow.engine import ExecutionEngine  # noqa: E402
from workflow.graph import GraphModel, new_node_id  # noqa: E402
from workflow.history import WorkflowHistory  # noqa: E402

WORKSPACE_ID = "ws_test0000abcd"

KNOWN_MODELS = ["gpt-4o", "gpt-4o-mini"]

SUMMARIZER_YAML = """\
id: summarizer
title: Summarizer
prompt: Summarize {topic} in {count} bullet points
vars:
  topic: quantum computing
  count: 3
model: gpt-4o-mini
"""

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# Workflow stack
# ---------------------------------------------------------------------------


@pytest.fixture()
def config_service() -> AgentConfigService:
    return AgentConfigService(known_models=KNOWN_MODELS)


@pytest.fixture()
def graph(event_bus: EventBus) -> GraphModel:
    return GraphModel(WORKSPACE_ID, event_bus=event_bus)


@pytest.fixture()
def bundles(graph: GraphModel) -> BundleManager:
    return BundleManager(graph)


@pytest.fixture()
def history(graph: GraphModel, bundles: BundleManager) -> WorkflowHistory:
    return WorkflowHistory(graph, bundles, max_size=50)


@pytest.fixture()
def mock_client() -> MockToolRunner:
    """A MockToolRunner that echoes prompts back until given responses."""
    return MockToolRunner()


@pytest.fixture()
def engine(
    graph: GraphModel,
    bundles: BundleManager,
    mock_client: MockToolRunner,
    config_service: AgentConfigService,
) -> ExecutionEngine:
    """ExecutionEngine with zero retry delay."""
    return ExecutionEngine(
        graph,
        bundles,
        client=mock_client,
        config_service=config_service,
        default_model="gpt-4o-mini",
        retry_delay_seconds=0.0,
    )


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


def add_input(
    graph: GraphModel,
    prompt: str = "Write a haiku about autumn",
    variables: dict[str, Any] | None = None,
    label: str = "Input",
) -> Node:
    """Add an ``input`` agent node."""
    return graph.add_node(
        Node(
            id=new_node_id(NodeRole.INPUT),
            role=NodeRole.INPUT,
            label=label,
            prompt_template=prompt,
            variables=variables or {},
        )
    )


def add_output(graph: GraphModel, label: str = "Output") -> Node:
    return graph.add_node(Node(id=new_node_id(NodeRole.OUTPUT), role=NodeRole.OUTPUT, label=label))


def add_yaml_agent(
    graph: GraphModel,
    config_service: AgentConfigService,
    raw_text: str = SUMMARIZER_YAML,
    variables: dict[str, Any] | None = None,
) -> Node:
    """Parse a YAML definition and add it as a ``yaml_agent`` node."""
    config = config_service.parse(raw_text)
    return graph.add_node(
        Node(
            id=new_node_id(NodeRole.YAML_AGENT),
            role=NodeRole.YAML_AGENT,
            label=config.title or "",
            prompt_template=config.prompt,
            agent_config=config,
            variables=variables or {},
        )
    )


def add_pair(graph: GraphModel, prompt: str = "Write a haiku about autumn") -> tuple[Node, Node]:
    """Add an input node connected to a fresh output node."""
    agent = add_input(graph, prompt=prompt)
    output = add_output(graph)
    graph.add_edge(agent.id, output.id)
    return agent, output


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_completion(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    model: str = "gpt-4o-mini",
) -> CompletionResponse:
    """Create a CompletionResponse with sensible defaults."""
    return CompletionResponse(content=content, tool_calls=tool_calls or [], model=model)


def make_tool_call(name: str, args: dict[str, Any], call_id: str = "tc_1") -> ToolCallData:
    """Create a ToolCallData."""
    return ToolCallData(id=call_id, name=name, args=args)


# ---------------------------------------------------------------------------
# Event Collection Helper
# ---------------------------------------------------------------------------


def drain(queue: asyncio.Queue[WorkflowEvent]) -> list[WorkflowEvent]:
    """Return every event currently sitting in a subscriber queue."""
    events: list[WorkflowEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events
