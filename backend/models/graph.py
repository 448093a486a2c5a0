"""Pydantic models for the workflow graph: nodes, edges and bundles."""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from models.agent import AgentConfig
from models.execution import ExecutionErrorKind, ResponseEnvelope


class NodeRole(StrEnum):
    """What a node does in a workflow."""

    INPUT = "input"
    YAML_AGENT = "yaml_agent"
    OUTPUT = "output"
    GENERIC = "generic"

    @property
    def is_agent(self) -> bool:
        """Agent roles produce a prompt/response pair when run."""
        return self in (NodeRole.INPUT, NodeRole.YAML_AGENT)


class NodeStatus(StrEnum):
    """Display status of a node."""

    IDLE = "idle"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class EdgeDirection(StrEnum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


class Node(BaseModel):
    """A node on the canvas.

    ``variables`` holds node-local overrides; for ``yaml_agent`` nodes they
    are merged over ``agent_config.vars`` at run time.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str
    role: NodeRole
    label: str = ""
    prompt_template: str | None = None
    model: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    agent_config: AgentConfig | None = None
    bundle_id: int | None = None
    runtime_output: str | None = None
    status: NodeStatus = NodeStatus.IDLE
    error_kind: ExecutionErrorKind | None = None
    error_message: str | None = None
    response: ResponseEnvelope | None = None
    position: dict[str, float] | None = None
    seq: int = Field(default=0, exclude=True)


class Edge(BaseModel):
    """A directed connection from ``source_node_id`` to ``target_node_id``."""

    id: str
    source_node_id: str
    target_node_id: str
    seq: int = Field(default=0, exclude=True)


class BundleColor(BaseModel):
    name: str
    color: str = Field(pattern=r"^#[0-9A-Fa-f]{6}$")
    light: str = Field(pattern=r"^#[0-9A-Fa-f]{6}([0-9A-Fa-f]{2})?$")

    @classmethod
    def custom(cls, color: str) -> "BundleColor":
        """Build a colour from a single hex value, with a translucent light tint."""
        return cls(name="Custom", color=color, light=f"{color}20")


BUNDLE_PALETTE: list[BundleColor] = [
    BundleColor(name="Ocean Blue", color="#0EA5E9", light="#E0F2FE"),
    BundleColor(name="Indigo", color="#6366F1", light="#E0E7FF"),
    BundleColor(name="Purple", color="#8B5CF6", light="#EDE9FE"),
    BundleColor(name="Emerald", color="#10B981", light="#D1FAE5"),
    BundleColor(name="Orange", color="#F59E0B", light="#FEF3C7"),
    BundleColor(name="Rose", color="#F43F5E", light="#FFE4E6"),
    BundleColor(name="Teal", color="#14B8A6", light="#CCFBF1"),
    BundleColor(name="Violet", color="#7C3AED", light="#EDE9FE"),
    BundleColor(name="Cyan", color="#06B6D4", light="#CFFAFE"),
    BundleColor(name="Lime", color="#84CC16", light="#ECFCCB"),
    BundleColor(name="Pink", color="#EC4899", light="#FCE7F3"),
    BundleColor(name="Red", color="#EF4444", light="#FEE2E2"),
    BundleColor(name="Slate", color="#64748B", light="#F1F5F9"),
    BundleColor(name="Zinc", color="#71717A", light="#F4F4F5"),
    BundleColor(name="Stone", color="#78716C", light="#F5F5F4"),
    BundleColor(name="Amber", color="#F59E0B", light="#FEF3C7"),
]


class Bundle(BaseModel):
    """A named, coloured group of nodes executed together.

    ``node_ids`` keeps insertion order; the engine iterates agents in it.
    """

    id: int
    name: str
    node_ids: list[str] = Field(default_factory=list)
    color: BundleColor
    is_running: bool = False
