"""Models module for Pydantic schemas.

This module exposes the domain models (graph, agent definitions, execution
results) and the request/response models used by the API.
"""

from models.agent import AgentConfig, ParsedAgent, ValidationResult, Variable, VariableType
from models.execution import (
    BundleRunResult,
    ExecutionErrorKind,
    ResponseEnvelope,
    UnitResult,
    UnitStatus,
)
from models.graph import (
    BUNDLE_PALETTE,
    Bundle,
    BundleColor,
    Edge,
    EdgeDirection,
    Node,
    NodeRole,
    NodeStatus,
)
from models.schemas import (
    CreateBundleRequest,
    CreateEdgeRequest,
    CreateNodeRequest,
    CreateWorkspaceRequest,
    HealthResponse,
    UpdateBundleRequest,
    UpdateNodeRequest,
    WorkspaceResponse,
    WorkspaceStateResponse,
)

__all__ = [
    # Agent definitions
    "AgentConfig",
    "ParsedAgent",
    "ValidationResult",
    "Variable",
    "VariableType",
    # Execution
    "BundleRunResult",
    "ExecutionErrorKind",
    "ResponseEnvelope",
    "UnitResult",
    "UnitStatus",
    # Graph
    "BUNDLE_PALETTE",
    "Bundle",
    "BundleColor",
    "Edge",
    "EdgeDirection",
    "Node",
    "NodeRole",
    "NodeStatus",
    # API
    "CreateBundleRequest",
    "CreateEdgeRequest",
    "CreateNodeRequest",
    "CreateWorkspaceRequest",
    "HealthResponse",
    "UpdateBundleRequest",
    "UpdateNodeRequest",
    "WorkspaceResponse",
    "WorkspaceStateResponse",
]
