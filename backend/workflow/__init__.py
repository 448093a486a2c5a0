"""Workflow core: graph, bundles, execution engine and edit history."""

from workflow.bundles import BundleManager, resolve_color
from workflow.engine import ExecutionEngine, MissingVariableError
from workflow.errors import (
    BundleNotFoundError,
    BundleValidationError,
    BundleValidationErrorKind,
    EdgeNotFoundError,
    GraphConsistencyError,
    InvalidEdgeError,
    NodeNotFoundError,
    WorkflowError,
)
from workflow.graph import GraphModel, NodeRemoval, new_edge_id, new_node_id
from workflow.history import WorkflowHistory

__all__ = [
    "BundleManager",
    "BundleNotFoundError",
    "BundleValidationError",
    "BundleValidationErrorKind",
    "EdgeNotFoundError",
    "ExecutionEngine",
    "GraphConsistencyError",
    "GraphModel",
    "InvalidEdgeError",
    "MissingVariableError",
    "NodeNotFoundError",
    "NodeRemoval",
    "WorkflowError",
    "WorkflowHistory",
    "new_edge_id",
    "new_node_id",
]
