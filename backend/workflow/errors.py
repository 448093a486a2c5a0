"""Exceptions raised by graph, bundle and history operations.

Execution failures are not exceptions; they are recorded per run unit as an
ExecutionErrorKind.
"""

from enum import StrEnum


class WorkflowError(Exception):
    """Base class for workflow editing errors."""


class GraphConsistencyError(WorkflowError):
    """An internal invariant was violated.

    Cascading cleanup should make this unreachable; seeing it means a bug.
    """


class NodeNotFoundError(WorkflowError, KeyError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node not found: {node_id}")
        self.node_id = node_id

    def __str__(self) -> str:
        return str(self.args[0])


class EdgeNotFoundError(WorkflowError, KeyError):
    def __init__(self, edge_id: str) -> None:
        super().__init__(f"Edge not found: {edge_id}")
        self.edge_id = edge_id

    def __str__(self) -> str:
        return str(self.args[0])


class InvalidEdgeError(WorkflowError, ValueError):
    """Raised for self loops and edges whose endpoints do not exist."""


class BundleNotFoundError(WorkflowError, KeyError):
    def __init__(self, bundle_id: int) -> None:
        super().__init__(f"Bundle not found: {bundle_id}")
        self.bundle_id = bundle_id

    def __str__(self) -> str:
        return str(self.args[0])


class BundleValidationErrorKind(StrEnum):
    EMPTY_SELECTION = "empty_selection"
    INVALID_COMPOSITION = "invalid_composition"
    UNKNOWN_NODE = "unknown_node"


class BundleValidationError(WorkflowError, ValueError):
    """A bundle could not be created or edited as requested.

    Attributes:
        kind: Machine-readable reason
    """

    def __init__(self, kind: BundleValidationErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
