"""In-memory workflow graph: nodes, directed edges and adjacency queries.

GraphModel is the single query surface the bundle manager and the execution
engine use. Every mutation runs to completion under a re-entrant lock and
contains no suspension points, so a query never observes a half-applied
change. Each mutation is published on the EventBus for its workspace.

Usage:
    >>> graph = GraphModel("ws_abc123def456")
    >>> agent = graph.add_node(Node(id=new_node_id(NodeRole.INPUT), role=NodeRole.INPUT))
    >>> output = graph.add_node(Node(id=new_node_id(NodeRole.OUTPUT), role=NodeRole.OUTPUT))
    >>> graph.add_edge(agent.id, output.id)
    >>> graph.neighbors(agent.id, EdgeDirection.OUTGOING)
    [Node(id='output_...', ...)]
"""

import itertools
import threading
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from events import EventBus, EventType, WorkflowEvent
from models.execution import ExecutionErrorKind
from models.graph import Edge, EdgeDirection, Node, NodeRole, NodeStatus
from workflow.errors import (
    EdgeNotFoundError,
    GraphConsistencyError,
    InvalidEdgeError,
    NodeNotFoundError,
)

logger = structlog.get_logger()

# Called with the removed node; returns ids of bundles deleted because of it.
RemovalListener = Callable[[Node], list[int]]

# Fields update_node refuses to touch. Bundle membership is owned by
# BundleManager.
_PROTECTED_FIELDS = frozenset({"id", "seq", "bundle_id"})


def new_node_id(role: NodeRole | str) -> str:
    """Generate a node id in the format "{role}_{8 hex chars}"."""
    return f"{NodeRole(role).value}_{uuid.uuid4().hex[:8]}"


def new_edge_id() -> str:
    return f"edge_{uuid.uuid4().hex[:8]}"


@dataclass
class NodeRemoval:
    """What a node removal took with it.

    Attributes:
        node: The removed node
        edges: Incident edges removed by the cascade, in insertion order
        emptied_bundles: Ids of bundles deleted because they became empty
    """

    node: Node
    edges: list[Edge] = field(default_factory=list)
    emptied_bundles: list[int] = field(default_factory=list)

    @property
    def bundle_emptied(self) -> bool:
        return bool(self.emptied_bundles)


class GraphModel:
    """Nodes and directed edges of one workspace.

    Nodes and edges are kept in insertion order. A node or edge put back by
    ``restore_node`` / ``restore_edge`` regains its original position.

    Attributes:
        workspace_id: Workspace the graph belongs to (used for events)
        event_bus: Optional bus that receives one event per mutation
        lock: Re-entrant lock shared with the bundle manager
    """

    def __init__(self, workspace_id: str, event_bus: EventBus | None = None) -> None:
        self.workspace_id = workspace_id
        self.event_bus = event_bus
        self.lock = threading.RLock()
        self._nodes: dict[str, Node] = {}
        self._edges: dict[str, Edge] = {}
        self._seq = itertools.count(1)
        self._removal_listeners: list[RemovalListener] = []

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _publish(
        self,
        event_type: EventType,
        node_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish_sync(
            WorkflowEvent(
                type=event_type,
                workspace_id=self.workspace_id,
                node_id=node_id,
                data=data or {},
            )
        )

    def add_removal_listener(self, listener: RemovalListener) -> None:
        """Register a callback run inside ``remove_node`` after the node is gone."""
        self._removal_listeners.append(listener)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> list[Node]:
        with self.lock:
            return list(self._nodes.values())

    @property
    def edges(self) -> list[Edge]:
        with self.lock:
            return list(self._edges.values())

    def has_node(self, node_id: str) -> bool:
        with self.lock:
            return node_id in self._nodes

    def get_node(self, node_id: str) -> Node | None:
        with self.lock:
            return self._nodes.get(node_id)

    def require_node(self, node_id: str) -> Node:
        """Return a node or raise NodeNotFoundError."""
        with self.lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise NodeNotFoundError(node_id)
            return node

    def get_edge(self, edge_id: str) -> Edge | None:
        with self.lock:
            return self._edges.get(edge_id)

    def find_edge(self, source_node_id: str, target_node_id: str) -> Edge | None:
        with self.lock:
            for edge in self._edges.values():
                if edge.source_node_id == source_node_id and edge.target_node_id == target_node_id:
                    return edge
            return None

    def edges_touching(self, node_id: str) -> list[Edge]:
        with self.lock:
            return [
                edge
                for edge in self._edges.values()
                if node_id in (edge.source_node_id, edge.target_node_id)
            ]

    def neighbors(self, node_id: str, direction: EdgeDirection | str) -> list[Node]:
        """Nodes one edge away, in edge insertion order, without duplicates.

        Raises:
            NodeNotFoundError: If node_id is not in the graph
        """
        direction = EdgeDirection(direction)
        with self.lock:
            self.require_node(node_id)
            seen: dict[str, Node] = {}
            for edge in self._edges.values():
                if direction == EdgeDirection.OUTGOING and edge.source_node_id == node_id:
                    other = edge.target_node_id
                elif direction == EdgeDirection.INCOMING and edge.target_node_id == node_id:
                    other = edge.source_node_id
                else:
                    continue
                if other not in seen:
                    seen[other] = self._nodes[other]
            return list(seen.values())

    def nodes_by_role(
        self,
        role: NodeRole | str,
        restrict_to: Iterable[str] | None = None,
    ) -> list[Node]:
        """Nodes with the given role.

        Ordered by ``restrict_to`` when given (unknown ids are skipped),
        otherwise by graph insertion order.
        """
        role = NodeRole(role)
        with self.lock:
            if restrict_to is None:
                candidates = list(self._nodes.values())
            else:
                candidates = [
                    self._nodes[node_id]
                    for node_id in dict.fromkeys(restrict_to)
                    if node_id in self._nodes
                ]
            return [node for node in candidates if node.role == role]

    def reachable_within(self, start_id: str, allowed_ids: Iterable[str]) -> list[Node]:
        """Breadth-first walk over outgoing edges, confined to ``allowed_ids``.

        Direct neighbours come first, in edge insertion order. The start
        node is not included.
        """
        allowed = set(allowed_ids)
        with self.lock:
            self.require_node(start_id)
            visited = {start_id}
            reached: list[Node] = []
            queue = deque([start_id])
            while queue:
                current = queue.popleft()
                for neighbor in self.neighbors(current, EdgeDirection.OUTGOING):
                    if neighbor.id in visited or neighbor.id not in allowed:
                        continue
                    visited.add(neighbor.id)
                    reached.append(neighbor)
                    queue.append(neighbor.id)
            return reached

    # ------------------------------------------------------------------
    # Node mutations
    # ------------------------------------------------------------------

    def add_node(self, node: Node) -> Node:
        """Add a node at the end of the graph.

        Membership is assigned by the bundle manager, so any ``bundle_id``
        on the incoming node is cleared.

        Raises:
            GraphConsistencyError: If a node with the same id exists
        """
        with self.lock:
            if node.id in self._nodes:
                raise GraphConsistencyError(f"Duplicate node id: {node.id}")
            node.seq = next(self._seq)
            node.bundle_id = None
            self._nodes[node.id] = node

        logger.debug("node_added", workspace_id=self.workspace_id, node_id=node.id, role=node.role.value)
        self._publish(EventType.NODE_ADDED, node_id=node.id, data={"node": node.model_dump(mode="json")})
        return node

    def update_node(self, node_id: str, **changes: Any) -> Node:
        """Apply field changes to a node.

        Raises:
            NodeNotFoundError: If the node does not exist
            ValueError: If a field is unknown or protected
        """
        unknown = [name for name in changes if name not in Node.model_fields]
        protected = [name for name in changes if name in _PROTECTED_FIELDS]
        if unknown or protected:
            raise ValueError(f"Cannot update fields: {', '.join(unknown + protected)}")

        with self.lock:
            node = self.require_node(node_id)
            for name, value in changes.items():
                setattr(node, name, value)

        self._publish(
            EventType.NODE_UPDATED,
            node_id=node_id,
            data={"node": node.model_dump(mode="json"), "fields": sorted(changes)},
        )
        return node

    def set_status(
        self,
        node_id: str,
        status: NodeStatus,
        error_kind: ExecutionErrorKind | None = None,
        error_message: str | None = None,
    ) -> Node:
        """Set a node's display status and its error classification."""
        with self.lock:
            node = self.require_node(node_id)
            node.status = status
            node.error_kind = error_kind
            node.error_message = error_message

        self._publish(
            EventType.NODE_STATUS_CHANGED,
            node_id=node_id,
            data={
                "status": status.value,
                "error_kind": error_kind.value if error_kind else None,
                "error": error_message,
            },
        )
        return node

    def remove_node(self, node_id: str) -> NodeRemoval:
        """Remove a node together with its incident edges and bundle membership.

        Raises:
            NodeNotFoundError: If the node does not exist
        """
        with self.lock:
            node = self.require_node(node_id)
            edges = self.remove_edges_touching(node_id)
            del self._nodes[node_id]

            emptied: list[int] = []
            for listener in self._removal_listeners:
                emptied.extend(listener(node))

            if node.bundle_id is not None:
                raise GraphConsistencyError(
                    f"Node {node_id} still references bundle {node.bundle_id} after removal"
                )

        logger.info(
            "node_removed",
            workspace_id=self.workspace_id,
            node_id=node_id,
            edges_removed=len(edges),
            bundles_emptied=emptied,
        )
        self._publish(
            EventType.NODE_REMOVED,
            node_id=node_id,
            data={"edge_ids": [edge.id for edge in edges], "emptied_bundles": emptied},
        )
        return NodeRemoval(node=node, edges=edges, emptied_bundles=emptied)

    def restore_node(self, node: Node) -> Node:
        """Put a removed node back at its original insertion position."""
        with self.lock:
            if node.id in self._nodes:
                raise GraphConsistencyError(f"Duplicate node id: {node.id}")
            node.bundle_id = None
            self._nodes[node.id] = node
            self._nodes = dict(sorted(self._nodes.items(), key=lambda item: item[1].seq))

        self._publish(EventType.NODE_ADDED, node_id=node.id, data={"node": node.model_dump(mode="json")})
        return node

    # ------------------------------------------------------------------
    # Edge mutations
    # ------------------------------------------------------------------

    def add_edge(self, source_node_id: str, target_node_id: str) -> Edge:
        """Connect two nodes.

        Connecting an already connected pair returns the existing edge.

        Raises:
            NodeNotFoundError: If either endpoint does not exist
            InvalidEdgeError: For a self loop
        """
        if source_node_id == target_node_id:
            raise InvalidEdgeError(f"Cannot connect node {source_node_id} to itself")

        with self.lock:
            self.require_node(source_node_id)
            self.require_node(target_node_id)
            existing = self.find_edge(source_node_id, target_node_id)
            if existing is not None:
                return existing
            edge = Edge(
                id=new_edge_id(),
                source_node_id=source_node_id,
                target_node_id=target_node_id,
                seq=next(self._seq),
            )
            self._edges[edge.id] = edge

        self._publish_edge(EventType.EDGE_ADDED, edge)
        return edge

    def remove_edge(self, edge_id: str) -> Edge:
        """Remove one edge.

        Raises:
            EdgeNotFoundError: If the edge does not exist
        """
        with self.lock:
            edge = self._edges.pop(edge_id, None)
            if edge is None:
                raise EdgeNotFoundError(edge_id)

        self._publish_edge(EventType.EDGE_REMOVED, edge)
        return edge

    def remove_edges_touching(self, node_id: str) -> list[Edge]:
        """Remove every edge with node_id as source or target."""
        with self.lock:
            removed = self.edges_touching(node_id)
            for edge in removed:
                del self._edges[edge.id]

        for edge in removed:
            self._publish_edge(EventType.EDGE_REMOVED, edge)
        return removed

    def restore_edge(self, edge: Edge) -> Edge:
        """Put a removed edge back at its original insertion position.

        Raises:
            NodeNotFoundError: If an endpoint is missing
        """
        with self.lock:
            self.require_node(edge.source_node_id)
            self.require_node(edge.target_node_id)
            if edge.id in self._edges:
                raise GraphConsistencyError(f"Duplicate edge id: {edge.id}")
            self._edges[edge.id] = edge
            self._edges = dict(sorted(self._edges.items(), key=lambda item: item[1].seq))

        self._publish_edge(EventType.EDGE_ADDED, edge)
        return edge

    def _publish_edge(self, event_type: EventType, edge: Edge) -> None:
        self._publish(
            event_type,
            data={
                "edge_id": edge.id,
                "source": edge.source_node_id,
                "target": edge.target_node_id,
            },
        )
