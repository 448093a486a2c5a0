"""Bundle membership: named, coloured groups of nodes executed together.

BundleManager owns ``Node.bundle_id`` and keeps these invariants as the
graph mutates:
- every bundle member exists in the graph
- a node belongs to at most one bundle
- a bundle whose membership becomes empty is deleted
"""

from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from events import EventType, WorkflowEvent
from models.graph import BUNDLE_PALETTE, Bundle, BundleColor, Node, NodeRole
from workflow.errors import (
    BundleNotFoundError,
    BundleValidationError,
    BundleValidationErrorKind,
    GraphConsistencyError,
)
from workflow.graph import GraphModel

logger = structlog.get_logger()

BundleSnapshot = Bundle | None


def palette_color(index: int) -> BundleColor:
    """Palette colour for the index-th bundle, cycling through the palette."""
    return BUNDLE_PALETTE[index % len(BUNDLE_PALETTE)]


def resolve_color(color: BundleColor | str) -> BundleColor:
    """Accept a BundleColor, a palette colour name or a ``#RRGGBB`` hex value.

    Raises:
        ValueError: If the value is neither a palette name nor a valid hex colour
    """
    if isinstance(color, BundleColor):
        return color
    for candidate in BUNDLE_PALETTE:
        if candidate.name.lower() == color.strip().lower():
            return candidate
    try:
        return BundleColor.custom(color.strip())
    except ValueError as e:
        raise ValueError(f"Invalid bundle colour: {color!r}") from e


class BundleManager:
    """Creates, edits and prunes the bundles of one graph.

    Bundle ids are assigned monotonically from 1 and never reused.
    ``bundles`` lists bundles in creation order.
    """

    def __init__(self, graph: GraphModel) -> None:
        self.graph = graph
        self._bundles: dict[int, Bundle] = {}
        self._next_id = 1
        graph.add_removal_listener(self._on_node_removed)

    def _publish(
        self,
        event_type: EventType,
        bundle_id: int,
        data: dict[str, Any],
    ) -> None:
        if self.graph.event_bus is None:
            return
        self.graph.event_bus.publish_sync(
            WorkflowEvent(
                type=event_type,
                workspace_id=self.graph.workspace_id,
                bundle_id=bundle_id,
                data=data,
            )
        )

    def _publish_bundle(self, event_type: EventType, bundle: Bundle) -> None:
        self._publish(event_type, bundle.id, {"bundle": bundle.model_dump(mode="json")})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def bundles(self) -> list[Bundle]:
        with self.graph.lock:
            return list(self._bundles.values())

    def get_bundle(self, bundle_id: int) -> Bundle | None:
        with self.graph.lock:
            return self._bundles.get(bundle_id)

    def require_bundle(self, bundle_id: int) -> Bundle:
        with self.graph.lock:
            bundle = self._bundles.get(bundle_id)
            if bundle is None:
                raise BundleNotFoundError(bundle_id)
            return bundle

    def bundle_for_node(self, node_id: str) -> Bundle | None:
        with self.graph.lock:
            for bundle in self._bundles.values():
                if node_id in bundle.node_ids:
                    return bundle
            return None

    def agent_nodes(self, bundle_id: int) -> list[Node]:
        """Agent-role members in membership order."""
        bundle = self.require_bundle(bundle_id)
        with self.graph.lock:
            return [
                node
                for node in (self.graph.get_node(node_id) for node_id in bundle.node_ids)
                if node is not None and node.role.is_agent
            ]

    def output_nodes(self, bundle_id: int) -> list[Node]:
        bundle = self.require_bundle(bundle_id)
        return self.graph.nodes_by_role(NodeRole.OUTPUT, restrict_to=bundle.node_ids)

    def is_runnable(self, bundle_id: int) -> bool:
        """True when some agent member reaches an output member inside the bundle."""
        bundle = self.require_bundle(bundle_id)
        with self.graph.lock:
            for agent in self.agent_nodes(bundle_id):
                reached = self.graph.reachable_within(agent.id, bundle.node_ids)
                if any(node.role == NodeRole.OUTPUT for node in reached):
                    return True
            return False

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_bundle(
        self,
        node_ids: Iterable[str],
        name: str | None = None,
        color: BundleColor | str | None = None,
    ) -> Bundle:
        """Group nodes into a new bundle.

        Nodes already in another bundle are moved; a bundle left empty by the
        move is deleted.

        Raises:
            BundleValidationError: For an empty selection, unknown node ids, or
                a selection without both an agent node and an output node
            ValueError: For an unusable colour
        """
        selection = list(dict.fromkeys(node_ids))
        if not selection:
            raise BundleValidationError(
                BundleValidationErrorKind.EMPTY_SELECTION, "Select at least one node to bundle"
            )

        resolved_color = resolve_color(color) if color is not None else None

        with self.graph.lock:
            missing = [node_id for node_id in selection if not self.graph.has_node(node_id)]
            if missing:
                raise BundleValidationError(
                    BundleValidationErrorKind.UNKNOWN_NODE,
                    f"Unknown node ids: {', '.join(missing)}",
                )

            members = [self.graph.require_node(node_id) for node_id in selection]
            if not any(node.role.is_agent for node in members):
                raise BundleValidationError(
                    BundleValidationErrorKind.INVALID_COMPOSITION,
                    "A bundle needs at least one agent node",
                )
            if not any(node.role == NodeRole.OUTPUT for node in members):
                raise BundleValidationError(
                    BundleValidationErrorKind.INVALID_COMPOSITION,
                    "A bundle needs at least one output node",
                )

            bundle_id = self._next_id
            self._next_id += 1

            for node in members:
                if node.bundle_id is not None:
                    self._detach(node, reason="moved")

            bundle = Bundle(
                id=bundle_id,
                name=name.strip() if name and name.strip() else f"Bundle {bundle_id}",
                node_ids=selection,
                color=resolved_color or palette_color(bundle_id - 1),
            )
            self._bundles[bundle_id] = bundle
            for node in members:
                node.bundle_id = bundle_id

        logger.info(
            "bundle_created",
            workspace_id=self.graph.workspace_id,
            bundle_id=bundle_id,
            node_count=len(selection),
        )
        self._publish_bundle(EventType.BUNDLE_CREATED, bundle)
        return bundle

    def rename_bundle(self, bundle_id: int, name: str) -> Bundle:
        """Rename a bundle.

        Raises:
            BundleNotFoundError: If the bundle does not exist
            ValueError: If the name is blank
        """
        if not name or not name.strip():
            raise ValueError("Bundle name cannot be blank")
        with self.graph.lock:
            bundle = self.require_bundle(bundle_id)
            bundle.name = name.strip()
        self._publish_bundle(EventType.BUNDLE_UPDATED, bundle)
        return bundle

    def recolor(self, bundle_id: int, color: BundleColor | str) -> Bundle:
        resolved = resolve_color(color)
        with self.graph.lock:
            bundle = self.require_bundle(bundle_id)
            bundle.color = resolved
        self._publish_bundle(EventType.BUNDLE_UPDATED, bundle)
        return bundle

    def delete_bundle(self, bundle_id: int) -> Bundle:
        """Delete a bundle, keeping its member nodes in the graph."""
        with self.graph.lock:
            bundle = self.require_bundle(bundle_id)
            self._remove_bundle(bundle, reason="explicit")
        logger.info("bundle_deleted", workspace_id=self.graph.workspace_id, bundle_id=bundle_id)
        return bundle

    def set_running(self, bundle_id: int, running: bool) -> Bundle:
        with self.graph.lock:
            bundle = self.require_bundle(bundle_id)
            bundle.is_running = running
        self._publish_bundle(EventType.BUNDLE_UPDATED, bundle)
        return bundle

    # ------------------------------------------------------------------
    # Snapshots (used by undo/redo)
    # ------------------------------------------------------------------

    def snapshot(self, bundle_id: int) -> BundleSnapshot:
        """Deep copy of a bundle's state, or None when it does not exist."""
        with self.graph.lock:
            bundle = self._bundles.get(bundle_id)
            return bundle.model_copy(deep=True) if bundle is not None else None

    def apply_snapshot(self, bundle_id: int, snapshot: BundleSnapshot) -> None:
        self.apply_snapshots({bundle_id: snapshot})

    def apply_snapshots(self, snapshots: Mapping[int, BundleSnapshot]) -> None:
        """Replace the state of several bundles at once.

        A None snapshot deletes the bundle. Member nodes must already exist.

        Raises:
            GraphConsistencyError: If a snapshot names a missing node
        """
        with self.graph.lock:
            previous: dict[int, Bundle | None] = {}
            for bundle_id in snapshots:
                current = self._bundles.pop(bundle_id, None)
                previous[bundle_id] = current
                if current is None:
                    continue
                for node_id in current.node_ids:
                    node = self.graph.get_node(node_id)
                    if node is not None and node.bundle_id == bundle_id:
                        node.bundle_id = None

            for bundle_id, snapshot in snapshots.items():
                if snapshot is None:
                    continue
                bundle = snapshot.model_copy(deep=True)
                bundle.is_running = False
                for node_id in bundle.node_ids:
                    node = self.graph.get_node(node_id)
                    if node is None:
                        raise GraphConsistencyError(
                            f"Bundle {bundle_id} snapshot references missing node {node_id}"
                        )
                    node.bundle_id = bundle_id
                self._bundles[bundle_id] = bundle
                self._next_id = max(self._next_id, bundle_id + 1)

            self._bundles = dict(sorted(self._bundles.items()))

        for bundle_id, snapshot in snapshots.items():
            if snapshot is None:
                if previous[bundle_id] is not None:
                    self._publish(EventType.BUNDLE_DELETED, bundle_id, {"reason": "history"})
            elif previous[bundle_id] is None:
                self._publish_bundle(EventType.BUNDLE_CREATED, self._bundles[bundle_id])
            else:
                self._publish_bundle(EventType.BUNDLE_UPDATED, self._bundles[bundle_id])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _remove_bundle(self, bundle: Bundle, reason: str) -> None:
        """Drop a bundle and clear bundle_id from its members. Lock must be held."""
        del self._bundles[bundle.id]
        for node_id in bundle.node_ids:
            node = self.graph.get_node(node_id)
            if node is not None and node.bundle_id == bundle.id:
                node.bundle_id = None
        self._publish(EventType.BUNDLE_DELETED, bundle.id, {"reason": reason})

    def _detach(self, node: Node, reason: str) -> int | None:
        """Take a node out of its bundle, deleting the bundle if it empties.

        Lock must be held. Returns the id of a deleted bundle.
        """
        bundle = self._bundles.get(node.bundle_id) if node.bundle_id is not None else None
        node.bundle_id = None
        if bundle is None:
            return None

        bundle.node_ids = [node_id for node_id in bundle.node_ids if node_id != node.id]
        if not bundle.node_ids:
            self._remove_bundle(bundle, reason="emptied")
            logger.info(
                "bundle_emptied",
                workspace_id=self.graph.workspace_id,
                bundle_id=bundle.id,
                cause=reason,
            )
            return bundle.id

        self._publish_bundle(EventType.BUNDLE_UPDATED, bundle)
        return None

    def _on_node_removed(self, node: Node) -> list[int]:
        with self.graph.lock:
            emptied = self._detach(node, reason="node_removed")
        return [emptied] if emptied is not None else []
