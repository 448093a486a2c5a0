"""Undo/redo for graph and bundle edits.

WorkflowHistory wraps a GraphModel and its BundleManager. Editing through
the history records a command holding only the structural diff of that
edit (the node, its edges, before/after bundle snapshots). Undoing replays
the inverse; recording a new command drops the redo tail.

Usage:
    >>> history = WorkflowHistory(graph, bundles)
    >>> removal = history.remove_node("output_1a2b3c4d")
    >>> history.undo()
    'remove_node'
    >>> graph.has_node("output_1a2b3c4d")
    True
"""

import contextlib
import copy
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from config import settings
from events import EventType, WorkflowEvent
from models.graph import Bundle, BundleColor, Edge, Node
from workflow.bundles import BundleManager, BundleSnapshot
from workflow.graph import GraphModel, NodeRemoval

logger = structlog.get_logger()


class Command(Protocol):
    label: str

    def undo(self, graph: GraphModel, bundles: BundleManager) -> None: ...

    def redo(self, graph: GraphModel, bundles: BundleManager) -> None: ...


@dataclass
class AddNodeCommand:
    node: Node
    label: str = "add_node"

    def undo(self, graph: GraphModel, bundles: BundleManager) -> None:
        graph.remove_node(self.node.id)

    def redo(self, graph: GraphModel, bundles: BundleManager) -> None:
        graph.restore_node(self.node)


@dataclass
class RemoveNodeCommand:
    removal: NodeRemoval
    bundles_before: dict[int, BundleSnapshot] = field(default_factory=dict)
    label: str = "remove_node"

    def undo(self, graph: GraphModel, bundles: BundleManager) -> None:
        graph.restore_node(self.removal.node)
        for edge in self.removal.edges:
            graph.restore_edge(edge)
        if self.bundles_before:
            bundles.apply_snapshots(self.bundles_before)

    def redo(self, graph: GraphModel, bundles: BundleManager) -> None:
        graph.remove_node(self.removal.node.id)


@dataclass
class AddEdgeCommand:
    edge: Edge
    label: str = "add_edge"

    def undo(self, graph: GraphModel, bundles: BundleManager) -> None:
        graph.remove_edge(self.edge.id)

    def redo(self, graph: GraphModel, bundles: BundleManager) -> None:
        graph.restore_edge(self.edge)


@dataclass
class RemoveEdgeCommand:
    edge: Edge
    label: str = "remove_edge"

    def undo(self, graph: GraphModel, bundles: BundleManager) -> None:
        graph.restore_edge(self.edge)

    def redo(self, graph: GraphModel, bundles: BundleManager) -> None:
        graph.remove_edge(self.edge.id)


@dataclass
class UpdateNodeCommand:
    node_id: str
    before: dict[str, Any]
    after: dict[str, Any]
    label: str = "update_node"

    def undo(self, graph: GraphModel, bundles: BundleManager) -> None:
        graph.update_node(self.node_id, **copy.deepcopy(self.before))

    def redo(self, graph: GraphModel, bundles: BundleManager) -> None:
        graph.update_node(self.node_id, **copy.deepcopy(self.after))


@dataclass
class BundleCommand:
    """Any bundle edit, expressed as before/after snapshots of the bundles it touched."""

    label: str
    before: dict[int, BundleSnapshot]
    after: dict[int, BundleSnapshot]

    def undo(self, graph: GraphModel, bundles: BundleManager) -> None:
        bundles.apply_snapshots(self.before)

    def redo(self, graph: GraphModel, bundles: BundleManager) -> None:
        bundles.apply_snapshots(self.after)


@dataclass
class CompositeCommand:
    """Several commands undone and redone as one step."""

    label: str
    commands: list[Command] = field(default_factory=list)

    def undo(self, graph: GraphModel, bundles: BundleManager) -> None:
        for command in reversed(self.commands):
            command.undo(graph, bundles)

    def redo(self, graph: GraphModel, bundles: BundleManager) -> None:
        for command in self.commands:
            command.redo(graph, bundles)


class WorkflowHistory:
    """Records graph and bundle edits for undo/redo.

    Attributes:
        graph: The wrapped graph
        bundles: The wrapped bundle manager
        max_size: Number of commands kept; the oldest is dropped first
    """

    def __init__(
        self,
        graph: GraphModel,
        bundles: BundleManager,
        max_size: int | None = None,
    ) -> None:
        self.graph = graph
        self.bundles = bundles
        self.max_size = max_size if max_size is not None else settings.history_max_size
        self._undo_stack: list[Command] = []
        self._redo_stack: list[Command] = []
        self._group: CompositeCommand | None = None

    # ------------------------------------------------------------------
    # Stack management
    # ------------------------------------------------------------------

    def can_undo(self) -> bool:
        return bool(self._undo_stack)

    def can_redo(self) -> bool:
        return bool(self._redo_stack)

    @property
    def undo_labels(self) -> list[str]:
        return [command.label for command in self._undo_stack]

    @property
    def redo_labels(self) -> list[str]:
        return [command.label for command in self._redo_stack]

    def _publish_changed(self, action: str) -> None:
        if self.graph.event_bus is None:
            return
        self.graph.event_bus.publish_sync(
            WorkflowEvent(
                type=EventType.HISTORY_CHANGED,
                workspace_id=self.graph.workspace_id,
                data={
                    "action": action,
                    "can_undo": self.can_undo(),
                    "can_redo": self.can_redo(),
                },
            )
        )

    def _record(self, command: Command) -> None:
        if self._group is not None:
            self._group.commands.append(command)
            return
        self._undo_stack.append(command)
        if len(self._undo_stack) > self.max_size:
            del self._undo_stack[: len(self._undo_stack) - self.max_size]
        self._redo_stack.clear()
        self._publish_changed(command.label)

    def undo(self) -> str | None:
        """Revert the most recent command. Returns its label, or None."""
        if not self._undo_stack:
            return None
        command = self._undo_stack.pop()
        with self.graph.lock:
            command.undo(self.graph, self.bundles)
        self._redo_stack.append(command)
        logger.info("history_undo", workspace_id=self.graph.workspace_id, action=command.label)
        self._publish_changed(f"undo:{command.label}")
        return command.label

    def redo(self) -> str | None:
        """Re-apply the most recently undone command. Returns its label, or None."""
        if not self._redo_stack:
            return None
        command = self._redo_stack.pop()
        with self.graph.lock:
            command.redo(self.graph, self.bundles)
        self._undo_stack.append(command)
        logger.info("history_redo", workspace_id=self.graph.workspace_id, action=command.label)
        self._publish_changed(f"redo:{command.label}")
        return command.label

    @contextlib.contextmanager
    def group(self, label: str) -> Iterator[None]:
        """Record every edit made inside the block as a single undo step.

        Edits already applied stay applied if the block raises; they are
        still recorded so they can be undone.
        """
        if self._group is not None:
            yield
            return
        self._group = CompositeCommand(label=label)
        try:
            yield
        finally:
            group, self._group = self._group, None
            if group.commands:
                self._record(group)

    def clear(self) -> None:
        self._undo_stack.clear()
        self._redo_stack.clear()
        self._publish_changed("clear")

    # ------------------------------------------------------------------
    # Recorded graph edits
    # ------------------------------------------------------------------

    def add_node(self, node: Node) -> Node:
        added = self.graph.add_node(node)
        self._record(AddNodeCommand(node=added))
        return added

    def remove_node(self, node_id: str) -> NodeRemoval:
        with self.graph.lock:
            node = self.graph.require_node(node_id)
            before = self._snapshots([node.bundle_id] if node.bundle_id is not None else [])
            removal = self.graph.remove_node(node_id)
        self._record(RemoveNodeCommand(removal=removal, bundles_before=before))
        return removal

    def add_edge(self, source_node_id: str, target_node_id: str) -> Edge:
        """Connect two nodes. Re-connecting an existing pair records nothing."""
        with self.graph.lock:
            existing = self.graph.find_edge(source_node_id, target_node_id)
            edge = self.graph.add_edge(source_node_id, target_node_id)
        if existing is None:
            self._record(AddEdgeCommand(edge=edge))
        return edge

    def remove_edge(self, edge_id: str) -> Edge:
        edge = self.graph.remove_edge(edge_id)
        self._record(RemoveEdgeCommand(edge=edge))
        return edge

    def update_node(self, node_id: str, **changes: Any) -> Node:
        with self.graph.lock:
            node = self.graph.require_node(node_id)
            before = {
                name: copy.deepcopy(getattr(node, name))
                for name in changes
                if name in Node.model_fields
            }
            updated = self.graph.update_node(node_id, **changes)
        self._record(
            UpdateNodeCommand(node_id=node_id, before=before, after=copy.deepcopy(changes))
        )
        return updated

    # ------------------------------------------------------------------
    # Recorded bundle edits
    # ------------------------------------------------------------------

    def _snapshots(self, bundle_ids: Iterable[int]) -> dict[int, BundleSnapshot]:
        return {bundle_id: self.bundles.snapshot(bundle_id) for bundle_id in dict.fromkeys(bundle_ids)}

    def create_bundle(
        self,
        node_ids: Iterable[str],
        name: str | None = None,
        color: BundleColor | str | None = None,
    ) -> Bundle:
        selection = list(node_ids)
        with self.graph.lock:
            moved_from = [
                node.bundle_id
                for node in (self.graph.get_node(node_id) for node_id in selection)
                if node is not None and node.bundle_id is not None
            ]
            before = self._snapshots(moved_from)
            bundle = self.bundles.create_bundle(selection, name=name, color=color)
            before[bundle.id] = None
            after = self._snapshots(before)
        self._record(BundleCommand(label="create_bundle", before=before, after=after))
        return bundle

    def delete_bundle(self, bundle_id: int) -> Bundle:
        return self._bundle_edit("delete_bundle", bundle_id, self.bundles.delete_bundle)

    def rename_bundle(self, bundle_id: int, name: str) -> Bundle:
        return self._bundle_edit(
            "rename_bundle", bundle_id, lambda bid: self.bundles.rename_bundle(bid, name)
        )

    def recolor_bundle(self, bundle_id: int, color: BundleColor | str) -> Bundle:
        return self._bundle_edit(
            "recolor_bundle", bundle_id, lambda bid: self.bundles.recolor(bid, color)
        )

    def _bundle_edit(self, label: str, bundle_id: int, edit: Callable[[int], Bundle]) -> Bundle:
        with self.graph.lock:
            self.bundles.require_bundle(bundle_id)
            before = self._snapshots([bundle_id])
            bundle = edit(bundle_id)
            after = self._snapshots([bundle_id])
        self._record(BundleCommand(label=label, before=before, after=after))
        return bundle

