"""Read-only graph view over a process definition.

This module provides navigation over a definition's nodes and edges for the
dispatcher and the gateway evaluator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from litestar_bpm.core.definition import StartNode
from litestar_bpm.exceptions import NodeNotFoundError

if TYPE_CHECKING:
    from litestar_bpm.core.definition import Edge, Node, ProcessDefinition

__all__ = ["ProcessGraph"]


class ProcessGraph:
    """Graph representation of a process definition.

    The graph is built once per definition version and never mutated, so it can
    be shared by concurrent walks.

    Attributes:
        definition: The definition this graph represents.
        _nodes: Node lookup by id.
        _adjacency: Outgoing edges per node id, in definition order.
        _reverse_adjacency: Incoming edges per node id.
    """

    def __init__(self, definition: ProcessDefinition) -> None:
        """Initialize a process graph from a definition.

        Args:
            definition: The definition to represent as a graph.
        """
        self.definition = definition
        self._nodes: dict[str, Node] = {node.id: node for node in definition.nodes}
        self._adjacency: dict[str, list[Edge]] = {node_id: [] for node_id in self._nodes}
        self._reverse_adjacency: dict[str, list[Edge]] = {node_id: [] for node_id in self._nodes}
        for edge in definition.edges:
            self._adjacency.setdefault(edge.source, []).append(edge)
            self._reverse_adjacency.setdefault(edge.target, []).append(edge)

    @classmethod
    def from_definition(cls, definition: ProcessDefinition) -> ProcessGraph:
        """Create a process graph from a definition.

        Args:
            definition: The process definition.

        Returns:
            A ProcessGraph instance.
        """
        return cls(definition)

    @property
    def nodes(self) -> list[Node]:
        """All nodes in definition order."""
        return list(self._nodes.values())

    def get_node(self, node_id: str) -> Node:
        """Look a node up by id.

        Args:
            node_id: The node id.

        Returns:
            The node.

        Raises:
            NodeNotFoundError: If the node does not exist.
        """
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NodeNotFoundError(node_id, self.definition.id) from None

    def has_node(self, node_id: str) -> bool:
        """Whether the graph contains a node id."""
        return node_id in self._nodes

    def start_node(self) -> StartNode:
        """Return the start node.

        Raises:
            NodeNotFoundError: If the definition has no start node.
        """
        for node in self._nodes.values():
            if isinstance(node, StartNode):
                return node
        raise NodeNotFoundError("start", self.definition.id)

    def out_edges(self, node_id: str) -> list[Edge]:
        """Outgoing edges of a node in definition order."""
        return list(self._adjacency.get(node_id, ()))

    def in_edges(self, node_id: str) -> list[Edge]:
        """Incoming edges of a node."""
        return list(self._reverse_adjacency.get(node_id, ()))

    def target_of(self, edge: Edge) -> Node | None:
        """Resolve an edge target, returning None for dangling references."""
        return self._nodes.get(edge.target)

    def targets_of(self, node_id: str) -> list[Node]:
        """Resolve the successor nodes of a node.

        Edges pointing at unknown nodes are dropped silently.

        Args:
            node_id: The node id.

        Returns:
            Successor nodes in edge order.
        """
        return [node for edge in self.out_edges(node_id) if (node := self.target_of(edge)) is not None]

    def is_terminal(self, node_id: str) -> bool:
        """Whether a node has no outgoing edges."""
        return not self._adjacency.get(node_id)
