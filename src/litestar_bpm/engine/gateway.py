"""Branch selection for exclusive, parallel and inclusive gateways."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from litestar_bpm.core.definition import (
    ExclusiveGatewayNode,
    InclusiveGatewayNode,
    ParallelGatewayNode,
)
from litestar_bpm.core.expressions import ExpressionEvaluator
from litestar_bpm.exceptions import GatewayNoMatchError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from litestar_bpm.core.definition import Edge, GatewayNode, Node
    from litestar_bpm.engine.graph import ProcessGraph

__all__ = ["GatewayDecision", "GatewayEvaluator"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayDecision:
    """Which outgoing edges of a gateway fire.

    Attributes:
        gateway_id: The evaluated gateway.
        edges: Fired edges in definition order.
        targets: Target nodes of the fired edges.
        concurrent: Whether the targets run as independent branches.
        warnings: Condition evaluation warnings collected on the way.
    """

    gateway_id: str
    edges: list[Edge]
    targets: list[Node]
    concurrent: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_result(self) -> dict[str, Any]:
        """Summarize the decision for the execution path."""
        result: dict[str, Any] = {"selectedEdges": [edge.id for edge in self.edges]}
        if self.warnings:
            result["warnings"] = list(self.warnings)
        return result


class GatewayEvaluator:
    """Evaluates gateway edge conditions against process variables.

    Edges are always visited in definition order, which makes exclusive
    selection deterministic for a given set of variables.

    Example:
        >>> decision = GatewayEvaluator().select(gateway, graph, {"amount": 50})
        >>> [node.id for node in decision.targets]
        ['small_order']
    """

    def __init__(self, expressions: ExpressionEvaluator | None = None) -> None:
        """Initialize the evaluator.

        Args:
            expressions: Expression evaluator used for edge conditions.
        """
        self.expressions = expressions or ExpressionEvaluator()

    def select(self, gateway: GatewayNode, graph: ProcessGraph, variables: Mapping[str, Any]) -> GatewayDecision:
        """Select the outgoing edges that fire.

        Args:
            gateway: The gateway node.
            graph: Graph containing the gateway.
            variables: Variables visible to conditions.

        Returns:
            The decision.

        Raises:
            GatewayNoMatchError: If no edge fires.
        """
        if isinstance(gateway, ExclusiveGatewayNode):
            decision = self._exclusive(gateway, graph, variables)
        elif isinstance(gateway, ParallelGatewayNode):
            decision = self._parallel(gateway, graph)
        elif isinstance(gateway, InclusiveGatewayNode):
            decision = self._inclusive(gateway, graph, variables)
        else:
            raise GatewayNoMatchError(gateway.id, gateway.type_name)

        if not decision.targets:
            raise GatewayNoMatchError(gateway.id, gateway.type_name)
        logger.debug(
            "Gateway %s selected %s",
            gateway.id,
            [edge.id for edge in decision.edges],
        )
        return decision

    def _exclusive(
        self,
        gateway: ExclusiveGatewayNode,
        graph: ProcessGraph,
        variables: Mapping[str, Any],
    ) -> GatewayDecision:
        warnings: list[str] = []
        for edge in graph.out_edges(gateway.id):
            outcome = self.expressions.evaluate_condition(edge.condition, variables)
            if outcome.warning:
                warnings.append(outcome.warning)
            target = graph.target_of(edge)
            if outcome.value and target is not None:
                return GatewayDecision(gateway.id, [edge], [target], warnings=warnings)
        return GatewayDecision(gateway.id, [], [], warnings=warnings)

    def _parallel(self, gateway: ParallelGatewayNode, graph: ProcessGraph) -> GatewayDecision:
        edges: list[Edge] = []
        targets: list[Node] = []
        for edge in graph.out_edges(gateway.id):
            target = graph.target_of(edge)
            if target is not None:
                edges.append(edge)
                targets.append(target)
        return GatewayDecision(gateway.id, edges, targets, concurrent=True)

    def _inclusive(
        self,
        gateway: InclusiveGatewayNode,
        graph: ProcessGraph,
        variables: Mapping[str, Any],
    ) -> GatewayDecision:
        edges: list[Edge] = []
        targets: list[Node] = []
        warnings: list[str] = []
        for edge in graph.out_edges(gateway.id):
            outcome = self.expressions.evaluate_condition(edge.condition, variables)
            if outcome.warning:
                warnings.append(outcome.warning)
            target = graph.target_of(edge)
            if outcome.value and target is not None:
                edges.append(edge)
                targets.append(target)
        return GatewayDecision(gateway.id, edges, targets, concurrent=True, warnings=warnings)
