"""Per-node-type execution for one step of a walk."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from litestar_bpm.core.definition import GatewayNode
from litestar_bpm.core.types import ErrorHandling, NodeType
from litestar_bpm.engine.instances import WalkHaltedError
from litestar_bpm.exceptions import NodeExecutionError, ServiceTaskError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from litestar_bpm.config import RetryPolicy
    from litestar_bpm.core.context import ExecutionContext
    from litestar_bpm.core.definition import Node, ServiceTaskNode, UserTaskNode
    from litestar_bpm.core.events import ProcessEvent
    from litestar_bpm.core.models import ExecutionPathEntry, ProcessInstance
    from litestar_bpm.engine.gateway import GatewayEvaluator
    from litestar_bpm.engine.handlers import HandlerRegistry
    from litestar_bpm.engine.instances import InstanceStateMachine
    from litestar_bpm.engine.tasks import TaskStateMachine

__all__ = ["NodeDispatcher", "NodeOutcome"]

logger = logging.getLogger(__name__)


@dataclass
class NodeOutcome:
    """What the walk does after a node.

    Attributes:
        successors: Nodes to walk next. More than one means the walk forks.
        halt: Whether this branch stops here.
    """

    successors: list[Node] = field(default_factory=list)
    halt: bool = False


class NodeDispatcher:
    """Executes nodes according to their type.

    Every handled node ends with exactly one commit of its path entry. A
    failing node raises :class:`~litestar_bpm.exceptions.NodeExecutionError`
    carrying an entry whose result describes the error.
    """

    def __init__(
        self,
        instances: InstanceStateMachine,
        tasks: TaskStateMachine,
        gateways: GatewayEvaluator,
        handlers: HandlerRegistry,
        retry: RetryPolicy,
    ) -> None:
        self.instances = instances
        self.tasks = tasks
        self.gateways = gateways
        self.handlers = handlers
        self.retry = retry
        self._handlers_by_type: dict[str, Callable[[ExecutionContext, Any, ExecutionPathEntry], Awaitable[NodeOutcome]]] = {
            NodeType.START: self._start,
            NodeType.END: self._end,
            NodeType.USER_TASK: self._user_task,
            NodeType.SERVICE_TASK: self._service_task,
            NodeType.SCRIPT_TASK: self._service_task,
            NodeType.EXCLUSIVE_GATEWAY: self._gateway,
            NodeType.PARALLEL_GATEWAY: self._gateway,
            NodeType.INCLUSIVE_GATEWAY: self._gateway,
        }

    async def dispatch(self, context: ExecutionContext, node: Node) -> NodeOutcome:
        """Execute one node.

        Args:
            context: The walk context of the current branch.
            node: The node being entered.

        Returns:
            The outcome telling the walk where to go next.

        Raises:
            WalkHaltedError: If the instance stopped being RUNNING.
            NodeExecutionError: If the node failed.
        """
        entry = context.enter(node)
        handler = self._handlers_by_type.get(node.type, self._unknown)
        logger.debug("Instance %s entering %s node %s", context.instance_id, node.type_name, node.id)
        try:
            return await handler(context, node, entry)
        except WalkHaltedError:
            raise
        except Exception as exc:
            entry.result = {"error": str(exc), "errorType": type(exc).__name__}
            raise NodeExecutionError(node.id, exc, entry) from exc

    def resume_after(self, context: ExecutionContext, node: Node) -> list[Node]:
        """Successors to walk when re-entering the walk at a committed node.

        Gateways are evaluated again against the current variables.
        """
        if isinstance(node, GatewayNode):
            return self.gateways.select(node, context.graph, context.variables).targets
        return context.graph.targets_of(node.id)

    async def _start(self, context: ExecutionContext, node: Node, entry: ExecutionPathEntry) -> NodeOutcome:
        await self.instances.record_step(context, entry, current_node_id=node.id)
        return NodeOutcome(successors=context.graph.targets_of(node.id))

    async def _end(self, context: ExecutionContext, node: Node, entry: ExecutionPathEntry) -> NodeOutcome:
        await self.instances.reach_end(context, entry)
        return NodeOutcome(halt=True)

    async def _user_task(self, context: ExecutionContext, node: UserTaskNode, entry: ExecutionPathEntry) -> NodeOutcome:
        async def create_task(instance: ProcessInstance) -> list[ProcessEvent]:
            task, events = await self.tasks.create_for_node(instance, node, context)
            entry.result = {"taskId": str(task.id), "assigneeId": task.assignee_id}
            return events

        await self.instances.record_step(context, entry, current_node_id=node.id, before_commit=create_task)
        return NodeOutcome(halt=True)

    async def _service_task(
        self,
        context: ExecutionContext,
        node: ServiceTaskNode,
        entry: ExecutionPathEntry,
    ) -> NodeOutcome:
        result = await self._invoke(context, node)
        if node.config.result_variable:
            context.set(node.config.result_variable, result)
        entry.result = result
        await self.instances.record_step(context, entry, current_node_id=node.id)
        return NodeOutcome(successors=context.graph.targets_of(node.id))

    async def _gateway(self, context: ExecutionContext, node: GatewayNode, entry: ExecutionPathEntry) -> NodeOutcome:
        decision = self.gateways.select(node, context.graph, context.variables)
        entry.result = decision.to_result()
        await self.instances.record_step(context, entry, current_node_id=node.id)
        return NodeOutcome(successors=decision.targets)

    async def _unknown(self, context: ExecutionContext, node: Node, entry: ExecutionPathEntry) -> NodeOutcome:
        logger.warning(
            "Skipping node %s of unknown type %r in instance %s",
            node.id,
            node.type_name,
            context.instance_id,
        )
        entry.result = {"skipped": True}
        await self.instances.record_step(context, entry, current_node_id=node.id)
        return NodeOutcome(successors=context.graph.targets_of(node.id))

    async def _invoke(self, context: ExecutionContext, node: ServiceTaskNode) -> Any:
        """Run a service handler under the node's error handling policy."""
        config = node.config
        attempts = 1 + config.retry_count if config.error_handling == ErrorHandling.RETRY else 1
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._call_handler(context, node)
            except ServiceTaskError as exc:
                if attempt < attempts:
                    delay = self.retry.delay_for(attempt)
                    logger.warning(
                        "Node %s attempt %d/%d failed, retrying in %.2fs: %s",
                        node.id,
                        attempt,
                        attempts,
                        delay,
                        exc,
                    )
                    await asyncio.sleep(delay)
                    continue
                if config.error_handling == ErrorHandling.IGNORE:
                    logger.warning("Ignoring failure of node %s: %s", node.id, exc)
                    return {"success": False, "error": str(exc), "ignored": True}
                raise

    async def _call_handler(self, context: ExecutionContext, node: ServiceTaskNode) -> Any:
        service_type = str(node.config.service_type)
        try:
            handler = self.handlers.get(service_type)
            return await handler(context, node.config)
        except ServiceTaskError as exc:
            if exc.node_id is None:
                exc.node_id = node.id
            raise
        except Exception as exc:
            raise ServiceTaskError(service_type, str(exc), node.id) from exc
