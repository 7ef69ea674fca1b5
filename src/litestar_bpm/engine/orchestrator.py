"""The process engine: public entry point that drives graph walks.

Request-facing operations persist their state change and hand the rest of the
walk to a :class:`~litestar_bpm.engine.queue.WorkQueue`. Workers then walk the
graph depth-first until every branch reaches an end node, a user task, an
error or a halt signal.

Example:
    >>> registry = DefinitionRegistry()
    >>> registry.register(definition)
    >>> registry.publish("expense")
    >>> async with ProcessEngine(registry) as engine:
    ...     instance = await engine.start_instance("expense", {"amount": 50}, started_by="alice")
    ...     await engine.drain()
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from litestar_bpm.config import EngineConfig
from litestar_bpm.core.context import ExecutionContext
from litestar_bpm.core.expressions import ExpressionEvaluator
from litestar_bpm.core.models import ProcessInstance
from litestar_bpm.core.types import InstanceStatus
from litestar_bpm.engine.dispatcher import NodeDispatcher
from litestar_bpm.engine.gateway import GatewayEvaluator
from litestar_bpm.engine.graph import ProcessGraph
from litestar_bpm.engine.handlers import HandlerRegistry
from litestar_bpm.engine.instances import InstanceStateMachine, WalkHaltedError
from litestar_bpm.engine.locks import InstanceLocks
from litestar_bpm.engine.memory import InMemoryInstanceRepository, InMemoryTaskRepository
from litestar_bpm.engine.notifications import EventPublisher
from litestar_bpm.engine.queue import Continuation, WorkQueue
from litestar_bpm.engine.tasks import TaskStateMachine
from litestar_bpm.exceptions import (
    BpmError,
    DefinitionNotFoundError,
    DefinitionNotPublishedError,
    NodeExecutionError,
    NodeNotFoundError,
    ProcessValidationError,
    ValidationError,
)

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable, Mapping, Sequence
    from datetime import datetime
    from types import TracebackType
    from uuid import UUID

    from litestar_bpm.core.definition import Node, ProcessDefinition
    from litestar_bpm.core.models import ExecutionPathEntry, ProcessTask
    from litestar_bpm.core.protocols import (
        DefinitionStore,
        GroupDirectory,
        InstanceRepository,
        NotificationPort,
        TaskRepository,
    )
    from litestar_bpm.core.types import TaskStatus
    from litestar_bpm.engine.queue import QueueStats

__all__ = ["ProcessEngine"]

logger = logging.getLogger(__name__)


class ProcessEngine:
    """Orchestrates process instances over pluggable stores.

    Attributes:
        definitions: Read-only definition store.
        config: Engine configuration.
        handlers: Service handler registry.
        instances: Instance state machine.
        tasks: Task state machine.
        dispatcher: Node dispatcher.
        queue: Continuation queue and worker pool.
    """

    def __init__(
        self,
        definitions: DefinitionStore,
        instances: InstanceRepository | None = None,
        tasks: TaskRepository | None = None,
        *,
        handlers: HandlerRegistry | None = None,
        notifier: NotificationPort | None = None,
        groups: GroupDirectory | None = None,
        config: EngineConfig | None = None,
        expressions: ExpressionEvaluator | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            definitions: Definition store to start instances from.
            instances: Instance repository, in-memory by default.
            tasks: Task repository, in-memory by default.
            handlers: Handler registry, the built-in handlers by default.
            notifier: Receiver of lifecycle events.
            groups: Group directory for task authorization and load balancing.
            config: Engine configuration.
            expressions: Evaluator for gateway conditions and scripts.
        """
        self.definitions = definitions
        self.config = config or EngineConfig()
        expressions = expressions or ExpressionEvaluator()
        self.handlers = handlers or HandlerRegistry.with_defaults(
            http_timeout=self.config.http_timeout,
            expressions=expressions,
        )
        self.publisher = EventPublisher(notifier)
        self.locks = InstanceLocks()
        instance_repository = instances if instances is not None else InMemoryInstanceRepository()
        task_repository = tasks if tasks is not None else InMemoryTaskRepository()
        self.tasks = TaskStateMachine(task_repository, instance_repository, self.locks, self.publisher, groups)
        self.instances = InstanceStateMachine(instance_repository, self.tasks, self.locks, self.publisher)
        self.dispatcher = NodeDispatcher(
            self.instances,
            self.tasks,
            GatewayEvaluator(expressions),
            self.handlers,
            self.config.retry,
        )
        self.queue = WorkQueue(
            self._run_continuation,
            worker_count=self.config.worker_count,
            maxsize=self.config.queue_size,
            max_attempts=self.config.job_max_attempts,
            retry_delay=self.config.job_retry_delay,
        )
        self._graphs: dict[tuple[str, int], ProcessGraph] = {}

    # Lifecycle

    def start(self) -> None:
        """Start the worker pool. Submitting work starts it as well."""
        self.queue.start()

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the worker pool.

        Args:
            drain: Finish queued walks first.
        """
        await self.queue.stop(drain=drain)

    async def drain(self) -> None:
        """Wait until every queued walk has finished."""
        await self.queue.join()

    @property
    def stats(self) -> QueueStats:
        """Continuation queue counters."""
        return self.queue.stats

    async def __aenter__(self) -> ProcessEngine:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    # Instances

    async def start_instance(
        self,
        definition_id: str,
        variables: Mapping[str, Any] | None = None,
        started_by: str | None = None,
        business_key: str | None = None,
        priority: int | None = None,
        start_params: Mapping[str, Any] | None = None,
    ) -> ProcessInstance:
        """Start an instance of the latest published version of a definition.

        The instance is stored RUNNING with the start node as its first path
        entry; the walk continues in the background.

        Args:
            definition_id: The definition to start.
            variables: Initial process variables.
            started_by: The starting principal.
            business_key: Optional correlation key.
            priority: Default task priority 0-100.
            start_params: Extra variables, overriding ``variables`` on conflicts.

        Returns:
            The stored instance.

        Raises:
            DefinitionNotFoundError: If the definition does not exist.
            DefinitionNotPublishedError: If no version is published.
            ProcessValidationError: If the definition has no start node.
            ValidationError: If the priority is outside 0-100.
        """
        definition = await self.definitions.get_published_definition(definition_id)
        if definition is None:
            latest = await self.definitions.get_definition(definition_id)
            if latest is None:
                raise DefinitionNotFoundError(definition_id)
            raise DefinitionNotPublishedError(definition_id, latest.status)

        graph = self._graph_for(definition)
        try:
            start = graph.start_node()
        except NodeNotFoundError as exc:
            msg = f"Process definition '{definition_id}' has no start node"
            raise ProcessValidationError(msg) from exc

        priority = self.config.default_priority if priority is None else priority
        if not 0 <= priority <= 100:  # noqa: PLR2004
            msg = f"Priority must be between 0 and 100, got {priority}"
            raise ValidationError(msg)

        instance = ProcessInstance(
            id=uuid4(),
            definition_id=definition.id,
            definition_version=definition.version,
            variables={**(variables or {}), **(start_params or {})},
            current_node_id=start.id,
            business_key=business_key,
            started_by=started_by,
            priority=priority,
        )
        instance.execution_path.append(ExecutionContext.from_instance(instance, graph).enter(start))
        instance = await self.instances.create(instance)
        self.instances.branches_started(instance.id)
        await self.queue.submit(Continuation(instance.id, start.id))
        return instance

    async def execute_from_node(self, instance_id: UUID, node_id: str) -> None:
        """Walk the successors of a committed node.

        Late or duplicate signals for instances that are not RUNNING are
        ignored.

        Args:
            instance_id: The instance to walk.
            node_id: The node whose successors are walked.
        """
        self.instances.branches_started(instance_id)
        await self._continue(instance_id, node_id)

    async def _run_continuation(self, continuation: Continuation) -> None:
        await self._continue(continuation.instance_id, continuation.node_id)

    async def _continue(self, instance_id: UUID, node_id: str) -> None:
        """Walk the successors of a node on behalf of an already counted branch.

        The branch is released once its targets are counted. When loading
        raises, the branch stays counted so a queue retry can pick it up, and
        a dropped continuation keeps the instance from completing over lost work.
        """
        context, targets = await self._successors(instance_id, node_id)
        if targets:
            self.instances.branches_started(instance_id, len(targets))
        self.instances.branch_finished(instance_id)
        if context is not None and targets:
            await self._fork(context, targets)

    async def _successors(self, instance_id: UUID, node_id: str) -> tuple[ExecutionContext | None, list[Node]]:
        instance = await self.instances.instances.get(instance_id)
        if instance is None:
            logger.warning("Cannot continue missing instance %s", instance_id)
            return None, []
        if instance.status != InstanceStatus.RUNNING:
            logger.debug("Ignoring continuation of instance %s while %s", instance_id, instance.status)
            return None, []

        try:
            graph = await self._graph_of(instance)
            context = ExecutionContext.from_instance(instance, graph)
            targets = self.dispatcher.resume_after(context, graph.get_node(node_id))
        except BpmError as exc:
            await self.instances.fail(instance_id, exc, node_id=node_id, resume_node_id=node_id)
            return None, []

        if not targets:
            logger.warning("Instance %s has no successors after node %s", instance_id, node_id)
        return context, targets

    async def _fork(self, context: ExecutionContext, targets: list[Node]) -> None:
        """Walk each target as its own branch. The branches are already counted."""
        if len(targets) == 1:
            await self._walk(context, targets[0])
            return
        results = await asyncio.gather(
            *(self._walk(context.branch(), target) for target in targets),
            return_exceptions=True,
        )
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Branch %s of instance %s crashed",
                    target.id,
                    context.instance_id,
                    exc_info=result,
                )

    async def _walk(self, context: ExecutionContext, node: Node) -> None:
        """Walk one branch from ``node`` until it stops or forks."""
        targets: list[Node] = []
        try:
            targets = await self._advance(context, node)
            if targets:
                self.instances.branches_started(context.instance_id, len(targets))
        except WalkHaltedError as exc:
            logger.debug("%s", exc)
        except Exception as exc:  # noqa: BLE001
            await self._fail(context, exc)
        finally:
            if not context.branch_closed:
                self.instances.branch_finished(context.instance_id)
        if targets:
            await self._fork(context, targets)

    async def _advance(self, context: ExecutionContext, node: Node) -> list[Node]:
        """Follow single successors; return the targets of a fork, or nothing when the branch stops."""
        while True:
            outcome = await self.dispatcher.dispatch(context, node)
            if outcome.halt:
                return []
            if not outcome.successors:
                logger.warning("Instance %s stopped at node %s with no successors", context.instance_id, node.id)
                return []
            if len(outcome.successors) > 1:
                return outcome.successors
            node = outcome.successors[0]

    async def _fail(self, context: ExecutionContext, exc: Exception) -> None:
        node_id: str | None = None
        entry: ExecutionPathEntry | None = None
        if isinstance(exc, NodeExecutionError):
            node_id, entry = exc.node_id, exc.entry
        resume_node_id = context.execution_path[-1].node_id if context.execution_path else None
        await self.instances.fail(
            context.instance_id,
            exc,
            node_id=node_id,
            entry=entry,
            resume_node_id=resume_node_id,
        )

    async def _reenter(self, instance: ProcessInstance) -> None:
        """Continue a resumed or retried instance at its current node.

        An open task at the current node continues the walk on completion, so
        nothing is queued in that case.
        """
        node_id = instance.current_node_id
        if node_id is None:
            return
        if await self.tasks.tasks.find_open_for_node(instance.id, node_id) is not None:
            logger.debug("Instance %s is waiting on a task at node %s", instance.id, node_id)
            return
        self.instances.branches_started(instance.id)
        await self.queue.submit(Continuation(instance.id, node_id))

    async def suspend_instance(self, instance_id: UUID, user_id: str | None = None) -> ProcessInstance:
        """Suspend a running instance, holding its active tasks."""
        return await self.instances.suspend(instance_id, user_id)

    async def resume_instance(self, instance_id: UUID, user_id: str | None = None) -> ProcessInstance:
        """Resume a suspended instance and continue its walk."""
        instance = await self.instances.resume(instance_id, user_id)
        await self._reenter(instance)
        return instance

    async def retry_instance(self, instance_id: UUID, user_id: str | None = None) -> ProcessInstance:
        """Retry a failed instance from the node where it stopped."""
        instance = await self.instances.retry(instance_id, user_id)
        await self._reenter(instance)
        return instance

    async def terminate_instance(
        self,
        instance_id: UUID,
        user_id: str | None = None,
        reason: str | None = None,
    ) -> ProcessInstance:
        """Terminate an instance and cancel its open tasks."""
        return await self.instances.terminate(instance_id, user_id, reason)

    async def update_variables(self, instance_id: UUID, variables: Mapping[str, Any]) -> ProcessInstance:
        """Merge variables into an instance."""
        return await self.instances.update_variables(instance_id, variables)

    async def get_instance(self, instance_id: UUID) -> ProcessInstance:
        """Load an instance.

        Raises:
            InstanceNotFoundError: If the instance does not exist.
        """
        return await self.instances.get(instance_id)

    async def get_execution_history(self, instance_id: UUID) -> list[ExecutionPathEntry]:
        """Return the execution path of an instance."""
        return (await self.instances.get(instance_id)).execution_path

    async def find_by_business_key(self, business_key: str) -> Sequence[ProcessInstance]:
        """Return the instances carrying a business key, oldest first."""
        return await self.instances.instances.list_by_business_key(business_key)

    # Tasks

    async def get_task(self, task_id: UUID) -> ProcessTask:
        """Load a task.

        Raises:
            TaskNotFoundError: If the task does not exist.
        """
        return await self.tasks.get(task_id)

    async def list_tasks_for_user(
        self,
        user_id: str,
        statuses: Collection[TaskStatus] | None = None,
    ) -> Sequence[ProcessTask]:
        """Return the work list of a user, highest priority first."""
        return await self.tasks.list_for_user(user_id, statuses)

    async def list_tasks_for_instance(
        self,
        instance_id: UUID,
        statuses: Collection[TaskStatus] | None = None,
    ) -> Sequence[ProcessTask]:
        """Return the tasks of an instance, oldest first."""
        await self.instances.get(instance_id)
        return await self.tasks.list_for_instance(instance_id, statuses)

    async def claim_task(self, task_id: UUID, user_id: str) -> ProcessTask:
        """Claim a pending task."""
        return await self.tasks.claim(task_id, user_id)

    async def assign_task(self, task_id: UUID, assignee_id: str, assigned_by: str | None = None) -> ProcessTask:
        """Assign a pending task to a candidate."""
        return await self.tasks.assign(task_id, assignee_id, assigned_by)

    async def complete_task(
        self,
        task_id: UUID,
        user_id: str,
        variables: Mapping[str, Any] | None = None,
        form_data: Mapping[str, Any] | None = None,
        comment: str | None = None,
    ) -> ProcessTask:
        """Complete a task, merge its variables and continue the walk in the background.

        Raises:
            TaskAlreadyCompletedError: If the task was completed before.
        """
        task = await self.tasks.complete(
            task_id,
            user_id,
            dict(variables) if variables is not None else None,
            dict(form_data) if form_data is not None else None,
            comment,
            on_completed=lambda completed: self.instances.branches_started(completed.instance_id),
        )
        await self.queue.submit(Continuation(task.instance_id, task.node_id))
        return task

    async def delegate_task(
        self,
        task_id: UUID,
        from_user_id: str,
        to_user_id: str,
        reason: str | None = None,
    ) -> ProcessTask:
        """Delegate an in-progress task to another candidate."""
        return await self.tasks.delegate(task_id, from_user_id, to_user_id, reason)

    async def reassign_task(
        self,
        task_id: UUID,
        to_user_id: str,
        reassigned_by: str | None = None,
        reason: str | None = None,
    ) -> ProcessTask:
        """Reassign a task to another candidate."""
        return await self.tasks.reassign(task_id, to_user_id, reassigned_by, reason)

    async def transfer_task(
        self,
        task_id: UUID,
        to_user_id: str,
        transferred_by: str | None = None,
        reason: str | None = None,
    ) -> ProcessTask:
        """Transfer a task to another principal."""
        return await self.tasks.transfer(task_id, to_user_id, transferred_by, reason)

    async def cancel_task(self, task_id: UUID, user_id: str | None = None, reason: str | None = None) -> ProcessTask:
        """Cancel an open task."""
        return await self.tasks.cancel(task_id, user_id, reason)

    async def set_task_priority(self, task_id: UUID, priority: int, user_id: str | None = None) -> ProcessTask:
        """Change the priority of an open task."""
        return await self.tasks.set_priority(task_id, priority, user_id)

    async def set_task_due_date(
        self,
        task_id: UUID,
        due_date: datetime | str | None,
        user_id: str | None = None,
    ) -> ProcessTask:
        """Change or clear the due date of an open task."""
        return await self.tasks.set_due_date(task_id, due_date, user_id)

    async def add_task_candidates(
        self,
        task_id: UUID,
        user_ids: Iterable[str] = (),
        group_ids: Iterable[str] = (),
        user_id: str | None = None,
    ) -> ProcessTask:
        """Offer an open task to more users or groups."""
        return await self.tasks.add_candidates(task_id, user_ids, group_ids, user_id)

    async def remove_task_candidates(
        self,
        task_id: UUID,
        user_ids: Iterable[str] = (),
        group_ids: Iterable[str] = (),
        user_id: str | None = None,
    ) -> ProcessTask:
        """Withdraw an open task from users or groups."""
        return await self.tasks.remove_candidates(task_id, user_ids, group_ids, user_id)

    async def check_overdue_tasks(self, now: datetime | None = None) -> list[ProcessTask]:
        """Flag tasks past their due date and notify about them."""
        return await self.tasks.flag_overdue(now)

    # Graphs

    def _graph_for(self, definition: ProcessDefinition) -> ProcessGraph:
        key = (definition.id, definition.version)
        graph = self._graphs.get(key)
        if graph is None:
            graph = self._graphs[key] = ProcessGraph.from_definition(definition)
        return graph

    async def _graph_of(self, instance: ProcessInstance) -> ProcessGraph:
        """Graph of the definition version an instance is pinned to."""
        graph = self._graphs.get((instance.definition_id, instance.definition_version))
        if graph is not None:
            return graph
        definition = await self.definitions.get_definition(instance.definition_id, instance.definition_version)
        if definition is None:
            raise DefinitionNotFoundError(instance.definition_id, instance.definition_version)
        return self._graph_for(definition)
