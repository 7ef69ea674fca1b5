"""Instance lifecycle and the execution path ledger.

All instance mutations go through :class:`InstanceStateMachine`, which holds
the per-instance lock, re-reads the stored record and checks the transition
table before writing. Walk commits refuse to touch an instance that is no
longer RUNNING, which is how suspended, terminated and failed instances stop
their in-flight branches.
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from litestar_bpm.core.events import (
    InstanceCompleted,
    InstanceFailed,
    InstanceResumed,
    InstanceStarted,
    InstanceSuspended,
    InstanceTerminated,
    TaskCancelled,
)
from litestar_bpm.core.types import InstanceStatus
from litestar_bpm.exceptions import InstanceNotFoundError, InvalidStateError, InvalidTransitionError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping
    from uuid import UUID

    from litestar_bpm.core.context import ExecutionContext
    from litestar_bpm.core.events import ProcessEvent
    from litestar_bpm.core.models import ExecutionPathEntry, ProcessInstance
    from litestar_bpm.core.protocols import InstanceRepository
    from litestar_bpm.engine.locks import InstanceLocks
    from litestar_bpm.engine.notifications import EventPublisher
    from litestar_bpm.engine.tasks import TaskStateMachine

__all__ = [
    "ALLOWED_TRANSITIONS",
    "InstanceStateMachine",
    "WalkHaltedError",
    "can_transition",
    "ensure_transition",
]

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.RUNNING: frozenset(
        {
            InstanceStatus.COMPLETED,
            InstanceStatus.ERROR,
            InstanceStatus.SUSPENDED,
            InstanceStatus.TERMINATED,
            InstanceStatus.WAITING,
        },
    ),
    InstanceStatus.WAITING: frozenset(
        {InstanceStatus.RUNNING, InstanceStatus.ERROR, InstanceStatus.SUSPENDED, InstanceStatus.TERMINATED},
    ),
    InstanceStatus.SUSPENDED: frozenset({InstanceStatus.RUNNING, InstanceStatus.TERMINATED}),
    InstanceStatus.ERROR: frozenset({InstanceStatus.RUNNING, InstanceStatus.TERMINATED}),
    InstanceStatus.COMPLETED: frozenset(),
    InstanceStatus.TERMINATED: frozenset(),
}
"""Legal instance status transitions."""

_VARIABLE_UPDATE_STATUSES = frozenset({InstanceStatus.RUNNING, InstanceStatus.SUSPENDED, InstanceStatus.ERROR})

_KEEP: Any = object()


class WalkHaltedError(Exception):
    """Raised inside a walk when its instance stopped being RUNNING.

    Attributes:
        instance_id: The halted instance.
        status: The status found when committing.
    """

    def __init__(self, instance_id: UUID, status: InstanceStatus) -> None:
        self.instance_id = instance_id
        self.status = status
        super().__init__(f"Process instance '{instance_id}' is {status}, halting walk")


def can_transition(from_status: InstanceStatus, to_status: InstanceStatus) -> bool:
    """Whether the transition table allows moving between two statuses."""
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def ensure_transition(instance: ProcessInstance, to_status: InstanceStatus) -> None:
    """Reject an illegal transition.

    Raises:
        InvalidTransitionError: If the instance cannot move to ``to_status``.
    """
    if not can_transition(instance.status, to_status):
        raise InvalidTransitionError(instance.id, instance.status, to_status)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _duration_ms(instance: ProcessInstance, end: datetime) -> int:
    return int((end - instance.start_time).total_seconds() * 1000)


class InstanceStateMachine:
    """Owns instance status, variables and the execution path.

    Attributes:
        instances: Instance persistence port.
        tasks: Task state machine, used for suspend/resume/terminate cascades.
        locks: Per-instance critical sections.
        publisher: Event publisher.
    """

    def __init__(
        self,
        instances: InstanceRepository,
        tasks: TaskStateMachine,
        locks: InstanceLocks,
        publisher: EventPublisher,
    ) -> None:
        self.instances = instances
        self.tasks = tasks
        self.locks = locks
        self.publisher = publisher
        self._active_branches: dict[UUID, int] = {}

    # Branch accounting

    def branches_started(self, instance_id: UUID, count: int = 1) -> None:
        """Count walk branches that are about to run for an instance."""
        self._active_branches[instance_id] = self._active_branches.get(instance_id, 0) + count

    def branch_finished(self, instance_id: UUID) -> None:
        """Record that a walk branch of an instance stopped advancing."""
        remaining = self._active_branches.get(instance_id, 0) - 1
        if remaining > 0:
            self._active_branches[instance_id] = remaining
        else:
            self._active_branches.pop(instance_id, None)

    def active_branches(self, instance_id: UUID) -> int:
        """Number of walk branches of an instance currently advancing."""
        return self._active_branches.get(instance_id, 0)

    # Reads

    async def get(self, instance_id: UUID) -> ProcessInstance:
        """Load an instance.

        Raises:
            InstanceNotFoundError: If the instance does not exist.
        """
        instance = await self.instances.get(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    async def _get_running(self, instance_id: UUID) -> ProcessInstance:
        instance = await self.get(instance_id)
        if instance.status != InstanceStatus.RUNNING:
            raise WalkHaltedError(instance_id, instance.status)
        return instance

    # Walk commits

    async def create(self, instance: ProcessInstance) -> ProcessInstance:
        """Store a new RUNNING instance and announce it."""
        instance = await self.instances.add(instance)
        logger.info(
            "Started instance %s of %s v%d",
            instance.id,
            instance.definition_id,
            instance.definition_version,
        )
        await self.publisher.publish(
            InstanceStarted(
                instance_id=instance.id,
                definition_id=instance.definition_id,
                definition_version=instance.definition_version,
                started_by=instance.started_by,
                business_key=instance.business_key,
            ),
        )
        return instance

    async def record_step(
        self,
        context: ExecutionContext,
        entry: ExecutionPathEntry,
        *,
        current_node_id: str | None = _KEEP,
        before_commit: Callable[[ProcessInstance], Awaitable[list[ProcessEvent]]] | None = None,
    ) -> ProcessInstance:
        """Append a path entry and the branch's variable changes atomically.

        Args:
            context: The walk context of the committing branch.
            entry: The entry of the node just dispatched.
            current_node_id: New current node; unchanged when omitted.
            before_commit: Coroutine run under the lock before writing, for
                side effects that must happen atomically with the commit. It
                returns events to publish once the lock is released.

        Returns:
            The stored instance.

        Raises:
            WalkHaltedError: If the instance is no longer RUNNING.
        """
        events: list[ProcessEvent] = []
        async with self.locks.hold(context.instance_id):
            instance = await self._get_running(context.instance_id)
            if before_commit is not None:
                events = await before_commit(instance)
            changes: dict[str, Any] = {
                "execution_path": [*instance.execution_path, entry],
                "variables": {**instance.variables, **context.changed_variables()},
            }
            if current_node_id is not _KEEP:
                changes["current_node_id"] = current_node_id
            instance = await self.instances.update(instance.id, changes)
            context.committed(entry)
        logger.debug("Instance %s committed node %s", instance.id, entry.node_id)
        await self.publisher.publish(*events)
        return instance

    async def reach_end(self, context: ExecutionContext, entry: ExecutionPathEntry) -> bool:
        """Commit an end node, completing the instance when nothing else is pending.

        The instance completes only when the committing branch is the last one
        advancing and no task of the instance is open. Otherwise the end is
        recorded and the instance stays RUNNING.

        Args:
            context: The walk context of the branch reaching the end.
            entry: The end node's entry.

        Returns:
            True if the instance completed.

        Raises:
            WalkHaltedError: If the instance is no longer RUNNING.
        """
        async with self.locks.hold(context.instance_id):
            instance = await self._get_running(context.instance_id)
            open_tasks = await self.tasks.count_open(instance.id)
            other_branches = max(self.active_branches(instance.id) - 1, 0)
            completes = not open_tasks and not other_branches
            changes: dict[str, Any] = {
                "variables": {**instance.variables, **context.changed_variables()},
            }
            if completes:
                end_time = _now()
                entry.result = {"completed": True}
                changes.update(
                    {
                        "status": InstanceStatus.COMPLETED,
                        "current_node_id": None,
                        "end_time": end_time,
                        "duration_ms": _duration_ms(instance, end_time),
                    },
                )
            else:
                entry.result = {"completed": False, "openTasks": open_tasks, "activeBranches": other_branches}
            changes["execution_path"] = [*instance.execution_path, entry]
            instance = await self.instances.update(instance.id, changes)
            context.committed(entry)
            # A sibling ending right after must already see this branch gone.
            self.branch_finished(instance.id)
            context.branch_closed = True

        if not completes:
            logger.debug(
                "Instance %s reached end %s with %d open tasks and %d active branches",
                instance.id,
                entry.node_id,
                open_tasks,
                other_branches,
            )
            return False
        logger.info("Instance %s completed at %s in %sms", instance.id, entry.node_id, instance.duration_ms)
        await self.publisher.publish(
            InstanceCompleted(instance_id=instance.id, end_node_id=entry.node_id, duration_ms=instance.duration_ms),
        )
        return True

    async def fail(
        self,
        instance_id: UUID,
        error: BaseException,
        *,
        node_id: str | None = None,
        entry: ExecutionPathEntry | None = None,
        resume_node_id: str | None = None,
    ) -> ProcessInstance | None:
        """Move an instance to ERROR, recording the failure.

        Instances that are not RUNNING or WAITING are left alone, so a failure
        racing a terminate never overwrites the terminal state.

        Args:
            instance_id: The failing instance.
            error: The exception that stopped the walk.
            node_id: The node that failed, when known.
            entry: The failing node's entry, appended to the path.
            resume_node_id: Node a later retry re-enters at.

        Returns:
            The stored instance, or None when nothing was changed.
        """
        async with self.locks.hold(instance_id):
            instance = await self.instances.get(instance_id)
            if instance is None or not can_transition(instance.status, InstanceStatus.ERROR):
                logger.debug("Ignoring failure of instance %s: %s", instance_id, error)
                return None
            changes: dict[str, Any] = {
                "status": InstanceStatus.ERROR,
                "error_message": str(error),
                "error_stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
            }
            if entry is not None:
                changes["execution_path"] = [*instance.execution_path, entry]
            if resume_node_id is not None:
                changes["current_node_id"] = resume_node_id
            instance = await self.instances.update(instance_id, changes)
        logger.error("Instance %s moved to ERROR at node %s: %s", instance_id, node_id, error)
        await self.publisher.publish(InstanceFailed(instance_id=instance_id, error=str(error), node_id=node_id))
        return instance

    # Control operations

    async def suspend(self, instance_id: UUID, user_id: str | None = None) -> ProcessInstance:
        """Suspend an instance and hold its active tasks.

        Raises:
            InstanceNotFoundError: If the instance does not exist.
            InvalidTransitionError: If the instance cannot be suspended.
        """
        async with self.locks.hold(instance_id):
            instance = await self.get(instance_id)
            ensure_transition(instance, InstanceStatus.SUSPENDED)
            await self.tasks.hold_open_tasks(instance_id, user_id)
            instance = await self.instances.update(instance_id, {"status": InstanceStatus.SUSPENDED})
        logger.info("Instance %s suspended by %s", instance_id, user_id)
        await self.publisher.publish(InstanceSuspended(instance_id=instance_id, suspended_by=user_id))
        return instance

    async def resume(self, instance_id: UUID, user_id: str | None = None) -> ProcessInstance:
        """Return a suspended or waiting instance to RUNNING and release its tasks.

        Raises:
            InstanceNotFoundError: If the instance does not exist.
            InvalidStateError: If the instance is neither suspended nor waiting.
        """
        async with self.locks.hold(instance_id):
            instance = await self.get(instance_id)
            if instance.status not in (InstanceStatus.SUSPENDED, InstanceStatus.WAITING):
                msg = f"Process instance '{instance_id}' cannot be resumed while {instance.status}"
                raise InvalidStateError(msg, current_status=instance.status)
            await self.tasks.release_held_tasks(instance_id, user_id)
            instance = await self.instances.update(instance_id, {"status": InstanceStatus.RUNNING})
        logger.info("Instance %s resumed by %s", instance_id, user_id)
        await self.publisher.publish(InstanceResumed(instance_id=instance_id, resumed_by=user_id))
        return instance

    async def retry(self, instance_id: UUID, user_id: str | None = None) -> ProcessInstance:
        """Return a failed instance to RUNNING and clear its error fields.

        Raises:
            InstanceNotFoundError: If the instance does not exist.
            InvalidStateError: If the instance is not in ERROR.
        """
        async with self.locks.hold(instance_id):
            instance = await self.get(instance_id)
            if instance.status != InstanceStatus.ERROR:
                msg = f"Process instance '{instance_id}' cannot be retried while {instance.status}"
                raise InvalidStateError(msg, current_status=instance.status)
            instance = await self.instances.update(
                instance_id,
                {"status": InstanceStatus.RUNNING, "error_message": None, "error_stack": None},
            )
        logger.info("Instance %s retried by %s", instance_id, user_id)
        await self.publisher.publish(InstanceResumed(instance_id=instance_id, resumed_by=user_id, retried=True))
        return instance

    async def terminate(
        self,
        instance_id: UUID,
        user_id: str | None = None,
        reason: str | None = None,
    ) -> ProcessInstance:
        """Terminate an instance and cancel its open tasks in one critical section.

        Raises:
            InstanceNotFoundError: If the instance does not exist.
            InvalidTransitionError: If the instance already reached a terminal state.
        """
        async with self.locks.hold(instance_id):
            instance = await self.get(instance_id)
            ensure_transition(instance, InstanceStatus.TERMINATED)
            cancelled = await self.tasks.cancel_open_tasks(instance_id, user_id, reason)
            end_time = _now()
            instance = await self.instances.update(
                instance_id,
                {
                    "status": InstanceStatus.TERMINATED,
                    "end_time": end_time,
                    "duration_ms": _duration_ms(instance, end_time),
                    "error_message": reason,
                },
            )
        logger.info("Instance %s terminated by %s, %d tasks cancelled", instance_id, user_id, len(cancelled))
        await self.publisher.publish(
            *(
                TaskCancelled(
                    instance_id=instance_id,
                    task_id=task.id,
                    node_id=task.node_id,
                    cancelled_by=user_id,
                    reason=reason,
                )
                for task in cancelled
            ),
            InstanceTerminated(
                instance_id=instance_id,
                terminated_by=user_id,
                reason=reason,
                cancelled_task_ids=[task.id for task in cancelled],
            ),
        )
        return instance

    async def update_variables(self, instance_id: UUID, variables: Mapping[str, Any]) -> ProcessInstance:
        """Merge variables into an instance that is running, suspended or failed.

        Raises:
            InstanceNotFoundError: If the instance does not exist.
            InvalidStateError: If the instance is in another status.
        """
        async with self.locks.hold(instance_id):
            instance = await self.get(instance_id)
            if instance.status not in _VARIABLE_UPDATE_STATUSES:
                msg = f"Variables of process instance '{instance_id}' cannot change while {instance.status}"
                raise InvalidStateError(msg, current_status=instance.status)
            return await self.instances.update(instance_id, {"variables": {**instance.variables, **variables}})
