"""Task lifecycle: creation, auto-assignment, authorization and human actions.

Every public mutation reloads the task inside its instance's critical section,
validates the transition against the fresh record and applies one atomic
update. Cascade helpers used by instance control operations expect the caller
to hold the lock already.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from litestar_bpm.core.events import (
    TaskAssigned,
    TaskCancelled,
    TaskClaimed,
    TaskCompleted,
    TaskCreated,
    TaskDelegated,
    TaskOverdue,
    TaskReassigned,
    TaskTransferred,
)
from litestar_bpm.core.expressions import render_template, render_value
from litestar_bpm.core.models import ProcessTask, TaskHistoryEntry
from litestar_bpm.core.types import OPEN_TASK_STATUSES, InstanceStatus, TaskStatus, TaskSubStatus
from litestar_bpm.exceptions import (
    InstanceNotFoundError,
    InvalidStateError,
    TaskAlreadyCompletedError,
    TaskNotFoundError,
    UnauthorizedTaskError,
    ValidationError,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Collection, Iterable, Sequence
    from uuid import UUID

    from litestar_bpm.core.context import ExecutionContext
    from litestar_bpm.core.definition import UserTaskNode
    from litestar_bpm.core.events import ProcessEvent
    from litestar_bpm.core.models import ProcessInstance
    from litestar_bpm.core.protocols import GroupDirectory, InstanceRepository, TaskRepository
    from litestar_bpm.engine.locks import InstanceLocks
    from litestar_bpm.engine.notifications import EventPublisher

__all__ = ["TaskStateMachine", "parse_due_date"]

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(since: datetime, until: datetime) -> int:
    return int((until - since).total_seconds() * 1000)


def _unique(values: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(value for value in values if value))


def parse_due_date(value: Any) -> datetime | None:
    """Parse a due date given as a datetime or an ISO-8601 string.

    Naive values are taken as UTC. Unparseable values are logged and ignored.

    Args:
        value: The raw due date.

    Returns:
        An aware datetime, or None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning("Ignoring unparseable due date %r", value)
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TaskStateMachine:
    """Owns the lifecycle of user tasks.

    Attributes:
        tasks: Task persistence port.
        instances: Instance persistence port, used to merge completion variables.
        locks: Per-instance critical sections shared with the instance state machine.
        publisher: Event publisher.
        groups: Optional group directory for authorization and load balancing.
    """

    def __init__(
        self,
        tasks: TaskRepository,
        instances: InstanceRepository,
        locks: InstanceLocks,
        publisher: EventPublisher,
        groups: GroupDirectory | None = None,
    ) -> None:
        self.tasks = tasks
        self.instances = instances
        self.locks = locks
        self.publisher = publisher
        self.groups = groups

    # Queries

    async def get(self, task_id: UUID) -> ProcessTask:
        """Load a task.

        Raises:
            TaskNotFoundError: If the task does not exist.
        """
        task = await self.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def list_for_instance(
        self,
        instance_id: UUID,
        statuses: Collection[TaskStatus] | None = None,
    ) -> Sequence[ProcessTask]:
        """Return the tasks of an instance, oldest first."""
        return await self.tasks.list_by_instance(instance_id, statuses)

    async def list_for_user(
        self,
        user_id: str,
        statuses: Collection[TaskStatus] | None = None,
    ) -> Sequence[ProcessTask]:
        """Return the work list of a user.

        Includes tasks assigned to the user and tasks offered to the user or
        to one of the user's groups, highest priority first.

        Args:
            user_id: The principal.
            statuses: Statuses to include, open statuses by default.

        Returns:
            Matching tasks.
        """
        groups = await self.groups.groups_of(user_id) if self.groups else ()
        return await self.tasks.list_for_user(user_id, set(groups), statuses or OPEN_TASK_STATUSES)

    async def count_open(self, instance_id: UUID) -> int:
        """Number of open tasks of an instance."""
        return len(await self.tasks.list_by_instance(instance_id, OPEN_TASK_STATUSES))

    # Authorization

    async def can_act(self, task: ProcessTask, user_id: str) -> bool:
        """Whether a principal may act on a task.

        A principal may act when they are the assignee, a candidate user, a
        member of a candidate group, or when the task has no candidates.

        Args:
            task: The task.
            user_id: The principal.

        Returns:
            True if the principal is authorized.
        """
        if task.assignee_id == user_id or user_id in task.candidate_user_ids:
            return True
        if task.candidate_group_ids and self.groups is not None:
            user_groups = set(await self.groups.groups_of(user_id))
            if user_groups.intersection(task.candidate_group_ids):
                return True
        return task.is_open_to_anyone

    async def _require_authorized(self, task: ProcessTask, user_id: str, action: str) -> None:
        if not await self.can_act(task, user_id):
            raise UnauthorizedTaskError(task.id, user_id, action)

    @asynccontextmanager
    async def _locked(self, task_id: UUID) -> AsyncIterator[ProcessTask]:
        """Hold the owning instance's lock and yield a freshly loaded task."""
        task = await self.get(task_id)
        async with self.locks.hold(task.instance_id):
            yield await self.get(task_id)

    @staticmethod
    def _history(task: ProcessTask, entry: TaskHistoryEntry) -> list[TaskHistoryEntry]:
        return [*task.history, entry]

    # Creation

    async def create_for_node(
        self,
        instance: ProcessInstance,
        node: UserTaskNode,
        context: ExecutionContext,
    ) -> tuple[ProcessTask, list[ProcessEvent]]:
        """Create the task of a user task node, reusing an open one.

        Must be called while holding the instance lock.

        Args:
            instance: The owning instance, loaded under the lock.
            node: The user task node.
            context: The walk context, used for templating and the task snapshot.

        Returns:
            The task and the events to publish once the lock is released.
        """
        existing = await self.tasks.find_open_for_node(instance.id, node.id)
        if existing is not None:
            logger.debug("Reusing open task %s for node %s of instance %s", existing.id, node.id, instance.id)
            return existing, []

        variables = context.variables
        now = _now()
        task = ProcessTask(
            id=uuid4(),
            instance_id=instance.id,
            node_id=node.id,
            node_name=node.label,
            candidate_user_ids=_unique(render_template(user, variables) for user in node.candidate_users),
            candidate_group_ids=_unique(render_template(group, variables) for group in node.candidate_groups),
            description=render_template(node.description, variables) if node.description else None,
            form_key=node.form_key,
            form_data=render_value(node.form_data, variables),
            task_variables=render_value(node.variables, variables),
            priority=node.priority if node.priority is not None else instance.priority,
            due_date=parse_due_date(render_value(node.due_date, variables)),
            created_at=now,
            execution_context={
                "variables": context.snapshot(),
                "nodePath": [entry.node_id for entry in context.execution_path],
            },
            history=[TaskHistoryEntry(action="created", actor_id=None, timestamp=now)],
        )
        events: list[ProcessEvent] = [
            TaskCreated(
                instance_id=instance.id,
                task_id=task.id,
                node_id=node.id,
                candidate_user_ids=list(task.candidate_user_ids),
                candidate_group_ids=list(task.candidate_group_ids),
                due_date=task.due_date,
            ),
        ]

        assignee = await self._auto_assignee(task)
        if assignee is not None:
            task.status = TaskStatus.IN_PROGRESS
            task.assignee_id = assignee
            task.started_at = now
            task.history.append(
                TaskHistoryEntry(action="auto_assigned", actor_id=None, timestamp=now, to_assignee=assignee),
            )
            events.append(TaskAssigned(instance_id=instance.id, task_id=task.id, node_id=node.id, assignee_id=assignee))

        task = await self.tasks.add(task)
        logger.info("Created task %s for node %s of instance %s", task.id, node.id, instance.id)
        return task, events

    async def _auto_assignee(self, task: ProcessTask) -> str | None:
        """Pick an assignee for a new task.

        A single candidate user is assigned directly. Otherwise, when candidate
        groups resolve to members, the member with the fewest open tasks wins,
        ties broken by user id.
        """
        if len(task.candidate_user_ids) == 1:
            return task.candidate_user_ids[0]
        if not task.candidate_group_ids or self.groups is None:
            return None
        members: set[str] = set()
        for group_id in task.candidate_group_ids:
            members.update(await self.groups.members_of(group_id))
        if not members:
            return None
        load = await self.tasks.count_open_by_assignee(sorted(members))
        return min(sorted(members), key=lambda user_id: (load.get(user_id, 0), user_id))

    # Human actions

    async def claim(self, task_id: UUID, user_id: str) -> ProcessTask:
        """Claim a pending task.

        Claiming a task one already holds is a no-op.

        Args:
            task_id: The task.
            user_id: The claiming principal.

        Returns:
            The updated task.

        Raises:
            InvalidStateError: If the task is not pending or belongs to someone else.
            UnauthorizedTaskError: If the principal is not a candidate.
        """
        async with self._locked(task_id) as task:
            if task.status == TaskStatus.IN_PROGRESS and task.assignee_id == user_id:
                return task
            if task.status != TaskStatus.PENDING:
                msg = f"Task '{task.id}' cannot be claimed while {task.status}"
                raise InvalidStateError(msg, current_status=task.status)
            if task.assignee_id and task.assignee_id != user_id:
                msg = f"Task '{task.id}' is already assigned to '{task.assignee_id}'"
                raise InvalidStateError(msg, current_status=task.status)
            await self._require_authorized(task, user_id, "claim")
            now = _now()
            task = await self.tasks.update(
                task.id,
                {
                    "status": TaskStatus.IN_PROGRESS,
                    "assignee_id": user_id,
                    "started_at": task.started_at or now,
                    "history": self._history(
                        task,
                        TaskHistoryEntry(action="claimed", actor_id=user_id, timestamp=now, to_assignee=user_id),
                    ),
                },
            )
        logger.info("Task %s claimed by %s", task.id, user_id)
        await self.publisher.publish(
            TaskClaimed(instance_id=task.instance_id, task_id=task.id, node_id=task.node_id, user_id=user_id),
        )
        return task

    async def assign(self, task_id: UUID, assignee_id: str, assigned_by: str | None = None) -> ProcessTask:
        """Assign a pending task to a candidate.

        Args:
            task_id: The task.
            assignee_id: The new assignee.
            assigned_by: The operator, recorded in the history.

        Returns:
            The updated task.

        Raises:
            InvalidStateError: If the task is not pending.
            UnauthorizedTaskError: If the assignee is not a candidate.
        """
        async with self._locked(task_id) as task:
            if task.status != TaskStatus.PENDING:
                msg = f"Task '{task.id}' cannot be assigned while {task.status}"
                raise InvalidStateError(msg, current_status=task.status)
            await self._require_authorized(task, assignee_id, "be assigned")
            now = _now()
            task = await self.tasks.update(
                task.id,
                {
                    "status": TaskStatus.IN_PROGRESS,
                    "assignee_id": assignee_id,
                    "started_at": task.started_at or now,
                    "history": self._history(
                        task,
                        TaskHistoryEntry(
                            action="assigned",
                            actor_id=assigned_by,
                            timestamp=now,
                            from_assignee=task.assignee_id,
                            to_assignee=assignee_id,
                        ),
                    ),
                },
            )
        await self.publisher.publish(
            TaskAssigned(
                instance_id=task.instance_id,
                task_id=task.id,
                node_id=task.node_id,
                assignee_id=assignee_id,
                assigned_by=assigned_by,
            ),
        )
        return task

    async def complete(
        self,
        task_id: UUID,
        user_id: str,
        variables: dict[str, Any] | None = None,
        form_data: dict[str, Any] | None = None,
        comment: str | None = None,
        on_completed: Callable[[ProcessTask], None] | None = None,
    ) -> ProcessTask:
        """Complete a task and merge its variables into the instance.

        A pending task is claimed implicitly by the completing principal. The
        caller is responsible for continuing the walk.

        Args:
            task_id: The task.
            user_id: The completing principal.
            variables: Completion variables merged into the instance.
            form_data: Submitted form data.
            comment: Optional completion comment.
            on_completed: Called with the completed task before the instance
                lock is released.

        Returns:
            The completed task.

        Raises:
            TaskAlreadyCompletedError: If the task was completed before.
            InvalidStateError: If the task or its instance does not allow completion.
            UnauthorizedTaskError: If the principal may not complete the task.
        """
        completion_variables = dict(variables or {})
        async with self._locked(task_id) as task:
            if task.status == TaskStatus.COMPLETED:
                raise TaskAlreadyCompletedError(task.id)
            if task.status not in _ACTIVE_STATUSES:
                msg = f"Task '{task.id}' cannot be completed while {task.status}"
                raise InvalidStateError(msg, current_status=task.status)
            if task.assignee_id and task.assignee_id != user_id:
                raise UnauthorizedTaskError(task.id, user_id, "complete")
            if not task.assignee_id:
                await self._require_authorized(task, user_id, "complete")

            instance = await self.instances.get(task.instance_id)
            if instance is None:
                raise InstanceNotFoundError(task.instance_id)
            if instance.status != InstanceStatus.RUNNING:
                msg = f"Task '{task.id}' cannot be completed while its instance is {instance.status}"
                raise InvalidStateError(msg, current_status=instance.status)

            now = _now()
            changes: dict[str, Any] = {
                "status": TaskStatus.COMPLETED,
                "sub_status": None,
                "assignee_id": task.assignee_id or user_id,
                "started_at": task.started_at or now,
                "completed_at": now,
                "duration_ms": _elapsed_ms(task.created_at, now),
                "completed_by": user_id,
                "completion_comment": comment,
                "completion_variables": completion_variables,
                "history": self._history(
                    task,
                    TaskHistoryEntry(action="completed", actor_id=user_id, timestamp=now, comment=comment),
                ),
            }
            if form_data is not None:
                changes["form_data"] = dict(form_data)
            task = await self.tasks.update(task.id, changes)
            if completion_variables:
                await self.instances.update(
                    instance.id,
                    {"variables": {**instance.variables, **completion_variables}},
                )
            if on_completed is not None:
                on_completed(task)
        logger.info("Task %s completed by %s", task.id, user_id)
        await self.publisher.publish(
            TaskCompleted(
                instance_id=task.instance_id,
                task_id=task.id,
                node_id=task.node_id,
                completed_by=user_id,
                variables=completion_variables,
                comment=comment,
            ),
        )
        return task

    async def delegate(
        self,
        task_id: UUID,
        from_user_id: str,
        to_user_id: str,
        reason: str | None = None,
    ) -> ProcessTask:
        """Hand an in-progress task from its assignee to another candidate.

        Raises:
            InvalidStateError: If the task is not in progress.
            UnauthorizedTaskError: If the caller is not the assignee or the
                target is not a candidate.
        """
        async with self._locked(task_id) as task:
            if task.status != TaskStatus.IN_PROGRESS:
                msg = f"Task '{task.id}' cannot be delegated while {task.status}"
                raise InvalidStateError(msg, current_status=task.status)
            if task.assignee_id != from_user_id:
                raise UnauthorizedTaskError(task.id, from_user_id, "delegate")
            await self._require_authorized(task, to_user_id, "receive")
            task = await self.tasks.update(
                task.id,
                {
                    "assignee_id": to_user_id,
                    "sub_status": TaskSubStatus.DELEGATED,
                    "history": self._history(
                        task,
                        TaskHistoryEntry(
                            action="delegated",
                            actor_id=from_user_id,
                            from_assignee=from_user_id,
                            to_assignee=to_user_id,
                            comment=reason,
                        ),
                    ),
                },
            )
        await self.publisher.publish(
            TaskDelegated(
                instance_id=task.instance_id,
                task_id=task.id,
                node_id=task.node_id,
                from_user_id=from_user_id,
                to_user_id=to_user_id,
                reason=reason,
            ),
        )
        return task

    async def reassign(
        self,
        task_id: UUID,
        to_user_id: str,
        reassigned_by: str | None = None,
        reason: str | None = None,
    ) -> ProcessTask:
        """Move a pending or in-progress task to another candidate.

        Raises:
            InvalidStateError: If the task is neither pending nor in progress.
            UnauthorizedTaskError: If the target is not a candidate.
        """
        async with self._locked(task_id) as task:
            if task.status not in _ACTIVE_STATUSES:
                msg = f"Task '{task.id}' cannot be reassigned while {task.status}"
                raise InvalidStateError(msg, current_status=task.status)
            await self._require_authorized(task, to_user_id, "receive")
            previous = task.assignee_id
            now = _now()
            task = await self.tasks.update(
                task.id,
                {
                    "status": TaskStatus.IN_PROGRESS,
                    "assignee_id": to_user_id,
                    "sub_status": None,
                    "started_at": task.started_at or now,
                    "history": self._history(
                        task,
                        TaskHistoryEntry(
                            action="reassigned",
                            actor_id=reassigned_by,
                            timestamp=now,
                            from_assignee=previous,
                            to_assignee=to_user_id,
                            comment=reason,
                        ),
                    ),
                },
            )
        await self.publisher.publish(
            TaskReassigned(
                instance_id=task.instance_id,
                task_id=task.id,
                node_id=task.node_id,
                from_user_id=previous,
                to_user_id=to_user_id,
                reassigned_by=reassigned_by,
                reason=reason,
            ),
        )
        return task

    async def transfer(
        self,
        task_id: UUID,
        to_user_id: str,
        transferred_by: str | None = None,
        reason: str | None = None,
    ) -> ProcessTask:
        """Transfer a task to another candidate.

        The target becomes a named candidate user and the assignee, and the task is
        marked with the ``transferred`` sub-status.

        Raises:
            InvalidStateError: If the task is neither pending nor in progress.
            UnauthorizedTaskError: If the target is not a candidate.
        """
        async with self._locked(task_id) as task:
            if task.status not in _ACTIVE_STATUSES:
                msg = f"Task '{task.id}' cannot be transferred while {task.status}"
                raise InvalidStateError(msg, current_status=task.status)
            await self._require_authorized(task, to_user_id, "receive")
            previous = task.assignee_id
            now = _now()
            task = await self.tasks.update(
                task.id,
                {
                    "status": TaskStatus.IN_PROGRESS,
                    "sub_status": TaskSubStatus.TRANSFERRED,
                    "assignee_id": to_user_id,
                    "candidate_user_ids": _unique([*task.candidate_user_ids, to_user_id]),
                    "started_at": task.started_at or now,
                    "history": self._history(
                        task,
                        TaskHistoryEntry(
                            action="transferred",
                            actor_id=transferred_by,
                            timestamp=now,
                            from_assignee=previous,
                            to_assignee=to_user_id,
                            comment=reason,
                        ),
                    ),
                },
            )
        await self.publisher.publish(
            TaskTransferred(
                instance_id=task.instance_id,
                task_id=task.id,
                node_id=task.node_id,
                from_user_id=previous,
                to_user_id=to_user_id,
                transferred_by=transferred_by,
                reason=reason,
            ),
        )
        return task

    async def cancel(self, task_id: UUID, user_id: str | None = None, reason: str | None = None) -> ProcessTask:
        """Cancel an open task.

        Raises:
            InvalidStateError: If the task is no longer open.
        """
        async with self._locked(task_id) as task:
            if not task.is_open:
                msg = f"Task '{task.id}' cannot be cancelled while {task.status}"
                raise InvalidStateError(msg, current_status=task.status)
            task = await self.tasks.update(task.id, self._cancellation(task, user_id, reason))
        await self.publisher.publish(
            TaskCancelled(
                instance_id=task.instance_id,
                task_id=task.id,
                node_id=task.node_id,
                cancelled_by=user_id,
                reason=reason,
            ),
        )
        return task

    def _cancellation(self, task: ProcessTask, user_id: str | None, reason: str | None) -> dict[str, Any]:
        now = _now()
        return {
            "status": TaskStatus.CANCELLED,
            "suspended_from": None,
            "completed_at": now,
            "completed_by": user_id,
            "completion_comment": reason,
            "duration_ms": _elapsed_ms(task.created_at, now),
            "history": self._history(
                task,
                TaskHistoryEntry(action="cancelled", actor_id=user_id, timestamp=now, comment=reason),
            ),
        }

    # Administrative updates

    async def set_priority(self, task_id: UUID, priority: int, user_id: str | None = None) -> ProcessTask:
        """Change the priority of an open task.

        Raises:
            ValidationError: If the priority is outside 0-100.
            InvalidStateError: If the task is no longer open.
        """
        if not 0 <= priority <= 100:  # noqa: PLR2004
            msg = f"Priority must be between 0 and 100, got {priority}"
            raise ValidationError(msg)
        async with self._locked(task_id) as task:
            self._require_open(task, "reprioritized")
            return await self.tasks.update(
                task.id,
                {
                    "priority": priority,
                    "history": self._history(
                        task,
                        TaskHistoryEntry(action="priority_changed", actor_id=user_id, comment=str(priority)),
                    ),
                },
            )

    async def set_due_date(self, task_id: UUID, due_date: datetime | str | None, user_id: str | None = None) -> ProcessTask:
        """Change or clear the due date of an open task, resetting its overdue flag."""
        parsed = parse_due_date(due_date)
        async with self._locked(task_id) as task:
            self._require_open(task, "rescheduled")
            return await self.tasks.update(
                task.id,
                {
                    "due_date": parsed,
                    "overdue": False,
                    "history": self._history(
                        task,
                        TaskHistoryEntry(
                            action="due_date_changed",
                            actor_id=user_id,
                            comment=parsed.isoformat() if parsed else None,
                        ),
                    ),
                },
            )

    async def add_candidates(
        self,
        task_id: UUID,
        user_ids: Iterable[str] = (),
        group_ids: Iterable[str] = (),
        user_id: str | None = None,
    ) -> ProcessTask:
        """Offer an open task to more users or groups."""
        async with self._locked(task_id) as task:
            self._require_open(task, "changed")
            return await self.tasks.update(
                task.id,
                {
                    "candidate_user_ids": _unique([*task.candidate_user_ids, *user_ids]),
                    "candidate_group_ids": _unique([*task.candidate_group_ids, *group_ids]),
                    "history": self._history(task, TaskHistoryEntry(action="candidates_added", actor_id=user_id)),
                },
            )

    async def remove_candidates(
        self,
        task_id: UUID,
        user_ids: Iterable[str] = (),
        group_ids: Iterable[str] = (),
        user_id: str | None = None,
    ) -> ProcessTask:
        """Withdraw an open task from users or groups."""
        removed_users = set(user_ids)
        removed_groups = set(group_ids)
        async with self._locked(task_id) as task:
            self._require_open(task, "changed")
            return await self.tasks.update(
                task.id,
                {
                    "candidate_user_ids": [item for item in task.candidate_user_ids if item not in removed_users],
                    "candidate_group_ids": [item for item in task.candidate_group_ids if item not in removed_groups],
                    "history": self._history(task, TaskHistoryEntry(action="candidates_removed", actor_id=user_id)),
                },
            )

    @staticmethod
    def _require_open(task: ProcessTask, action: str) -> None:
        if not task.is_open:
            msg = f"Task '{task.id}' cannot be {action} while {task.status}"
            raise InvalidStateError(msg, current_status=task.status)

    # Due dates

    async def flag_overdue(self, now: datetime | None = None) -> list[ProcessTask]:
        """Flag open tasks whose due date has passed and notify about them.

        Each task is flagged once. The task stays open.

        Args:
            now: Reference time, defaults to the current time.

        Returns:
            The tasks flagged by this call.
        """
        now = now or _now()
        flagged: list[ProcessTask] = []
        for candidate in await self.tasks.list_overdue(now):
            async with self.locks.hold(candidate.instance_id):
                task = await self.tasks.get(candidate.id)
                if task is None or not task.is_open or task.overdue or task.due_date is None or task.due_date > now:
                    continue
                flagged.append(await self.tasks.update(task.id, {"overdue": True}))
        for task in flagged:
            logger.info("Task %s is overdue", task.id)
            await self.publisher.publish(
                TaskOverdue(
                    instance_id=task.instance_id,
                    task_id=task.id,
                    node_id=task.node_id,
                    due_date=task.due_date,  # type: ignore[arg-type]
                    assignee_id=task.assignee_id,
                ),
            )
        return flagged

    # Cascades, called with the instance lock held

    async def hold_open_tasks(self, instance_id: UUID, user_id: str | None = None) -> list[ProcessTask]:
        """Move pending and in-progress tasks of a suspended instance to WAITING."""
        held: list[ProcessTask] = []
        for task in await self.tasks.list_by_instance(instance_id, _ACTIVE_STATUSES):
            held.append(
                await self.tasks.update(
                    task.id,
                    {
                        "status": TaskStatus.WAITING,
                        "suspended_from": task.status,
                        "history": self._history(task, TaskHistoryEntry(action="suspended", actor_id=user_id)),
                    },
                ),
            )
        return held

    async def release_held_tasks(self, instance_id: UUID, user_id: str | None = None) -> list[ProcessTask]:
        """Restore WAITING tasks of a resumed instance to their previous status."""
        released: list[ProcessTask] = []
        for task in await self.tasks.list_by_instance(instance_id, (TaskStatus.WAITING,)):
            restored = task.suspended_from or (TaskStatus.IN_PROGRESS if task.assignee_id else TaskStatus.PENDING)
            released.append(
                await self.tasks.update(
                    task.id,
                    {
                        "status": restored,
                        "suspended_from": None,
                        "history": self._history(task, TaskHistoryEntry(action="resumed", actor_id=user_id)),
                    },
                ),
            )
        return released

    async def cancel_open_tasks(
        self,
        instance_id: UUID,
        user_id: str | None = None,
        reason: str | None = None,
    ) -> list[ProcessTask]:
        """Cancel every open task of an instance."""
        return [
            await self.tasks.update(task.id, self._cancellation(task, user_id, reason))
            for task in await self.tasks.list_by_instance(instance_id, OPEN_TASK_STATUSES)
        ]
