"""In-memory implementations of the persistence and group directory ports.

These are the defaults of :class:`~litestar_bpm.engine.orchestrator.ProcessEngine`
and are suitable for tests and single-process deployments that do not need
durability. Records are deep-copied on the way in and out so that callers can
never mutate stored state behind the engine's back.
"""

from __future__ import annotations

import copy
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from litestar_bpm.core.types import OPEN_TASK_STATUSES
from litestar_bpm.exceptions import InstanceNotFoundError, TaskNotFoundError

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable, Mapping, Sequence
    from datetime import datetime
    from uuid import UUID

    from litestar_bpm.core.models import ProcessInstance, ProcessTask
    from litestar_bpm.core.types import TaskStatus

__all__ = ["InMemoryInstanceRepository", "InMemoryTaskRepository", "StaticGroupDirectory"]


class InMemoryInstanceRepository:
    """Dictionary-backed :class:`~litestar_bpm.core.protocols.InstanceRepository`."""

    def __init__(self) -> None:
        self._instances: dict[UUID, ProcessInstance] = {}

    def __len__(self) -> int:
        return len(self._instances)

    async def add(self, instance: ProcessInstance) -> ProcessInstance:
        self._instances[instance.id] = copy.deepcopy(instance)
        return copy.deepcopy(instance)

    async def get(self, instance_id: UUID) -> ProcessInstance | None:
        instance = self._instances.get(instance_id)
        return copy.deepcopy(instance) if instance is not None else None

    async def update(self, instance_id: UUID, changes: Mapping[str, Any]) -> ProcessInstance:
        current = self._instances.get(instance_id)
        if current is None:
            raise InstanceNotFoundError(instance_id)
        updated = replace(current, **copy.deepcopy(dict(changes)))
        self._instances[instance_id] = updated
        return copy.deepcopy(updated)

    async def list_by_business_key(self, business_key: str) -> Sequence[ProcessInstance]:
        matches = [instance for instance in self._instances.values() if instance.business_key == business_key]
        return [copy.deepcopy(instance) for instance in sorted(matches, key=lambda item: item.start_time)]


class InMemoryTaskRepository:
    """Dictionary-backed :class:`~litestar_bpm.core.protocols.TaskRepository`."""

    def __init__(self) -> None:
        self._tasks: dict[UUID, ProcessTask] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    async def add(self, task: ProcessTask) -> ProcessTask:
        self._tasks[task.id] = copy.deepcopy(task)
        return copy.deepcopy(task)

    async def get(self, task_id: UUID) -> ProcessTask | None:
        task = self._tasks.get(task_id)
        return copy.deepcopy(task) if task is not None else None

    async def update(self, task_id: UUID, changes: Mapping[str, Any]) -> ProcessTask:
        current = self._tasks.get(task_id)
        if current is None:
            raise TaskNotFoundError(task_id)
        updated = replace(current, **copy.deepcopy(dict(changes)))
        self._tasks[task_id] = updated
        return copy.deepcopy(updated)

    async def list_by_instance(
        self,
        instance_id: UUID,
        statuses: Collection[TaskStatus] | None = None,
    ) -> Sequence[ProcessTask]:
        tasks = [
            task
            for task in self._tasks.values()
            if task.instance_id == instance_id and (statuses is None or task.status in statuses)
        ]
        return [copy.deepcopy(task) for task in sorted(tasks, key=lambda item: item.created_at)]

    async def find_open_for_node(self, instance_id: UUID, node_id: str) -> ProcessTask | None:
        for task in self._tasks.values():
            if task.instance_id == instance_id and task.node_id == node_id and task.is_open:
                return copy.deepcopy(task)
        return None

    async def count_open_by_assignee(self, user_ids: Iterable[str]) -> dict[str, int]:
        counts = dict.fromkeys(user_ids, 0)
        for task in self._tasks.values():
            if task.is_open and task.assignee_id in counts:
                counts[task.assignee_id] += 1
        return counts

    async def list_for_user(
        self,
        user_id: str,
        group_ids: Collection[str],
        statuses: Collection[TaskStatus],
    ) -> Sequence[ProcessTask]:
        groups = set(group_ids)

        def visible(task: ProcessTask) -> bool:
            if task.assignee_id is not None:
                return task.assignee_id == user_id
            return (
                user_id in task.candidate_user_ids
                or bool(groups.intersection(task.candidate_group_ids))
                or task.is_open_to_anyone
            )

        tasks = [task for task in self._tasks.values() if task.status in statuses and visible(task)]
        tasks.sort(key=lambda item: (-item.priority, item.created_at))
        return [copy.deepcopy(task) for task in tasks]

    async def list_overdue(self, now: datetime) -> Sequence[ProcessTask]:
        return [
            copy.deepcopy(task)
            for task in self._tasks.values()
            if task.status in OPEN_TASK_STATUSES and not task.overdue and task.due_date is not None and task.due_date <= now
        ]


class StaticGroupDirectory:
    """Group directory backed by a fixed ``{group_id: [user_id, ...]}`` mapping.

    Example:
        >>> directory = StaticGroupDirectory({"finance": ["alice", "bob"]})
    """

    def __init__(self, groups: Mapping[str, Iterable[str]] | None = None) -> None:
        self._groups: dict[str, list[str]] = {group: list(members) for group, members in (groups or {}).items()}

    def add_member(self, group_id: str, user_id: str) -> None:
        """Add a user to a group, creating the group if needed."""
        members = self._groups.setdefault(group_id, [])
        if user_id not in members:
            members.append(user_id)

    async def members_of(self, group_id: str) -> Sequence[str]:
        return list(self._groups.get(group_id, ()))

    async def groups_of(self, user_id: str) -> Collection[str]:
        return {group for group, members in self._groups.items() if user_id in members}
