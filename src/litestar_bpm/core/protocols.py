"""Ports between the engine core and its collaborators.

The engine depends only on these Protocols. In-memory implementations live in
:mod:`litestar_bpm.engine.memory` and :mod:`litestar_bpm.engine.registry`;
SQLAlchemy implementations live in :mod:`litestar_bpm.db.stores`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable, Mapping, Sequence
    from datetime import datetime
    from uuid import UUID

    from litestar_bpm.core.context import ExecutionContext
    from litestar_bpm.core.definition import ProcessDefinition, ServiceTaskConfig
    from litestar_bpm.core.events import ProcessEvent
    from litestar_bpm.core.models import ProcessInstance, ProcessTask
    from litestar_bpm.core.types import TaskStatus

__all__ = [
    "DefinitionStore",
    "GroupDirectory",
    "InstanceRepository",
    "NodeHandler",
    "NotificationPort",
    "TaskRepository",
]


@runtime_checkable
class DefinitionStore(Protocol):
    """Read access to versioned process definitions."""

    async def get_published_definition(self, definition_id: str) -> ProcessDefinition | None:
        """Return the latest published version of a definition, if any."""
        ...

    async def get_definition(self, definition_id: str, version: int | None = None) -> ProcessDefinition | None:
        """Return a specific version, or the latest version when ``version`` is None."""
        ...


@runtime_checkable
class InstanceRepository(Protocol):
    """Persistence port for process instances.

    ``update`` applies all given field changes atomically and returns the stored
    result. Implementations return copies: callers never share mutable state
    with the store.
    """

    async def add(self, instance: ProcessInstance) -> ProcessInstance:
        """Store a new instance."""
        ...

    async def get(self, instance_id: UUID) -> ProcessInstance | None:
        """Load an instance by id."""
        ...

    async def update(self, instance_id: UUID, changes: Mapping[str, Any]) -> ProcessInstance:
        """Apply a partial update to an instance atomically."""
        ...

    async def list_by_business_key(self, business_key: str) -> Sequence[ProcessInstance]:
        """Return instances carrying a business key, oldest first."""
        ...


@runtime_checkable
class TaskRepository(Protocol):
    """Persistence port for user tasks."""

    async def add(self, task: ProcessTask) -> ProcessTask:
        """Store a new task."""
        ...

    async def get(self, task_id: UUID) -> ProcessTask | None:
        """Load a task by id."""
        ...

    async def update(self, task_id: UUID, changes: Mapping[str, Any]) -> ProcessTask:
        """Apply a partial update to a task atomically."""
        ...

    async def list_by_instance(
        self,
        instance_id: UUID,
        statuses: Collection[TaskStatus] | None = None,
    ) -> Sequence[ProcessTask]:
        """Return the tasks of an instance, oldest first, optionally filtered by status."""
        ...

    async def find_open_for_node(self, instance_id: UUID, node_id: str) -> ProcessTask | None:
        """Return the open task created by a node of an instance, if any."""
        ...

    async def count_open_by_assignee(self, user_ids: Iterable[str]) -> dict[str, int]:
        """Count open tasks per assignee, with zero for users without any."""
        ...

    async def list_for_user(
        self,
        user_id: str,
        group_ids: Collection[str],
        statuses: Collection[TaskStatus],
    ) -> Sequence[ProcessTask]:
        """Return tasks assigned to a user or offered to the user or their groups."""
        ...

    async def list_overdue(self, now: datetime) -> Sequence[ProcessTask]:
        """Return open tasks past their due date that are not yet flagged overdue."""
        ...


@runtime_checkable
class NotificationPort(Protocol):
    """Receiver of engine lifecycle events."""

    async def notify(self, event: ProcessEvent) -> None:
        """Deliver an event. Failures are logged by the engine and never propagated."""
        ...


@runtime_checkable
class GroupDirectory(Protocol):
    """Resolves group membership for authorization and load balancing."""

    async def members_of(self, group_id: str) -> Sequence[str]:
        """Return the user ids belonging to a group."""
        ...

    async def groups_of(self, user_id: str) -> Collection[str]:
        """Return the group ids a user belongs to."""
        ...


@runtime_checkable
class NodeHandler(Protocol):
    """Executes a service or script task.

    Handlers raise :class:`~litestar_bpm.exceptions.HandlerFailure` (or any
    exception, which the dispatcher wraps) when the service fails.
    """

    async def __call__(self, context: ExecutionContext, config: ServiceTaskConfig) -> Any:
        """Run the service and return its result."""
        ...
