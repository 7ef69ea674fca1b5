"""Lifecycle events delivered to the notification port.

Each event is a dataclass carrying the ids a subscriber needs to look the
affected records up. ``event_type`` is a stable dotted name suitable for
routing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar
from uuid import UUID

__all__ = [
    "InstanceCompleted",
    "InstanceFailed",
    "InstanceResumed",
    "InstanceStarted",
    "InstanceSuspended",
    "InstanceTerminated",
    "ProcessEvent",
    "TaskAssigned",
    "TaskCancelled",
    "TaskClaimed",
    "TaskCompleted",
    "TaskCreated",
    "TaskDelegated",
    "TaskEvent",
    "TaskOverdue",
    "TaskReassigned",
    "TaskTransferred",
]


@dataclass
class ProcessEvent:
    """Base class for all engine events.

    Attributes:
        instance_id: The affected process instance.
        timestamp: When the event occurred.
    """

    event_type: ClassVar[str] = "process.event"

    instance_id: UUID
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc), kw_only=True)


@dataclass
class InstanceStarted(ProcessEvent):
    """An instance was created and its walk scheduled."""

    event_type: ClassVar[str] = "instance.started"

    definition_id: str
    definition_version: int
    started_by: str | None = None
    business_key: str | None = None


@dataclass
class InstanceCompleted(ProcessEvent):
    """An instance reached an end node."""

    event_type: ClassVar[str] = "instance.completed"

    end_node_id: str
    duration_ms: int | None = None


@dataclass
class InstanceFailed(ProcessEvent):
    """An instance moved to ERROR.

    Attributes:
        error: The recorded error message.
        node_id: The node that failed, when known.
    """

    event_type: ClassVar[str] = "instance.error"

    error: str
    node_id: str | None = None


@dataclass
class InstanceSuspended(ProcessEvent):
    """An instance was suspended on request."""

    event_type: ClassVar[str] = "instance.suspended"

    suspended_by: str | None = None


@dataclass
class InstanceResumed(ProcessEvent):
    """An instance returned to RUNNING through resume or retry."""

    event_type: ClassVar[str] = "instance.resumed"

    resumed_by: str | None = None
    retried: bool = False


@dataclass
class InstanceTerminated(ProcessEvent):
    """An instance was terminated and its open tasks cancelled."""

    event_type: ClassVar[str] = "instance.terminated"

    terminated_by: str | None = None
    reason: str | None = None
    cancelled_task_ids: list[UUID] = field(default_factory=list)


@dataclass
class TaskEvent(ProcessEvent):
    """Base class for task lifecycle events.

    Attributes:
        task_id: The affected task.
        node_id: The user task node the task belongs to.
    """

    event_type: ClassVar[str] = "task.event"

    task_id: UUID
    node_id: str


@dataclass
class TaskCreated(TaskEvent):
    """A user task node produced a task."""

    event_type: ClassVar[str] = "task.created"

    candidate_user_ids: list[str] = field(default_factory=list)
    candidate_group_ids: list[str] = field(default_factory=list)
    due_date: datetime | None = None


@dataclass
class TaskAssigned(TaskEvent):
    """A task was assigned, directly or by auto-assignment."""

    event_type: ClassVar[str] = "task.assigned"

    assignee_id: str
    assigned_by: str | None = None


@dataclass
class TaskClaimed(TaskEvent):
    """A principal claimed a task."""

    event_type: ClassVar[str] = "task.claimed"

    user_id: str


@dataclass
class TaskCompleted(TaskEvent):
    """A task was completed."""

    event_type: ClassVar[str] = "task.completed"

    completed_by: str
    variables: dict[str, Any] = field(default_factory=dict)
    comment: str | None = None


@dataclass
class TaskDelegated(TaskEvent):
    """The assignee handed a task to another principal."""

    event_type: ClassVar[str] = "task.delegated"

    from_user_id: str
    to_user_id: str
    reason: str | None = None


@dataclass
class TaskReassigned(TaskEvent):
    """A task was moved to a new assignee by an operator."""

    event_type: ClassVar[str] = "task.reassigned"

    from_user_id: str | None
    to_user_id: str
    reassigned_by: str | None = None
    reason: str | None = None


@dataclass
class TaskTransferred(TaskEvent):
    """A task was transferred to another principal."""

    event_type: ClassVar[str] = "task.transferred"

    from_user_id: str | None
    to_user_id: str
    transferred_by: str | None = None
    reason: str | None = None


@dataclass
class TaskCancelled(TaskEvent):
    """A task was cancelled."""

    event_type: ClassVar[str] = "task.cancelled"

    cancelled_by: str | None = None
    reason: str | None = None


@dataclass
class TaskOverdue(TaskEvent):
    """An open task passed its due date."""

    event_type: ClassVar[str] = "task.overdue"

    due_date: datetime
    assignee_id: str | None = None
