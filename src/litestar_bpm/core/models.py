"""Runtime records for process instances and tasks.

These dataclasses are what the persistence ports store and return. The engine
never mutates a record it did not load inside the owning instance's critical
section; repositories hand out copies.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from litestar_bpm.core.types import (
    OPEN_TASK_STATUSES,
    TERMINAL_INSTANCE_STATUSES,
    InstanceStatus,
    TaskStatus,
)

__all__ = [
    "ExecutionPathEntry",
    "ProcessInstance",
    "ProcessTask",
    "TaskHistoryEntry",
]


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class ExecutionPathEntry:
    """One node entered by an instance.

    Attributes:
        node_id: Id of the node.
        node_name: Display name of the node.
        node_type: Type string of the node.
        timestamp: When the node was entered.
        variables_snapshot: Copy of the variables as the node saw them.
        result: What the node produced, or error details.
    """

    node_id: str
    node_name: str
    node_type: str
    timestamp: datetime
    variables_snapshot: dict[str, Any] = field(default_factory=dict)
    result: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible mapping."""
        return {
            "node_id": self.node_id,
            "node_name": self.node_name,
            "node_type": self.node_type,
            "timestamp": self.timestamp.isoformat(),
            "variables_snapshot": self.variables_snapshot,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionPathEntry:
        """Deserialize from :meth:`to_dict` output."""
        return cls(
            node_id=data["node_id"],
            node_name=data.get("node_name", data["node_id"]),
            node_type=data.get("node_type", ""),
            timestamp=_parse_datetime(data["timestamp"]),
            variables_snapshot=dict(data.get("variables_snapshot") or {}),
            result=data.get("result"),
        )


@dataclass
class ProcessInstance:
    """One execution of a process definition.

    Attributes:
        id: Unique instance id.
        definition_id: Id of the executed definition.
        definition_version: Definition version pinned at start.
        status: Lifecycle status.
        variables: Process-scoped variables.
        execution_path: Append-only ledger of entered nodes.
        current_node_id: Last node committed by the walk, None once completed.
        business_key: Optional caller-supplied correlation key.
        started_by: Principal that started the instance.
        priority: Default priority for tasks, 0-100.
        start_time: When the instance was created.
        end_time: When the instance completed or was terminated.
        duration_ms: Wall-clock duration once ended.
        error_message: Cause of the ERROR state or termination reason.
        error_stack: Formatted traceback of the failure.
    """

    id: UUID
    definition_id: str
    definition_version: int
    status: InstanceStatus = InstanceStatus.RUNNING
    variables: dict[str, Any] = field(default_factory=dict)
    execution_path: list[ExecutionPathEntry] = field(default_factory=list)
    current_node_id: str | None = None
    business_key: str | None = None
    started_by: str | None = None
    priority: int = 50
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    error_stack: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the instance can no longer change status."""
        return self.status in TERMINAL_INSTANCE_STATUSES

    @property
    def visited_node_ids(self) -> list[str]:
        """Node ids of the execution path in ledger order."""
        return [entry.node_id for entry in self.execution_path]


@dataclass
class TaskHistoryEntry:
    """Audit record of a task mutation.

    Attributes:
        action: What happened, for example ``claimed`` or ``delegated``.
        actor_id: Principal that performed the action.
        timestamp: When the action happened.
        from_assignee: Assignee before the action.
        to_assignee: Assignee after the action.
        comment: Optional reason or comment.
    """

    action: str
    actor_id: str | None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    from_assignee: str | None = None
    to_assignee: str | None = None
    comment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible mapping."""
        return {
            "action": self.action,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp.isoformat(),
            "from_assignee": self.from_assignee,
            "to_assignee": self.to_assignee,
            "comment": self.comment,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskHistoryEntry:
        """Deserialize from :meth:`to_dict` output."""
        return cls(
            action=data["action"],
            actor_id=data.get("actor_id"),
            timestamp=_parse_datetime(data["timestamp"]),
            from_assignee=data.get("from_assignee"),
            to_assignee=data.get("to_assignee"),
            comment=data.get("comment"),
        )


@dataclass
class ProcessTask:
    """A unit of human work bound to one user task node of one instance.

    Attributes:
        id: Unique task id.
        instance_id: Owning instance.
        node_id: The user task node that created the task.
        node_name: Display name of that node.
        status: Lifecycle status.
        sub_status: Optional marker such as ``transferred``.
        assignee_id: Principal working the task.
        candidate_user_ids: Users allowed to act on the task.
        candidate_group_ids: Groups whose members may act on the task.
        description: Rendered task description.
        form_key: Form identifier for UIs.
        form_data: Form data, replaced on completion when supplied.
        task_variables: Task-local variables from the node.
        completion_variables: Variables submitted on completion.
        priority: Priority 0-100.
        due_date: Optional due date.
        overdue: Set once the due date has passed while the task was open.
        created_at: When the task was created.
        started_at: When the task was first claimed or assigned.
        completed_at: When the task reached COMPLETED or CANCELLED.
        duration_ms: Time from creation to completion.
        completed_by: Principal that completed or cancelled the task.
        completion_comment: Comment given on completion or cancellation.
        execution_context: Variables and node path as of task creation.
        history: Audit trail of mutations.
        suspended_from: Status to restore when the instance resumes.
        error_message: Failure description, if any.
        retry_count: Number of failed attempts.
        max_retries: Attempts allowed before giving up.
    """

    id: UUID
    instance_id: UUID
    node_id: str
    node_name: str
    status: TaskStatus = TaskStatus.PENDING
    sub_status: str | None = None
    assignee_id: str | None = None
    candidate_user_ids: list[str] = field(default_factory=list)
    candidate_group_ids: list[str] = field(default_factory=list)
    description: str | None = None
    form_key: str | None = None
    form_data: dict[str, Any] = field(default_factory=dict)
    task_variables: dict[str, Any] = field(default_factory=dict)
    completion_variables: dict[str, Any] = field(default_factory=dict)
    priority: int = 50
    due_date: datetime | None = None
    overdue: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    completed_by: str | None = None
    completion_comment: str | None = None
    execution_context: dict[str, Any] = field(default_factory=dict)
    history: list[TaskHistoryEntry] = field(default_factory=list)
    suspended_from: TaskStatus | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = 3

    @property
    def is_open(self) -> bool:
        """Whether the task still expects a human action."""
        return self.status in OPEN_TASK_STATUSES

    @property
    def is_open_to_anyone(self) -> bool:
        """Whether the task has no candidate restrictions."""
        return not self.candidate_user_ids and not self.candidate_group_ids
