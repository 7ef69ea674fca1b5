"""SQLAlchemy models for process persistence.

This module defines the database models backing the persistence ports:
- ProcessDefinitionModel: Stores every version of a process definition graph
- ProcessInstanceModel: Stores instances with their variables and execution path
- ProcessTaskModel: Stores user tasks with assignment state and audit history
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from advanced_alchemy.base import UUIDAuditBase
from advanced_alchemy.types import DateTimeUTC
from sqlalchemy import JSON, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from litestar_bpm.core.types import DefinitionStatus, InstanceStatus, TaskStatus

__all__ = [
    "ProcessDefinitionModel",
    "ProcessInstanceModel",
    "ProcessTaskModel",
]


# Cross-database JSON type: uses JSONB for PostgreSQL, JSON for others (SQLite, MySQL, etc.)
JSONType = JSON().with_variant(JSONB, "postgresql")


class ProcessDefinitionModel(UUIDAuditBase):
    """One version of a process definition.

    Attributes:
        definition_key: Stable definition id shared by all versions.
        version: Version number, unique per definition key.
        name: Human-readable name.
        description: Optional description.
        status: Publication state of this version.
        graph: The ``{nodes, edges}`` graph in wire format.
    """

    __tablename__ = "bpm_process_definitions"
    __table_args__ = (
        Index("ix_bpm_process_definitions_key_version", "definition_key", "version", unique=True),
        Index("ix_bpm_process_definitions_key_status", "definition_key", "status"),
    )

    definition_key: Mapped[str] = mapped_column(String(255), index=True)
    version: Mapped[int] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[DefinitionStatus] = mapped_column(
        Enum(DefinitionStatus, native_enum=False, length=50),
        default=DefinitionStatus.DRAFT,
    )
    graph: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)


class ProcessInstanceModel(UUIDAuditBase):
    """Persisted process instance.

    Attributes:
        definition_key: Id of the executed definition.
        definition_version: Definition version pinned at start.
        status: Lifecycle status.
        variables: Process variables as JSON.
        execution_path: Serialized execution path entries.
        current_node_id: Last node committed by the walk.
        business_key: Optional correlation key.
        started_by: Principal that started the instance.
        priority: Default task priority.
        start_time: When the instance was created.
        end_time: When the instance completed or was terminated.
        duration_ms: Wall-clock duration once ended.
        error_message: Failure or termination reason.
        error_stack: Formatted traceback of the failure.
        tasks: Tasks of the instance.
    """

    __tablename__ = "bpm_process_instances"
    __table_args__ = (
        Index("ix_bpm_process_instances_status", "status"),
        Index("ix_bpm_process_instances_definition", "definition_key", "definition_version"),
        Index("ix_bpm_process_instances_business_key", "business_key"),
        Index("ix_bpm_process_instances_started_by", "started_by"),
    )

    definition_key: Mapped[str] = mapped_column(String(255))
    definition_version: Mapped[int] = mapped_column(Integer)
    status: Mapped[InstanceStatus] = mapped_column(
        Enum(InstanceStatus, native_enum=False, length=50),
        default=InstanceStatus.RUNNING,
    )
    variables: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    execution_path: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    current_node_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    business_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    started_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=50)
    start_time: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True))
    end_time: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_stack: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    tasks: Mapped[list[ProcessTaskModel]] = relationship(
        back_populates="instance",
        lazy="noload",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ProcessTaskModel(UUIDAuditBase):
    """Persisted user task.

    Candidate sets, form data, variables and history are stored as JSON.
    ``created_at`` from the audit base doubles as the task creation time.

    Attributes:
        instance_id: Foreign key to the owning instance.
        node_id: The user task node that created the task.
        status: Lifecycle status.
        assignee_id: Principal working the task.
        candidate_user_ids: Users allowed to act on the task.
        candidate_group_ids: Groups whose members may act on the task.
        due_date: Optional due date.
        overdue: Whether the due date passed while the task was open.
        history: Serialized history entries.
    """

    __tablename__ = "bpm_process_tasks"
    __table_args__ = (
        Index("ix_bpm_process_tasks_instance_id", "instance_id"),
        Index("ix_bpm_process_tasks_instance_node", "instance_id", "node_id"),
        Index("ix_bpm_process_tasks_assignee_id", "assignee_id"),
        Index("ix_bpm_process_tasks_status", "status"),
        Index("ix_bpm_process_tasks_due_date", "due_date"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        ForeignKey("bpm_process_instances.id", ondelete="CASCADE"),
    )
    node_id: Mapped[str] = mapped_column(String(255))
    node_name: Mapped[str] = mapped_column(String(500))
    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus, native_enum=False, length=50),
        default=TaskStatus.PENDING,
    )
    sub_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    assignee_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    candidate_user_ids: Mapped[list[str]] = mapped_column(JSONType, default=list)
    candidate_group_ids: Mapped[list[str]] = mapped_column(JSONType, default=list)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    form_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    form_data: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    task_variables: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    completion_variables: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    priority: Mapped[int] = mapped_column(Integer, default=50)
    due_date: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    overdue: Mapped[bool] = mapped_column(default=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    completion_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_context: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    history: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    suspended_from: Mapped[TaskStatus | None] = mapped_column(
        Enum(TaskStatus, native_enum=False, length=50),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)

    # Relationships
    instance: Mapped[ProcessInstanceModel] = relationship(
        back_populates="tasks",
        lazy="noload",
    )
