"""Repository implementations for process persistence.

This module provides async repositories for queries on the process models
using advanced-alchemy's repository pattern.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from advanced_alchemy.repository import SQLAlchemyAsyncRepository
from sqlalchemy import and_, func, or_, select

from litestar_bpm.core.types import OPEN_TASK_STATUSES
from litestar_bpm.db.models import ProcessDefinitionModel, ProcessInstanceModel, ProcessTaskModel

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable, Sequence
    from datetime import datetime
    from uuid import UUID

    from litestar_bpm.core.types import DefinitionStatus, InstanceStatus, TaskStatus

__all__ = [
    "ProcessDefinitionRepository",
    "ProcessInstanceRepository",
    "ProcessTaskRepository",
]


class ProcessDefinitionRepository(SQLAlchemyAsyncRepository[ProcessDefinitionModel]):
    """Repository for process definition versions."""

    model_type = ProcessDefinitionModel

    async def get_version(
        self,
        definition_key: str,
        version: int | None = None,
        *,
        status: DefinitionStatus | None = None,
    ) -> ProcessDefinitionModel | None:
        """Get one version of a definition.

        Args:
            definition_key: The definition id.
            version: Specific version. If None, returns the latest matching version.
            status: Only consider versions in this publication state.

        Returns:
            The definition version or None if not found.
        """
        conditions = [ProcessDefinitionModel.definition_key == definition_key]
        if version is not None:
            conditions.append(ProcessDefinitionModel.version == version)
        if status is not None:
            conditions.append(ProcessDefinitionModel.status == status)

        stmt = (
            select(ProcessDefinitionModel)
            .where(and_(*conditions))
            .order_by(ProcessDefinitionModel.version.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def next_version(self, definition_key: str) -> int:
        """Return the version number the next registration of a definition gets."""
        stmt = select(func.max(ProcessDefinitionModel.version)).where(
            ProcessDefinitionModel.definition_key == definition_key,
        )
        result = await self.session.execute(stmt)
        return (result.scalar_one_or_none() or 0) + 1

    async def list_versions(self, status: DefinitionStatus | None = None) -> Sequence[ProcessDefinitionModel]:
        """List every stored version, ordered by definition key and version."""
        stmt = select(ProcessDefinitionModel).order_by(
            ProcessDefinitionModel.definition_key,
            ProcessDefinitionModel.version,
        )
        if status is not None:
            stmt = stmt.where(ProcessDefinitionModel.status == status)
        result = await self.session.execute(stmt)
        return result.scalars().all()


class ProcessInstanceRepository(SQLAlchemyAsyncRepository[ProcessInstanceModel]):
    """Repository for process instances."""

    model_type = ProcessInstanceModel

    async def get_for_update(self, instance_id: UUID) -> ProcessInstanceModel | None:
        """Load an instance, locking its row where the database supports it."""
        return await self.session.get(ProcessInstanceModel, instance_id, with_for_update=True)

    async def find_by_business_key(self, business_key: str) -> Sequence[ProcessInstanceModel]:
        """Find instances carrying a business key, oldest first."""
        stmt = (
            select(ProcessInstanceModel)
            .where(ProcessInstanceModel.business_key == business_key)
            .order_by(ProcessInstanceModel.start_time)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_by_status(self, status: InstanceStatus) -> Sequence[ProcessInstanceModel]:
        """Find instances in a status, oldest first."""
        stmt = (
            select(ProcessInstanceModel)
            .where(ProcessInstanceModel.status == status)
            .order_by(ProcessInstanceModel.start_time)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()


class ProcessTaskRepository(SQLAlchemyAsyncRepository[ProcessTaskModel]):
    """Repository for user tasks."""

    model_type = ProcessTaskModel

    async def get_for_update(self, task_id: UUID) -> ProcessTaskModel | None:
        """Load a task, locking its row where the database supports it."""
        return await self.session.get(ProcessTaskModel, task_id, with_for_update=True)

    async def find_by_instance(
        self,
        instance_id: UUID,
        statuses: Collection[TaskStatus] | None = None,
    ) -> Sequence[ProcessTaskModel]:
        """Find the tasks of an instance, oldest first.

        Args:
            instance_id: The instance.
            statuses: Optional status filter.

        Returns:
            Matching tasks.
        """
        stmt = select(ProcessTaskModel).where(ProcessTaskModel.instance_id == instance_id)
        if statuses is not None:
            stmt = stmt.where(ProcessTaskModel.status.in_(list(statuses)))
        result = await self.session.execute(stmt.order_by(ProcessTaskModel.created_at))
        return result.scalars().all()

    async def find_open_for_node(self, instance_id: UUID, node_id: str) -> ProcessTaskModel | None:
        """Find the open task a node of an instance created, if any."""
        stmt = (
            select(ProcessTaskModel)
            .where(
                and_(
                    ProcessTaskModel.instance_id == instance_id,
                    ProcessTaskModel.node_id == node_id,
                    ProcessTaskModel.status.in_(list(OPEN_TASK_STATUSES)),
                ),
            )
            .order_by(ProcessTaskModel.created_at)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_open_by_assignee(self, user_ids: Iterable[str]) -> dict[str, int]:
        """Count open tasks per assignee, with zero for users without any."""
        counts = dict.fromkeys(user_ids, 0)
        if not counts:
            return counts
        stmt = (
            select(ProcessTaskModel.assignee_id, func.count())
            .where(
                and_(
                    ProcessTaskModel.assignee_id.in_(list(counts)),
                    ProcessTaskModel.status.in_(list(OPEN_TASK_STATUSES)),
                ),
            )
            .group_by(ProcessTaskModel.assignee_id)
        )
        result = await self.session.execute(stmt)
        for assignee_id, count in result.all():
            counts[assignee_id] = count
        return counts

    async def find_claimable_or_assigned(
        self,
        user_id: str,
        statuses: Collection[TaskStatus],
    ) -> Sequence[ProcessTaskModel]:
        """Find tasks assigned to a user or not assigned at all.

        Candidate filtering happens on the returned rows, as candidate sets are
        stored as JSON arrays.
        """
        stmt = (
            select(ProcessTaskModel)
            .where(
                and_(
                    ProcessTaskModel.status.in_(list(statuses)),
                    or_(ProcessTaskModel.assignee_id == user_id, ProcessTaskModel.assignee_id.is_(None)),
                ),
            )
            .order_by(ProcessTaskModel.priority.desc(), ProcessTaskModel.created_at)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_overdue(self, now: datetime) -> Sequence[ProcessTaskModel]:
        """Find open tasks past their due date that are not flagged yet."""
        stmt = (
            select(ProcessTaskModel)
            .where(
                and_(
                    ProcessTaskModel.status.in_(list(OPEN_TASK_STATUSES)),
                    ProcessTaskModel.overdue == False,  # noqa: E712
                    ProcessTaskModel.due_date.is_not(None),
                    ProcessTaskModel.due_date <= now,
                ),
            )
            .order_by(ProcessTaskModel.due_date)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()
