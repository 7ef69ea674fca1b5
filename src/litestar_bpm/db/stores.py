"""SQLAlchemy adapters for the engine's persistence ports.

Each store opens one session per call from an ``async_sessionmaker`` and runs
the call in a single transaction, so partial updates are atomic. Records are
converted to the domain dataclasses before the transaction ends.

Example:
    >>> engine = create_async_engine("postgresql+asyncpg://...")
    >>> sessions = async_sessionmaker(engine, expire_on_commit=False)
    >>> process_engine = ProcessEngine(
    ...     SQLAlchemyDefinitionStore(sessions),
    ...     SQLAlchemyInstanceRepository(sessions),
    ...     SQLAlchemyTaskRepository(sessions),
    ... )
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from litestar_bpm.core.definition import ProcessDefinition
from litestar_bpm.core.models import ExecutionPathEntry, ProcessInstance, ProcessTask, TaskHistoryEntry
from litestar_bpm.core.types import DefinitionStatus, InstanceStatus, TaskStatus
from litestar_bpm.db.models import ProcessDefinitionModel, ProcessInstanceModel, ProcessTaskModel
from litestar_bpm.db.repositories import (
    ProcessDefinitionRepository,
    ProcessInstanceRepository,
    ProcessTaskRepository,
)
from litestar_bpm.engine.registry import coerce_definition, validate_definition
from litestar_bpm.exceptions import (
    DefinitionNotFoundError,
    InstanceNotFoundError,
    InvalidStateError,
    TaskNotFoundError,
)

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable, Sequence
    from datetime import datetime
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

__all__ = [
    "SQLAlchemyDefinitionStore",
    "SQLAlchemyInstanceRepository",
    "SQLAlchemyTaskRepository",
]

logger = logging.getLogger(__name__)


def _json_safe(value: Any) -> Any:
    """Return a JSON-compatible copy; unknown types are stored as strings."""
    return json.loads(json.dumps(value, default=str))


# Definitions


def _to_definition(model: ProcessDefinitionModel) -> ProcessDefinition:
    return ProcessDefinition.from_dict(
        {
            "id": model.definition_key,
            "name": model.name,
            "version": model.version,
            "status": model.status,
            "description": model.description,
            "graph": model.graph,
        },
    )


class SQLAlchemyDefinitionStore:
    """Database-backed :class:`~litestar_bpm.core.protocols.DefinitionStore` with versioning."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def register(self, definition: ProcessDefinition | Mapping[str, Any]) -> ProcessDefinition:
        """Validate and store a new DRAFT version of a definition.

        Raises:
            ProcessValidationError: If the definition is invalid.
        """
        definition = coerce_definition(definition)
        validate_definition(definition)
        async with self._session_maker.begin() as session:
            repo = ProcessDefinitionRepository(session=session)
            model = await repo.add(
                ProcessDefinitionModel(
                    definition_key=definition.id,
                    version=await repo.next_version(definition.id),
                    name=definition.name,
                    description=definition.description,
                    status=DefinitionStatus.DRAFT,
                    graph=_json_safe(definition.graph_dict()),
                ),
            )
            stored = _to_definition(model)
        logger.info("Registered process definition %s v%d", stored.id, stored.version)
        return stored

    async def publish(self, definition_id: str, version: int | None = None) -> ProcessDefinition:
        """Publish a version, the latest one by default.

        Raises:
            DefinitionNotFoundError: If the version does not exist.
            InvalidStateError: If the version is archived.
        """
        async with self._session_maker.begin() as session:
            model = await self._require(session, definition_id, version)
            if model.status == DefinitionStatus.ARCHIVED:
                msg = f"Process definition '{definition_id}' v{model.version} is archived"
                raise InvalidStateError(msg, current_status=model.status)
            model.status = DefinitionStatus.PUBLISHED
            await session.flush()
            return _to_definition(model)

    async def archive(self, definition_id: str, version: int | None = None) -> ProcessDefinition:
        """Archive a version so that no new instances start from it.

        Raises:
            DefinitionNotFoundError: If the version does not exist.
        """
        async with self._session_maker.begin() as session:
            model = await self._require(session, definition_id, version)
            model.status = DefinitionStatus.ARCHIVED
            await session.flush()
            return _to_definition(model)

    async def list_definitions(self, status: DefinitionStatus | None = None) -> list[ProcessDefinition]:
        """Return every stored version, ordered by id and version."""
        async with self._session_maker() as session:
            models = await ProcessDefinitionRepository(session=session).list_versions(status)
            return [_to_definition(model) for model in models]

    async def get_published_definition(self, definition_id: str) -> ProcessDefinition | None:
        async with self._session_maker() as session:
            model = await ProcessDefinitionRepository(session=session).get_version(
                definition_id,
                status=DefinitionStatus.PUBLISHED,
            )
            return _to_definition(model) if model is not None else None

    async def get_definition(self, definition_id: str, version: int | None = None) -> ProcessDefinition | None:
        async with self._session_maker() as session:
            model = await ProcessDefinitionRepository(session=session).get_version(definition_id, version)
            return _to_definition(model) if model is not None else None

    @staticmethod
    async def _require(session: AsyncSession, definition_id: str, version: int | None) -> ProcessDefinitionModel:
        model = await ProcessDefinitionRepository(session=session).get_version(definition_id, version)
        if model is None:
            raise DefinitionNotFoundError(definition_id, version)
        return model


# Instances


def _instance_columns(changes: Mapping[str, Any]) -> dict[str, Any]:
    columns: dict[str, Any] = {}
    for key, value in changes.items():
        if key == "id":
            continue
        if key == "definition_id":
            columns["definition_key"] = value
        elif key == "execution_path":
            columns[key] = _json_safe([entry.to_dict() for entry in value])
        elif key == "variables":
            columns[key] = _json_safe(value)
        else:
            columns[key] = value
    return columns


def _to_instance(model: ProcessInstanceModel) -> ProcessInstance:
    return ProcessInstance(
        id=model.id,
        definition_id=model.definition_key,
        definition_version=model.definition_version,
        status=InstanceStatus(model.status),
        variables=dict(model.variables or {}),
        execution_path=[ExecutionPathEntry.from_dict(entry) for entry in model.execution_path or []],
        current_node_id=model.current_node_id,
        business_key=model.business_key,
        started_by=model.started_by,
        priority=model.priority,
        start_time=model.start_time,
        end_time=model.end_time,
        duration_ms=model.duration_ms,
        error_message=model.error_message,
        error_stack=model.error_stack,
    )


class SQLAlchemyInstanceRepository:
    """Database-backed :class:`~litestar_bpm.core.protocols.InstanceRepository`."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def add(self, instance: ProcessInstance) -> ProcessInstance:
        columns = _instance_columns(
            {
                "definition_id": instance.definition_id,
                "definition_version": instance.definition_version,
                "status": instance.status,
                "variables": instance.variables,
                "execution_path": instance.execution_path,
                "current_node_id": instance.current_node_id,
                "business_key": instance.business_key,
                "started_by": instance.started_by,
                "priority": instance.priority,
                "start_time": instance.start_time,
                "end_time": instance.end_time,
                "duration_ms": instance.duration_ms,
                "error_message": instance.error_message,
                "error_stack": instance.error_stack,
            },
        )
        async with self._session_maker.begin() as session:
            model = await ProcessInstanceRepository(session=session).add(ProcessInstanceModel(id=instance.id, **columns))
            return _to_instance(model)

    async def get(self, instance_id: UUID) -> ProcessInstance | None:
        async with self._session_maker() as session:
            model = await ProcessInstanceRepository(session=session).get_one_or_none(id=instance_id)
            return _to_instance(model) if model is not None else None

    async def update(self, instance_id: UUID, changes: Mapping[str, Any]) -> ProcessInstance:
        async with self._session_maker.begin() as session:
            model = await ProcessInstanceRepository(session=session).get_for_update(instance_id)
            if model is None:
                raise InstanceNotFoundError(instance_id)
            for column, value in _instance_columns(changes).items():
                setattr(model, column, value)
            await session.flush()
            return _to_instance(model)

    async def list_by_business_key(self, business_key: str) -> Sequence[ProcessInstance]:
        async with self._session_maker() as session:
            models = await ProcessInstanceRepository(session=session).find_by_business_key(business_key)
            return [_to_instance(model) for model in models]


# Tasks

_TASK_JSON_FIELDS = frozenset(
    {"candidate_user_ids", "candidate_group_ids", "form_data", "task_variables", "completion_variables",
     "execution_context"},
)


def _task_columns(changes: Mapping[str, Any]) -> dict[str, Any]:
    columns: dict[str, Any] = {}
    for key, value in changes.items():
        if key == "id":
            continue
        if key == "history":
            columns[key] = _json_safe([entry.to_dict() for entry in value])
        elif key in _TASK_JSON_FIELDS:
            columns[key] = _json_safe(value)
        else:
            columns[key] = value
    return columns


def _to_task(model: ProcessTaskModel) -> ProcessTask:
    return ProcessTask(
        id=model.id,
        instance_id=model.instance_id,
        node_id=model.node_id,
        node_name=model.node_name,
        status=TaskStatus(model.status),
        sub_status=model.sub_status,
        assignee_id=model.assignee_id,
        candidate_user_ids=list(model.candidate_user_ids or []),
        candidate_group_ids=list(model.candidate_group_ids or []),
        description=model.description,
        form_key=model.form_key,
        form_data=dict(model.form_data or {}),
        task_variables=dict(model.task_variables or {}),
        completion_variables=dict(model.completion_variables or {}),
        priority=model.priority,
        due_date=model.due_date,
        overdue=model.overdue,
        created_at=model.created_at,
        started_at=model.started_at,
        completed_at=model.completed_at,
        duration_ms=model.duration_ms,
        completed_by=model.completed_by,
        completion_comment=model.completion_comment,
        execution_context=dict(model.execution_context or {}),
        history=[TaskHistoryEntry.from_dict(entry) for entry in model.history or []],
        suspended_from=TaskStatus(model.suspended_from) if model.suspended_from else None,
        error_message=model.error_message,
        retry_count=model.retry_count,
        max_retries=model.max_retries,
    )


class SQLAlchemyTaskRepository:
    """Database-backed :class:`~litestar_bpm.core.protocols.TaskRepository`."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def add(self, task: ProcessTask) -> ProcessTask:
        columns = _task_columns(
            {
                name: getattr(task, name)
                for name in ProcessTask.__dataclass_fields__
                if name != "id"
            },
        )
        async with self._session_maker.begin() as session:
            model = await ProcessTaskRepository(session=session).add(ProcessTaskModel(id=task.id, **columns))
            return _to_task(model)

    async def get(self, task_id: UUID) -> ProcessTask | None:
        async with self._session_maker() as session:
            model = await ProcessTaskRepository(session=session).get_one_or_none(id=task_id)
            return _to_task(model) if model is not None else None

    async def update(self, task_id: UUID, changes: Mapping[str, Any]) -> ProcessTask:
        async with self._session_maker.begin() as session:
            model = await ProcessTaskRepository(session=session).get_for_update(task_id)
            if model is None:
                raise TaskNotFoundError(task_id)
            for column, value in _task_columns(changes).items():
                setattr(model, column, value)
            await session.flush()
            return _to_task(model)

    async def list_by_instance(
        self,
        instance_id: UUID,
        statuses: Collection[TaskStatus] | None = None,
    ) -> Sequence[ProcessTask]:
        async with self._session_maker() as session:
            models = await ProcessTaskRepository(session=session).find_by_instance(instance_id, statuses)
            return [_to_task(model) for model in models]

    async def find_open_for_node(self, instance_id: UUID, node_id: str) -> ProcessTask | None:
        async with self._session_maker() as session:
            model = await ProcessTaskRepository(session=session).find_open_for_node(instance_id, node_id)
            return _to_task(model) if model is not None else None

    async def count_open_by_assignee(self, user_ids: Iterable[str]) -> dict[str, int]:
        async with self._session_maker() as session:
            return await ProcessTaskRepository(session=session).count_open_by_assignee(user_ids)

    async def list_for_user(
        self,
        user_id: str,
        group_ids: Collection[str],
        statuses: Collection[TaskStatus],
    ) -> Sequence[ProcessTask]:
        groups = set(group_ids)
        async with self._session_maker() as session:
            models = await ProcessTaskRepository(session=session).find_claimable_or_assigned(user_id, statuses)
            tasks = [_to_task(model) for model in models]
        return [
            task
            for task in tasks
            if task.assignee_id == user_id
            or user_id in task.candidate_user_ids
            or groups.intersection(task.candidate_group_ids)
            or task.is_open_to_anyone
        ]

    async def list_overdue(self, now: datetime) -> Sequence[ProcessTask]:
        async with self._session_maker() as session:
            models = await ProcessTaskRepository(session=session).find_overdue(now)
            return [_to_task(model) for model in models]
