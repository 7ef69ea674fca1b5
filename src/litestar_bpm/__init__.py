"""Litestar BPM - graph-based process engine for Litestar.

This package executes declarative process definitions: graphs of start, end,
user task, service task and gateway nodes. Instances are walked in the
background, human work is tracked as tasks with candidate users and groups, and
instances can be suspended, resumed, retried and terminated.

Key Features:
    - Exclusive, parallel and inclusive gateways with sandboxed conditions
    - User tasks with claim, delegate, reassign, transfer and auto-assignment
    - Pluggable service handlers (http, email, script, database, custom)
    - Per-instance serialization of concurrent walks and task actions
    - In-memory and SQLAlchemy persistence
    - Litestar plugin with dependency injection

Example:
    >>> from litestar_bpm import DefinitionRegistry, ProcessEngine
    >>>
    >>> registry = DefinitionRegistry()
    >>> registry.register(
    ...     {
    ...         "id": "approval",
    ...         "name": "Approval",
    ...         "nodes": [
    ...             {"id": "start", "type": "start"},
    ...             {"id": "review", "type": "userTask", "config": {"candidateGroups": ["managers"]}},
    ...             {"id": "end", "type": "end"},
    ...         ],
    ...         "edges": [{"source": "start", "target": "review"}, {"source": "review", "target": "end"}],
    ...     }
    ... )
    >>> registry.publish("approval")
    >>> engine = ProcessEngine(registry)
    >>> instance = await engine.start_instance("approval", {"amount": 120}, started_by="alice")
"""

from __future__ import annotations

from litestar_bpm.__metadata__ import __project__, __version__
from litestar_bpm.config import EngineConfig, RetryPolicy
from litestar_bpm.core.definition import Edge, ProcessDefinition
from litestar_bpm.core.models import ExecutionPathEntry, ProcessInstance, ProcessTask
from litestar_bpm.core.types import InstanceStatus, NodeType, TaskStatus
from litestar_bpm.engine.handlers import HandlerRegistry
from litestar_bpm.engine.memory import StaticGroupDirectory
from litestar_bpm.engine.orchestrator import ProcessEngine
from litestar_bpm.engine.registry import DefinitionRegistry
from litestar_bpm.exceptions import (
    BpmError,
    DefinitionNotFoundError,
    DefinitionNotPublishedError,
    EngineFault,
    ExpressionError,
    GatewayNoMatchError,
    HandlerFailure,
    InstanceNotFoundError,
    InvalidStateError,
    InvalidTransitionError,
    NodeExecutionError,
    NodeNotFoundError,
    NotFoundError,
    ProcessValidationError,
    ServiceTaskError,
    TaskAlreadyCompletedError,
    TaskNotFoundError,
    UnauthorizedTaskError,
    ValidationError,
)
from litestar_bpm.plugin import BPMPlugin, BPMPluginConfig

__all__ = (
    "BPMPlugin",
    "BPMPluginConfig",
    "BpmError",
    "DefinitionNotFoundError",
    "DefinitionNotPublishedError",
    "DefinitionRegistry",
    "Edge",
    "EngineConfig",
    "EngineFault",
    "ExecutionPathEntry",
    "ExpressionError",
    "GatewayNoMatchError",
    "HandlerFailure",
    "HandlerRegistry",
    "InstanceNotFoundError",
    "InstanceStatus",
    "InvalidStateError",
    "InvalidTransitionError",
    "NodeExecutionError",
    "NodeNotFoundError",
    "NodeType",
    "NotFoundError",
    "ProcessDefinition",
    "ProcessEngine",
    "ProcessInstance",
    "ProcessTask",
    "ProcessValidationError",
    "RetryPolicy",
    "ServiceTaskError",
    "StaticGroupDirectory",
    "TaskAlreadyCompletedError",
    "TaskNotFoundError",
    "TaskStatus",
    "UnauthorizedTaskError",
    "ValidationError",
    "__project__",
    "__version__",
)
