"""Core domain module for litestar-bpm.

This module exports the building blocks shared by the engine and the
persistence adapters: types, definitions, runtime records, the execution
context, expressions, events and ports.
"""

from __future__ import annotations

from litestar_bpm.core.context import ExecutionContext
from litestar_bpm.core.definition import (
    Edge,
    EndNode,
    ExclusiveGatewayNode,
    GatewayNode,
    InclusiveGatewayNode,
    Node,
    ParallelGatewayNode,
    ProcessDefinition,
    ScriptTaskNode,
    ServiceTaskConfig,
    ServiceTaskNode,
    StartNode,
    UnknownNode,
    UserTaskNode,
    parse_node,
)
from litestar_bpm.core.events import (
    InstanceCompleted,
    InstanceFailed,
    InstanceResumed,
    InstanceStarted,
    InstanceSuspended,
    InstanceTerminated,
    ProcessEvent,
    TaskAssigned,
    TaskCancelled,
    TaskClaimed,
    TaskCompleted,
    TaskCreated,
    TaskDelegated,
    TaskEvent,
    TaskOverdue,
    TaskReassigned,
    TaskTransferred,
)
from litestar_bpm.core.expressions import ExpressionEvaluator, render_template, render_value
from litestar_bpm.core.models import ExecutionPathEntry, ProcessInstance, ProcessTask, TaskHistoryEntry
from litestar_bpm.core.protocols import (
    DefinitionStore,
    GroupDirectory,
    InstanceRepository,
    NodeHandler,
    NotificationPort,
    TaskRepository,
)
from litestar_bpm.core.types import (
    DefinitionStatus,
    ErrorHandling,
    InstanceStatus,
    NodeType,
    ServiceType,
    TaskStatus,
    TaskSubStatus,
)

__all__ = [
    "DefinitionStatus",
    "DefinitionStore",
    "Edge",
    "EndNode",
    "ErrorHandling",
    "ExclusiveGatewayNode",
    "ExecutionContext",
    "ExecutionPathEntry",
    "ExpressionEvaluator",
    "GatewayNode",
    "GroupDirectory",
    "InclusiveGatewayNode",
    "InstanceCompleted",
    "InstanceFailed",
    "InstanceRepository",
    "InstanceResumed",
    "InstanceStarted",
    "InstanceStatus",
    "InstanceSuspended",
    "InstanceTerminated",
    "Node",
    "NodeHandler",
    "NodeType",
    "NotificationPort",
    "ParallelGatewayNode",
    "ProcessDefinition",
    "ProcessEvent",
    "ProcessInstance",
    "ProcessTask",
    "ScriptTaskNode",
    "ServiceTaskConfig",
    "ServiceTaskNode",
    "ServiceType",
    "StartNode",
    "TaskAssigned",
    "TaskCancelled",
    "TaskClaimed",
    "TaskCompleted",
    "TaskCreated",
    "TaskDelegated",
    "TaskEvent",
    "TaskHistoryEntry",
    "TaskOverdue",
    "TaskReassigned",
    "TaskRepository",
    "TaskStatus",
    "TaskSubStatus",
    "TaskTransferred",
    "UnknownNode",
    "UserTaskNode",
    "parse_node",
    "render_template",
    "render_value",
]
