"""Core type definitions for litestar-bpm.

This module defines the enums and type aliases shared by the process model,
the engine and the persistence layer.
"""

from __future__ import annotations

import sys
from enum import Enum
from typing import Any, TypeAlias

# StrEnum backport for Python < 3.11
if sys.version_info >= (3, 11):
    from enum import StrEnum
else:

    class StrEnum(str, Enum):
        """String enumeration compatibility for Python < 3.11."""

        def __str__(self) -> str:
            return str(self.value)


__all__ = [
    "OPEN_TASK_STATUSES",
    "TERMINAL_INSTANCE_STATUSES",
    "TERMINAL_TASK_STATUSES",
    "DefinitionStatus",
    "ErrorHandling",
    "GATEWAY_TYPES",
    "InstanceStatus",
    "NodeType",
    "ServiceType",
    "TaskStatus",
    "TaskSubStatus",
    "Variables",
]


class InstanceStatus(StrEnum):
    """Lifecycle status of a process instance.

    Attributes:
        RUNNING: The instance is being walked or waits on open tasks.
        WAITING: Reserved hold state; accepted by the transition table.
        SUSPENDED: Paused on request, resumable.
        COMPLETED: An end node was reached. Terminal.
        TERMINATED: Stopped on request. Terminal.
        ERROR: A node failed; recoverable through retry.
    """

    RUNNING = "running"
    WAITING = "waiting"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    TERMINATED = "terminated"
    ERROR = "error"


class TaskStatus(StrEnum):
    """Lifecycle status of a user task.

    Attributes:
        PENDING: Created and not yet claimed or assigned.
        IN_PROGRESS: Claimed by or assigned to a principal.
        WAITING: Held because the owning instance is suspended.
        COMPLETED: Completed by a principal. Terminal.
        SKIPPED: Skipped. Terminal.
        CANCELLED: Cancelled directly or through instance termination. Terminal.
        TIMEOUT: Timed out. Terminal.
        ERROR: Failed. Terminal.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    ERROR = "error"


class TaskSubStatus(StrEnum):
    """Finer-grained marker layered on an IN_PROGRESS task."""

    TRANSFERRED = "transferred"
    DELEGATED = "delegated"


class DefinitionStatus(StrEnum):
    """Publication state of a process definition version."""

    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class NodeType(StrEnum):
    """Node types understood by the dispatcher.

    Values match the wire format of process definition graphs.
    """

    START = "start"
    END = "end"
    USER_TASK = "userTask"
    SERVICE_TASK = "serviceTask"
    SCRIPT_TASK = "scriptTask"
    EXCLUSIVE_GATEWAY = "exclusiveGateway"
    PARALLEL_GATEWAY = "parallelGateway"
    INCLUSIVE_GATEWAY = "inclusiveGateway"


class ServiceType(StrEnum):
    """Built-in handler keys for service and script tasks."""

    HTTP = "http"
    EMAIL = "email"
    SCRIPT = "script"
    DATABASE = "database"
    CUSTOM = "custom"


class ErrorHandling(StrEnum):
    """What the dispatcher does when a handler fails.

    Attributes:
        IGNORE: Record the failure and continue the walk.
        RETRY: Retry with the engine backoff policy, then propagate.
        PROPAGATE: Move the instance to ERROR.
    """

    IGNORE = "ignore"
    RETRY = "retry"
    PROPAGATE = "propagate"


GATEWAY_TYPES = frozenset(
    {NodeType.EXCLUSIVE_GATEWAY, NodeType.PARALLEL_GATEWAY, NodeType.INCLUSIVE_GATEWAY},
)
"""Node types that select successors through the gateway evaluator."""

TERMINAL_INSTANCE_STATUSES = frozenset({InstanceStatus.COMPLETED, InstanceStatus.TERMINATED})
"""Instance statuses that can never be left."""

OPEN_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.WAITING})
"""Task statuses that still expect a human action."""

TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.SKIPPED, TaskStatus.CANCELLED, TaskStatus.TIMEOUT, TaskStatus.ERROR},
)
"""Task statuses that can never be left."""

# Type aliases for process data
Variables: TypeAlias = dict[str, Any]
"""Type alias for process-scoped variables."""
