"""Exception hierarchy for litestar-bpm."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence
    from uuid import UUID

__all__ = (
    "BpmError",
    "DefinitionNotFoundError",
    "DefinitionNotPublishedError",
    "EngineFault",
    "ExpressionError",
    "GatewayNoMatchError",
    "HandlerFailure",
    "InstanceNotFoundError",
    "InvalidStateError",
    "InvalidTransitionError",
    "NodeExecutionError",
    "NodeNotFoundError",
    "NotFoundError",
    "ProcessValidationError",
    "ServiceTaskError",
    "TaskAlreadyCompletedError",
    "TaskNotFoundError",
    "UnauthorizedTaskError",
    "ValidationError",
)


class BpmError(Exception):
    """Base exception for all litestar-bpm errors.

    All exceptions raised by litestar-bpm inherit from this class, so callers
    can catch every engine error with a single except clause.
    """


class NotFoundError(BpmError):
    """Raised when a definition, instance, task or node does not exist."""


class DefinitionNotFoundError(NotFoundError):
    """Raised when a process definition is not found.

    Attributes:
        definition_id: The id of the definition that was not found.
        version: The specific version requested, if any.
    """

    def __init__(self, definition_id: str, version: int | None = None) -> None:
        """Initialize the exception with definition details.

        Args:
            definition_id: The id of the definition that was not found.
            version: The specific version requested, if any.
        """
        self.definition_id = definition_id
        self.version = version
        msg = f"Process definition '{definition_id}'"
        if version is not None:
            msg += f" version {version}"
        msg += " not found"
        super().__init__(msg)


class InstanceNotFoundError(NotFoundError):
    """Raised when a process instance is not found.

    Attributes:
        instance_id: The id of the instance that was not found.
    """

    def __init__(self, instance_id: str | UUID) -> None:
        """Initialize the exception with instance details.

        Args:
            instance_id: The id of the instance that was not found.
        """
        self.instance_id = instance_id
        super().__init__(f"Process instance '{instance_id}' not found")


class TaskNotFoundError(NotFoundError):
    """Raised when a task is not found.

    Attributes:
        task_id: The id of the task that was not found.
    """

    def __init__(self, task_id: str | UUID) -> None:
        """Initialize the exception with task details.

        Args:
            task_id: The id of the task that was not found.
        """
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' not found")


class NodeNotFoundError(NotFoundError):
    """Raised when a node id does not exist in a process graph.

    Attributes:
        node_id: The missing node id.
        definition_id: The definition that was searched.
    """

    def __init__(self, node_id: str, definition_id: str | None = None) -> None:
        """Initialize the exception with node details.

        Args:
            node_id: The missing node id.
            definition_id: The definition that was searched.
        """
        self.node_id = node_id
        self.definition_id = definition_id
        msg = f"Node '{node_id}' not found"
        if definition_id:
            msg += f" in definition '{definition_id}'"
        super().__init__(msg)


class InvalidStateError(BpmError):
    """Raised when an operation is illegal for the current status of its target.

    Attributes:
        current_status: The status that blocked the operation, if known.
    """

    def __init__(self, message: str, current_status: str | None = None) -> None:
        """Initialize the exception.

        Args:
            message: Description of the rejected operation.
            current_status: The status that blocked the operation, if known.
        """
        self.current_status = current_status
        super().__init__(message)


class InvalidTransitionError(InvalidStateError):
    """Raised when an instance status transition is not allowed.

    Attributes:
        instance_id: The instance whose transition was rejected.
        from_status: The status the instance is in.
        to_status: The requested target status.
    """

    def __init__(self, instance_id: str | UUID, from_status: str, to_status: str) -> None:
        """Initialize the exception with transition details.

        Args:
            instance_id: The instance whose transition was rejected.
            from_status: The status the instance is in.
            to_status: The requested target status.
        """
        self.instance_id = instance_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot move process instance '{instance_id}' from '{from_status}' to '{to_status}'",
            current_status=from_status,
        )


class TaskAlreadyCompletedError(InvalidStateError):
    """Raised when trying to complete a task that is already completed.

    Attributes:
        task_id: The id of the completed task.
    """

    def __init__(self, task_id: str | UUID) -> None:
        """Initialize the exception with task details.

        Args:
            task_id: The id of the completed task.
        """
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' is already completed", current_status="completed")


class DefinitionNotPublishedError(InvalidStateError):
    """Raised when starting an instance of a definition with no published version.

    Attributes:
        definition_id: The id of the unpublished definition.
    """

    def __init__(self, definition_id: str, status: str | None = None) -> None:
        """Initialize the exception.

        Args:
            definition_id: The id of the unpublished definition.
            status: Status of the latest version, if known.
        """
        self.definition_id = definition_id
        super().__init__(f"Process definition '{definition_id}' is not published", current_status=status)


class UnauthorizedTaskError(BpmError):
    """Raised when a principal may not act on a task.

    Attributes:
        task_id: The id of the task.
        user_id: The principal that attempted the action.
        action: The attempted action.
    """

    def __init__(self, task_id: str | UUID, user_id: str, action: str = "act on") -> None:
        """Initialize the exception with authorization details.

        Args:
            task_id: The id of the task.
            user_id: The principal that attempted the action.
            action: The attempted action.
        """
        self.task_id = task_id
        self.user_id = user_id
        self.action = action
        super().__init__(f"User '{user_id}' is not authorized to {action} task '{task_id}'")


class ValidationError(BpmError):
    """Raised for malformed definitions or condition expressions."""


class ProcessValidationError(ValidationError):
    """Raised when a process definition graph fails validation.

    Attributes:
        errors: List of validation error messages.
    """

    def __init__(self, message: str, errors: Sequence[str] | None = None) -> None:
        """Initialize the exception with validation details.

        Args:
            message: Summary of the validation failure.
            errors: Detailed validation error messages.
        """
        self.errors = list(errors or [])
        if self.errors:
            message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(message)


class ExpressionError(ValidationError):
    """Raised when a condition expression cannot be parsed or uses forbidden syntax.

    Attributes:
        expression: The offending expression.
    """

    def __init__(self, expression: str, reason: str) -> None:
        """Initialize the exception.

        Args:
            expression: The offending expression.
            reason: Why the expression was rejected.
        """
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid expression '{expression}': {reason}")


class HandlerFailure(BpmError):
    """Raised when a service or script task handler fails."""


class ServiceTaskError(HandlerFailure):
    """Raised by node handlers when the invoked service fails.

    Attributes:
        service_type: The service type of the failing handler.
        node_id: The node being executed, when known.
    """

    def __init__(self, service_type: str, message: str, node_id: str | None = None) -> None:
        """Initialize the exception.

        Args:
            service_type: The service type of the failing handler.
            message: Description of the failure.
            node_id: The node being executed, when known.
        """
        self.service_type = service_type
        self.node_id = node_id
        super().__init__(f"{service_type} service failed: {message}")


class EngineFault(BpmError):
    """Raised for unexpected failures while walking a process graph."""


class GatewayNoMatchError(EngineFault):
    """Raised when a gateway has no outgoing edge to follow.

    Attributes:
        node_id: The gateway node id.
        gateway_type: The type of gateway.
    """

    def __init__(self, node_id: str, gateway_type: str) -> None:
        """Initialize the exception.

        Args:
            node_id: The gateway node id.
            gateway_type: The type of gateway.
        """
        self.node_id = node_id
        self.gateway_type = gateway_type
        super().__init__(f"No outgoing edge of {gateway_type} '{node_id}' matched the current variables")


class NodeExecutionError(EngineFault):
    """Raised when a node fails to execute during a walk.

    This wraps the underlying exception, providing context about which node failed.

    Attributes:
        node_id: The id of the node that failed.
        cause: The underlying exception.
        entry: Execution path entry describing the failure, if one was built.
    """

    def __init__(self, node_id: str, cause: BaseException, entry: Any = None) -> None:
        """Initialize the exception with node execution details.

        Args:
            node_id: The id of the node that failed.
            cause: The underlying exception.
            entry: Execution path entry describing the failure.
        """
        self.node_id = node_id
        self.cause = cause
        self.entry = entry
        super().__init__(f"Node '{node_id}' failed: {cause}")
