"""Execution context passed through one walk of a process graph.

The context is rehydrated from the stored instance whenever a walk starts and is
never persisted on its own. Parallel branches each work on an isolated copy
obtained through :meth:`ExecutionContext.branch`.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from litestar_bpm.core.models import ExecutionPathEntry

if TYPE_CHECKING:
    from uuid import UUID

    from litestar_bpm.core.definition import Node
    from litestar_bpm.core.models import ProcessInstance
    from litestar_bpm.engine.graph import ProcessGraph

__all__ = ["ExecutionContext"]


@dataclass
class ExecutionContext:
    """Mutable working state of a walk.

    Attributes:
        instance: The instance as loaded when the walk started.
        graph: Graph of the pinned definition version.
        variables: Working copy of the process variables.
        execution_path: Local copy of the ledger, extended as nodes commit.
        branch_closed: Set once the branch gave up its active-branch count,
            which an end node does while holding the instance lock.

    Example:
        >>> context = ExecutionContext.from_instance(instance, graph)
        >>> context.set("approved", True)
        >>> context.changed_variables()
        {'approved': True}
    """

    instance: ProcessInstance
    graph: ProcessGraph
    variables: dict[str, Any]
    execution_path: list[ExecutionPathEntry] = field(default_factory=list)
    branch_closed: bool = False
    _baseline: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_instance(cls, instance: ProcessInstance, graph: ProcessGraph) -> ExecutionContext:
        """Build a context from a stored instance.

        Args:
            instance: The stored instance.
            graph: Graph of the instance's pinned definition version.

        Returns:
            A context whose variables and path are copies of the instance's.
        """
        variables = copy.deepcopy(instance.variables)
        return cls(
            instance=instance,
            graph=graph,
            variables=variables,
            execution_path=list(instance.execution_path),
            _baseline=copy.deepcopy(variables),
        )

    @property
    def instance_id(self) -> UUID:
        """Id of the instance being walked."""
        return self.instance.id

    def get(self, key: str, default: Any = None) -> Any:
        """Get a variable.

        Args:
            key: Variable name.
            default: Value returned when the variable is missing.

        Returns:
            The variable value or ``default``.
        """
        return self.variables.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a variable.

        Args:
            key: Variable name.
            value: New value.
        """
        self.variables[key] = value

    def snapshot(self) -> dict[str, Any]:
        """Return a deep copy of the current variables."""
        return copy.deepcopy(self.variables)

    def enter(self, node: Node) -> ExecutionPathEntry:
        """Create the ledger entry for a node being entered.

        The entry is not part of the path until the walk commits it.

        Args:
            node: The node being entered.

        Returns:
            A fresh entry stamped with the entry time and a variable snapshot.
        """
        return ExecutionPathEntry(
            node_id=node.id,
            node_name=node.label,
            node_type=node.type_name,
            timestamp=datetime.now(timezone.utc),
            variables_snapshot=self.snapshot(),
        )

    def branch(self) -> ExecutionContext:
        """Return an isolated copy for a concurrent branch.

        Variables, path and change baseline are copied so writes made by one
        branch never reach the working copy of a sibling. Only the keys a
        branch changes are merged into the stored instance.
        """
        return ExecutionContext(
            instance=self.instance,
            graph=self.graph,
            variables=copy.deepcopy(self.variables),
            execution_path=list(self.execution_path),
            _baseline=copy.deepcopy(self._baseline),
        )

    def changed_variables(self) -> dict[str, Any]:
        """Variables created or modified since the last commit."""
        return {
            key: copy.deepcopy(value)
            for key, value in self.variables.items()
            if key not in self._baseline or self._baseline[key] != value
        }

    def committed(self, entry: ExecutionPathEntry) -> None:
        """Record that an entry and the current changes were persisted.

        Args:
            entry: The entry appended to the stored ledger.
        """
        self.execution_path.append(entry)
        self._baseline = copy.deepcopy(self.variables)
