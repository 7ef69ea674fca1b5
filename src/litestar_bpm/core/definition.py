"""Process definition, node variants and edges.

A process definition is an immutable graph of typed nodes connected by directed
edges. Nodes form a tagged union keyed by ``type``: each variant carries only
the configuration its dispatcher consumes. Definitions arrive in the wire
format used by process designers::

    {
        "id": "expense",
        "name": "Expense approval",
        "nodes": [{"id": "start", "type": "start"}, ...],
        "edges": [{"source": "start", "target": "review", "condition": "amount > 0"}],
    }
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any, ClassVar

from litestar_bpm.core.expressions import compile_expression
from litestar_bpm.core.types import DefinitionStatus, ErrorHandling, NodeType, ServiceType
from litestar_bpm.exceptions import ExpressionError, ProcessValidationError

__all__ = [
    "Edge",
    "EndNode",
    "ExclusiveGatewayNode",
    "GatewayNode",
    "InclusiveGatewayNode",
    "Node",
    "ParallelGatewayNode",
    "ProcessDefinition",
    "ScriptTaskNode",
    "ServiceTaskConfig",
    "ServiceTaskNode",
    "StartNode",
    "UnknownNode",
    "UserTaskNode",
    "parse_node",
]

# Keys consumed by ServiceTaskConfig itself; everything else is handler options.
_SERVICE_KEYS = frozenset(
    {"serviceType", "service_type", "errorHandling", "error_handling", "retryCount", "retry_count",
     "resultVariable", "result_variable"},
)


def _pick(config: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present key, accepting camelCase and snake_case spellings."""
    for key in keys:
        if key in config and config[key] is not None:
            return config[key]
    return default


@dataclass(frozen=True)
class Node:
    """Base class of all node variants.

    Attributes:
        id: Unique node id within the definition.
        name: Display name, defaults to the id.
    """

    type: ClassVar[str]

    id: str
    name: str = ""

    @property
    def label(self) -> str:
        """Name for display and ledger entries."""
        return self.name or self.id

    @property
    def type_name(self) -> str:
        """Type string as written in the definition."""
        return str(self.type)

    def config_dict(self) -> dict[str, Any]:
        """Return the node configuration in wire format."""
        return {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize the node to its wire format."""
        data: dict[str, Any] = {"id": self.id, "type": self.type_name, "name": self.name}
        config = self.config_dict()
        if config:
            data["config"] = config
        return data


@dataclass(frozen=True)
class StartNode(Node):
    """The single entry point of a process."""

    type: ClassVar[str] = NodeType.START


@dataclass(frozen=True)
class EndNode(Node):
    """Completes the owning instance when reached."""

    type: ClassVar[str] = NodeType.END


@dataclass(frozen=True)
class UserTaskNode(Node):
    """Creates a task for a human actor and waits for its completion.

    Attributes:
        description: Task description, may contain ``${...}`` placeholders.
        form_key: Identifier of the form a UI should render.
        form_data: Initial form data.
        variables: Task-local variables copied onto the task.
        candidate_users: User ids allowed to act on the task.
        candidate_groups: Group ids whose members may act on the task.
        priority: Task priority 0-100, defaults to the instance priority.
        due_date: ISO-8601 due date, may contain placeholders.
    """

    type: ClassVar[str] = NodeType.USER_TASK

    description: str | None = None
    form_key: str | None = None
    form_data: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    candidate_users: tuple[str, ...] = ()
    candidate_groups: tuple[str, ...] = ()
    priority: int | None = None
    due_date: str | None = None

    def config_dict(self) -> dict[str, Any]:
        config: dict[str, Any] = {
            "description": self.description,
            "formKey": self.form_key,
            "formData": dict(self.form_data),
            "variables": dict(self.variables),
            "candidateUsers": list(self.candidate_users),
            "candidateGroups": list(self.candidate_groups),
            "priority": self.priority,
            "dueDate": self.due_date,
        }
        return {key: value for key, value in config.items() if value not in (None, [], {})}


@dataclass(frozen=True)
class ServiceTaskConfig:
    """Configuration shared by service and script tasks.

    Attributes:
        service_type: Handler key in the handler registry.
        error_handling: What to do when the handler fails.
        retry_count: Additional attempts when ``error_handling`` is ``retry``.
        result_variable: Variable that receives the handler result.
        options: Handler-specific settings such as ``url`` or ``query``.
    """

    service_type: str | None = None
    error_handling: ErrorHandling = ErrorHandling.PROPAGATE
    retry_count: int = 0
    result_variable: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, config: Mapping[str, Any], *, default_service: str | None = None) -> ServiceTaskConfig:
        """Build a config from a wire-format node config.

        Unrecognized ``errorHandling`` values fall back to propagation.

        Args:
            config: The node ``config`` mapping.
            default_service: Service type to use when none is given.

        Returns:
            The parsed configuration.
        """
        raw_policy = _pick(config, "errorHandling", "error_handling", default=ErrorHandling.PROPAGATE)
        try:
            policy = ErrorHandling(raw_policy)
        except ValueError:
            policy = ErrorHandling.PROPAGATE
        return cls(
            service_type=_pick(config, "serviceType", "service_type", default=default_service),
            error_handling=policy,
            retry_count=max(int(_pick(config, "retryCount", "retry_count", default=0)), 0),
            result_variable=_pick(config, "resultVariable", "result_variable"),
            options={key: value for key, value in config.items() if key not in _SERVICE_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to wire format."""
        data = dict(self.options)
        data.update(
            {
                "serviceType": self.service_type,
                "errorHandling": str(self.error_handling),
                "retryCount": self.retry_count,
            },
        )
        if self.result_variable:
            data["resultVariable"] = self.result_variable
        return data


@dataclass(frozen=True)
class ServiceTaskNode(Node):
    """Invokes a registered handler synchronously within the walk."""

    type: ClassVar[str] = NodeType.SERVICE_TASK

    config: ServiceTaskConfig = field(default_factory=ServiceTaskConfig)

    def config_dict(self) -> dict[str, Any]:
        return self.config.to_dict()


@dataclass(frozen=True)
class ScriptTaskNode(ServiceTaskNode):
    """Evaluates a sandboxed expression, through the ``script`` handler by default."""

    type: ClassVar[str] = NodeType.SCRIPT_TASK

    config: ServiceTaskConfig = field(default_factory=lambda: ServiceTaskConfig(service_type=ServiceType.SCRIPT))


@dataclass(frozen=True)
class GatewayNode(Node):
    """Base class for nodes that select successors through edge conditions."""


@dataclass(frozen=True)
class ExclusiveGatewayNode(GatewayNode):
    """Follows the first outgoing edge whose condition holds."""

    type: ClassVar[str] = NodeType.EXCLUSIVE_GATEWAY


@dataclass(frozen=True)
class ParallelGatewayNode(GatewayNode):
    """Follows every outgoing edge concurrently."""

    type: ClassVar[str] = NodeType.PARALLEL_GATEWAY


@dataclass(frozen=True)
class InclusiveGatewayNode(GatewayNode):
    """Follows every outgoing edge whose condition holds, concurrently."""

    type: ClassVar[str] = NodeType.INCLUSIVE_GATEWAY


@dataclass(frozen=True)
class UnknownNode(Node):
    """A node whose type the engine does not recognize.

    Attributes:
        declared_type: The type string found in the definition.
        config: The raw node configuration.
    """

    type: ClassVar[str] = "unknown"

    declared_type: str = ""
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def type_name(self) -> str:
        return self.declared_type

    def config_dict(self) -> dict[str, Any]:
        return dict(self.config)


def _as_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(item) for item in value)


def _parse_user_task(node_id: str, name: str, config: Mapping[str, Any]) -> UserTaskNode:
    priority = _pick(config, "priority")
    return UserTaskNode(
        id=node_id,
        name=name,
        description=_pick(config, "description"),
        form_key=_pick(config, "formKey", "form_key"),
        form_data=dict(_pick(config, "formData", "form_data", default={})),
        variables=dict(_pick(config, "variables", default={})),
        candidate_users=_as_tuple(_pick(config, "candidateUsers", "candidate_users")),
        candidate_groups=_as_tuple(_pick(config, "candidateGroups", "candidate_groups")),
        priority=int(priority) if priority is not None else None,
        due_date=_pick(config, "dueDate", "due_date"),
    )


def parse_node(data: Mapping[str, Any]) -> Node:
    """Build the node variant matching ``data["type"]``.

    Args:
        data: A wire-format node mapping.

    Returns:
        The typed node. Unrecognized types yield an :class:`UnknownNode`.

    Raises:
        ProcessValidationError: If the node has no id.
    """
    node_id = data.get("id")
    if not node_id:
        msg = "Node is missing an id"
        raise ProcessValidationError(msg)
    node_id = str(node_id)
    name = str(data.get("name") or "")
    node_type = str(data.get("type") or "")
    config: Mapping[str, Any] = data.get("config") or {}

    if node_type == NodeType.START:
        return StartNode(id=node_id, name=name)
    if node_type == NodeType.END:
        return EndNode(id=node_id, name=name)
    if node_type == NodeType.USER_TASK:
        return _parse_user_task(node_id, name, config)
    if node_type == NodeType.SERVICE_TASK:
        return ServiceTaskNode(id=node_id, name=name, config=ServiceTaskConfig.from_dict(config))
    if node_type == NodeType.SCRIPT_TASK:
        return ScriptTaskNode(
            id=node_id,
            name=name,
            config=ServiceTaskConfig.from_dict(config, default_service=ServiceType.SCRIPT),
        )
    if node_type == NodeType.EXCLUSIVE_GATEWAY:
        return ExclusiveGatewayNode(id=node_id, name=name)
    if node_type == NodeType.PARALLEL_GATEWAY:
        return ParallelGatewayNode(id=node_id, name=name)
    if node_type == NodeType.INCLUSIVE_GATEWAY:
        return InclusiveGatewayNode(id=node_id, name=name)
    return UnknownNode(id=node_id, name=name, declared_type=node_type, config=dict(config))


@dataclass(frozen=True)
class Edge:
    """A directed connection between two nodes.

    Attributes:
        source: Id of the source node.
        target: Id of the target node.
        id: Edge id, derived from the endpoints when not given.
        condition: Optional boolean expression guarding the edge.
        label: Optional display label.

    Example:
        >>> Edge(source="review", target="approved", condition="decision == 'approve'")
    """

    source: str
    target: str
    id: str = ""
    condition: str | None = None
    label: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            object.__setattr__(self, "id", f"{self.source}->{self.target}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Edge:
        """Build an edge from its wire format."""
        return cls(
            source=str(data["source"]),
            target=str(data["target"]),
            id=str(data.get("id") or ""),
            condition=data.get("condition") or None,
            label=data.get("label"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize the edge to its wire format."""
        data: dict[str, Any] = {"id": self.id, "source": self.source, "target": self.target}
        if self.condition:
            data["condition"] = self.condition
        if self.label:
            data["label"] = self.label
        return data


@dataclass(frozen=True)
class ProcessDefinition:
    """Immutable description of a process graph at one version.

    Attributes:
        id: Stable definition id shared by all versions.
        name: Human-readable name.
        nodes: Node variants in definition order.
        edges: Edges in definition order, which gateways evaluate in.
        version: Version number, assigned by the definition store.
        status: Publication state of this version.
        description: Optional description.
    """

    id: str
    name: str
    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()
    version: int = 1
    status: DefinitionStatus = DefinitionStatus.DRAFT
    description: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ProcessDefinition:
        """Build a definition from its wire format.

        The graph may be nested under ``graph`` or given at the top level.

        Args:
            data: Wire-format definition.

        Returns:
            The parsed definition.

        Raises:
            ProcessValidationError: If the id, a node id or an edge endpoint is missing.
        """
        if not data.get("id"):
            msg = "Process definition is missing an id"
            raise ProcessValidationError(msg)
        graph: Mapping[str, Any] = data.get("graph") or data
        try:
            edges = tuple(Edge.from_dict(edge) for edge in graph.get("edges") or ())
        except KeyError as exc:
            msg = f"Edge is missing {exc.args[0]!r}"
            raise ProcessValidationError(msg) from exc
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            nodes=tuple(parse_node(node) for node in graph.get("nodes") or ()),
            edges=edges,
            version=int(data.get("version") or 1),
            status=DefinitionStatus(data.get("status") or DefinitionStatus.DRAFT),
            description=data.get("description"),
        )

    def graph_dict(self) -> dict[str, Any]:
        """Return the ``{nodes, edges}`` graph in wire format."""
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize the definition to its wire format."""
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "status": str(self.status),
            "description": self.description,
            "graph": self.graph_dict(),
        }

    def with_status(self, status: DefinitionStatus) -> ProcessDefinition:
        """Return a copy of this version with a different publication state."""
        return replace(self, status=status)

    def validate(self) -> list[str]:
        """Validate the structural invariants of the graph.

        Returns:
            List of validation error messages. Empty list if valid.

        Example:
            >>> errors = definition.validate()
            >>> if errors:
            ...     print("Validation errors:", errors)
        """
        errors: list[str] = []
        node_ids: set[str] = set()
        for node in self.nodes:
            if node.id in node_ids:
                errors.append(f"Duplicate node id '{node.id}'")
            node_ids.add(node.id)

        starts = [node for node in self.nodes if isinstance(node, StartNode)]
        ends = {node.id for node in self.nodes if isinstance(node, EndNode)}
        if len(starts) != 1:
            errors.append(f"Expected exactly one start node, found {len(starts)}")
        if not ends:
            errors.append("Expected at least one end node")

        start_ids = {node.id for node in starts}
        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge '{edge.id}': source node '{edge.source}' not found")
            if edge.target not in node_ids:
                errors.append(f"Edge '{edge.id}': target node '{edge.target}' not found")
            if edge.target in start_ids:
                errors.append(f"Edge '{edge.id}': start node '{edge.target}' cannot have incoming edges")
            if edge.source in ends:
                errors.append(f"Edge '{edge.id}': end node '{edge.source}' cannot have outgoing edges")
            if edge.condition:
                try:
                    compile_expression(edge.condition)
                except ExpressionError as exc:
                    errors.append(f"Edge '{edge.id}': {exc}")

        for node in self.nodes:
            if isinstance(node, ServiceTaskNode) and not node.config.service_type:
                errors.append(f"Node '{node.id}': serviceType is required")

        return errors
