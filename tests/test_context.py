"""Tests for ExecutionContext."""

from __future__ import annotations

from uuid import uuid4

import pytest

from litestar_bpm.core.context import ExecutionContext
from litestar_bpm.core.definition import ProcessDefinition
from litestar_bpm.core.models import ProcessInstance
from litestar_bpm.engine.graph import ProcessGraph
from tests.conftest import routing_definition


@pytest.fixture
def context() -> ExecutionContext:
    """Context of a fresh routing instance."""
    graph = ProcessGraph.from_definition(ProcessDefinition.from_dict(routing_definition()))
    instance = ProcessInstance(
        id=uuid4(),
        definition_id="routing",
        definition_version=1,
        variables={"amount": 5, "order": {"lines": [1, 2]}},
    )
    return ExecutionContext.from_instance(instance, graph)


@pytest.mark.unit
class TestExecutionContext:
    """Tests for ExecutionContext."""

    def test_variables_are_copied(self, context: ExecutionContext) -> None:
        """Test the working copy never aliases the stored instance."""
        context.get("order")["lines"].append(3)

        assert context.instance.variables["order"] == {"lines": [1, 2]}
        assert context.get("missing", "fallback") == "fallback"

    def test_changed_variables(self, context: ExecutionContext) -> None:
        """Test only created or modified keys are reported."""
        context.set("approved", True)
        context.set("amount", 5)
        context.get("order")["lines"].append(3)

        assert context.changed_variables() == {"approved": True, "order": {"lines": [1, 2, 3]}}

    def test_enter_and_commit(self, context: ExecutionContext) -> None:
        """Test entries snapshot variables and commits reset the baseline."""
        context.set("approved", True)
        entry = context.enter(context.graph.get_node("route"))

        assert (entry.node_id, entry.node_name, entry.node_type) == ("route", "route", "exclusiveGateway")
        assert entry.variables_snapshot["approved"] is True
        assert context.execution_path == []

        context.committed(entry)

        assert context.execution_path == [entry]
        assert context.changed_variables() == {}

    def test_branches_are_isolated(self, context: ExecutionContext) -> None:
        """Test sibling branches never see each other's writes."""
        context.set("shared", 1)
        left = context.branch()
        right = context.branch()

        left.set("left", True)
        right.get("order")["lines"].clear()

        assert "left" not in right.variables
        assert context.get("order") == {"lines": [1, 2]}
        assert left.changed_variables() == {"shared": 1, "left": True}
        assert right.changed_variables() == {"shared": 1, "order": {"lines": []}}

    def test_branch_starts_open(self, context: ExecutionContext) -> None:
        """Test a new branch holds its own active-branch count."""
        context.branch_closed = True

        assert not context.branch().branch_closed
        assert context.branch().instance_id == context.instance_id
