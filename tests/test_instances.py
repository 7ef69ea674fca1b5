"""Tests for the instance lifecycle: transitions, suspend, resume and terminate."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import uuid4

import pytest

from litestar_bpm.core.models import ProcessInstance
from litestar_bpm.core.types import InstanceStatus, TaskStatus
from litestar_bpm.engine.instances import ALLOWED_TRANSITIONS, can_transition, ensure_transition
from litestar_bpm.exceptions import InstanceNotFoundError, InvalidStateError, InvalidTransitionError
from tests.conftest import approval_definition, routing_definition

if TYPE_CHECKING:
    from collections.abc import Callable

    from litestar_bpm.core.definition import ProcessDefinition
    from litestar_bpm.engine.orchestrator import ProcessEngine
    from tests.conftest import RecordingNotifier

    Deploy = Callable[[dict[str, Any]], ProcessDefinition]


async def waiting_instance(engine: ProcessEngine) -> ProcessInstance:
    """Start the approval process and wait until it sits at its review task."""
    instance = await engine.start_instance("approval", {"amount": 50}, started_by="alice")
    await engine.drain()
    return await engine.get_instance(instance.id)


# =============================================================================
# Transition table
# =============================================================================


@pytest.mark.unit
class TestTransitions:
    """Tests for the instance transition table."""

    @pytest.mark.parametrize(
        ("from_status", "to_status", "allowed"),
        [
            (InstanceStatus.RUNNING, InstanceStatus.COMPLETED, True),
            (InstanceStatus.RUNNING, InstanceStatus.SUSPENDED, True),
            (InstanceStatus.RUNNING, InstanceStatus.ERROR, True),
            (InstanceStatus.SUSPENDED, InstanceStatus.RUNNING, True),
            (InstanceStatus.SUSPENDED, InstanceStatus.COMPLETED, False),
            (InstanceStatus.ERROR, InstanceStatus.RUNNING, True),
            (InstanceStatus.ERROR, InstanceStatus.SUSPENDED, False),
            (InstanceStatus.WAITING, InstanceStatus.RUNNING, True),
            (InstanceStatus.COMPLETED, InstanceStatus.RUNNING, False),
            (InstanceStatus.TERMINATED, InstanceStatus.RUNNING, False),
        ],
    )
    def test_can_transition(self, from_status: InstanceStatus, to_status: InstanceStatus, allowed: bool) -> None:
        """Test individual transitions."""
        assert can_transition(from_status, to_status) is allowed

    def test_terminal_statuses_have_no_exits(self) -> None:
        """Test completed and terminated instances never move again."""
        assert ALLOWED_TRANSITIONS[InstanceStatus.COMPLETED] == frozenset()
        assert ALLOWED_TRANSITIONS[InstanceStatus.TERMINATED] == frozenset()

    def test_every_status_can_be_terminated_until_terminal(self) -> None:
        """Test termination is reachable from every non-terminal status."""
        for status, targets in ALLOWED_TRANSITIONS.items():
            if targets:
                assert InstanceStatus.TERMINATED in targets, status

    def test_ensure_transition(self) -> None:
        """Test illegal transitions raise with details."""
        instance = ProcessInstance(id=uuid4(), definition_id="p", definition_version=1, status=InstanceStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError) as exc_info:
            ensure_transition(instance, InstanceStatus.SUSPENDED)

        assert exc_info.value.from_status == InstanceStatus.COMPLETED
        assert exc_info.value.to_status == InstanceStatus.SUSPENDED
        assert exc_info.value.instance_id == instance.id


# =============================================================================
# Branch accounting
# =============================================================================


@pytest.mark.unit
class TestBranchAccounting:
    """Tests for active branch counting."""

    async def test_counts(self, engine: ProcessEngine) -> None:
        """Test branches are counted up and down per instance."""
        instance_id = uuid4()
        engine.instances.branches_started(instance_id, 2)
        engine.instances.branch_finished(instance_id)

        assert engine.instances.active_branches(instance_id) == 1

        engine.instances.branch_finished(instance_id)
        engine.instances.branch_finished(instance_id)

        assert engine.instances.active_branches(instance_id) == 0


# =============================================================================
# Control operations
# =============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestSuspendResume:
    """Tests for suspend and resume."""

    async def test_suspend_holds_tasks(
        self,
        engine: ProcessEngine,
        deploy: Deploy,
        notifier: RecordingNotifier,
    ) -> None:
        """Test suspension moves open tasks to WAITING."""
        deploy(approval_definition())
        instance = await waiting_instance(engine)

        suspended = await engine.suspend_instance(instance.id, user_id="dave")

        assert suspended.status == InstanceStatus.SUSPENDED
        [task] = await engine.list_tasks_for_instance(instance.id)
        assert task.status == TaskStatus.WAITING
        assert task.suspended_from == TaskStatus.PENDING
        assert notifier.event_types[-1] == "instance.suspended"

    async def test_resume_restores_tasks(
        self,
        engine: ProcessEngine,
        deploy: Deploy,
        notifier: RecordingNotifier,
    ) -> None:
        """Test resumption restores held tasks without creating new ones."""
        deploy(approval_definition(candidateUsers=["alice"]))
        instance = await waiting_instance(engine)
        await engine.suspend_instance(instance.id)

        resumed = await engine.resume_instance(instance.id, user_id="dave")
        await engine.drain()

        assert resumed.status == InstanceStatus.RUNNING
        [task] = await engine.list_tasks_for_instance(instance.id)
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.assignee_id == "alice"
        assert task.suspended_from is None
        assert [entry.action for entry in task.history][-2:] == ["suspended", "resumed"]
        assert notifier.event_types[-1] == "instance.resumed"

    async def test_resumed_instance_completes(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test the walk continues normally after a resume."""
        deploy(approval_definition())
        instance = await waiting_instance(engine)
        await engine.suspend_instance(instance.id)
        await engine.resume_instance(instance.id)
        [task] = await engine.list_tasks_for_instance(instance.id)

        await engine.complete_task(task.id, "alice")
        await engine.drain()

        completed = await engine.get_instance(instance.id)
        assert completed.status == InstanceStatus.COMPLETED
        assert completed.visited_node_ids == ["start", "review", "end"]

    async def test_suspend_completed_instance(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test completed instances cannot be suspended."""
        deploy(routing_definition())
        instance = await engine.start_instance("routing", {"amount": 5})
        await engine.drain()

        with pytest.raises(InvalidTransitionError):
            await engine.suspend_instance(instance.id)

    async def test_resume_running_instance(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test only suspended instances can be resumed."""
        deploy(approval_definition())
        instance = await waiting_instance(engine)

        with pytest.raises(InvalidStateError):
            await engine.resume_instance(instance.id)

    async def test_retry_requires_error(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test only failed instances can be retried."""
        deploy(approval_definition())
        instance = await waiting_instance(engine)

        with pytest.raises(InvalidStateError):
            await engine.retry_instance(instance.id)


@pytest.mark.unit
@pytest.mark.asyncio
class TestTerminate:
    """Tests for termination."""

    async def test_terminate_cancels_tasks(
        self,
        engine: ProcessEngine,
        deploy: Deploy,
        notifier: RecordingNotifier,
    ) -> None:
        """Test termination cancels open tasks and records the reason."""
        deploy(approval_definition())
        instance = await waiting_instance(engine)

        terminated = await engine.terminate_instance(instance.id, user_id="dave", reason="customer withdrew")

        assert terminated.status == InstanceStatus.TERMINATED
        assert terminated.error_message == "customer withdrew"
        assert terminated.end_time is not None
        assert terminated.duration_ms is not None
        [task] = await engine.list_tasks_for_instance(instance.id)
        assert task.status == TaskStatus.CANCELLED
        assert notifier.event_types[-2:] == ["task.cancelled", "instance.terminated"]
        assert notifier.events[-1].cancelled_task_ids == [task.id]  # type: ignore[attr-defined]

    async def test_terminate_suspended_instance(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test suspended instances can be terminated, including held tasks."""
        deploy(approval_definition())
        instance = await waiting_instance(engine)
        await engine.suspend_instance(instance.id)

        await engine.terminate_instance(instance.id)

        [task] = await engine.list_tasks_for_instance(instance.id)
        assert task.status == TaskStatus.CANCELLED

    async def test_terminate_failed_instance(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test a failed instance with an open task terminates and cancels the task."""
        deploy(approval_definition())
        instance = await waiting_instance(engine)
        await engine.instances.fail(instance.id, RuntimeError("ledger unavailable"))
        assert (await engine.get_instance(instance.id)).status == InstanceStatus.ERROR

        terminated = await engine.terminate_instance(instance.id, reason="abandoned")

        assert terminated.status == InstanceStatus.TERMINATED
        assert terminated.error_message == "abandoned"
        [task] = await engine.list_tasks_for_instance(instance.id)
        assert task.status == TaskStatus.CANCELLED

    async def test_terminate_waiting_instance(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test a waiting instance terminates and cancels its open task."""
        deploy(approval_definition())
        instance = await waiting_instance(engine)
        await engine.instances.instances.update(instance.id, {"status": InstanceStatus.WAITING})

        terminated = await engine.terminate_instance(instance.id)

        assert terminated.status == InstanceStatus.TERMINATED
        [task] = await engine.list_tasks_for_instance(instance.id)
        assert task.status == TaskStatus.CANCELLED

    async def test_terminate_twice(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test terminal instances cannot be terminated again."""
        deploy(approval_definition())
        instance = await waiting_instance(engine)
        await engine.terminate_instance(instance.id)

        with pytest.raises(InvalidTransitionError):
            await engine.terminate_instance(instance.id)

    async def test_completing_task_of_terminated_instance(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test cancelled tasks of a terminated instance cannot be completed."""
        deploy(approval_definition())
        instance = await waiting_instance(engine)
        [task] = await engine.list_tasks_for_instance(instance.id)
        await engine.terminate_instance(instance.id)

        with pytest.raises(InvalidStateError):
            await engine.complete_task(task.id, "alice")


@pytest.mark.unit
@pytest.mark.asyncio
class TestVariablesAndLookup:
    """Tests for variable updates and instance queries."""

    async def test_update_variables(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test variables are merged into a running instance."""
        deploy(approval_definition())
        instance = await waiting_instance(engine)

        updated = await engine.update_variables(instance.id, {"amount": 75, "note": "rush"})

        assert updated.variables == {"amount": 75, "note": "rush"}

    async def test_update_variables_of_completed_instance(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test completed instances keep their variables."""
        deploy(routing_definition())
        instance = await engine.start_instance("routing", {"amount": 5})
        await engine.drain()

        with pytest.raises(InvalidStateError):
            await engine.update_variables(instance.id, {"amount": 6})

    async def test_missing_instance(self, engine: ProcessEngine) -> None:
        """Test unknown instances raise InstanceNotFoundError."""
        with pytest.raises(InstanceNotFoundError):
            await engine.get_instance(uuid4())
        with pytest.raises(InstanceNotFoundError):
            await engine.suspend_instance(uuid4())
        with pytest.raises(InstanceNotFoundError):
            await engine.list_tasks_for_instance(uuid4())

    async def test_find_by_business_key(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test instances are found by business key, oldest first."""
        deploy(routing_definition())
        first = await engine.start_instance("routing", {"amount": 5}, business_key="order-1")
        second = await engine.start_instance("routing", {"amount": 500}, business_key="order-1")
        await engine.start_instance("routing", {"amount": 5}, business_key="order-2")

        found = await engine.find_by_business_key("order-1")

        assert [instance.id for instance in found] == [first.id, second.id]

    async def test_execution_history(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test the execution path is exposed as history."""
        deploy(approval_definition())
        instance = await waiting_instance(engine)

        history = await engine.get_execution_history(instance.id)

        assert [entry.node_id for entry in history] == ["start", "review"]
        assert history[1].result["assigneeId"] is None
