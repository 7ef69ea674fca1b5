"""End-to-end tests for the process engine."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import pytest

from litestar_bpm.config import EngineConfig, RetryPolicy
from litestar_bpm.core.types import InstanceStatus, TaskStatus
from litestar_bpm.engine.orchestrator import ProcessEngine
from litestar_bpm.exceptions import DefinitionNotFoundError, DefinitionNotPublishedError, ValidationError
from tests.conftest import (
    BlockingHandler,
    FlakyHandler,
    approval_definition,
    parallel_definition,
    routing_definition,
    service_definition,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from litestar_bpm.core.definition import ProcessDefinition
    from litestar_bpm.engine.registry import DefinitionRegistry
    from tests.conftest import RecordingNotifier

    Deploy = Callable[[dict[str, Any]], ProcessDefinition]


# =============================================================================
# Starting instances
# =============================================================================


@pytest.mark.e2e
@pytest.mark.asyncio
class TestStartInstance:
    """Tests for start_instance."""

    async def test_start_records_start_node(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test a new instance is RUNNING with the start node on its path."""
        definition = deploy(approval_definition())

        instance = await engine.start_instance(
            "approval",
            {"amount": 50, "currency": "EUR"},
            started_by="alice",
            business_key="order-7",
            start_params={"currency": "USD"},
        )

        assert instance.status == InstanceStatus.RUNNING
        assert instance.definition_version == definition.version
        assert instance.variables == {"amount": 50, "currency": "USD"}
        assert instance.visited_node_ids == ["start"]
        assert instance.current_node_id == "start"
        assert instance.started_by == "alice"
        assert instance.business_key == "order-7"
        assert instance.priority == 50

    async def test_unknown_definition(self, engine: ProcessEngine) -> None:
        """Test starting an unknown definition."""
        with pytest.raises(DefinitionNotFoundError):
            await engine.start_instance("ghost")

    async def test_unpublished_definition(self, engine: ProcessEngine, registry: DefinitionRegistry) -> None:
        """Test drafts cannot be started."""
        registry.register(approval_definition())

        with pytest.raises(DefinitionNotPublishedError) as exc_info:
            await engine.start_instance("approval")

        assert exc_info.value.current_status == "draft"

    async def test_archived_definition(self, engine: ProcessEngine, registry: DefinitionRegistry, deploy: Deploy) -> None:
        """Test archived versions cannot be started."""
        deploy(approval_definition())
        registry.archive("approval")

        with pytest.raises(DefinitionNotPublishedError):
            await engine.start_instance("approval")

    @pytest.mark.parametrize("priority", [-1, 101])
    async def test_priority_range(self, engine: ProcessEngine, deploy: Deploy, priority: int) -> None:
        """Test priorities outside 0-100 are rejected."""
        deploy(approval_definition())

        with pytest.raises(ValidationError):
            await engine.start_instance("approval", priority=priority)


# =============================================================================
# Walks
# =============================================================================


@pytest.mark.e2e
@pytest.mark.asyncio
class TestWalk:
    """Tests for graph walks."""

    async def test_approval_flow(self, engine: ProcessEngine, deploy: Deploy, notifier: RecordingNotifier) -> None:
        """Test a user task pauses the walk until it is completed."""
        deploy(approval_definition())
        instance = await engine.start_instance("approval", {"amount": 50}, started_by="alice")
        await engine.drain()

        waiting = await engine.get_instance(instance.id)
        assert waiting.status == InstanceStatus.RUNNING
        assert waiting.visited_node_ids == ["start", "review"]
        assert waiting.current_node_id == "review"

        [task] = await engine.list_tasks_for_instance(instance.id)
        await engine.complete_task(task.id, "bob", variables={"approved": True})
        await engine.drain()

        completed = await engine.get_instance(instance.id)
        assert completed.status == InstanceStatus.COMPLETED
        assert completed.visited_node_ids == ["start", "review", "end"]
        assert completed.variables["approved"] is True
        assert completed.current_node_id is None
        assert completed.end_time is not None
        assert completed.execution_path[-1].result == {"completed": True}
        assert notifier.event_types == ["instance.started", "task.created", "task.completed", "instance.completed"]

    @pytest.mark.parametrize(("amount", "end_node"), [(50, "small"), (500, "large")])
    async def test_exclusive_routing(self, engine: ProcessEngine, deploy: Deploy, amount: int, end_node: str) -> None:
        """Test exclusive gateways route on variables."""
        deploy(routing_definition())

        instance = await engine.start_instance("routing", {"amount": amount})
        await engine.drain()

        completed = await engine.get_instance(instance.id)
        assert completed.status == InstanceStatus.COMPLETED
        assert completed.visited_node_ids == ["start", "route", end_node]
        assert completed.execution_path[1].result == {"selectedEdges": [f"route->{end_node}"]}

    async def test_gateway_without_match_fails_and_retries(
        self,
        engine: ProcessEngine,
        deploy: Deploy,
        notifier: RecordingNotifier,
    ) -> None:
        """Test a gateway with no match moves the instance to ERROR until fixed and retried."""
        deploy(routing_definition())
        instance = await engine.start_instance("routing", {})
        await engine.drain()

        failed = await engine.get_instance(instance.id)
        assert failed.status == InstanceStatus.ERROR
        assert "No outgoing edge" in (failed.error_message or "")
        assert failed.error_stack
        assert failed.current_node_id == "start"
        assert failed.execution_path[-1].node_id == "route"
        assert failed.execution_path[-1].result["errorType"] == "GatewayNoMatchError"
        assert notifier.of_type("instance.error")[0].node_id == "route"  # type: ignore[attr-defined]

        await engine.update_variables(instance.id, {"amount": 5})
        retried = await engine.retry_instance(instance.id, user_id="dave")
        await engine.drain()

        assert retried.error_message is None
        completed = await engine.get_instance(instance.id)
        assert completed.status == InstanceStatus.COMPLETED
        assert completed.visited_node_ids == ["start", "route", "route", "small"]

    async def test_parallel_branches(self, engine: ProcessEngine, deploy: Deploy, notifier: RecordingNotifier) -> None:
        """Test every parallel branch runs once and the last end completes the instance."""
        deploy(parallel_definition())

        instance = await engine.start_instance("parallel")
        await engine.drain()

        completed = await engine.get_instance(instance.id)
        visited = completed.visited_node_ids
        assert completed.status == InstanceStatus.COMPLETED
        assert completed.variables == {"left": 1, "right": 2}
        for node_id in ("start", "fork", "left", "right", "end_left", "end_right"):
            assert visited.count(node_id) == 1
        ends = [entry for entry in completed.execution_path if entry.node_type == "end"]
        assert ends[0].result == {"completed": False, "openTasks": 0, "activeBranches": 1}
        assert ends[1].result == {"completed": True}
        assert len(notifier.of_type("instance.completed")) == 1

    async def test_parallel_branch_waiting_on_task(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test an end reached while a sibling task is open does not complete the instance."""
        deploy(
            {
                "id": "mixed",
                "nodes": [
                    {"id": "start", "type": "start"},
                    {"id": "fork", "type": "parallelGateway"},
                    {"id": "review", "type": "userTask"},
                    {"id": "notify", "type": "scriptTask", "config": {"script": "'sent'", "resultVariable": "notice"}},
                    {"id": "end_review", "type": "end"},
                    {"id": "end_notify", "type": "end"},
                ],
                "edges": [
                    {"source": "start", "target": "fork"},
                    {"source": "fork", "target": "review"},
                    {"source": "fork", "target": "notify"},
                    {"source": "review", "target": "end_review"},
                    {"source": "notify", "target": "end_notify"},
                ],
            },
        )
        instance = await engine.start_instance("mixed")
        await engine.drain()

        running = await engine.get_instance(instance.id)
        assert running.status == InstanceStatus.RUNNING
        assert running.variables == {"notice": "sent"}
        end_entry = next(entry for entry in running.execution_path if entry.node_id == "end_notify")
        assert end_entry.result["completed"] is False
        assert end_entry.result["openTasks"] == 1

        [task] = await engine.list_tasks_for_instance(instance.id)
        await engine.complete_task(task.id, "alice")
        await engine.drain()

        assert (await engine.get_instance(instance.id)).status == InstanceStatus.COMPLETED

    async def test_completed_task_branch_survives_sibling_end(
        self,
        registry: DefinitionRegistry,
        deploy: Deploy,
    ) -> None:
        """Test a sibling ending while a task continuation is queued leaves the instance running."""
        handler = BlockingHandler()
        deploy(
            {
                "id": "race",
                "nodes": [
                    {"id": "start", "type": "start"},
                    {"id": "fork", "type": "parallelGateway"},
                    {"id": "review", "type": "userTask"},
                    {"id": "after_review", "type": "scriptTask", "config": {"script": "1", "resultVariable": "done"}},
                    {"id": "slow", "type": "serviceTask", "config": {"serviceType": "blocking"}},
                    {"id": "end_review", "type": "end"},
                    {"id": "end_slow", "type": "end"},
                ],
                "edges": [
                    {"source": "start", "target": "fork"},
                    {"source": "fork", "target": "review"},
                    {"source": "fork", "target": "slow"},
                    {"source": "review", "target": "after_review"},
                    {"source": "after_review", "target": "end_review"},
                    {"source": "slow", "target": "end_slow"},
                ],
            },
        )
        config = EngineConfig(worker_count=1, job_retry_delay=0, retry=RetryPolicy(base_delay=0, max_delay=0))
        async with ProcessEngine(registry, config=config) as engine:
            engine.handlers.register("blocking", handler)
            instance = await engine.start_instance("race")
            await handler.started.wait()
            tasks = await engine.list_tasks_for_instance(instance.id)
            for _ in range(100):
                if tasks:
                    break
                await asyncio.sleep(0.01)
                tasks = await engine.list_tasks_for_instance(instance.id)

            # The only worker is busy with the slow branch, so the continuation waits in the queue.
            await engine.complete_task(tasks[0].id, "alice")
            assert engine.queue.pending == 1
            handler.release.set()
            await engine.drain()

            completed = await engine.get_instance(instance.id)

        visited = completed.visited_node_ids
        assert completed.status == InstanceStatus.COMPLETED
        assert completed.variables == {"done": 1}
        for node_id in ("review", "after_review", "end_review", "slow", "end_slow"):
            assert visited.count(node_id) == 1
        end_slow = next(entry for entry in completed.execution_path if entry.node_id == "end_slow")
        assert end_slow.result == {"completed": False, "openTasks": 0, "activeBranches": 1}
        assert completed.execution_path[-1].node_id == "end_review"

    async def test_inclusive_gateway(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test inclusive gateways run every branch whose condition holds."""
        deploy(
            {
                "id": "inclusive",
                "nodes": [
                    {"id": "start", "type": "start"},
                    {"id": "split", "type": "inclusiveGateway"},
                    {"id": "email", "type": "end"},
                    {"id": "sms", "type": "end"},
                    {"id": "letter", "type": "end"},
                ],
                "edges": [
                    {"source": "start", "target": "split"},
                    {"source": "split", "target": "email", "condition": "channels.email"},
                    {"source": "split", "target": "sms", "condition": "channels.sms"},
                    {"source": "split", "target": "letter", "condition": "channels.letter"},
                ],
            },
        )

        instance = await engine.start_instance("inclusive", {"channels": {"email": True, "sms": False, "letter": True}})
        await engine.drain()

        completed = await engine.get_instance(instance.id)
        assert completed.status == InstanceStatus.COMPLETED
        assert completed.visited_node_ids == ["start", "split", "email", "letter"]

    async def test_multiple_outgoing_edges_fork(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test a plain node with several outgoing edges forks like a parallel gateway."""
        deploy(
            {
                "id": "implicit",
                "nodes": [
                    {"id": "start", "type": "start"},
                    {"id": "a", "type": "end"},
                    {"id": "b", "type": "end"},
                ],
                "edges": [{"source": "start", "target": "a"}, {"source": "start", "target": "b"}],
            },
        )

        instance = await engine.start_instance("implicit")
        await engine.drain()

        completed = await engine.get_instance(instance.id)
        assert completed.status == InstanceStatus.COMPLETED
        assert sorted(completed.visited_node_ids) == ["a", "b", "start"]

    async def test_unknown_node_is_skipped(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test nodes of unknown type are recorded and passed through."""
        deploy(
            {
                "id": "timer",
                "nodes": [
                    {"id": "start", "type": "start"},
                    {"id": "wait", "type": "timerEvent", "config": {"duration": "PT1H"}},
                    {"id": "end", "type": "end"},
                ],
                "edges": [{"source": "start", "target": "wait"}, {"source": "wait", "target": "end"}],
            },
        )

        instance = await engine.start_instance("timer")
        await engine.drain()

        completed = await engine.get_instance(instance.id)
        assert completed.status == InstanceStatus.COMPLETED
        assert completed.execution_path[1].result == {"skipped": True}

    async def test_instances_keep_their_version(
        self,
        engine: ProcessEngine,
        deploy: Deploy,
    ) -> None:
        """Test a running instance finishes on the version it started with."""
        deploy(approval_definition())
        old = await engine.start_instance("approval")
        await engine.drain()

        deploy(routing_definition("approval"))
        new = await engine.start_instance("approval", {"amount": 5})
        await engine.drain()
        [task] = await engine.list_tasks_for_instance(old.id)
        await engine.complete_task(task.id, "alice")
        await engine.drain()

        assert (old.definition_version, new.definition_version) == (1, 2)
        assert (await engine.get_instance(old.id)).visited_node_ids == ["start", "review", "end"]
        assert (await engine.get_instance(new.id)).visited_node_ids == ["start", "route", "small"]

    async def test_stats(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test queue counters track continuations."""
        deploy(routing_definition())

        await engine.start_instance("routing", {"amount": 5})
        await engine.drain()

        assert engine.stats.submitted == 1
        assert engine.stats.completed == 1


# =============================================================================
# Service task error handling
# =============================================================================


@pytest.mark.e2e
@pytest.mark.asyncio
class TestServiceErrorHandling:
    """Tests for the ignore, retry and propagate policies."""

    async def test_result_variable(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test handler results are stored in the result variable and the path."""
        handler = FlakyHandler(failures=0, result={"id": 7})
        engine.handlers.register("crm", handler)
        deploy(service_definition(serviceType="crm", resultVariable="customer"))

        instance = await engine.start_instance("service")
        await engine.drain()

        completed = await engine.get_instance(instance.id)
        assert completed.status == InstanceStatus.COMPLETED
        assert completed.variables == {"customer": {"id": 7}}
        assert completed.execution_path[1].result == {"id": 7}

    async def test_retry_recovers(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test a handler failing fewer times than allowed retries succeeds."""
        handler = FlakyHandler(failures=2)
        engine.handlers.register("flaky", handler)
        deploy(service_definition(serviceType="flaky", errorHandling="retry", retryCount=2, resultVariable="response"))

        instance = await engine.start_instance("service")
        await engine.drain()

        completed = await engine.get_instance(instance.id)
        assert handler.calls == 3
        assert completed.status == InstanceStatus.COMPLETED
        assert completed.variables["response"] == {"ok": True}

    async def test_retry_exhausted(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test the instance fails once retries run out."""
        handler = FlakyHandler(failures=5)
        engine.handlers.register("flaky", handler)
        deploy(service_definition(serviceType="flaky", errorHandling="retry", retryCount=1))

        instance = await engine.start_instance("service")
        await engine.drain()

        failed = await engine.get_instance(instance.id)
        assert handler.calls == 2
        assert failed.status == InstanceStatus.ERROR
        assert "failure 2" in (failed.error_message or "")
        assert failed.execution_path[-1].result["errorType"] == "ServiceTaskError"

    async def test_ignore(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test ignored failures are recorded and the walk continues."""
        engine.handlers.register("flaky", FlakyHandler(failures=10))
        deploy(service_definition(serviceType="flaky", errorHandling="ignore", resultVariable="response"))

        instance = await engine.start_instance("service")
        await engine.drain()

        completed = await engine.get_instance(instance.id)
        assert completed.status == InstanceStatus.COMPLETED
        assert completed.variables["response"]["success"] is False
        assert completed.variables["response"]["ignored"] is True
        assert "failure 1" in completed.variables["response"]["error"]

    async def test_propagate_then_retry_instance(
        self,
        engine: ProcessEngine,
        deploy: Deploy,
        notifier: RecordingNotifier,
    ) -> None:
        """Test a failed instance re-runs the failed node on retry."""
        handler = FlakyHandler(failures=1)
        engine.handlers.register("flaky", handler)
        deploy(service_definition(serviceType="flaky"))
        instance = await engine.start_instance("service")
        await engine.drain()

        assert (await engine.get_instance(instance.id)).status == InstanceStatus.ERROR

        await engine.retry_instance(instance.id)
        await engine.drain()

        completed = await engine.get_instance(instance.id)
        assert handler.calls == 2
        assert completed.status == InstanceStatus.COMPLETED
        assert completed.visited_node_ids == ["start", "call", "call", "end"]
        assert notifier.of_type("instance.resumed")[0].retried is True  # type: ignore[attr-defined]

    async def test_missing_handler_fails_instance(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test an unregistered service type moves the instance to ERROR."""
        deploy(service_definition(serviceType="ftp"))

        instance = await engine.start_instance("service")
        await engine.drain()

        failed = await engine.get_instance(instance.id)
        assert failed.status == InstanceStatus.ERROR
        assert "no handler registered" in (failed.error_message or "")


# =============================================================================
# Lifecycle
# =============================================================================


@pytest.mark.e2e
@pytest.mark.asyncio
class TestEngineLifecycle:
    """Tests for starting and stopping the worker pool."""

    async def test_context_manager(self, registry: DefinitionRegistry, deploy: Deploy) -> None:
        """Test the engine drains on exit."""
        deploy(routing_definition())

        async with ProcessEngine(registry) as engine:
            assert engine.queue.running
            instance = await engine.start_instance("routing", {"amount": 5})

        assert not engine.queue.running
        assert (await engine.get_instance(instance.id)).status == InstanceStatus.COMPLETED

    async def test_terminated_instance_ignores_late_completion(self, engine: ProcessEngine, deploy: Deploy) -> None:
        """Test a continuation for a terminated instance does nothing."""
        deploy(approval_definition())
        instance = await engine.start_instance("approval")
        await engine.drain()
        await engine.terminate_instance(instance.id)

        await engine.execute_from_node(instance.id, "review")

        terminated = await engine.get_instance(instance.id)
        assert terminated.status == InstanceStatus.TERMINATED
        assert terminated.visited_node_ids == ["start", "review"]
        [task] = await engine.list_tasks_for_instance(instance.id)
        assert task.status == TaskStatus.CANCELLED
