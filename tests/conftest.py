"""Shared test fixtures for litestar-bpm test suite."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from litestar_bpm.config import EngineConfig
    from litestar_bpm.core.context import ExecutionContext
    from litestar_bpm.core.definition import ProcessDefinition
    from litestar_bpm.core.events import ProcessEvent
    from litestar_bpm.engine.memory import StaticGroupDirectory
    from litestar_bpm.engine.orchestrator import ProcessEngine
    from litestar_bpm.engine.registry import DefinitionRegistry


# =============================================================================
# Definition factories
# =============================================================================


def approval_definition(definition_id: str = "approval", **task_config: Any) -> dict[str, Any]:
    """Build ``start -> review (userTask) -> end``.

    Args:
        definition_id: Id of the definition.
        **task_config: Config of the review task.

    Returns:
        Wire-format definition.
    """
    return {
        "id": definition_id,
        "name": "Approval",
        "nodes": [
            {"id": "start", "type": "start", "name": "Start"},
            {"id": "review", "type": "userTask", "name": "Review", "config": task_config},
            {"id": "end", "type": "end", "name": "End"},
        ],
        "edges": [
            {"source": "start", "target": "review"},
            {"source": "review", "target": "end"},
        ],
    }


def routing_definition(definition_id: str = "routing") -> dict[str, Any]:
    """Build an exclusive gateway routing on ``amount``.

    ``amount < 100`` ends in ``small`` and anything else in ``large``.
    """
    return {
        "id": definition_id,
        "name": "Order routing",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "route", "type": "exclusiveGateway"},
            {"id": "small", "type": "end"},
            {"id": "large", "type": "end"},
        ],
        "edges": [
            {"source": "start", "target": "route"},
            {"source": "route", "target": "small", "condition": "amount < 100"},
            {"source": "route", "target": "large", "condition": "amount >= 100"},
        ],
    }


def parallel_definition(definition_id: str = "parallel") -> dict[str, Any]:
    """Build a parallel gateway with two script branches, each ending on its own."""
    return {
        "id": definition_id,
        "name": "Parallel",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "fork", "type": "parallelGateway"},
            {"id": "left", "type": "scriptTask", "config": {"script": "1", "resultVariable": "left"}},
            {"id": "right", "type": "scriptTask", "config": {"script": "2", "resultVariable": "right"}},
            {"id": "end_left", "type": "end"},
            {"id": "end_right", "type": "end"},
        ],
        "edges": [
            {"source": "start", "target": "fork"},
            {"source": "fork", "target": "left"},
            {"source": "fork", "target": "right"},
            {"source": "left", "target": "end_left"},
            {"source": "right", "target": "end_right"},
        ],
    }


def service_definition(definition_id: str = "service", **service_config: Any) -> dict[str, Any]:
    """Build ``start -> call (serviceTask) -> end``."""
    return {
        "id": definition_id,
        "name": "Service",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "call", "type": "serviceTask", "config": service_config},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"source": "start", "target": "call"},
            {"source": "call", "target": "end"},
        ],
    }


# =============================================================================
# Test doubles
# =============================================================================


class RecordingNotifier:
    """Notification port that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[ProcessEvent] = []

    async def notify(self, event: ProcessEvent) -> None:
        self.events.append(event)

    @property
    def event_types(self) -> list[str]:
        return [event.event_type for event in self.events]

    def of_type(self, event_type: str) -> list[ProcessEvent]:
        return [event for event in self.events if event.event_type == event_type]


class BlockingHandler:
    """Handler that waits until released, returning ``{"ok": True}``."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, context: ExecutionContext, config: Any) -> Any:
        self.started.set()
        await self.release.wait()
        return {"ok": True}


class FlakyHandler:
    """Handler failing a fixed number of times before succeeding."""

    def __init__(self, failures: int, result: Any = None) -> None:
        self.failures = failures
        self.result = {"ok": True} if result is None else result
        self.calls = 0

    async def __call__(self, context: ExecutionContext, config: Any) -> Any:
        self.calls += 1
        if self.calls <= self.failures:
            msg = f"failure {self.calls}"
            raise RuntimeError(msg)
        return self.result


# =============================================================================
# Engine fixtures
# =============================================================================


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Create a notifier recording every event."""
    return RecordingNotifier()


@pytest.fixture
def groups() -> StaticGroupDirectory:
    """Create a group directory with two groups."""
    from litestar_bpm.engine.memory import StaticGroupDirectory

    return StaticGroupDirectory({"finance": ["bob", "carol"], "managers": ["dave"]})


@pytest.fixture
def registry() -> DefinitionRegistry:
    """Create an empty definition registry."""
    from litestar_bpm.engine.registry import DefinitionRegistry

    return DefinitionRegistry()


@pytest.fixture
def deploy(registry: DefinitionRegistry) -> Callable[[dict[str, Any]], ProcessDefinition]:
    """Register and publish a wire-format definition."""

    def _deploy(definition: dict[str, Any]) -> ProcessDefinition:
        stored = registry.register(definition)
        return registry.publish(stored.id, stored.version)

    return _deploy


@pytest.fixture
def engine_config() -> EngineConfig:
    """Engine configuration without any backoff delays."""
    from litestar_bpm.config import EngineConfig, RetryPolicy

    return EngineConfig(
        worker_count=2,
        job_retry_delay=0,
        retry=RetryPolicy(base_delay=0, max_delay=0),
    )


@pytest.fixture
async def engine(
    registry: DefinitionRegistry,
    notifier: RecordingNotifier,
    groups: StaticGroupDirectory,
    engine_config: EngineConfig,
) -> AsyncIterator[ProcessEngine]:
    """Create an in-memory process engine and stop its workers afterwards."""
    from litestar_bpm.engine.orchestrator import ProcessEngine

    process_engine = ProcessEngine(registry, notifier=notifier, groups=groups, config=engine_config)
    yield process_engine
    await process_engine.stop(drain=False)


# Pytest configuration


def pytest_configure(config: Any) -> None:
    """Configure pytest with custom markers.

    Args:
        config: Pytest config object
    """
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "e2e: End-to-end tests")
