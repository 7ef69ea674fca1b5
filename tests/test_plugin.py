"""Tests for the BPMPlugin integration with Litestar.

These tests verify that the plugin correctly integrates with Litestar
applications and provides dependency injection for the process engine.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

import pytest
from litestar import Controller, Litestar, get, post
from litestar.status_codes import HTTP_200_OK, HTTP_201_CREATED
from litestar.testing import TestClient

from litestar_bpm import (
    BPMPlugin,
    BPMPluginConfig,
    DefinitionRegistry,
    ProcessEngine,
)
from litestar_bpm.core.types import DefinitionStatus
from tests.conftest import approval_definition, routing_definition

if TYPE_CHECKING:
    from collections.abc import Iterator

# =============================================================================
# Test Controllers
# =============================================================================


class ProcessTestController(Controller):
    """Test controller for process operations."""

    path = "/processes"

    @get("/")
    async def list_definitions(self, process_registry: DefinitionRegistry) -> list[dict[str, Any]]:
        """List registered definition versions."""
        return [
            {"id": d.id, "version": d.version, "status": str(d.status)} for d in process_registry.list_definitions()
        ]

    @post("/{definition_id:str}/start")
    async def start_instance(
        self,
        definition_id: str,
        data: dict[str, Any],
        process_engine: ProcessEngine,
    ) -> dict[str, Any]:
        """Start an instance and wait for its walk to settle."""
        instance = await process_engine.start_instance(definition_id, data, started_by="api")
        await process_engine.drain()
        return {"instance_id": str(instance.id)}

    @get("/instances/{instance_id:uuid}")
    async def get_instance(self, instance_id: UUID, process_engine: ProcessEngine) -> dict[str, Any]:
        """Get instance status."""
        instance = await process_engine.get_instance(instance_id)
        return {
            "status": str(instance.status),
            "variables": instance.variables,
            "path": instance.visited_node_ids,
        }

    @get("/tasks/{user_id:str}")
    async def work_list(self, user_id: str, process_engine: ProcessEngine) -> list[dict[str, Any]]:
        """List the tasks a user can work on."""
        tasks = await process_engine.list_tasks_for_user(user_id)
        return [{"task_id": str(task.id), "node_id": task.node_id} for task in tasks]

    @post("/tasks/{task_id:uuid}/complete")
    async def complete_task(
        self,
        task_id: UUID,
        data: dict[str, Any],
        process_engine: ProcessEngine,
    ) -> dict[str, Any]:
        """Complete a task and wait for the walk to continue."""
        task = await process_engine.complete_task(task_id, data.pop("user"), data)
        await process_engine.drain()
        return {"status": str(task.status)}


# =============================================================================
# Plugin Initialization Tests
# =============================================================================


@pytest.mark.unit
class TestPluginInitialization:
    """Tests for plugin initialization."""

    def test_plugin_creates_defaults(self) -> None:
        """Plugin creates a registry and an engine over it when none provided."""
        plugin = BPMPlugin()
        Litestar(plugins=[plugin])

        assert isinstance(plugin.registry, DefinitionRegistry)
        assert isinstance(plugin.engine, ProcessEngine)
        assert plugin.engine.definitions is plugin.registry

    def test_plugin_uses_provided_components(self) -> None:
        """Plugin uses the provided registry and engine."""
        registry = DefinitionRegistry()
        engine = ProcessEngine(registry)
        plugin = BPMPlugin(config=BPMPluginConfig(registry=registry, engine=engine))
        Litestar(plugins=[plugin])

        assert plugin.registry is registry
        assert plugin.engine is engine

    def test_plugin_auto_registers_definitions(self) -> None:
        """Plugin registers and publishes definitions from config."""
        config = BPMPluginConfig(auto_register_definitions=[approval_definition(), routing_definition()])
        plugin = BPMPlugin(config=config)
        Litestar(plugins=[plugin])

        published = plugin.registry.list_definitions(DefinitionStatus.PUBLISHED)

        assert [definition.id for definition in published] == ["approval", "routing"]

    def test_plugin_custom_dependency_keys(self) -> None:
        """Plugin uses custom dependency keys when configured."""
        config = BPMPluginConfig(dependency_key_registry="my_registry", dependency_key_engine="my_engine")
        app = Litestar(plugins=[BPMPlugin(config=config)])

        assert "my_registry" in app.dependencies
        assert "my_engine" in app.dependencies

    @pytest.mark.parametrize("attribute", ["registry", "engine"])
    def test_access_before_init(self, attribute: str) -> None:
        """Accessing components before app init raises."""
        plugin = BPMPlugin()

        with pytest.raises(RuntimeError, match="has not been initialized"):
            getattr(plugin, attribute)


# =============================================================================
# Dependency Injection Tests
# =============================================================================


@pytest.mark.integration
class TestDependencyInjection:
    """Tests for dependency injection of process components."""

    @pytest.fixture
    def client(self) -> Iterator[TestClient]:
        config = BPMPluginConfig(
            auto_register_definitions=[approval_definition(candidateUsers=["bob"]), routing_definition()],
        )
        app = Litestar(route_handlers=[ProcessTestController], plugins=[BPMPlugin(config=config)])
        with TestClient(app=app) as client:
            yield client

    def test_registry_injection(self, client: TestClient) -> None:
        """Route handlers receive the registry."""
        response = client.get("/processes/")

        assert response.status_code == HTTP_200_OK
        assert response.json() == [
            {"id": "approval", "version": 1, "status": "published"},
            {"id": "routing", "version": 1, "status": "published"},
        ]

    def test_engine_runs_instances(self, client: TestClient) -> None:
        """Route handlers can start instances on the injected engine."""
        started = client.post("/processes/routing/start", json={"amount": 5})
        assert started.status_code == HTTP_201_CREATED

        response = client.get(f"/processes/instances/{started.json()['instance_id']}")

        assert response.json() == {
            "status": "completed",
            "variables": {"amount": 5},
            "path": ["start", "route", "small"],
        }

    def test_user_task_round_trip(self, client: TestClient) -> None:
        """A user task is listed, completed and ends the instance."""
        instance_id = client.post("/processes/approval/start", json={"amount": 120}).json()["instance_id"]

        (task,) = client.get("/processes/tasks/bob").json()
        completed = client.post(f"/processes/tasks/{task['task_id']}/complete", json={"user": "bob", "approved": True})
        instance = client.get(f"/processes/instances/{instance_id}").json()

        assert task["node_id"] == "review"
        assert completed.json() == {"status": "completed"}
        assert instance["status"] == "completed"
        assert instance["variables"] == {"amount": 120, "approved": True}
        assert client.get("/processes/tasks/bob").json() == []


# =============================================================================
# Lifespan Tests
# =============================================================================


@pytest.mark.integration
class TestWorkerLifespan:
    """Tests for tying the worker pool to the application lifespan."""

    def test_workers_follow_app_lifespan(self) -> None:
        """Workers start with the app and stop on shutdown."""
        plugin = BPMPlugin()
        app = Litestar(plugins=[plugin])

        with TestClient(app=app):
            assert plugin.engine.queue.running

        assert not plugin.engine.queue.running

    def test_unmanaged_workers(self) -> None:
        """Workers are left alone when manage_workers is disabled."""
        plugin = BPMPlugin(config=BPMPluginConfig(manage_workers=False))
        app = Litestar(plugins=[plugin])

        with TestClient(app=app):
            assert not plugin.engine.queue.running
