"""Litestar plugin for process engine integration.

This module provides the BPMPlugin, which makes a :class:`ProcessEngine` and
its :class:`DefinitionRegistry` available to route handlers and runs the
engine's worker pool for the lifetime of the application.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from litestar.di import Provide
from litestar.plugins import InitPluginProtocol

from litestar_bpm.engine.orchestrator import ProcessEngine
from litestar_bpm.engine.registry import DefinitionRegistry

if TYPE_CHECKING:
    from litestar.config.app import AppConfig

    from litestar_bpm.config import EngineConfig
    from litestar_bpm.core.definition import ProcessDefinition

__all__ = ["BPMPlugin", "BPMPluginConfig"]


@dataclass
class BPMPluginConfig:
    """Configuration for the BPMPlugin.

    Attributes:
        registry: Optional pre-configured DefinitionRegistry. If not provided,
            a new one will be created.
        engine: Optional pre-configured ProcessEngine. If not provided, one is
            created over the registry with in-memory repositories.
        engine_config: Configuration for an engine created by the plugin.
        auto_register_definitions: Definitions, or their wire format, to
            register and publish on app init.
        dependency_key_registry: The key used for dependency injection of
            the DefinitionRegistry. Defaults to "process_registry".
        dependency_key_engine: The key used for dependency injection of
            the ProcessEngine. Defaults to "process_engine".
        manage_workers: Start the worker pool on app startup and drain and
            stop it on shutdown. Defaults to True.
    """

    registry: DefinitionRegistry | None = None
    engine: ProcessEngine | None = None
    engine_config: EngineConfig | None = None
    auto_register_definitions: list[ProcessDefinition | Mapping[str, Any]] = field(default_factory=list)
    dependency_key_registry: str = "process_registry"
    dependency_key_engine: str = "process_engine"
    manage_workers: bool = True


class BPMPlugin(InitPluginProtocol):
    """Litestar plugin for process management.

    Example:
        Basic usage with auto-registration::

            from litestar import Litestar, post
            from litestar_bpm import BPMPlugin, BPMPluginConfig, ProcessEngine

            approval = {
                "id": "approval",
                "name": "Approval",
                "nodes": [...],
                "edges": [...],
            }


            @post("/processes/{definition_id:str}/start")
            async def start_process(definition_id: str, process_engine: ProcessEngine) -> dict:
                instance = await process_engine.start_instance(definition_id, started_by="api")
                return {"instance_id": str(instance.id), "status": instance.status}


            app = Litestar(
                route_handlers=[start_process],
                plugins=[BPMPlugin(config=BPMPluginConfig(auto_register_definitions=[approval]))],
            )
    """

    __slots__ = ("_config", "_engine", "_registry")

    def __init__(self, config: BPMPluginConfig | None = None) -> None:
        """Initialize the plugin.

        Args:
            config: Optional configuration for the plugin.
        """
        self._config = config or BPMPluginConfig()
        self._registry: DefinitionRegistry | None = None
        self._engine: ProcessEngine | None = None

    @property
    def registry(self) -> DefinitionRegistry:
        """Get the definition registry.

        Raises:
            RuntimeError: If accessed before plugin initialization.
        """
        if self._registry is None:
            msg = "BPMPlugin has not been initialized. Access registry after app init."
            raise RuntimeError(msg)
        return self._registry

    @property
    def engine(self) -> ProcessEngine:
        """Get the process engine.

        Raises:
            RuntimeError: If accessed before plugin initialization.
        """
        if self._engine is None:
            msg = "BPMPlugin has not been initialized. Access engine after app init."
            raise RuntimeError(msg)
        return self._engine

    def on_app_init(self, app_config: AppConfig) -> AppConfig:
        """Wire the registry and engine into the application.

        This method:
        1. Creates or uses the provided DefinitionRegistry
        2. Creates or uses the provided ProcessEngine
        3. Registers and publishes any auto_register_definitions
        4. Adds dependency providers to the app config
        5. Optionally ties the worker pool to the app lifespan

        Args:
            app_config: The Litestar application configuration.

        Returns:
            The modified application configuration.
        """
        self._registry = self._config.registry or DefinitionRegistry()
        self._engine = self._config.engine or ProcessEngine(self._registry, config=self._config.engine_config)

        for definition in self._config.auto_register_definitions:
            registered = self._registry.register(definition)
            self._registry.publish(registered.id, registered.version)

        def provide_registry() -> DefinitionRegistry:
            return self._registry  # type: ignore[return-value]

        def provide_engine() -> ProcessEngine:
            return self._engine  # type: ignore[return-value]

        app_config.dependencies[self._config.dependency_key_registry] = Provide(
            provide_registry,
            sync_to_thread=False,
        )
        app_config.dependencies[self._config.dependency_key_engine] = Provide(
            provide_engine,
            sync_to_thread=False,
        )

        if self._config.manage_workers:
            app_config.on_startup.append(self._start_workers)
            app_config.on_shutdown.append(self._stop_workers)

        return app_config

    def _start_workers(self) -> None:
        self.engine.start()

    async def _stop_workers(self) -> None:
        await self.engine.stop()
