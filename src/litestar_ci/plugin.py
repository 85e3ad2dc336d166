"""Litestar plugin for CI orchestration.

This module provides the CIPlugin for running litestar-ci inside a Litestar
application: it loads workflow files, wires the coordinator, exposes both through
dependency injection, mounts the REST API and runs the background loops for the
lifetime of the application.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from litestar.di import Provide
from litestar.plugins import InitPluginProtocol

from litestar_ci.config import EngineConfig
from litestar_ci.engine.coordinator import ExecutionCoordinator
from litestar_ci.engine.registry import WorkflowStore

if TYPE_CHECKING:
    from collections.abc import Callable

    from litestar import Litestar
    from litestar.config.app import AppConfig

    from litestar_ci.core.protocols import RunStore, SecretProvider

__all__ = ["CIPlugin", "CIPluginConfig"]

logger = logging.getLogger(__name__)


@dataclass
class CIPluginConfig:
    """Configuration for the CIPlugin.

    Attributes:
        store: Optional pre-configured WorkflowStore. If not provided, a new one
            is created.
        coordinator: Optional pre-configured ExecutionCoordinator. If not
            provided, one is created over the store.
        workflow_paths: Workflow files or directories of workflow files loaded
            into the store when the app is initialized.
        engine_config: Engine tunables used when the coordinator is created here.
        secrets: Secret provider used when the coordinator is created here.
        persistence: Run store used when the coordinator is created here.
        observers: Callables subscribed to every reporting event.
        enable_scheduler: Whether schedule triggers fire while the app runs.
        enable_background: Whether the maintenance loop runs while the app runs.
        dependency_key_store: The key used for dependency injection of the
            WorkflowStore. Defaults to "workflow_store".
        dependency_key_coordinator: The key used for dependency injection of the
            ExecutionCoordinator. Defaults to "ci_coordinator".
        enable_api: Whether to enable the REST API endpoints. Defaults to True.
        api_path_prefix: URL path prefix for all API endpoints. Defaults to "/ci".
        api_guards: List of Litestar guards to apply to all API endpoints.
        api_tags: OpenAPI tags to apply to the API endpoints.
        include_api_in_schema: Whether to include API endpoints in the OpenAPI
            schema. Defaults to True.
    """

    store: WorkflowStore | None = None
    coordinator: ExecutionCoordinator | None = None
    workflow_paths: list[str | Path] = field(default_factory=list)
    engine_config: EngineConfig | None = None
    secrets: SecretProvider | None = None
    persistence: RunStore | None = None
    observers: list[Callable[..., Any]] = field(default_factory=list)
    enable_scheduler: bool = True
    enable_background: bool = True
    dependency_key_store: str = "workflow_store"
    dependency_key_coordinator: str = "ci_coordinator"
    enable_api: bool = True
    api_path_prefix: str = "/ci"
    api_guards: list[Any] = field(default_factory=list)
    api_tags: list[str] = field(default_factory=lambda: ["CI"])
    include_api_in_schema: bool = True


class CIPlugin(InitPluginProtocol):
    """Litestar plugin for CI orchestration.

    Example:
        Serving the workflows of a repository::

            from litestar import Litestar
            from litestar_ci import CIPlugin, CIPluginConfig, EngineConfig

            app = Litestar(
                plugins=[
                    CIPlugin(
                        config=CIPluginConfig(
                            workflow_paths=[".github/workflows"],
                            engine_config=EngineConfig(reload_workflows=True),
                        )
                    )
                ]
            )

        Using the coordinator in a route handler::

            from litestar import post
            from litestar_ci import Event, EventKind, ExecutionCoordinator


            @post("/hooks/push")
            async def on_push(data: dict, ci_coordinator: ExecutionCoordinator) -> dict:
                runs = await ci_coordinator.handle_event(
                    Event(kind=EventKind.PUSH, ref=data["ref"], actor=data["pusher"]["name"])
                )
                return {"runs": [str(run.id) for run in runs]}
    """

    __slots__ = ("_config", "_coordinator", "_store")

    def __init__(self, config: CIPluginConfig | None = None) -> None:
        """Initialize the plugin.

        Args:
            config: Optional configuration for the plugin.
        """
        self._config = config or CIPluginConfig()
        self._store: WorkflowStore | None = None
        self._coordinator: ExecutionCoordinator | None = None

    @property
    def store(self) -> WorkflowStore:
        """Get the workflow store.

        Raises:
            RuntimeError: If accessed before plugin initialization.
        """
        if self._store is None:
            msg = "CIPlugin has not been initialized. Access store after app initialization."
            raise RuntimeError(msg)
        return self._store

    @property
    def coordinator(self) -> ExecutionCoordinator:
        """Get the execution coordinator.

        Raises:
            RuntimeError: If accessed before plugin initialization.
        """
        if self._coordinator is None:
            msg = "CIPlugin has not been initialized. Access coordinator after app initialization."
            raise RuntimeError(msg)
        return self._coordinator

    def _load_workflows(self, store: WorkflowStore) -> None:
        for entry in self._config.workflow_paths:
            path = Path(entry)
            if path.is_dir():
                store.load_directory(path)
            else:
                store.load_file(path)
        if self._config.workflow_paths:
            logger.info("Loaded %d workflow(s)", len(store))

    def on_app_init(self, app_config: AppConfig) -> AppConfig:
        """Initialize the plugin when the Litestar app is created.

        This method:
        1. Creates or uses the provided WorkflowStore and loads the workflow paths
        2. Creates or uses the provided ExecutionCoordinator
        3. Subscribes the configured observers
        4. Adds dependency providers to the app config
        5. Starts and stops the background loops with the app
        6. Optionally registers REST API controllers if enable_api=True

        Args:
            app_config: The Litestar application configuration.

        Returns:
            The modified application configuration.
        """
        engine_config = self._config.engine_config or EngineConfig()

        if self._config.coordinator is not None:
            self._coordinator = self._config.coordinator
            self._store = self._config.store or self._coordinator.store
        else:
            self._store = self._config.store or WorkflowStore(default_timeout=engine_config.default_job_timeout)
            self._coordinator = ExecutionCoordinator(
                self._store,
                secrets=self._config.secrets,
                persistence=self._config.persistence,
                config=engine_config,
            )
        self._load_workflows(self._store)

        for observer in self._config.observers:
            self._coordinator.event_bus.subscribe(observer)

        def provide_store() -> WorkflowStore:
            return self._store  # type: ignore[return-value]

        def provide_coordinator() -> ExecutionCoordinator:
            return self._coordinator  # type: ignore[return-value]

        app_config.dependencies[self._config.dependency_key_store] = Provide(provide_store, sync_to_thread=False)
        app_config.dependencies[self._config.dependency_key_coordinator] = Provide(
            provide_coordinator,
            sync_to_thread=False,
        )

        app_config.on_startup.append(self._on_startup)
        app_config.on_shutdown.append(self._on_shutdown)

        if self._config.enable_api:
            from litestar import Router

            from litestar_ci.web.controllers import (
                EventController,
                RunController,
                RunnerController,
                WorkflowController,
            )

            ci_router = Router(
                path=self._config.api_path_prefix,
                route_handlers=[WorkflowController, EventController, RunController, RunnerController],
                guards=self._config.api_guards,
                tags=self._config.api_tags,
                include_in_schema=self._config.include_api_in_schema,
            )
            app_config.route_handlers.append(ci_router)

        return app_config

    async def _on_startup(self, app: Litestar) -> None:
        if self._config.enable_background:
            self.coordinator.start(schedule=self._config.enable_scheduler)
        elif self._config.enable_scheduler:
            self.coordinator.poller.start()

    async def _on_shutdown(self, app: Litestar) -> None:
        await self.coordinator.stop()
