"""Orchestrator for component-installer.

This module provides the main orchestrator that wires the reconcilers to
their worker pools and routes store changes to the work queues.
"""

import asyncio
from collections.abc import Callable
import logging
from pathlib import Path
from dataclasses import dataclass

from component_installer.collaborators import (
    Defaulter,
    DirectoryManifestSource,
    ManifestSource,
    StaticManifestSource,
    Validator,
    BasicValidator,
)
from component_installer.component_controller import (
    DEFAULT_STRATEGIES,
    ComponentReconciler,
    ComponentStrategy,
)
from component_installer.conditions import Clock, utcnow
from component_installer.config import OperatorConfig
from component_installer.context import ReconcileContext
from component_installer.exceptions import (
    AlreadyExistsError,
    InstallerException,
)
from component_installer.installerset_controller import InstallerSetController
from component_installer.manifest import (
    INSTALLER_SET_KIND,
    LABEL_INSTALLER_SET,
    LABEL_PLATFORM,
    PLATFORM_KIND,
    BaseManifest,
    Component,
    InstallerSet,
    NamedResource,
    Platform,
    Unstructured,
)
from component_installer.status import ComponentPhase, PlatformPhase
from component_installer.store import Store, StoreEvent, WatchEvent
from component_installer.task import Controller, get_task_service

from .graph import DependencyGraph
from .loader import LoadOptions, ResourceLoader
from .reconciler import PlatformReconciler

__all__ = ["Orchestrator", "BootstrapOptions"]

_LOGGER = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


@dataclass
class BootstrapOptions:
    """Options for configuring the bootstrap process.

    Attributes:
        path: The path to load Platform and Component resources from.
        timeout: Seconds to wait for every resource to converge.
    """

    path: Path
    timeout: float = 300.0


class Orchestrator:
    """Orchestrator for coordinating the execution of controllers.

    The orchestrator is responsible for:
    - Validating the dependency graph before anything runs
    - Managing the lifecycle of one worker pool per kind
    - Routing store changes to the keys that need another pass
    - Providing a unified interface for starting/stopping the system
    """

    def __init__(
        self,
        store: Store,
        config: OperatorConfig | None = None,
        *,
        strategies: dict[str, ComponentStrategy] | None = None,
        validator: Validator | None = None,
        defaulter: Defaulter | None = None,
        manifest_source: ManifestSource | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize the orchestrator.

        Raises:
            ConfigurationError: If the dependency graph is invalid.
        """
        self.store = store
        self.config = config or OperatorConfig()
        graph = DependencyGraph(self.config.dependencies)
        if manifest_source is None:
            if self.config.manifest_root:
                manifest_source = DirectoryManifestSource(Path(self.config.manifest_root))
            else:
                manifest_source = StaticManifestSource({})
        self.ctx = ReconcileContext(
            store=store,
            graph=graph,
            config=self.config,
            strategies=dict(DEFAULT_STRATEGIES if strategies is None else strategies),
            validator=validator or BasicValidator(),
            defaulter=defaulter,
            manifest_source=manifest_source,
            clock=clock,
        )
        self.installer_sets = InstallerSetController(self.ctx)
        self.controllers: dict[str, Controller] = {}
        self._keys: dict[str, set[NamedResource]] = {}
        self._remove_listener: Callable[[], None] | None = None

    @property
    def graph(self) -> DependencyGraph:
        return self.ctx.graph

    def _create_controllers(self) -> None:
        """Create one worker pool per kind."""
        task_service = get_task_service()
        config = self.config.controller
        self.controllers[INSTALLER_SET_KIND] = Controller(
            "installerset", self.installer_sets, config, task_service
        )
        for kind in self.graph.topological_order():
            self.controllers[kind] = Controller(
                kind.lower(),
                ComponentReconciler(self.ctx, kind, self.installer_sets),
                config,
                task_service,
            )
        self.controllers[PLATFORM_KIND] = Controller(
            "platform", PlatformReconciler(self.ctx), config, task_service
        )
        _LOGGER.debug("Initialized controllers: %s", ", ".join(self.controllers.keys()))

    def _enqueue(self, key: NamedResource) -> None:
        if (controller := self.controllers.get(key.kind)) is not None:
            controller.enqueue(key)

    def _track(self, event: WatchEvent) -> None:
        keys = self._keys.setdefault(event.resource_id.kind, set())
        if event.event == StoreEvent.DELETED:
            keys.discard(event.resource_id)
        else:
            keys.add(event.resource_id)

    def _on_event(self, event: WatchEvent) -> None:
        """Route a store change to every key that depends on it."""
        self._track(event)
        obj = event.obj
        kind = event.resource_id.kind
        if kind in (PLATFORM_KIND, INSTALLER_SET_KIND) or kind in self.graph:
            self._enqueue(event.resource_id)
        for key in self.routes(obj):
            self._enqueue(key)

    def routes(self, obj: BaseManifest) -> list[NamedResource]:
        """Return the other keys affected by a change to the object."""
        keys: list[NamedResource] = []
        if isinstance(obj, InstallerSet):
            keys.append(obj.owner.resource_id)
        elif isinstance(obj, Component):
            if obj.status.installer_set:
                keys.append(
                    NamedResource(INSTALLER_SET_KIND, None, obj.status.installer_set)
                )
            if platform := obj.labels.get(LABEL_PLATFORM):
                keys.append(NamedResource(PLATFORM_KIND, None, platform))
            for dependent in self.graph.dependents(obj.kind):
                keys.extend(sorted(self._keys.get(dependent, ())))
        elif isinstance(obj, Unstructured):
            if owner := obj.labels.get(LABEL_INSTALLER_SET):
                keys.append(NamedResource(INSTALLER_SET_KIND, None, owner))
        return keys

    async def start(self) -> None:
        """Start the orchestrator and all controllers."""
        if self.controllers:
            return

        _LOGGER.info("Starting orchestrator")
        self._create_controllers()
        for kind in self.controllers:
            if kind == INSTALLER_SET_KIND:
                continue
            for obj, _ in await self.store.list(kind):
                self._keys.setdefault(kind, set()).add(
                    obj.resource_id  # type: ignore[attr-defined]
                )
        self._remove_listener = self.store.add_listener(self._on_event)
        for controller in self.controllers.values():
            controller.start()
            await controller.resync()

    async def stop(self) -> None:
        """Stop the orchestrator and all controllers.

        In-flight reconciliation passes are cancelled.
        """
        if not self.controllers:
            return

        _LOGGER.info("Stopping orchestrator")
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None

        # Stop controllers in reverse order
        for name, controller in reversed(self.controllers.items()):
            _LOGGER.debug("Stopping controller: %s", name)
            await controller.stop()

        await get_task_service().block_till_done()
        self.controllers.clear()
        self._keys.clear()
        _LOGGER.info("Orchestrator stopped")

    async def _resources(self) -> list[Platform | Component]:
        resources: list[Platform | Component] = []
        for kind in [PLATFORM_KIND, *self.graph.kinds]:
            for obj, _ in await self.store.list(kind):
                if isinstance(obj, (Platform, Component)):
                    resources.append(obj)
        return resources

    async def failed_resources(self) -> list[NamedResource]:
        """Return resources that reached Error for their current generation."""
        failed = []
        for obj in await self._resources():
            if (
                obj.status.phase in (ComponentPhase.ERROR, PlatformPhase.ERROR)
                and obj.status.observed_generation == obj.generation
            ):
                failed.append(obj.resource_id)
        return failed

    async def is_ready(self) -> bool:
        """Return True if every Platform and Component is Ready."""
        for obj in await self._resources():
            if obj.deleting:
                return False
            if isinstance(obj, Platform):
                if (
                    obj.status.phase != PlatformPhase.READY
                    or obj.status.observed_generation != obj.generation
                ):
                    return False
            elif not obj.ready() or obj.status.observed_generation != obj.generation:
                return False
        return True

    async def wait_ready(self, timeout: float) -> None:
        """Wait until every resource is Ready.

        Raises:
            TimeoutError: If the resources did not converge in time.
        """
        async with asyncio.timeout(timeout):
            while not await self.is_ready():
                await asyncio.sleep(POLL_INTERVAL)

    async def run(self, timeout: float) -> bool:
        """Run the controllers until every resource is Ready.

        Returns:
            bool: True if all resources converged, False if any failed or the
            timeout expired.
        """
        try:
            await self.start()
            async with asyncio.timeout(timeout):
                while True:
                    if failed := await self.failed_resources():
                        _LOGGER.error("Resource failures detected: %s", failed)
                        return False
                    if await self.is_ready():
                        _LOGGER.info("All resources are Ready")
                        return True
                    await asyncio.sleep(POLL_INTERVAL)

        except TimeoutError:
            _LOGGER.error("Resources did not converge within %ss", timeout)
            return False

        except asyncio.CancelledError:
            _LOGGER.info("Orchestrator was cancelled")
            return False

        finally:
            await self.stop()

    async def bootstrap(self, options: BootstrapOptions) -> bool:
        """Load resources from disk and run until they converge.

        Args:
            options: The bootstrap options for finding resources.

        Returns:
            bool: True if bootstrap was successful, False otherwise
        """
        _LOGGER.info("Starting bootstrap from path: %s", options.path)

        loader = ResourceLoader(set(self.graph.kinds))
        try:
            async for resource in loader.load(
                LoadOptions(path=options.path, recursive=True)
            ):
                try:
                    await self.store.create(resource)
                except AlreadyExistsError:
                    _LOGGER.warning("Duplicate resource %s skipped", resource.resource_id)
        except InstallerException as e:
            _LOGGER.error("Failed to load initial resources: %s", e, exc_info=True)
            return False

        return await self.run(options.timeout)
