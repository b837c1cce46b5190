"""Test fixtures for the component reconciler."""

from dataclasses import dataclass, field
from typing import Any

import pytest

from component_installer.cluster import WorkloadSimulator
from component_installer.collaborators import StaticManifestSource
from component_installer.component_controller import (
    ComponentReconciler,
    DEFAULT_STRATEGIES,
)
from component_installer.config import InstallerSetConfig, OperatorConfig
from component_installer.context import ReconcileContext
from component_installer.installerset_controller import InstallerSetController
from component_installer.manifest import (
    INSTALLER_SET_KIND,
    Component,
    ComponentSpec,
    InstallerSet,
    NamedResource,
)
from component_installer.orchestrator import DependencyGraph
from component_installer.store import InMemoryStore

from ..conftest import FakeClock

PIPELINE = NamedResource("Pipeline", None, "pipeline")
TRIGGER = NamedResource("Trigger", None, "trigger")


def _namespace() -> dict[str, Any]:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "placeholder"}}


def _config_map(name: str, **data: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name},
        "data": dict(data),
    }


def _deployment(name: str, container: str) -> dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name},
        "spec": {
            "replicas": 1,
            "template": {
                "spec": {
                    "containers": [
                        {
                            "name": container,
                            "image": f"${{IMAGE_{container.upper()}}}",
                        }
                    ]
                }
            },
        },
    }


PIPELINE_V1 = [
    _namespace(),
    _config_map("pipeline-config", version="${VERSION}"),
    _deployment("pipeline-controller", "controller"),
]

MANIFESTS = {
    "Pipeline": {
        "v1": PIPELINE_V1,
        "v2": [
            *PIPELINE_V1,
            _deployment("pipeline-webhook", "webhook"),
        ],
        "v3": [*PIPELINE_V1, _config_map("pipeline-broken")],
        "broken": [_config_map("pipeline-config", value="${UNKNOWN}")],
    },
    "Trigger": {
        "v1": [_namespace(), _deployment("trigger-controller", "controller")],
    },
}


@dataclass
class Env:
    """A component reconciler wired to an in-memory store."""

    store: InMemoryStore
    clock: FakeClock
    ctx: ReconcileContext
    installer_sets: InstallerSetController
    reconcilers: dict[str, ComponentReconciler] = field(default_factory=dict)
    simulator: WorkloadSimulator | None = None

    async def create(
        self, kind: str, name: str, version: str, namespace: str = "pipelines"
    ) -> NamedResource:
        component = Component(
            kind=kind,
            name=name,
            spec=ComponentSpec(version=version, target_namespace=namespace),
        )
        await self.store.create(component)
        return component.resource_id

    async def set_version(self, key: NamedResource, version: str) -> None:
        component, resource_version = await self.store.get(key, Component)
        component.spec.version = version
        await self.store.update(component, resource_version)

    async def component(self, key: NamedResource) -> Component:
        component, _ = await self.store.get(key, Component)
        return component

    async def installer_set(self, name: str) -> InstallerSet:
        installer_set, _ = await self.store.get(
            NamedResource(INSTALLER_SET_KIND, None, name), InstallerSet
        )
        return installer_set

    async def owned(self, key: NamedResource) -> list[str]:
        return [s.name for s in await self.installer_sets.owned(key)]

    async def converge(self, key: NamedResource, rounds: int = 3) -> Component:
        """Run the component, its active InstallerSet and the cluster in turn."""
        assert self.simulator
        reconciler = self.reconcilers[key.kind]
        for _ in range(rounds):
            await reconciler.reconcile(key)
            component = await self.component(key)
            if component.status.installer_set:
                await self.installer_sets.reconcile(
                    NamedResource(INSTALLER_SET_KIND, None, component.status.installer_set)
                )
            await self.simulator.sync()
        await reconciler.reconcile(key)
        return await self.component(key)


@pytest.fixture
def env(store: InMemoryStore, clock: FakeClock) -> Env:
    """Create the reconcilers for the Pipeline and Trigger kinds."""
    ctx = ReconcileContext(
        store=store,
        graph=DependencyGraph({"Pipeline": [], "Trigger": ["Pipeline"]}),
        config=OperatorConfig(
            registry="registry.example.com",
            installer_set=InstallerSetConfig(retry_budget=2),
        ),
        strategies=DEFAULT_STRATEGIES,
        manifest_source=StaticManifestSource(MANIFESTS),
        clock=clock,
    )
    installer_sets = InstallerSetController(ctx)
    return Env(
        store=store,
        clock=clock,
        ctx=ctx,
        installer_sets=installer_sets,
        reconcilers={
            kind: ComponentReconciler(ctx, kind, installer_sets)
            for kind in ("Pipeline", "Trigger")
        },
        simulator=WorkloadSimulator(store),
    )
