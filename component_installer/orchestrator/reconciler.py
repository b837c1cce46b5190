"""Reconciler for the top level Platform resource.

A Platform enables a set of component kinds. The reconciler walks the kinds
in dependency order, creating or updating the component for each enabled
kind once all of its prerequisites are Ready, and aggregates the readiness
of every enabled kind into the Platform status.
"""

import copy
import logging

from component_installer.conditions import (
    READY,
    Condition,
    ConditionSet,
    ConditionStatus,
    aggregate,
)
from component_installer.context import ReconcileContext, trace_context
from component_installer.manifest import (
    FINALIZER,
    LABEL_MANAGED_BY,
    LABEL_PLATFORM,
    MANAGED_BY,
    PLATFORM_KIND,
    Component,
    ComponentSpec,
    ComponentSummary,
    NamedResource,
    Platform,
    PlatformComponent,
    PlatformStatus,
)
from component_installer.exceptions import (
    DependencyNotReadyError,
    ObjectNotFoundError,
    PrerequisiteDisabledError,
)
from component_installer.status import ComponentPhase, PlatformPhase
from component_installer.task import ReconcileResult, Reconciler

__all__ = ["PlatformReconciler", "COMPONENTS_READY", "component_name"]

_LOGGER = logging.getLogger(__name__)

COMPONENTS_READY = "ComponentsReady"

IN_PROGRESS_PHASES = {
    ComponentPhase.PENDING,
    ComponentPhase.INSTALLING,
    ComponentPhase.UPGRADING,
}


def component_name(kind: str) -> str:
    """Return the name of the component created for a kind."""
    return kind.lower()


class PlatformReconciler(Reconciler):
    """Reconciles Platform resources into per kind components."""

    def __init__(self, ctx: ReconcileContext) -> None:
        self._ctx = ctx
        self._store = ctx.store
        self._graph = ctx.graph

    async def list_keys(self) -> list[NamedResource]:
        return [
            obj.resource_id  # type: ignore[attr-defined]
            for obj, _ in await self._store.list(PLATFORM_KIND)
        ]

    async def _owned(
        self, platform: Platform
    ) -> dict[str, list[tuple[Component, int]]]:
        """Return the components created for the platform keyed by kind."""
        results: dict[str, list[tuple[Component, int]]] = {}
        for kind in self._graph.kinds:
            results[kind] = [
                (obj, version)
                for obj, version in await self._store.list(
                    kind, selector={LABEL_PLATFORM: platform.name}
                )
                if isinstance(obj, Component)
            ]
        return results

    async def _delete(self, platform: Platform, component: Component) -> None:
        if component.deleting:
            return
        _LOGGER.info("Platform %s deleting %s", platform.name, component.resource_id)
        try:
            await self._store.delete(component.resource_id)
        except ObjectNotFoundError:
            pass

    async def reconcile(self, key: NamedResource) -> ReconcileResult:
        """Run one reconciliation pass for the platform."""
        with trace_context(f"Platform '{key.namespaced_name}'"):
            try:
                platform, version = await self._store.get(key, Platform)
            except ObjectNotFoundError:
                return ReconcileResult()

            if platform.deleting:
                return await self._finalize(platform, version)

            if FINALIZER not in platform.finalizers:
                platform.finalizers.append(FINALIZER)
                version = await self._store.update(platform, version)

            status = copy.deepcopy(platform.status)
            result = await self._converge(platform, status)
            if status != platform.status:
                if status.phase != platform.status.phase:
                    _LOGGER.info(
                        "Platform %s %s -> %s",
                        key.namespaced_name,
                        platform.status.phase,
                        status.phase,
                    )
                platform.status = status
                await self._store.update(platform, version)
            return result

    async def _converge(
        self, platform: Platform, status: PlatformStatus
    ) -> ReconcileResult:
        conditions = ConditionSet(
            [COMPONENTS_READY], status.conditions, clock=self._ctx.clock
        )
        unknown = [
            entry.kind
            for entry in platform.spec.components
            if entry.kind not in self._graph
        ]
        if unknown:
            conditions.mark_false(
                COMPONENTS_READY,
                "UnknownComponentKind",
                f"Unknown component kinds {unknown}, expected one of {self._graph.kinds}",
            )
            status.conditions = conditions.conditions()
            status.phase = PlatformPhase.ERROR
            status.observed_generation = platform.generation
            return ReconcileResult()

        entries = {e.kind: e for e in platform.spec.components if e.enabled}
        owned = await self._owned(platform)

        for kind in self._graph.reverse_order():
            if kind in entries:
                continue
            for component, _ in owned[kind]:
                await self._delete(platform, component)

        members: dict[str, list[Condition]] = {}
        summaries: list[ComponentSummary] = []
        blocked = False
        for kind in self._graph.topological_order():
            if (entry := entries.get(kind)) is None:
                continue
            if disabled := [
                p for p in self._graph.prerequisites(kind) if p not in entries
            ]:
                problem = PrerequisiteDisabledError(kind, disabled[0])
                members[kind] = [
                    Condition(
                        type=READY,
                        status=ConditionStatus.FALSE,
                        reason=problem.reason,
                        message=str(problem),
                    )
                ]
                summaries.append(
                    ComponentSummary(
                        kind=kind,
                        phase=ComponentPhase.ERROR,
                        reason=problem.reason,
                        message=str(problem),
                    )
                )
                continue
            try:
                self._check_prerequisites(kind, owned)
            except DependencyNotReadyError as err:
                blocked = True
                members[kind] = [
                    Condition(
                        type=READY,
                        status=ConditionStatus.UNKNOWN,
                        reason=err.reason,
                        message=str(err),
                    )
                ]
                summaries.append(
                    ComponentSummary(
                        kind=kind,
                        phase=ComponentPhase.WAITING,
                        reason=err.reason,
                        message=str(err),
                    )
                )
                continue
            component = await self._apply_component(platform, entry, owned[kind])
            members[kind] = list(component.status.conditions)
            summary = ComponentSummary(
                kind=kind, phase=component.status.phase, ready=component.ready()
            )
            if not summary.ready:
                for condition in component.status.conditions:
                    if condition.type == READY:
                        summary.reason = condition.reason or None
                        summary.message = condition.message or None
            summaries.append(summary)

        combined = aggregate(members)
        if combined.is_true:
            conditions.mark_true(COMPONENTS_READY, "Ready")
        elif combined.is_false:
            conditions.mark_false(COMPONENTS_READY, combined.reason, combined.message)
        else:
            conditions.mark_unknown(COMPONENTS_READY, combined.reason, combined.message)
        status.conditions = conditions.conditions()
        status.components = summaries

        phases = {summary.phase for summary in summaries}
        if ComponentPhase.ERROR in phases:
            status.phase = PlatformPhase.ERROR
        elif combined.is_true:
            status.phase = PlatformPhase.READY
        elif phases & IN_PROGRESS_PHASES:
            status.phase = PlatformPhase.INSTALLING
        else:
            status.phase = PlatformPhase.WAITING
        if status.phase in (PlatformPhase.READY, PlatformPhase.ERROR):
            status.observed_generation = platform.generation

        if blocked:
            return ReconcileResult(
                requeue_after=self._ctx.config.controller.dependency_requeue_interval
            )
        return ReconcileResult()

    def _check_prerequisites(
        self, kind: str, owned: dict[str, list[tuple[Component, int]]]
    ) -> None:
        """Raise DependencyNotReadyError for the first prerequisite not Ready."""
        for prerequisite in self._graph.prerequisites(kind):
            components = [c for c, _ in owned.get(prerequisite) or ()]
            if not components or not all(
                c.ready() and not c.deleting for c in components
            ):
                raise DependencyNotReadyError(kind, prerequisite)

    async def _apply_component(
        self,
        platform: Platform,
        entry: PlatformComponent,
        existing: list[tuple[Component, int]],
    ) -> Component:
        """Create or update the component for an enabled kind."""
        spec = ComponentSpec(
            version=entry.version or platform.spec.version,
            target_namespace=platform.spec.target_namespace,
            config=copy.deepcopy(entry.config),
        )
        name = component_name(entry.kind)
        current, version = next(
            ((c, v) for c, v in existing if c.name == name), (None, None)
        )
        if current is None:
            component = Component(
                kind=entry.kind,
                name=name,
                namespace=platform.namespace,
                labels={LABEL_PLATFORM: platform.name, LABEL_MANAGED_BY: MANAGED_BY},
                spec=spec,
            )
            _LOGGER.info("Platform %s creating %s", platform.name, component.resource_id)
            await self._store.create(component)
            return component
        if current.spec != spec and not current.deleting:
            _LOGGER.info("Platform %s updating %s", platform.name, current.resource_id)
            await self._store.patch(
                current.resource_id, Component, {"spec": spec}, version
            )
        return current

    async def _finalize(self, platform: Platform, version: int) -> ReconcileResult:
        """Delete components dependents first, one layer at a time."""
        if FINALIZER not in platform.finalizers:
            return ReconcileResult()
        if platform.status.phase != PlatformPhase.DELETING:
            platform.status.phase = PlatformPhase.DELETING
            version = await self._store.update(platform, version)

        owned = await self._owned(platform)
        remaining = {kind for kind, components in owned.items() if components}
        if remaining:
            for kind in self._graph.reverse_order():
                if kind not in remaining:
                    continue
                if any(d in remaining for d in self._graph.dependents(kind)):
                    continue
                for component, _ in owned[kind]:
                    await self._delete(platform, component)
            return ReconcileResult(
                requeue_after=self._ctx.config.controller.dependency_requeue_interval
            )

        platform.finalizers.remove(FINALIZER)
        await self._store.update(platform, version)
        _LOGGER.info("Platform %s finalized", platform.name)
        return ReconcileResult()
