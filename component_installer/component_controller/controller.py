"""
Component Reconciler implementation.

One reconciler runs per component kind, all sharing this state machine:

    Pending -> Installing -> Ready -> Upgrading -> Ready
                                              \\-> Error (rolled back)
    Waiting: a prerequisite kind is not Ready
    Deleting: the finalizer is removing owned InstallerSets

Each pass computes the desired bundle for the current spec, hands it to the
InstallerSetController and copies the bundle readiness into the component
status. A pass over a Ready component with an unchanged spec only reads.

Upgrades keep the previously Ready bundle as the retained rollback target
until the new bundle is Ready. If the new bundle exhausts its retry budget
and rollback is enabled, the active pointer reverts to the retained bundle
and the failed bundle is removed without touching the objects both share.
"""

import copy
from dataclasses import dataclass, field
import logging

from component_installer.conditions import ConditionSet
from component_installer.context import ReconcileContext, trace_context
from component_installer.exceptions import (
    DependencyNotReadyError,
    FinalizationError,
    InputException,
    ManifestTransformError,
    ObjectNotFoundError,
    ValidationError,
)
from component_installer.installerset_controller import InstallerSetController
from component_installer.manifest import (
    FINALIZER,
    Component,
    ComponentStatus,
    InstallerSet,
    NamedResource,
)
from component_installer.status import ComponentPhase
from component_installer.task import ReconcileResult, Reconciler
from component_installer.transform import (
    TransformConfig,
    bundle_hash,
    manifest_items,
    transform,
)

from .strategy import ComponentStrategy

__all__ = [
    "ComponentReconciler",
    "DEPENDENCIES_INSTALLED",
    "INSTALLER_SET_AVAILABLE",
    "INSTALLER_SET_READY",
]

_LOGGER = logging.getLogger(__name__)

DEPENDENCIES_INSTALLED = "DependenciesInstalled"
INSTALLER_SET_AVAILABLE = "InstallerSetAvailable"
INSTALLER_SET_READY = "InstallerSetReady"

UPGRADE_FAILED = "UpgradeFailed"
TRANSIENT_BUDGET_EXCEEDED = "TransientErrorBudgetExceeded"


@dataclass
class _Deletion:
    """An InstallerSet to remove once the pointer change is persisted."""

    resource_id: NamedResource
    keep: set[str] = field(default_factory=set)
    supersede: bool = False


def _identities(installer_set: InstallerSet | None) -> set[str]:
    if installer_set is None:
        return set()
    return {item.identity for item in installer_set.items}


class ComponentReconciler(Reconciler):
    """Reconciles the components of a single kind."""

    def __init__(
        self,
        ctx: ReconcileContext,
        kind: str,
        installer_sets: InstallerSetController,
    ) -> None:
        self._ctx = ctx
        self._store = ctx.store
        self.kind = kind
        self._installer_sets = installer_sets
        self._strategy = ctx.strategies.get(kind) or ComponentStrategy(kind)

    def _conditions(self, status: ComponentStatus) -> ConditionSet:
        return ConditionSet(
            [DEPENDENCIES_INSTALLED, INSTALLER_SET_AVAILABLE, INSTALLER_SET_READY],
            status.conditions,
            clock=self._ctx.clock,
        )

    async def list_keys(self) -> list[NamedResource]:
        return [
            obj.resource_id  # type: ignore[attr-defined]
            for obj, _ in await self._store.list(self.kind)
        ]

    async def reconcile(self, key: NamedResource) -> ReconcileResult:
        """Run one reconciliation pass for the component."""
        with trace_context(f"{self.kind} '{key.namespaced_name}'"):
            try:
                component, version = await self._store.get(key, Component)
            except ObjectNotFoundError:
                _LOGGER.debug("%s no longer exists", key)
                return ReconcileResult()

            if component.deleting:
                await self._finalize(component, version)
                return ReconcileResult()

            if FINALIZER not in component.finalizers:
                component.finalizers.append(FINALIZER)
                version = await self._store.update(component, version)

            status = copy.deepcopy(component.status)
            conditions = self._conditions(status)
            deletions: list[_Deletion] = []
            result = await self._converge(component, status, conditions, deletions)
            status.conditions = conditions.conditions()
            if status != component.status:
                if status.phase != component.status.phase:
                    _LOGGER.info(
                        "%s %s -> %s", key, component.status.phase, status.phase
                    )
                component.status = status
                await self._store.update(component, version)

            errors = []
            for deletion in deletions:
                try:
                    if deletion.supersede:
                        await self._installer_sets.supersede(deletion.resource_id)
                    await self._installer_sets.delete(
                        deletion.resource_id, keep=deletion.keep
                    )
                except FinalizationError as err:
                    errors.append(err)
            if errors:
                raise errors[0]
            return result

    async def _converge(
        self,
        component: Component,
        status: ComponentStatus,
        conditions: ConditionSet,
        deletions: list[_Deletion],
    ) -> ReconcileResult:
        """Compute the desired status, recording InstallerSets to delete."""
        working = copy.deepcopy(component)
        try:
            if (defaulter := self._ctx.defaulter) is not None:
                working.spec = defaulter.apply_defaults(self.kind, component.spec)
            self._ctx.validator.validate(self.kind, working.spec)
        except ValidationError as err:
            self._terminal_error(component, status, conditions, err.reason, str(err))
            return ReconcileResult()

        try:
            await self._check_dependencies()
        except DependencyNotReadyError as err:
            conditions.mark_false(DEPENDENCIES_INSTALLED, err.reason, str(err))
            if not status.installer_set:
                conditions.mark_unknown(INSTALLER_SET_AVAILABLE, "Waiting", str(err))
            status.phase = ComponentPhase.WAITING
            return ReconcileResult(
                requeue_after=self._ctx.config.controller.dependency_requeue_interval
            )
        conditions.mark_true(DEPENDENCIES_INSTALLED, "Ready")

        try:
            raw = await self._ctx.manifest_source.manifests(
                self.kind, working.spec.version
            )
            transform_config = TransformConfig.from_component(
                working,
                images=self._strategy.image_defaults(
                    working.spec, self._ctx.config.registry
                ),
                substitutions=self._strategy.extra_substitutions(working.spec),
            )
            items = manifest_items(transform(raw, transform_config))
            content_hash = bundle_hash(items, transform_config)
        except ValidationError as err:
            self._terminal_error(component, status, conditions, err.reason, str(err))
            return ReconcileResult()
        except (ManifestTransformError, InputException) as err:
            self._terminal_error(
                component, status, conditions, ManifestTransformError.reason, str(err)
            )
            return ReconcileResult()

        owned = {
            s.name: s for s in await self._installer_sets.owned(component.resource_id)
        }
        active = owned.get(status.installer_set or "")
        retained = owned.get(status.retained_installer_set or "")
        if retained is None:
            status.retained_installer_set = None

        if (
            status.failed_hash == content_hash
            and status.failed_generation == component.generation
            and active is not None
        ):
            # The bundle for this generation was already rolled back
            self._collect_garbage(owned, active, retained, deletions)
            conditions.mark_true(INSTALLER_SET_AVAILABLE, "Available", active.name)
            conditions.mark_false(
                INSTALLER_SET_READY,
                UPGRADE_FAILED,
                f"Upgrade to {content_hash[:10]} failed, rolled back to {active.name}",
            )
            status.phase = ComponentPhase.ERROR
            status.observed_generation = component.generation
            return ReconcileResult()

        if active is None or active.content_hash != content_hash:
            target = next(
                (s for s in owned.values() if s.content_hash == content_hash), None
            )
            if target is None or target.phase.terminal:
                target = await self._installer_sets.create_or_update(
                    working, items, content_hash
                )
                owned[target.name] = target
            if active is None:
                _LOGGER.info("%s installing %s", component.resource_id, target.name)
            elif target is retained:
                # Spec reverted to the retained bundle mid-upgrade
                _LOGGER.info(
                    "%s reverting to retained %s", component.resource_id, target.name
                )
                retained = None
                status.retained_installer_set = None
            elif active.ready():
                _LOGGER.info(
                    "%s upgrading %s -> %s",
                    component.resource_id,
                    active.name,
                    target.name,
                )
                retained = active
                status.retained_installer_set = active.name
            else:
                _LOGGER.info(
                    "%s replacing unready %s with %s",
                    component.resource_id,
                    active.name,
                    target.name,
                )
            active = target
            status.installer_set = target.name
            status.failed_hash = None
            status.failed_generation = None

        status.content_hash = active.content_hash
        conditions.mark_true(INSTALLER_SET_AVAILABLE, "Available", active.name)

        if active.ready():
            if retained is not None:
                _LOGGER.info(
                    "%s upgrade complete, releasing %s",
                    component.resource_id,
                    retained.name,
                )
                deletions.append(
                    _Deletion(retained.resource_id, _identities(active), supersede=True)
                )
                owned.pop(retained.name, None)
                retained = None
                status.retained_installer_set = None
            self._mirror_ready(active, conditions)
            status.version = active.version
            status.phase = ComponentPhase.READY
            status.observed_generation = component.generation
        elif self._installer_sets.retries_exhausted(active):
            failure = self._installer_sets.first_failure(active) or (
                "ApplyFailed",
                f"InstallerSet {active.name} failed",
            )
            if retained is not None and self._ctx.config.installer_set.rollback_on_failure:
                _LOGGER.warning(
                    "%s upgrade to %s failed (%s), rolling back to %s",
                    component.resource_id,
                    active.name,
                    failure[1],
                    retained.name,
                )
                deletions.append(_Deletion(active.resource_id, _identities(retained)))
                owned.pop(active.name, None)
                status.failed_hash = active.content_hash
                status.failed_generation = component.generation
                active = retained
                retained = None
                status.installer_set = active.name
                status.retained_installer_set = None
                status.content_hash = active.content_hash
                conditions.mark_true(INSTALLER_SET_AVAILABLE, "Available", active.name)
                conditions.mark_false(
                    INSTALLER_SET_READY,
                    UPGRADE_FAILED,
                    f"Upgrade to {content_hash[:10]} failed, rolled back to {active.name}",
                )
            else:
                conditions.mark_false(INSTALLER_SET_READY, failure[0], failure[1])
            status.phase = ComponentPhase.ERROR
            status.observed_generation = component.generation
        else:
            self._mirror_ready(active, conditions)
            status.phase = (
                ComponentPhase.UPGRADING
                if retained is not None
                else ComponentPhase.INSTALLING
            )

        self._collect_garbage(owned, active, retained, deletions)
        return ReconcileResult()

    def _mirror_ready(self, active: InstallerSet, conditions: ConditionSet) -> None:
        """Copy the InstallerSet Ready condition into the component."""
        ready = self._installer_sets.ready_condition(active)
        if ready.is_true:
            conditions.mark_true(INSTALLER_SET_READY, "Ready", active.name)
        elif ready.is_false:
            conditions.mark_false(
                INSTALLER_SET_READY, ready.reason or "NotReady", ready.message
            )
        else:
            conditions.mark_unknown(
                INSTALLER_SET_READY, ready.reason or "Pending", ready.message
            )

    def _collect_garbage(
        self,
        owned: dict[str, InstallerSet],
        active: InstallerSet,
        retained: InstallerSet | None,
        deletions: list[_Deletion],
    ) -> None:
        referenced = {active.name} | ({retained.name} if retained else set())
        pending = {d.resource_id for d in deletions}
        keep = _identities(active) | _identities(retained)
        for name, installer_set in owned.items():
            if name in referenced or installer_set.resource_id in pending:
                continue
            _LOGGER.info("Garbage collecting unreferenced InstallerSet %s", name)
            deletions.append(_Deletion(installer_set.resource_id, keep))

    def _terminal_error(
        self,
        component: Component,
        status: ComponentStatus,
        conditions: ConditionSet,
        reason: str,
        message: str,
    ) -> None:
        """Record an error that only a spec or input change can clear."""
        _LOGGER.warning("%s: %s", component.resource_id, message)
        conditions.mark_false(INSTALLER_SET_AVAILABLE, reason, message)
        status.phase = ComponentPhase.ERROR
        status.observed_generation = component.generation

    async def _check_dependencies(self) -> None:
        """Raise DependencyNotReadyError for the first prerequisite not Ready."""
        for prerequisite in self._ctx.graph.prerequisites(self.kind):
            if not await self._kind_ready(prerequisite):
                raise DependencyNotReadyError(self.kind, prerequisite)

    async def _kind_ready(self, kind: str) -> bool:
        """A kind is Ready when it has components and every one is Ready."""
        components = [obj for obj, _ in await self._store.list(kind)]
        if not components:
            return False
        return all(
            isinstance(obj, Component) and obj.ready() and not obj.deleting
            for obj in components
        )

    async def _finalize(self, component: Component, version: int) -> None:
        """Remove every owned InstallerSet, then release the finalizer.

        Raises:
            FinalizationError: If an InstallerSet could not be removed.
        """
        if FINALIZER not in component.finalizers:
            return
        _LOGGER.info("Finalizing %s", component.resource_id)
        if component.status.phase != ComponentPhase.DELETING:
            component.status.phase = ComponentPhase.DELETING
            version = await self._store.update(component, version)

        errors: list[FinalizationError] = []
        for installer_set in reversed(
            await self._installer_sets.owned(component.resource_id)
        ):
            try:
                await self._installer_sets.delete(installer_set.resource_id)
            except FinalizationError as err:
                errors.append(err)
        if errors:
            raise FinalizationError(
                f"Unable to finalize {component.resource_id}: {errors[0]}"
            )

        component.finalizers.remove(FINALIZER)
        await self._store.update(component, version)
        _LOGGER.info("Finalized %s", component.resource_id)

    async def on_retry_budget_exhausted(
        self, key: NamedResource, err: Exception
    ) -> None:
        """Report a component in Error while transient retries continue."""
        try:
            component, version = await self._store.get(key, Component)
        except ObjectNotFoundError:
            return
        if component.deleting:
            return
        conditions = self._conditions(component.status)
        conditions.mark_false(INSTALLER_SET_AVAILABLE, TRANSIENT_BUDGET_EXCEEDED, str(err))
        status = copy.deepcopy(component.status)
        status.conditions = conditions.conditions()
        status.phase = ComponentPhase.ERROR
        if status == component.status:
            return
        component.status = status
        await self._store.update(component, version)
