"""
InstallerSet Controller implementation.

An InstallerSet is an immutable, hashed bundle of transformed manifests
applied on behalf of one component instance. This controller applies the
bundle and reports its readiness.

Lifecycle:
    Pending -> Applying -> Ready
    Applying -> PartiallyFailed -> Applying (retry)
    Ready -> Superseded (a newer bundle became Ready)
    any -> Deleting (teardown)

Key Concepts:
    - Apply order: items are applied in ascending ordering hint, items without
      a hint keep their list order.
    - Partial failure isolation: a failed item does not stop the remaining
      items. Failed items are retried on later passes with a capped
      exponential backoff.
    - Monotonic readiness: once Ready, a bundle only repairs drift. Readiness
      is not evaluated again, and only an apply failure moves it back to
      PartiallyFailed.
    - Only the bundle the owning component currently points at is applied,
      so a retained bundle never fights the bundle replacing it.
"""

import copy
from collections.abc import Iterable
import logging

from slugify import slugify

from component_installer.conditions import READY, Condition, ConditionSet
from component_installer.context import ReconcileContext, trace_context
from component_installer.exceptions import (
    FinalizationError,
    InstallerException,
    ManifestApplyError,
    ObjectNotFoundError,
    StoreError,
)
from component_installer.manifest import (
    INSTALLER_SET_KIND,
    LABEL_COMPONENT,
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    MANAGED_BY,
    Component,
    InstallerSet,
    ItemStatus,
    ManifestItem,
    NamedResource,
    OwnerReference,
)
from component_installer.status import InstallerSetPhase, ItemState
from component_installer.task import ReconcileResult, Reconciler, backoff_delay

from .apply import ManifestApplier
from .readiness import ReadinessCheck, is_ready

__all__ = [
    "InstallerSetController",
    "MANIFESTS_APPLIED",
    "WORKLOADS_READY",
    "installer_set_name",
]

_LOGGER = logging.getLogger(__name__)

MANIFESTS_APPLIED = "ManifestsApplied"
WORKLOADS_READY = "WorkloadsReady"

MAX_NAME_PREFIX = 52


def installer_set_name(component: Component, content_hash: str) -> str:
    """Return the deterministic InstallerSet name for a bundle.

    InstallerSets are cluster scoped so the name includes the namespace of
    a namespaced component.
    """
    parts = [component.namespace, component.name, component.kind]
    prefix = slugify(
        "-".join(p for p in parts if p),
        max_length=MAX_NAME_PREFIX,
        lowercase=True,
        separator="-",
    )
    return f"{prefix}-{content_hash[:10]}"


def _new_conditions(
    conditions: Iterable[Condition], ctx: ReconcileContext
) -> ConditionSet:
    return ConditionSet([MANIFESTS_APPLIED, WORKLOADS_READY], conditions, clock=ctx.clock)


class InstallerSetController(Reconciler):
    """Controller for applying InstallerSet bundles."""

    def __init__(self, ctx: ReconcileContext) -> None:
        """Initialize the controller with the shared reconcile context."""
        self._ctx = ctx
        self._store = ctx.store
        self._config = ctx.config.installer_set
        self._applier = ManifestApplier(ctx.store)

    async def list_keys(self) -> list[NamedResource]:
        return [
            NamedResource(INSTALLER_SET_KIND, obj.namespace, obj.name)  # type: ignore[attr-defined]
            for obj, _ in await self._store.list(INSTALLER_SET_KIND)
        ]

    async def owned(self, owner: NamedResource) -> list[InstallerSet]:
        """Return every InstallerSet owned by the component, oldest first."""
        results = []
        for obj, _ in await self._store.list(
            INSTALLER_SET_KIND,
            selector={LABEL_COMPONENT: owner.kind, LABEL_INSTANCE: owner.name},
        ):
            if isinstance(obj, InstallerSet) and obj.owner.resource_id == owner:
                results.append(obj)
        results.sort(key=lambda s: (s.created_at is None, s.created_at, s.name))
        return results

    async def create_or_update(
        self, component: Component, items: list[ManifestItem], content_hash: str
    ) -> InstallerSet:
        """Return the InstallerSet for the bundle, creating it if needed.

        Creating the same bundle twice returns the existing InstallerSet.

        Raises:
            AlreadyExistsError: If a concurrent pass created it first.
        """
        name = installer_set_name(component, content_hash)
        resource_id = NamedResource(INSTALLER_SET_KIND, None, name)
        try:
            existing, _ = await self._store.get(resource_id, InstallerSet)
        except ObjectNotFoundError:
            pass
        else:
            if (
                existing.content_hash != content_hash
                or existing.owner.resource_id != component.resource_id
            ):
                raise InstallerException(
                    f"InstallerSet {resource_id} exists for a different bundle"
                )
            return existing

        conditions = _new_conditions((), self._ctx)
        conditions.mark_unknown(MANIFESTS_APPLIED, "Pending", "Waiting to apply")
        installer_set = InstallerSet(
            name=name,
            owner=OwnerReference.of(component.resource_id),
            content_hash=content_hash,
            items=items,
            labels={
                LABEL_MANAGED_BY: MANAGED_BY,
                LABEL_COMPONENT: component.kind,
                LABEL_INSTANCE: component.name,
            },
            version=component.spec.version,
            phase=InstallerSetPhase.PENDING,
            item_status={item.identity: ItemStatus() for item in items},
            conditions=conditions.conditions(),
            created_at=self._ctx.clock(),
        )
        await self._store.create(installer_set)
        _LOGGER.info(
            "Created InstallerSet %s for %s with %d items",
            name,
            component.resource_id,
            len(items),
        )
        return installer_set

    async def _is_active(self, installer_set: InstallerSet) -> bool:
        """Return True if the owning component points at this InstallerSet."""
        try:
            owner, _ = await self._store.get(
                installer_set.owner.resource_id, Component
            )
        except ObjectNotFoundError:
            return False
        return owner.status.installer_set == installer_set.name and not owner.deleting

    def _readiness_overrides(self, installer_set: InstallerSet) -> dict[str, ReadinessCheck]:
        if (strategy := self._ctx.strategies.get(installer_set.owner.kind)) is None:
            return {}
        return strategy.readiness

    async def reconcile(self, key: NamedResource) -> ReconcileResult:
        """Run one apply pass over the InstallerSet."""
        with trace_context(f"InstallerSet '{key.namespaced_name}'"):
            try:
                installer_set, version = await self._store.get(key, InstallerSet)
            except ObjectNotFoundError:
                return ReconcileResult()
            if installer_set.phase.terminal:
                return ReconcileResult()
            if not await self._is_active(installer_set):
                _LOGGER.debug("InstallerSet %s is not active, skipping", key)
                return ReconcileResult()

            updated = copy.deepcopy(installer_set)
            result = await self._apply_pass(updated)
            if (
                updated.phase != installer_set.phase
                or updated.item_status != installer_set.item_status
                or updated.conditions != installer_set.conditions
                or updated.failed_passes != installer_set.failed_passes
            ):
                if updated.phase != installer_set.phase:
                    _LOGGER.info(
                        "InstallerSet %s %s -> %s",
                        key.namespaced_name,
                        installer_set.phase,
                        updated.phase,
                    )
                await self._store.update(updated, version)
            return result

    async def _apply_pass(self, installer_set: InstallerSet) -> ReconcileResult:
        """Apply every item, updating the InstallerSet status in place."""
        now = self._ctx.clock().timestamp()
        was_ready = installer_set.phase == InstallerSetPhase.READY
        overrides = self._readiness_overrides(installer_set)
        conditions = _new_conditions(installer_set.conditions, self._ctx)
        failed: list[tuple[ManifestItem, ItemStatus]] = []
        waiting: list[ManifestItem] = []
        attempted_failures = 0
        next_retry: float | None = None

        for item in installer_set.apply_order():
            status = installer_set.item_status.setdefault(item.identity, ItemStatus())
            if (
                status.state == ItemState.FAILED
                and status.next_retry_at is not None
                and status.next_retry_at > now
            ):
                failed.append((item, status))
                next_retry = min(next_retry or status.next_retry_at, status.next_retry_at)
                continue
            try:
                live = await self._applier.apply(item, installer_set.name)
            except ManifestApplyError as err:
                status.state = ItemState.FAILED
                status.attempts += 1
                status.reason = err.reason
                status.message = err.message
                status.permanent = not err.transient
                if err.transient:
                    delay = backoff_delay(
                        status.attempts,
                        self._config.item_base_delay,
                        self._config.item_max_delay,
                    )
                else:
                    # Permanent failures are only re-attempted at the slowest cadence
                    delay = self._config.item_max_delay
                status.next_retry_at = now + delay
                next_retry = min(next_retry or status.next_retry_at, status.next_retry_at)
                _LOGGER.warning(
                    "InstallerSet %s item %s failed (attempt %d, %s): %s",
                    installer_set.name,
                    item.identity,
                    status.attempts,
                    "transient" if err.transient else "permanent",
                    err.message,
                )
                failed.append((item, status))
                attempted_failures += 1
                continue

            status.attempts = 0
            status.reason = None
            status.message = None
            status.permanent = False
            status.next_retry_at = None
            if was_ready or is_ready(live, overrides):
                status.state = ItemState.READY
            else:
                status.state = ItemState.APPLIED
                waiting.append(item)

        total = len(installer_set.items)
        if failed:
            item, status = failed[0]
            conditions.mark_false(
                MANIFESTS_APPLIED,
                status.reason or "ApplyFailed",
                f"{len(failed)} of {total} items failed, {item.identity}: {status.message}",
            )
            installer_set.phase = InstallerSetPhase.PARTIALLY_FAILED
            if attempted_failures:
                installer_set.failed_passes += 1
        else:
            conditions.mark_true(MANIFESTS_APPLIED, "Applied")
        if waiting:
            conditions.mark_unknown(
                WORKLOADS_READY,
                "Waiting",
                f"{len(waiting)} of {total} items not ready, waiting for {waiting[0].identity}",
            )
        else:
            conditions.mark_true(WORKLOADS_READY, "Ready")
        if not failed:
            installer_set.phase = (
                InstallerSetPhase.APPLYING if waiting else InstallerSetPhase.READY
            )
        installer_set.conditions = conditions.conditions()

        requeue_after: float | None = None
        if next_retry is not None:
            requeue_after = max(next_retry - now, 0.0)
        if waiting:
            poll = self._config.readiness_poll_interval
            requeue_after = poll if requeue_after is None else min(requeue_after, poll)
        return ReconcileResult(requeue_after=requeue_after)

    def retries_exhausted(self, installer_set: InstallerSet) -> bool:
        """Return True if the bundle failed past the retry budget."""
        return any(
            status.state == ItemState.FAILED
            and (status.permanent or status.attempts >= self._config.retry_budget)
            for status in installer_set.item_status.values()
        )

    def first_failure(self, installer_set: InstallerSet) -> tuple[str, str] | None:
        """Return the reason and message of the first failed item in apply order."""
        for item in installer_set.apply_order():
            status = installer_set.item_status.get(item.identity)
            if status is not None and status.state == ItemState.FAILED:
                return (
                    status.reason or "ApplyFailed",
                    f"{item.identity}: {status.message}",
                )
        return None

    @staticmethod
    def ready_condition(installer_set: InstallerSet) -> Condition:
        """Return the aggregated Ready condition of the bundle."""
        for condition in installer_set.conditions:
            if condition.type == READY:
                return condition
        return Condition(type=READY, reason="Pending")

    async def supersede(self, resource_id: NamedResource) -> None:
        """Mark the InstallerSet as replaced by a newer Ready bundle."""
        try:
            installer_set, version = await self._store.get(resource_id, InstallerSet)
        except ObjectNotFoundError:
            return
        if installer_set.phase in (
            InstallerSetPhase.SUPERSEDED,
            InstallerSetPhase.DELETING,
        ):
            return
        installer_set.phase = InstallerSetPhase.SUPERSEDED
        installer_set.superseded_at = self._ctx.clock()
        await self._store.update(installer_set, version)
        _LOGGER.info("InstallerSet %s superseded", resource_id.namespaced_name)

    async def delete(
        self, resource_id: NamedResource, keep: Iterable[str] = ()
    ) -> None:
        """Remove the applied items in reverse apply order, then the record.

        Items whose identity is in `keep` are left in place for another
        InstallerSet to take over.

        Raises:
            FinalizationError: If an item could not be removed.
        """
        try:
            installer_set, version = await self._store.get(resource_id, InstallerSet)
        except ObjectNotFoundError:
            return
        if installer_set.phase != InstallerSetPhase.DELETING:
            installer_set.phase = InstallerSetPhase.DELETING
            version = await self._store.update(installer_set, version)

        keep_ids = set(keep)
        errors: list[str] = []
        removed = 0
        for item in reversed(installer_set.apply_order()):
            if item.identity in keep_ids:
                continue
            try:
                if await self._applier.remove(item, installer_set.name):
                    removed += 1
            except StoreError as err:
                _LOGGER.warning(
                    "Failed to remove %s of %s: %s", item.identity, resource_id, err
                )
                errors.append(f"{item.identity}: {err}")
        if errors:
            raise FinalizationError(
                f"Failed to remove {len(errors)} items of InstallerSet {resource_id.namespaced_name}, {errors[0]}"
            )
        try:
            await self._store.delete(resource_id, version)
        except ObjectNotFoundError:
            pass
        _LOGGER.info(
            "Deleted InstallerSet %s (%d items removed)",
            resource_id.namespaced_name,
            removed,
        )
