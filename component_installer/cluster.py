"""Simulated workload status for a store without a cluster behind it.

On a real cluster the status of applied Deployments, Jobs and CRDs is filled
in by the platform itself. The `WorkloadSimulator` plays that role for the
in-memory store so the local runner and tests can converge.
"""

import asyncio
import copy
import logging
from typing import Any

from .exceptions import ConflictError, ObjectNotFoundError
from .installerset_controller.readiness import is_ready
from .manifest import NamedResource, Unstructured
from .store import Store, StoreEvent
from .task import get_task_service

__all__ = ["WorkloadSimulator"]

_LOGGER = logging.getLogger(__name__)


def _replicas(doc: dict[str, Any]) -> int:
    replicas = (doc.get("spec") or {}).get("replicas")
    return 1 if replicas is None else int(replicas)


def ready_status(doc: dict[str, Any]) -> dict[str, Any] | None:
    """Return the status a healthy cluster would report for the object."""
    kind = doc.get("kind")
    if kind in ("Deployment", "StatefulSet"):
        replicas = _replicas(doc)
        return {"replicas": replicas, "readyReplicas": replicas}
    if kind == "DaemonSet":
        return {"desiredNumberScheduled": 1, "numberReady": 1}
    if kind == "Job":
        return {"succeeded": 1}
    if kind == "CustomResourceDefinition":
        return {"conditions": [{"type": "Established", "status": "True"}]}
    return None


class WorkloadSimulator:
    """Marks applied workloads ready as they appear in the store."""

    def __init__(self, store: Store, kinds: set[str] | None = None) -> None:
        self._store = store
        self._kinds = kinds or {
            "Deployment",
            "StatefulSet",
            "DaemonSet",
            "Job",
            "CustomResourceDefinition",
        }
        self.held: set[NamedResource] = set()
        """Objects that are never marked ready."""

        self._task: asyncio.Task[None] | None = None

    async def mark_ready(self, resource_id: NamedResource) -> bool:
        """Fill in a ready status for the object, returning True if written."""
        if resource_id in self.held:
            return False
        try:
            obj, version = await self._store.get(resource_id, Unstructured)
        except ObjectNotFoundError:
            return False
        if is_ready(obj.doc) or (status := ready_status(obj.doc)) is None:
            return False
        doc = copy.deepcopy(obj.doc)
        doc["status"] = status
        try:
            await self._store.update(Unstructured.parse_doc(doc), version)
        except (ConflictError, ObjectNotFoundError) as err:
            # A later event for the object will retry
            _LOGGER.debug("Unable to mark %s ready: %s", resource_id, err)
            return False
        _LOGGER.debug("Marked %s ready", resource_id)
        return True

    async def sync(self) -> int:
        """Mark every matching object ready, returning the number updated."""
        count = 0
        for kind in sorted(self._kinds):
            for obj, _ in await self._store.list(kind):
                if await self.mark_ready(obj.resource_id):  # type: ignore[attr-defined]
                    count += 1
        return count

    async def run(self) -> None:
        """Watch the store, marking objects ready as they change."""
        async for event in self._store.watch():
            if event.event == StoreEvent.DELETED:
                continue
            if event.resource_id.kind not in self._kinds:
                continue
            await self.mark_ready(event.resource_id)

    def start(self) -> None:
        if self._task is None:
            self._task = get_task_service().create_background_task(
                self.run(), name="workload-simulator"
            )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
