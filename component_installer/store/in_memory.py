"""Module for in memory object store."""

import asyncio
import copy
import dataclasses
import datetime
from collections.abc import AsyncGenerator, Callable, Mapping
import logging
from typing import Any, TypeVar

from component_installer.conditions import utcnow
from component_installer.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ObjectNotFoundError,
)
from component_installer.manifest import BaseManifest, NamedResource

from .store import Listener, Store, StoreEvent, WatchEvent, matches_selector

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseManifest)

AdmissionHook = Callable[[str, BaseManifest], None]
"""Called with the operation name and object before every write.

A hook may raise a `StoreError` to reject the write, which is how tests
simulate forbidden, malformed or transient failures.
"""


def _resource_id(obj: BaseManifest) -> NamedResource:
    if (
        not hasattr(obj, "kind")
        or not hasattr(obj, "namespace")
        or not hasattr(obj, "name")
    ):
        raise ValueError("Object must have kind, namespace, and name attributes")
    return NamedResource(obj.kind, obj.namespace, obj.name)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Objects are deep copied on the way in and out so callers can never mutate
    stored state without going through a versioned write.
    """

    def __init__(self, clock: Callable[[], datetime.datetime] = utcnow) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, tuple[BaseManifest, int]] = {}
        self._version = 0
        self._listeners: list[Listener] = []
        self._admission_hooks: list[AdmissionHook] = []
        self._clock = clock
        self.write_count = 0
        """Number of write calls (create, update, patch, delete) received."""

    def add_admission_hook(self, hook: AdmissionHook) -> Callable[[], None]:
        """Register a hook that can reject writes.

        Returns a callable that removes the hook.
        """
        self._admission_hooks.append(hook)

        def remove() -> None:
            if hook in self._admission_hooks:
                self._admission_hooks.remove(hook)

        return remove

    def _admit(self, operation: str, obj: BaseManifest) -> None:
        for hook in list(self._admission_hooks):
            hook(operation, obj)

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    def _check_version(
        self, resource_id: NamedResource, current: int, expected: int | None
    ) -> None:
        if expected is not None and expected != current:
            raise ConflictError(
                f"Conflict writing {resource_id}: expected version {expected}, found {current}"
            )

    async def get(self, resource_id: NamedResource, cls: type[T]) -> tuple[T, int]:
        """Return a copy of the object and its version."""
        await asyncio.sleep(0)
        if (entry := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"{resource_id} not found")
        obj, version = entry
        if not isinstance(obj, cls):
            raise ValueError(
                f"Object {resource_id.namespaced_name} is not of type {cls.__name__} (was {obj.__class__.__name__})"
            )
        return copy.deepcopy(obj), version

    async def list(
        self,
        kind: str,
        namespace: str | None = None,
        selector: Mapping[str, str] | None = None,
    ) -> list[tuple[BaseManifest, int]]:
        """List copies of objects of a kind."""
        await asyncio.sleep(0)
        results = []
        for resource_id in sorted(self._objects):
            if resource_id.kind != kind:
                continue
            if namespace is not None and resource_id.namespace != namespace:
                continue
            obj, version = self._objects[resource_id]
            if not matches_selector(obj, selector):
                continue
            results.append((copy.deepcopy(obj), version))
        return results

    async def create(self, obj: BaseManifest) -> int:
        """Create a new object."""
        await asyncio.sleep(0)
        self.write_count += 1
        resource_id = _resource_id(obj)
        self._admit("create", obj)
        if resource_id in self._objects:
            raise AlreadyExistsError(f"{resource_id} already exists")
        new_obj = copy.deepcopy(obj)
        if hasattr(new_obj, "generation"):
            new_obj.generation = 1
        if hasattr(new_obj, "deletion_timestamp"):
            new_obj.deletion_timestamp = None
        version = self._next_version()
        self._objects[resource_id] = (new_obj, version)
        _LOGGER.debug("Created %s (version %s)", resource_id, version)
        self._fire(WatchEvent(StoreEvent.ADDED, resource_id, new_obj, version))
        return version

    async def update(self, obj: BaseManifest, expected_version: int | None) -> int:
        """Replace an existing object."""
        await asyncio.sleep(0)
        self.write_count += 1
        return self._replace(_resource_id(obj), copy.deepcopy(obj), expected_version)

    async def patch(
        self,
        resource_id: NamedResource,
        cls: type[T],
        changes: Mapping[str, Any],
        expected_version: int | None = None,
    ) -> int:
        """Replace individual top level fields of an object."""
        await asyncio.sleep(0)
        self.write_count += 1
        if (entry := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"{resource_id} not found")
        current, _ = entry
        if not isinstance(current, cls):
            raise ValueError(
                f"Object {resource_id.namespaced_name} is not of type {cls.__name__} (was {current.__class__.__name__})"
            )
        new_obj = dataclasses.replace(copy.deepcopy(current), **copy.deepcopy(dict(changes)))
        return self._replace(resource_id, new_obj, expected_version)

    def _replace(
        self,
        resource_id: NamedResource,
        new_obj: BaseManifest,
        expected_version: int | None,
    ) -> int:
        self._admit("update", new_obj)
        if (entry := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"{resource_id} not found")
        existing, current_version = entry
        self._check_version(resource_id, current_version, expected_version)
        if hasattr(new_obj, "generation"):
            # Only the store moves the generation, and only on a spec change
            changed = getattr(new_obj, "spec", None) != getattr(existing, "spec", None)
            new_obj.generation = existing.generation + (1 if changed else 0)
        deleting = False
        if hasattr(new_obj, "deletion_timestamp"):
            new_obj.deletion_timestamp = existing.deletion_timestamp
            deleting = existing.deletion_timestamp is not None
        version = self._next_version()
        if deleting and not getattr(new_obj, "finalizers", None):
            del self._objects[resource_id]
            _LOGGER.debug("Finalized and removed %s", resource_id)
            self._fire(WatchEvent(StoreEvent.DELETED, resource_id, new_obj, version))
            return version
        self._objects[resource_id] = (new_obj, version)
        _LOGGER.debug("Updated %s (version %s)", resource_id, version)
        self._fire(WatchEvent(StoreEvent.MODIFIED, resource_id, new_obj, version))
        return version

    async def delete(
        self, resource_id: NamedResource, expected_version: int | None = None
    ) -> None:
        """Delete an object, or mark it for deletion if it has finalizers."""
        await asyncio.sleep(0)
        self.write_count += 1
        if (entry := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"{resource_id} not found")
        obj, current_version = entry
        self._admit("delete", obj)
        self._check_version(resource_id, current_version, expected_version)
        if getattr(obj, "finalizers", None):
            if obj.deletion_timestamp is not None:
                _LOGGER.debug("%s already marked for deletion", resource_id)
                return
            marked = copy.deepcopy(obj)
            marked.deletion_timestamp = self._clock()
            version = self._next_version()
            self._objects[resource_id] = (marked, version)
            _LOGGER.debug("Marked %s for deletion (version %s)", resource_id, version)
            self._fire(WatchEvent(StoreEvent.MODIFIED, resource_id, marked, version))
            return
        del self._objects[resource_id]
        _LOGGER.debug("Deleted %s", resource_id)
        self._fire(
            WatchEvent(StoreEvent.DELETED, resource_id, obj, self._next_version())
        )

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        """Register a callback for every change."""

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        self._listeners.append(callback)
        return remove

    def _fire(self, event: WatchEvent) -> None:
        for cb in list(self._listeners):  # Iterate over a copy for safe removal
            try:
                cb(event)
            except Exception:
                _LOGGER.exception(
                    "Store listener callback failed for event %s", event.event
                )

    async def watch(
        self, kind: str | None = None, namespace: str | None = None
    ) -> AsyncGenerator[WatchEvent]:
        """Watch for changes, first replaying existing objects as ADDED."""

        def wanted(resource_id: NamedResource) -> bool:
            if kind is not None and resource_id.kind != kind:
                return False
            return namespace is None or resource_id.namespace == namespace

        queue: asyncio.Queue[WatchEvent] = asyncio.Queue()

        def callback(event: WatchEvent) -> None:
            if wanted(event.resource_id):
                queue.put_nowait(event)

        # Register before replaying so no change is missed in between
        remove_listener = self.add_listener(callback)
        try:
            for resource_id, (obj, version) in list(self._objects.items()):
                if wanted(resource_id):
                    yield WatchEvent(
                        StoreEvent.ADDED, resource_id, copy.deepcopy(obj), version
                    )
            while True:
                yield await queue.get()
        except asyncio.CancelledError:
            _LOGGER.debug("watch for kind '%s' cancelled.", kind)
            raise
        finally:
            remove_listener()
