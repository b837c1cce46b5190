"""Store module for holding the declarative resources and their versions."""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar, TYPE_CHECKING

from component_installer.manifest import BaseManifest, NamedResource

T = TypeVar("T", bound=BaseManifest)


class StoreEvent(str, Enum):
    """Enum for store events."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class WatchEvent:
    """A change observed on a resource."""

    event: StoreEvent
    resource_id: NamedResource
    obj: BaseManifest
    version: int


Listener = Callable[[WatchEvent], None]


def matches_selector(obj: BaseManifest, selector: Mapping[str, str] | None) -> bool:
    """Return True if the object labels contain every selector label."""
    if not selector:
        return True
    labels = getattr(obj, "labels", None) or {}
    return all(labels.get(key) == value for key, value in selector.items())


class Store(ABC):
    """Abstract resource store with optimistic concurrency.

    Every object is identified by a `NamedResource` and carries a version
    token that increases on every write. Writes that carry an expected version
    fail with `ConflictError` if the object changed since it was read.
    """

    @abstractmethod
    async def get(self, resource_id: NamedResource, cls: type[T]) -> tuple[T, int]:
        """Return the object and its version.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """

    @abstractmethod
    async def list(
        self,
        kind: str,
        namespace: str | None = None,
        selector: Mapping[str, str] | None = None,
    ) -> list[tuple[BaseManifest, int]]:
        """List objects of a kind, optionally filtered by namespace and labels."""

    @abstractmethod
    async def create(self, obj: BaseManifest) -> int:
        """Create a new object and return its version.

        Raises:
            AlreadyExistsError: If the object already exists.
        """

    @abstractmethod
    async def update(self, obj: BaseManifest, expected_version: int | None) -> int:
        """Replace an existing object and return its new version.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ConflictError: If `expected_version` does not match.
        """

    @abstractmethod
    async def patch(
        self,
        resource_id: NamedResource,
        cls: type[T],
        changes: Mapping[str, Any],
        expected_version: int | None = None,
    ) -> int:
        """Replace individual top level fields of an object."""

    @abstractmethod
    async def delete(
        self, resource_id: NamedResource, expected_version: int | None = None
    ) -> None:
        """Delete an object.

        Objects with finalizers are only marked for deletion; they are removed
        once the last finalizer is dropped by an update.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """

    @abstractmethod
    def add_listener(self, callback: Listener) -> Callable[[], None]:
        """Register a callback for every change.

        Returns a callable that can be called to remove the listener.
        """

    @abstractmethod
    async def watch(
        self, kind: str | None = None, namespace: str | None = None
    ) -> AsyncGenerator[WatchEvent]:
        """Watch for changes to objects of a kind, or all kinds.

        Existing objects are first replayed as `ADDED` events.
        """
        if TYPE_CHECKING:
            yield None  # type: ignore[misc]
