"""Tests for the in-memory store."""

from typing import Any

import pytest

from component_installer.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ForbiddenError,
    ObjectNotFoundError,
)
from component_installer.manifest import (
    BaseManifest,
    Component,
    ComponentSpec,
    NamedResource,
    Platform,
    Unstructured,
)
from component_installer.store import InMemoryStore, StoreEvent, WatchEvent

from ..conftest import FakeClock

PIPELINE = NamedResource("Pipeline", None, "pipeline")


def _component(name: str = "pipeline", **labels: str) -> Component:
    return Component(
        kind="Pipeline",
        name=name,
        labels=dict(labels),
        spec=ComponentSpec(version="v1", target_namespace="pipelines"),
    )


def _config_map(name: str, namespace: str = "pipelines") -> Unstructured:
    doc: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace},
    }
    return Unstructured.parse_doc(doc)


async def test_create_and_get(store: InMemoryStore) -> None:
    """Test adding and retrieving an object."""
    version = await store.create(_component())
    obj, got_version = await store.get(PIPELINE, Component)
    assert got_version == version
    assert obj.generation == 1
    assert obj.spec.version == "v1"

    with pytest.raises(
        ValueError, match=r"Object pipeline is not of type Platform \(was Component\)"
    ):
        await store.get(PIPELINE, Platform)

    with pytest.raises(ObjectNotFoundError):
        await store.get(NamedResource("Pipeline", None, "missing"), Component)


async def test_get_returns_copy(store: InMemoryStore) -> None:
    """Test mutating a returned object does not change the store."""
    await store.create(_component())
    obj, _ = await store.get(PIPELINE, Component)
    obj.spec.version = "changed"
    stored, _ = await store.get(PIPELINE, Component)
    assert stored.spec.version == "v1"


async def test_create_existing(store: InMemoryStore) -> None:
    """Test creating an object twice."""
    await store.create(_component())
    with pytest.raises(AlreadyExistsError):
        await store.create(_component())


async def test_update_conflict(store: InMemoryStore) -> None:
    """Test writes with a stale version are rejected."""
    version = await store.create(_component())
    obj, _ = await store.get(PIPELINE, Component)
    obj.labels["a"] = "b"
    new_version = await store.update(obj, version)
    assert new_version > version

    with pytest.raises(ConflictError):
        await store.update(obj, version)

    # No expected version is an unconditional write
    await store.update(obj, None)


async def test_generation_follows_spec(store: InMemoryStore) -> None:
    """Test the generation only moves on a spec change."""
    version = await store.create(_component())
    obj, _ = await store.get(PIPELINE, Component)
    obj.status.version = "v1"
    version = await store.update(obj, version)
    obj, _ = await store.get(PIPELINE, Component)
    assert obj.generation == 1

    await store.patch(
        PIPELINE,
        Component,
        {"spec": ComponentSpec(version="v2", target_namespace="pipelines")},
        version,
    )
    obj, _ = await store.get(PIPELINE, Component)
    assert obj.generation == 2
    assert obj.spec.version == "v2"
    assert obj.status.version == "v1"


async def test_patch_missing(store: InMemoryStore) -> None:
    """Test patching an object that does not exist."""
    with pytest.raises(ObjectNotFoundError):
        await store.patch(PIPELINE, Component, {"labels": {}})


async def test_delete_without_finalizers(store: InMemoryStore) -> None:
    """Test objects without finalizers are removed at once."""
    await store.create(_component())
    await store.delete(PIPELINE)
    with pytest.raises(ObjectNotFoundError):
        await store.get(PIPELINE, Component)
    with pytest.raises(ObjectNotFoundError):
        await store.delete(PIPELINE)


async def test_delete_with_finalizers(store: InMemoryStore, clock: FakeClock) -> None:
    """Test objects with finalizers are only marked until released."""
    component = _component()
    component.finalizers.append("example.dev/finalizer")
    await store.create(component)

    await store.delete(PIPELINE)
    obj, version = await store.get(PIPELINE, Component)
    assert obj.deleting
    assert obj.deletion_timestamp == clock()

    # Deleting again is a no-op
    await store.delete(PIPELINE)

    obj.finalizers.clear()
    await store.update(obj, version)
    with pytest.raises(ObjectNotFoundError):
        await store.get(PIPELINE, Component)


async def test_update_keeps_deletion_timestamp(store: InMemoryStore) -> None:
    """Test updates can't clear the deletion mark."""
    component = _component()
    component.finalizers.append("example.dev/finalizer")
    await store.create(component)
    await store.delete(PIPELINE)
    obj, version = await store.get(PIPELINE, Component)
    obj.deletion_timestamp = None
    await store.update(obj, version)
    obj, _ = await store.get(PIPELINE, Component)
    assert obj.deleting


async def test_list(store: InMemoryStore) -> None:
    """Test listing objects by kind, namespace and labels."""
    await store.create(_component("b", team="ci"))
    await store.create(_component("a", team="cd"))
    await store.create(_config_map("settings"))
    await store.create(_config_map("other", namespace="default"))

    names = [obj.name for obj, _ in await store.list("Pipeline")]  # type: ignore[attr-defined]
    assert names == ["a", "b"]
    selected = await store.list("Pipeline", selector={"team": "ci"})
    assert [obj.name for obj, _ in selected] == ["b"]  # type: ignore[attr-defined]
    in_namespace = await store.list("ConfigMap", namespace="default")
    assert [obj.name for obj, _ in in_namespace] == ["other"]  # type: ignore[attr-defined]
    assert await store.list("Trigger") == []


async def test_listener(store: InMemoryStore) -> None:
    """Test listeners see every change until removed."""
    events: list[WatchEvent] = []
    remove = store.add_listener(events.append)

    version = await store.create(_component())
    obj, _ = await store.get(PIPELINE, Component)
    await store.update(obj, version)
    await store.delete(PIPELINE)
    assert [e.event for e in events] == [
        StoreEvent.ADDED,
        StoreEvent.MODIFIED,
        StoreEvent.DELETED,
    ]
    assert all(e.resource_id == PIPELINE for e in events)

    remove()
    await store.create(_component())
    assert len(events) == 3


async def test_listener_failure_isolated(store: InMemoryStore) -> None:
    """Test a failing listener does not break writes or other listeners."""
    events: list[WatchEvent] = []

    def broken(event: WatchEvent) -> None:
        raise RuntimeError("boom")

    store.add_listener(broken)
    store.add_listener(events.append)
    await store.create(_component())
    assert len(events) == 1


async def test_watch(store: InMemoryStore) -> None:
    """Test watching replays existing objects then streams changes."""
    await store.create(_component("a"))
    await store.create(_config_map("settings"))

    watch = store.watch(kind="Pipeline")
    event = await anext(watch)
    assert event.event == StoreEvent.ADDED
    assert event.resource_id == NamedResource("Pipeline", None, "a")

    await store.create(_config_map("ignored"))
    await store.create(_component("b"))
    event = await anext(watch)
    assert event.event == StoreEvent.ADDED
    assert event.resource_id == NamedResource("Pipeline", None, "b")
    await watch.aclose()


async def test_admission_hook(store: InMemoryStore) -> None:
    """Test admission hooks can reject writes."""
    operations: list[tuple[str, str]] = []

    def hook(operation: str, obj: BaseManifest) -> None:
        operations.append((operation, obj.name))  # type: ignore[attr-defined]
        if operation == "create" and obj.name == "blocked":  # type: ignore[attr-defined]
            raise ForbiddenError("blocked is forbidden")

    remove = store.add_admission_hook(hook)
    with pytest.raises(ForbiddenError):
        await store.create(_config_map("blocked"))
    with pytest.raises(ObjectNotFoundError):
        await store.get(NamedResource("ConfigMap", "pipelines", "blocked"), Unstructured)

    await store.create(_config_map("allowed"))
    assert operations == [("create", "blocked"), ("create", "allowed")]
    assert store.write_count == 2

    remove()
    await store.create(_config_map("blocked"))
    assert len(operations) == 2
