"""Tests for the component reconciler."""

import pytest

from component_installer.component_controller import (
    DEPENDENCIES_INSTALLED,
    INSTALLER_SET_AVAILABLE,
    INSTALLER_SET_READY,
)
from component_installer.conditions import Condition
from component_installer.exceptions import (
    FinalizationError,
    ForbiddenError,
    ObjectNotFoundError,
    TransientClusterError,
)
from component_installer.manifest import (
    FINALIZER,
    BaseManifest,
    Component,
    NamedResource,
    Unstructured,
)
from component_installer.status import ComponentPhase, InstallerSetPhase

from .conftest import PIPELINE, TRIGGER, Env

CONTROLLER = NamedResource("Deployment", "pipelines", "pipeline-controller")
WEBHOOK = NamedResource("Deployment", "pipelines", "pipeline-webhook")
CONFIG = NamedResource("ConfigMap", "pipelines", "pipeline-config")


def _conditions(component: Component) -> dict[str, Condition]:
    return {c.type: c for c in component.status.conditions}


async def _live(env: Env, resource_id: NamedResource) -> Unstructured:
    obj, _ = await env.store.get(resource_id, Unstructured)
    return obj


def _forbid(env: Env, operation: str, name: str) -> list[bool]:
    """Reject the operation on the named object while the flag is set."""
    enabled = [True]

    def hook(op: str, obj: BaseManifest) -> None:
        if enabled[0] and op == operation and isinstance(obj, Unstructured) and obj.name == name:
            raise ForbiddenError(f"{name} is protected")

    env.store.add_admission_hook(hook)
    return enabled


async def test_install(env: Env) -> None:
    """Test a new component installs and becomes Ready."""
    await env.create("Pipeline", "pipeline", "v1")
    component = await env.converge(PIPELINE)

    assert component.status.phase == ComponentPhase.READY
    assert component.ready()
    assert component.status.version == "v1"
    assert component.status.observed_generation == 1
    assert component.status.retained_installer_set is None
    assert FINALIZER in component.finalizers
    assert all(c.is_true for c in component.status.conditions)

    name = component.status.installer_set
    assert name is not None
    assert name.startswith("pipeline-pipeline-")
    assert await env.owned(PIPELINE) == [name]
    installer_set = await env.installer_set(name)
    assert installer_set.content_hash == component.status.content_hash
    assert installer_set.phase == InstallerSetPhase.READY

    deployment = await _live(env, CONTROLLER)
    containers = deployment.doc["spec"]["template"]["spec"]["containers"]
    assert containers[0]["image"] == "registry.example.com/pipeline-controller:v1"
    config = await _live(env, CONFIG)
    assert config.doc["data"] == {"version": "v1"}
    assert config.labels["installer.dev/component"] == "Pipeline"
    await env.store.get(NamedResource("Namespace", None, "pipelines"), Unstructured)


async def test_steady_state_is_read_only(env: Env) -> None:
    """Test passes over a Ready component with an unchanged spec write nothing."""
    await env.create("Pipeline", "pipeline", "v1")
    component = await env.converge(PIPELINE)
    assert component.status.phase == ComponentPhase.READY

    writes = env.store.write_count
    for _ in range(3):
        await env.converge(PIPELINE, rounds=1)
    assert env.store.write_count == writes


async def test_upgrade(env: Env) -> None:
    """Test an upgrade keeps the old bundle until the new one is Ready."""
    await env.create("Pipeline", "pipeline", "v1")
    component = await env.converge(PIPELINE)
    old_name = component.status.installer_set
    assert old_name is not None

    assert env.simulator
    env.simulator.held.add(WEBHOOK)
    await env.set_version(PIPELINE, "v2")
    component = await env.converge(PIPELINE)
    assert component.status.phase == ComponentPhase.UPGRADING
    assert component.status.retained_installer_set == old_name
    new_name = component.status.installer_set
    assert new_name is not None
    assert new_name != old_name
    assert component.status.version == "v1"
    assert _conditions(component)[INSTALLER_SET_READY].reason == "Waiting"
    assert (await env.installer_set(old_name)).phase == InstallerSetPhase.READY
    assert sorted(await env.owned(PIPELINE)) == sorted([old_name, new_name])

    # Shared objects have already moved to the new bundle
    config = await _live(env, CONFIG)
    assert config.doc["data"] == {"version": "v2"}

    env.simulator.held.clear()
    component = await env.converge(PIPELINE)
    assert component.status.phase == ComponentPhase.READY
    assert component.status.version == "v2"
    assert component.status.observed_generation == 2
    assert component.status.retained_installer_set is None
    assert await env.owned(PIPELINE) == [new_name]

    # Objects shared with the retired bundle were kept
    await _live(env, CONTROLLER)
    await _live(env, WEBHOOK)


async def test_upgrade_rollback(env: Env) -> None:
    """Test a failing upgrade reverts to the retained bundle."""
    await env.create("Pipeline", "pipeline", "v1")
    component = await env.converge(PIPELINE)
    good_name = component.status.installer_set
    assert good_name is not None

    _forbid(env, "create", "pipeline-broken")
    await env.set_version(PIPELINE, "v3")
    component = await env.converge(PIPELINE)

    assert component.status.phase == ComponentPhase.ERROR
    assert component.status.installer_set == good_name
    assert component.status.retained_installer_set is None
    assert component.status.version == "v1"
    assert component.status.failed_generation == 2
    assert component.status.failed_hash is not None
    assert await env.owned(PIPELINE) == [good_name]

    conditions = _conditions(component)
    assert conditions[INSTALLER_SET_AVAILABLE].is_true
    ready = conditions[INSTALLER_SET_READY]
    assert ready.is_false
    assert ready.reason == "UpgradeFailed"
    assert ready.message == (
        f"Upgrade to {component.status.failed_hash[:10]} failed, rolled back to {good_name}"
    )
    assert not component.ready()

    # The retained bundle took back the objects the failed upgrade changed
    config = await _live(env, CONFIG)
    assert config.doc["data"] == {"version": "v1"}
    assert config.labels["installer.dev/installer-set"] == good_name

    # The failed bundle is not retried for the same generation
    writes = env.store.write_count
    await env.converge(PIPELINE, rounds=1)
    assert env.store.write_count == writes
    assert await env.owned(PIPELINE) == [good_name]

    # Returning to the installed version recovers
    await env.set_version(PIPELINE, "v1")
    component = await env.converge(PIPELINE)
    assert component.status.phase == ComponentPhase.READY
    assert component.status.installer_set == good_name


async def test_upgrade_failure_without_rollback(env: Env) -> None:
    """Test a failing upgrade stays in Error when rollback is disabled."""
    env.ctx.config.installer_set.rollback_on_failure = False
    await env.create("Pipeline", "pipeline", "v1")
    component = await env.converge(PIPELINE)
    good_name = component.status.installer_set

    _forbid(env, "create", "pipeline-broken")
    await env.set_version(PIPELINE, "v3")
    component = await env.converge(PIPELINE)

    assert component.status.phase == ComponentPhase.ERROR
    assert component.status.installer_set != good_name
    assert component.status.retained_installer_set == good_name
    ready = _conditions(component)[INSTALLER_SET_READY]
    assert ready.reason == "Forbidden"
    assert ready.message == (
        "core/ConfigMap/pipelines/pipeline-broken: pipeline-broken is protected"
    )


async def test_spec_reverted_during_upgrade(env: Env) -> None:
    """Test reverting the spec mid upgrade returns to the retained bundle."""
    await env.create("Pipeline", "pipeline", "v1")
    component = await env.converge(PIPELINE)
    old_name = component.status.installer_set

    assert env.simulator
    env.simulator.held.add(WEBHOOK)
    await env.set_version(PIPELINE, "v2")
    component = await env.converge(PIPELINE)
    assert component.status.phase == ComponentPhase.UPGRADING

    await env.set_version(PIPELINE, "v1")
    component = await env.converge(PIPELINE)
    assert component.status.phase == ComponentPhase.READY
    assert component.status.installer_set == old_name
    assert component.status.retained_installer_set is None
    assert await env.owned(PIPELINE) == [old_name]

    # Objects only in the abandoned bundle are removed
    with pytest.raises(ObjectNotFoundError):
        await _live(env, WEBHOOK)
    config = await _live(env, CONFIG)
    assert config.doc["data"] == {"version": "v1"}


async def test_waits_for_dependencies(env: Env) -> None:
    """Test a component waits until its prerequisite kinds are Ready."""
    await env.create("Trigger", "trigger", "v1", namespace="triggers")
    result = await env.reconcilers["Trigger"].reconcile(TRIGGER)
    assert result.requeue_after == env.ctx.config.controller.dependency_requeue_interval

    component = await env.component(TRIGGER)
    assert component.status.phase == ComponentPhase.WAITING
    conditions = _conditions(component)
    assert conditions[DEPENDENCIES_INSTALLED].is_false
    assert conditions[DEPENDENCIES_INSTALLED].reason == "DependencyNotReady"
    assert conditions[DEPENDENCIES_INSTALLED].message == "pipeline not ready"
    available = conditions[INSTALLER_SET_AVAILABLE]
    assert not available.is_true
    assert not available.is_false
    assert available.reason == "Waiting"
    assert await env.owned(TRIGGER) == []

    # A prerequisite that exists but is not Ready still blocks
    await env.create("Pipeline", "pipeline", "v1")
    await env.reconcilers["Pipeline"].reconcile(PIPELINE)
    await env.reconcilers["Trigger"].reconcile(TRIGGER)
    assert (await env.component(TRIGGER)).status.phase == ComponentPhase.WAITING

    await env.converge(PIPELINE)
    component = await env.converge(TRIGGER)
    assert component.status.phase == ComponentPhase.READY
    assert _conditions(component)[DEPENDENCIES_INSTALLED].is_true
    deployment = await _live(
        env, NamedResource("Deployment", "triggers", "trigger-controller")
    )
    containers = deployment.doc["spec"]["template"]["spec"]["containers"]
    assert containers[0]["image"] == "registry.example.com/trigger-controller:v1"


async def test_delete(env: Env) -> None:
    """Test deleting a component removes everything it installed."""
    await env.create("Pipeline", "pipeline", "v1")
    await env.converge(PIPELINE)

    await env.store.delete(PIPELINE)
    component = await env.component(PIPELINE)
    assert component.deleting

    await env.reconcilers["Pipeline"].reconcile(PIPELINE)
    with pytest.raises(ObjectNotFoundError):
        await env.component(PIPELINE)
    assert await env.owned(PIPELINE) == []
    for resource_id in (CONTROLLER, CONFIG, NamedResource("Namespace", None, "pipelines")):
        with pytest.raises(ObjectNotFoundError):
            await _live(env, resource_id)

    # Nothing left to do
    await env.reconcilers["Pipeline"].reconcile(PIPELINE)


async def test_delete_blocked(env: Env) -> None:
    """Test a failed removal keeps the finalizer until it succeeds."""
    await env.create("Pipeline", "pipeline", "v1")
    await env.converge(PIPELINE)
    blocked = _forbid(env, "delete", "pipeline-controller")

    await env.store.delete(PIPELINE)
    with pytest.raises(FinalizationError, match="pipeline-controller is protected"):
        await env.reconcilers["Pipeline"].reconcile(PIPELINE)
    component = await env.component(PIPELINE)
    assert component.status.phase == ComponentPhase.DELETING
    assert FINALIZER in component.finalizers
    await _live(env, CONTROLLER)

    blocked[0] = False
    await env.reconcilers["Pipeline"].reconcile(PIPELINE)
    with pytest.raises(ObjectNotFoundError):
        await env.component(PIPELINE)
    with pytest.raises(ObjectNotFoundError):
        await _live(env, CONTROLLER)


@pytest.mark.parametrize(
    ("version", "namespace", "reason", "message"),
    [
        ("v1", "Bad_Namespace", "ValidationFailed", "not a valid namespace name"),
        ("v9", "pipelines", "ValidationFailed", "version 'v9' is not supported"),
        ("broken", "pipelines", "TransformFailed", "Unresolved substitution UNKNOWN"),
    ],
)
async def test_terminal_errors(
    env: Env, version: str, namespace: str, reason: str, message: str
) -> None:
    """Test invalid specs and inputs are reported without creating bundles."""
    await env.create("Pipeline", "pipeline", version, namespace=namespace)
    result = await env.reconcilers["Pipeline"].reconcile(PIPELINE)
    assert result.requeue_after is None
    assert not result.requeue

    component = await env.component(PIPELINE)
    assert component.status.phase == ComponentPhase.ERROR
    assert component.status.observed_generation == 1
    available = _conditions(component)[INSTALLER_SET_AVAILABLE]
    assert available.is_false
    assert available.reason == reason
    assert message in available.message
    assert await env.owned(PIPELINE) == []

    # Fixing the spec recovers
    component, resource_version = await env.store.get(PIPELINE, Component)
    component.spec.version = "v1"
    component.spec.target_namespace = "pipelines"
    await env.store.update(component, resource_version)
    component = await env.converge(PIPELINE)
    assert component.status.phase == ComponentPhase.READY


async def test_invalid_resource_config(env: Env) -> None:
    """Test a malformed resource override is a terminal transform failure."""
    await env.create("Pipeline", "pipeline", "v1")
    component, resource_version = await env.store.get(PIPELINE, Component)
    component.spec.config = {"resources": {"controller": {"limits": "2"}}}
    await env.store.update(component, resource_version)

    result = await env.reconcilers["Pipeline"].reconcile(PIPELINE)
    assert result.requeue_after is None

    component = await env.component(PIPELINE)
    assert component.status.phase == ComponentPhase.ERROR
    available = _conditions(component)[INSTALLER_SET_AVAILABLE]
    assert available.reason == "TransformFailed"
    assert "controller.limits" in available.message
    assert await env.owned(PIPELINE) == []


async def test_defaults_applied(env: Env) -> None:
    """Test an empty namespace is filled in from the operator defaults."""
    await env.create("Pipeline", "pipeline", "v1", namespace="")
    component = await env.converge(PIPELINE)
    assert component.status.phase == ComponentPhase.READY
    await _live(
        env, NamedResource("Deployment", "installer-system", "pipeline-controller")
    )
    # The stored spec is not rewritten
    assert component.spec.target_namespace == ""


async def test_retry_budget_exhausted(env: Env) -> None:
    """Test persistent transient failures are reported as an Error."""
    await env.create("Pipeline", "pipeline", "v1")
    reconciler = env.reconcilers["Pipeline"]
    await reconciler.on_retry_budget_exhausted(
        PIPELINE, TransientClusterError("server busy")
    )
    component = await env.component(PIPELINE)
    assert component.status.phase == ComponentPhase.ERROR
    available = _conditions(component)[INSTALLER_SET_AVAILABLE]
    assert available.reason == "TransientErrorBudgetExceeded"
    assert available.message == "server busy"

    writes = env.store.write_count
    await reconciler.on_retry_budget_exhausted(
        PIPELINE, TransientClusterError("server busy")
    )
    assert env.store.write_count == writes

    # Missing components are ignored
    await reconciler.on_retry_budget_exhausted(
        NamedResource("Pipeline", None, "missing"), TransientClusterError("gone")
    )


async def test_garbage_collection(env: Env) -> None:
    """Test InstallerSets the component no longer references are removed."""
    await env.create("Pipeline", "pipeline", "v1")
    component = await env.converge(PIPELINE)
    stray = await env.installer_sets.create_or_update(component, [], "f" * 64)
    assert stray.name in await env.owned(PIPELINE)

    await env.reconcilers["Pipeline"].reconcile(PIPELINE)
    assert await env.owned(PIPELINE) == [component.status.installer_set]


async def test_list_keys(env: Env) -> None:
    """Test each reconciler only lists components of its own kind."""
    await env.create("Pipeline", "pipeline", "v1")
    await env.create("Trigger", "trigger", "v1", namespace="triggers")
    assert await env.reconcilers["Pipeline"].list_keys() == [PIPELINE]
    assert await env.reconcilers["Trigger"].list_keys() == [TRIGGER]
