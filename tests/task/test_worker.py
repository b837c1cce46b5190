"""Tests for the controller worker pool."""

import asyncio

import pytest

from component_installer.config import ControllerConfig
from component_installer.exceptions import (
    ConflictError,
    DependencyNotReadyError,
    FinalizationError,
    TransientClusterError,
)
from component_installer.manifest import NamedResource
from component_installer.task import Controller, ReconcileResult, Reconciler

KEY = NamedResource("Pipeline", None, "pipeline")
OTHER = NamedResource("Pipeline", None, "other")


class FakeReconciler(Reconciler):
    """Reconciler returning scripted outcomes."""

    def __init__(self) -> None:
        self.outcomes: list[ReconcileResult | Exception] = []
        self.calls: list[NamedResource] = []
        self.exhausted: list[tuple[NamedResource, Exception]] = []
        self.called = asyncio.Event()

    async def reconcile(self, key: NamedResource) -> ReconcileResult:
        self.calls.append(key)
        self.called.set()
        outcome = self.outcomes.pop(0) if self.outcomes else ReconcileResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def list_keys(self) -> list[NamedResource]:
        return [KEY, OTHER]

    async def on_retry_budget_exhausted(
        self, key: NamedResource, err: Exception
    ) -> None:
        self.exhausted.append((key, err))


@pytest.fixture
def reconciler() -> FakeReconciler:
    return FakeReconciler()


@pytest.fixture
async def controller(reconciler: FakeReconciler) -> Controller:
    """Controller with fast backoff that is never started."""
    controller = Controller(
        "pipeline",
        reconciler,
        ControllerConfig(
            workers=1,
            resync_interval=None,
            backoff_base=0.5,
            backoff_max=10.0,
            dependency_requeue_interval=3.0,
            transient_retry_budget=2,
        ),
    )
    yield controller
    controller.queue.shutdown()


async def test_success_requeue_after(
    controller: Controller, reconciler: FakeReconciler
) -> None:
    """Test a successful pass honors the requested delay."""
    reconciler.outcomes = [ReconcileResult(requeue_after=7.0)]
    await controller.process(KEY)
    delay = controller.queue.pending_delay(KEY)
    assert delay is not None
    assert 6.0 < delay <= 7.0
    assert controller.queue.num_requeues(KEY) == 0


async def test_success_requeue(controller: Controller, reconciler: FakeReconciler) -> None:
    """Test a successful pass asking to run again."""
    reconciler.outcomes = [ReconcileResult(requeue=True), ReconcileResult()]
    await controller.process(KEY)
    assert len(controller.queue) == 1
    await controller.process(OTHER)
    assert len(controller.queue) == 1


async def test_conflict_requeues_immediately(
    controller: Controller, reconciler: FakeReconciler
) -> None:
    """Test a version conflict is retried at once without backoff."""
    reconciler.outcomes = [ConflictError("stale")]
    await controller.process(KEY)
    assert len(controller.queue) == 1
    assert controller.queue.num_requeues(KEY) == 0


async def test_dependency_not_ready(
    controller: Controller, reconciler: FakeReconciler
) -> None:
    """Test waiting on a dependency uses the fixed interval and resets backoff."""
    controller.queue.add_rate_limited(OTHER)
    reconciler.outcomes = [DependencyNotReadyError("Trigger", "Pipeline")]
    await controller.process(OTHER)
    assert controller.queue.num_requeues(OTHER) == 0

    reconciler.outcomes = [DependencyNotReadyError("Trigger", "Pipeline")]
    await controller.process(KEY)
    assert controller.queue.num_requeues(KEY) == 0
    delay = controller.queue.pending_delay(KEY)
    assert delay is not None
    assert 2.0 < delay <= 3.0


async def test_transient_budget(
    controller: Controller, reconciler: FakeReconciler
) -> None:
    """Test the budget hook runs once transient failures reach the budget."""
    err = TransientClusterError("server busy")
    reconciler.outcomes = [err, err, err]
    await controller.process(KEY)
    assert reconciler.exhausted == []
    assert controller.queue.num_requeues(KEY) == 1

    await controller.process(KEY)
    assert reconciler.exhausted == [(KEY, err)]
    assert controller.queue.num_requeues(KEY) == 2

    await controller.process(KEY)
    assert len(reconciler.exhausted) == 2


@pytest.mark.parametrize(
    "err",
    [FinalizationError("stuck"), ValueError("bug")],
)
async def test_errors_rate_limited(
    controller: Controller, reconciler: FakeReconciler, err: Exception
) -> None:
    """Test other failures are retried with backoff."""
    reconciler.outcomes = [err]
    await controller.process(KEY)
    assert controller.queue.num_requeues(KEY) == 1
    assert controller.queue.pending_delay(KEY) is not None
    assert reconciler.exhausted == []


async def test_resync(controller: Controller) -> None:
    """Test a resync enqueues every key."""
    await controller.resync()
    assert len(controller.queue) == 2


async def test_workers(reconciler: FakeReconciler) -> None:
    """Test started workers drain the queue until stopped."""
    controller = Controller(
        "pipeline", reconciler, ControllerConfig(workers=2, resync_interval=None)
    )
    controller.start()
    controller.enqueue(KEY)
    await asyncio.wait_for(reconciler.called.wait(), timeout=1)
    await controller.stop()
    assert reconciler.calls == [KEY]

    # Keys added after stop are ignored
    controller.enqueue(OTHER)
    assert len(controller.queue) == 0
