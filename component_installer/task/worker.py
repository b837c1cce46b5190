"""Worker pool that drives a reconciler from a work queue.

There is one `Controller` per resource kind. Each owns a fixed number of
workers pulling keys from its `WorkQueue`, so no two passes for the same key
ever run concurrently while different keys and kinds proceed in parallel.
The outcome of each pass decides how the key is requeued:

| Outcome                  | Requeue                                  |
|--------------------------|------------------------------------------|
| success                  | `requeue_after` / `requeue` if requested |
| ConflictError            | immediately, backoff untouched           |
| DependencyNotReadyError  | after the dependency requeue interval    |
| TransientClusterError    | rate limited, budget hook once exceeded  |
| FinalizationError        | rate limited, forever                    |
| anything else            | rate limited, logged with traceback      |
"""

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
import logging

from component_installer.exceptions import (
    AlreadyExistsError,
    ConflictError,
    DependencyNotReadyError,
    FinalizationError,
    InstallerException,
    TransientClusterError,
)
from component_installer.config import ControllerConfig
from component_installer.manifest import NamedResource

from .context import get_task_service
from .queue import ExponentialBackoff, QueueShutdown, WorkQueue
from .service import TaskService

__all__ = [
    "Controller",
    "Reconciler",
    "ReconcileResult",
]

_LOGGER = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of a successful reconciliation pass."""

    requeue: bool = False
    """Process the key again as soon as possible."""

    requeue_after: float | None = None
    """Process the key again after this many seconds."""


class Reconciler(ABC):
    """A level-triggered reconciliation pass for one resource kind."""

    @abstractmethod
    async def reconcile(self, key: NamedResource) -> ReconcileResult:
        """Converge the resource identified by key towards its desired state."""

    @abstractmethod
    async def list_keys(self) -> list[NamedResource]:
        """Return the keys of every resource handled by this reconciler."""

    async def on_retry_budget_exhausted(
        self, key: NamedResource, err: Exception
    ) -> None:
        """Called when transient errors for a key outlive the retry budget."""


class Controller:
    """Fixed size worker pool reconciling keys of one kind."""

    def __init__(
        self,
        name: str,
        reconciler: Reconciler,
        config: ControllerConfig | None = None,
        task_service: TaskService | None = None,
    ) -> None:
        self.name = name
        self._reconciler = reconciler
        self._config = config or ControllerConfig()
        self._task_service = task_service or get_task_service()
        self.queue: WorkQueue[NamedResource] = WorkQueue(
            name,
            ExponentialBackoff(self._config.backoff_base, self._config.backoff_max),
        )
        self._tasks: list[asyncio.Task[None]] = []

    def enqueue(self, key: NamedResource) -> None:
        """Request a reconciliation pass for the key."""
        self.queue.add(key)

    def start(self) -> None:
        """Start the workers and the periodic resync."""
        if self._tasks:
            return
        _LOGGER.info(
            "Starting controller %s with %d workers", self.name, self._config.workers
        )
        for i in range(self._config.workers):
            self._tasks.append(
                self._task_service.create_background_task(
                    self._worker(), name=f"{self.name}-worker-{i}"
                )
            )
        if self._config.resync_interval:
            self._tasks.append(
                self._task_service.create_background_task(
                    self._resync(self._config.resync_interval),
                    name=f"{self.name}-resync",
                )
            )

    async def stop(self) -> None:
        """Stop the workers, abandoning any in-flight pass."""
        _LOGGER.info("Stopping controller %s", self.name)
        self.queue.shutdown()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def resync(self) -> None:
        """Enqueue every known key."""
        try:
            keys = await self._reconciler.list_keys()
        except InstallerException as err:
            _LOGGER.warning("%s: resync failed to list keys: %s", self.name, err)
            return
        _LOGGER.debug("%s: resync of %d keys", self.name, len(keys))
        for key in keys:
            self.queue.add(key)

    async def _resync(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.resync()

    async def _worker(self) -> None:
        while True:
            try:
                key = await self.queue.get()
            except QueueShutdown:
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: NamedResource) -> None:
        """Run one reconciliation pass for the key and requeue it as needed."""
        try:
            result = await self._reconciler.reconcile(key)
        except (ConflictError, AlreadyExistsError) as err:
            _LOGGER.debug("%s: conflict reconciling %s, retrying: %s", self.name, key, err)
            self.queue.add(key)
        except DependencyNotReadyError as err:
            _LOGGER.info("%s: %s waiting: %s", self.name, key, err)
            self.queue.forget(key)
            self.queue.add_after(key, self._config.dependency_requeue_interval)
        except TransientClusterError as err:
            failures = self.queue.num_requeues(key)
            _LOGGER.warning(
                "%s: transient error reconciling %s (attempt %d): %s",
                self.name,
                key,
                failures + 1,
                err,
            )
            if failures + 1 >= self._config.transient_retry_budget:
                await self._budget_exhausted(key, err)
            self.queue.add_rate_limited(key)
        except FinalizationError as err:
            _LOGGER.warning("%s: finalizing %s incomplete: %s", self.name, key, err)
            self.queue.add_rate_limited(key)
        except InstallerException as err:
            _LOGGER.error("%s: error reconciling %s: %s", self.name, key, err)
            self.queue.add_rate_limited(key)
        except Exception as err:  # pylint: disable=broad-except
            _LOGGER.exception(
                "%s: unexpected error reconciling %s: %s", self.name, key, err
            )
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)
            if result.requeue_after is not None:
                self.queue.add_after(key, result.requeue_after)
            elif result.requeue:
                self.queue.add(key)

    async def _budget_exhausted(self, key: NamedResource, err: Exception) -> None:
        try:
            await self._reconciler.on_retry_budget_exhausted(key, err)
        except InstallerException as hook_err:
            _LOGGER.warning(
                "%s: could not report exhausted retries for %s: %s",
                self.name,
                key,
                hook_err,
            )
