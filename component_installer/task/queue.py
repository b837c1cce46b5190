"""Level-triggered work queue with per key rate limiting.

The queue holds opaque instance keys. Its guarantees mirror the work queues
used by Kubernetes controllers:
  - A key added several times before it is processed is handed out once.
  - A key is never handed to two workers at the same time. If it is added
    while being processed it is handed out again once `done` is called.
  - Keys that keep failing are re-added with an exponentially growing delay.
"""

import asyncio
from collections.abc import Hashable
import logging
from typing import Generic, TypeVar

__all__ = [
    "ExponentialBackoff",
    "QueueShutdown",
    "WorkQueue",
    "backoff_delay",
]

_LOGGER = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


def backoff_delay(failures: int, base: float, cap: float) -> float:
    """Return the delay before the next attempt after `failures` failures."""
    if failures <= 0:
        return 0.0
    # Bound the exponent so large failure counts can't overflow
    return float(min(base * (2 ** min(failures - 1, 62)), cap))


class QueueShutdown(Exception):
    """Raised by `WorkQueue.get` once the queue is shut down."""


class ExponentialBackoff(Generic[K]):
    """Per key exponential backoff rate limiter."""

    def __init__(self, base: float, cap: float) -> None:
        self._base = base
        self._cap = cap
        self._failures: dict[K, int] = {}

    def when(self, key: K) -> float:
        """Record a failure for the key and return how long to wait."""
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        return backoff_delay(failures, self._base, self._cap)

    def forget(self, key: K) -> None:
        """Reset the failure count for the key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: K) -> int:
        return self._failures.get(key, 0)


class WorkQueue(Generic[K]):
    """Coalescing queue of keys awaiting reconciliation."""

    def __init__(
        self, name: str, rate_limiter: ExponentialBackoff[K] | None = None
    ) -> None:
        self.name = name
        self._rate_limiter = rate_limiter or ExponentialBackoff(0.005, 1000.0)
        self._ready: asyncio.Queue[K] = asyncio.Queue()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._timers: dict[K, tuple[float, asyncio.TimerHandle]] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return self._ready.qsize()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: K) -> None:
        """Mark the key as needing a reconciliation pass."""
        if self._shutting_down:
            return
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Handed out again by done()
            return
        self._ready.put_nowait(key)

    def add_after(self, key: K, delay: float) -> None:
        """Add the key once the delay has passed.

        Only the earliest pending delay for a key is kept.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        if (existing := self._timers.get(key)) is not None:
            if existing[0] <= deadline:
                return
            existing[1].cancel()
        handle = loop.call_at(deadline, self._fire_timer, key)
        self._timers[key] = (deadline, handle)

    def _fire_timer(self, key: K) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: K) -> float:
        """Add the key after its backoff delay, returning the delay."""
        delay = self._rate_limiter.when(key)
        _LOGGER.debug("%s: requeue %s in %.3fs", self.name, key, delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: K) -> None:
        """Stop tracking failures for the key."""
        self._rate_limiter.forget(key)

    def num_requeues(self, key: K) -> int:
        return self._rate_limiter.num_requeues(key)

    def pending_delay(self, key: K) -> float | None:
        """Return the remaining delay for a key scheduled with add_after."""
        if (existing := self._timers.get(key)) is None:
            return None
        return max(0.0, existing[0] - asyncio.get_running_loop().time())

    async def get(self) -> K:
        """Wait for the next key to process.

        Raises:
            QueueShutdown: If the queue has been shut down.
        """
        if self._shutting_down:
            raise QueueShutdown(self.name)
        key = await self._ready.get()
        if self._shutting_down:
            raise QueueShutdown(self.name)
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: K) -> None:
        """Mark processing of the key as finished."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._ready.put_nowait(key)

    def idle(self) -> bool:
        """Return True if nothing is queued, in progress or scheduled."""
        return not self._dirty and not self._processing and not self._timers

    def shutdown(self) -> None:
        """Stop accepting keys and drop any scheduled ones."""
        self._shutting_down = True
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
