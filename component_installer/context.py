"""Context shared by every reconciler and utilities for context tracing."""

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
from time import perf_counter
from typing import Generator, TYPE_CHECKING

from .collaborators import (
    BasicDefaulter,
    BasicValidator,
    Defaulter,
    ManifestSource,
    StaticManifestSource,
    Validator,
)
from .conditions import Clock, utcnow
from .config import OperatorConfig
from .store import Store

if TYPE_CHECKING:
    from .component_controller.strategy import ComponentStrategy
    from .orchestrator.graph import DependencyGraph

__all__ = ["ReconcileContext", "trace_context"]

_LOGGER = logging.getLogger(__name__)


trace: contextvars.ContextVar[list[str]] = contextvars.ContextVar("trace")


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    stack = trace.get([])
    token = trace.set(stack + [name])
    label = " > ".join(stack + [name])
    t1 = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        t2 = perf_counter()
        trace.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, (t2 - t1))


@dataclass
class ReconcileContext:
    """Handles to the store and collaborators used by reconcilers.

    Constructed once at startup and passed to every reconciler.
    """

    store: Store
    graph: "DependencyGraph"
    config: OperatorConfig = field(default_factory=OperatorConfig)
    strategies: dict[str, "ComponentStrategy"] = field(default_factory=dict)
    validator: Validator = field(default_factory=BasicValidator)
    defaulter: Defaulter | None = None
    manifest_source: ManifestSource = field(
        default_factory=lambda: StaticManifestSource({})
    )
    clock: Clock = utcnow
    """Source of status timestamps and item retry deadlines."""

    def __post_init__(self) -> None:
        if self.defaulter is None:
            self.defaulter = BasicDefaulter(
                self.config.default_namespace, self.config.default_version
            )
