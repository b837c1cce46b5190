"""Dependency graph over component kinds.

Each component kind lists the kinds that must be Ready before it is
installed. The graph is validated once when constructed and provides the
orderings used for install (prerequisites first) and removal (dependents
first).
"""

from collections import deque
from collections.abc import Mapping, Sequence
import logging

from component_installer.exceptions import ConfigurationError, DependencyCycleError

__all__ = ["DependencyGraph"]

_LOGGER = logging.getLogger(__name__)


class DependencyGraph:
    """Acyclic mapping from a component kind to its prerequisite kinds."""

    def __init__(self, dependencies: Mapping[str, Sequence[str]]) -> None:
        """Build and validate the graph.

        Raises:
            ConfigurationError: If a prerequisite is not a known kind.
            DependencyCycleError: If the graph contains a cycle.
        """
        self._kinds: list[str] = list(dependencies)
        self._prerequisites: dict[str, list[str]] = {}
        self._dependents: dict[str, list[str]] = {kind: [] for kind in self._kinds}
        for kind, prerequisites in dependencies.items():
            seen: list[str] = []
            for prerequisite in prerequisites:
                if prerequisite not in self._dependents:
                    raise ConfigurationError(
                        f"Component kind '{kind}' depends on unknown kind '{prerequisite}'"
                    )
                if prerequisite not in seen:
                    seen.append(prerequisite)
                    self._dependents[prerequisite].append(kind)
            self._prerequisites[kind] = seen
        self._order = self._sort()
        _LOGGER.debug("Component install order: %s", self._order)

    @property
    def kinds(self) -> list[str]:
        """Kinds in declaration order."""
        return list(self._kinds)

    def __contains__(self, kind: object) -> bool:
        return kind in self._prerequisites

    def prerequisites(self, kind: str) -> list[str]:
        """Return the direct prerequisites of a kind.

        Raises:
            KeyError: If the kind is unknown.
        """
        return list(self._prerequisites[kind])

    def dependents(self, kind: str) -> list[str]:
        """Return the kinds that directly depend on a kind."""
        return list(self._dependents[kind])

    def topological_order(self) -> list[str]:
        """Return every kind with prerequisites before dependents.

        Ties are broken by declaration order so the result is stable.
        """
        return list(self._order)

    def reverse_order(self) -> list[str]:
        """Return every kind with dependents before prerequisites."""
        return list(reversed(self._order))

    def _sort(self) -> list[str]:
        remaining = {kind: len(prereqs) for kind, prereqs in self._prerequisites.items()}
        position = {kind: i for i, kind in enumerate(self._kinds)}
        ready = deque(kind for kind in self._kinds if remaining[kind] == 0)
        order: list[str] = []
        while ready:
            kind = ready.popleft()
            order.append(kind)
            unblocked = []
            for dependent in self._dependents[kind]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    unblocked.append(dependent)
            # Keep the queue in declaration order
            ready = deque(
                sorted([*ready, *unblocked], key=lambda k: position[k])
            )
        if len(order) != len(self._kinds):
            raise DependencyCycleError(self._find_cycle(set(self._kinds) - set(order)))
        return order

    def _find_cycle(self, candidates: set[str]) -> list[str]:
        """Return one cycle among kinds that could not be ordered."""
        start = next(kind for kind in self._kinds if kind in candidates)
        path: list[str] = []
        kind = start
        while kind not in path:
            path.append(kind)
            kind = next(p for p in self._prerequisites[kind] if p in candidates)
        cycle = path[path.index(kind) :]
        return [*cycle, kind]
