"""Per kind strategy table for the component reconciler.

Every component kind shares the same reconciliation state machine. The
differences between kinds are captured by a `ComponentStrategy`: the images
the kind ships, extra substitution tokens derived from its configuration, and
readiness predicates for kinds of objects it applies.
"""

from collections.abc import Callable
from dataclasses import dataclass, field

from component_installer.installerset_controller.readiness import ReadinessCheck
from component_installer.manifest import ComponentSpec

__all__ = [
    "ComponentStrategy",
    "DEFAULT_STRATEGIES",
]


SubstitutionFunc = Callable[[ComponentSpec], dict[str, str]]


@dataclass
class ComponentStrategy:
    """Kind specific inputs to the shared reconciliation pass."""

    kind: str

    images: list[str] = field(default_factory=list)
    """Container names of the images published for every release."""

    readiness: dict[str, ReadinessCheck] = field(default_factory=dict)
    """Readiness predicates keyed by applied object kind."""

    substitutions: SubstitutionFunc | None = None

    def image_defaults(self, spec: ComponentSpec, registry: str | None) -> dict[str, str]:
        """Return the default image reference for each container."""
        if not registry:
            return {}
        return {
            name: f"{registry}/{self.kind.lower()}-{name}:{spec.version}"
            for name in self.images
        }

    def extra_substitutions(self, spec: ComponentSpec) -> dict[str, str]:
        if self.substitutions is None:
            return {}
        return self.substitutions(spec)


def _flag(value: object) -> str:
    return "true" if value in (True, "true", "True") else "false"


def _dashboard_substitutions(spec: ComponentSpec) -> dict[str, str]:
    return {"READ_ONLY": _flag(spec.config.get("readOnly", True))}


def _results_substitutions(spec: ComponentSpec) -> dict[str, str]:
    return {
        "DB_HOST": str(spec.config.get("dbHost", "results-postgres")),
        "DB_NAME": str(spec.config.get("dbName", "results")),
    }


def _chains_substitutions(spec: ComponentSpec) -> dict[str, str]:
    return {"ARTIFACTS_STORAGE": str(spec.config.get("artifactsStorage", "oci"))}


DEFAULT_STRATEGIES: dict[str, ComponentStrategy] = {
    strategy.kind: strategy
    for strategy in (
        ComponentStrategy("Pipeline", images=["controller", "webhook"]),
        ComponentStrategy("Trigger", images=["controller", "webhook", "interceptors"]),
        ComponentStrategy(
            "Dashboard", images=["dashboard"], substitutions=_dashboard_substitutions
        ),
        ComponentStrategy(
            "Results", images=["api", "watcher"], substitutions=_results_substitutions
        ),
        ComponentStrategy(
            "Chains", images=["controller"], substitutions=_chains_substitutions
        ),
    )
}
