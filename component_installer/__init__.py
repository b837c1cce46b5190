"""
component-installer reconciles declarative component resources into
installed, versioned bundles of manifests.

The main pieces are:
  - `manifest` and `conditions` define the resources and their status.
  - `transform` maps raw manifests plus component configuration to the
    documents applied on the cluster.
  - `installerset_controller` applies hashed bundles and reports readiness.
  - `component_controller` drives each component through install, upgrade,
    rollback and deletion.
  - `orchestrator` orders component kinds by dependency and runs a worker
    pool per kind.
"""

__all__ = [
    "manifest",
    "conditions",
    "config",
    "exceptions",
    "transform",
    "store",
    "task",
    "installerset_controller",
    "component_controller",
    "orchestrator",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
