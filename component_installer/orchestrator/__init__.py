"""Orchestrator for component-installer.

This module provides the top level wiring of the installer: the dependency
graph over component kinds, the Platform reconciler, the bootstrap resource
loader and the orchestrator that runs one worker pool per kind.
"""

from .graph import DependencyGraph
from .loader import LoadOptions, ResourceLoader
from .orchestrator import BootstrapOptions, Orchestrator
from .reconciler import COMPONENTS_READY, PlatformReconciler, component_name

__all__ = [
    "Orchestrator",
    "BootstrapOptions",
    "DependencyGraph",
    "PlatformReconciler",
    "ResourceLoader",
    "LoadOptions",
    "COMPONENTS_READY",
    "component_name",
]
