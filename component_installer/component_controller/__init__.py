"""Component Controller module.

This module provides the ComponentReconciler state machine shared by every
component kind, and the strategy table supplying the per kind inputs.
"""

from .controller import (
    ComponentReconciler,
    DEPENDENCIES_INSTALLED,
    INSTALLER_SET_AVAILABLE,
    INSTALLER_SET_READY,
)
from .strategy import ComponentStrategy, DEFAULT_STRATEGIES

__all__ = [
    "ComponentReconciler",
    "ComponentStrategy",
    "DEFAULT_STRATEGIES",
    "DEPENDENCIES_INSTALLED",
    "INSTALLER_SET_AVAILABLE",
    "INSTALLER_SET_READY",
]
