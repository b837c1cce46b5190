"""InstallerSet Controller module.

This module provides the InstallerSetController for applying hashed bundles
of transformed manifests and reporting their readiness.
"""

from .apply import ManifestApplier
from .controller import (
    InstallerSetController,
    MANIFESTS_APPLIED,
    WORKLOADS_READY,
    installer_set_name,
)
from .readiness import ReadinessCheck, is_ready

__all__ = [
    "InstallerSetController",
    "ManifestApplier",
    "MANIFESTS_APPLIED",
    "WORKLOADS_READY",
    "installer_set_name",
    "ReadinessCheck",
    "is_ready",
]
