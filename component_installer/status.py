"""Lifecycle phases for the resources managed by the controllers."""

from enum import StrEnum


class InstallerSetPhase(StrEnum):
    """Processing phase of an InstallerSet."""

    PENDING = "Pending"
    APPLYING = "Applying"
    PARTIALLY_FAILED = "PartiallyFailed"
    READY = "Ready"
    SUPERSEDED = "Superseded"
    DELETING = "Deleting"

    @property
    def terminal(self) -> bool:
        """Return True if the InstallerSet is no longer reconciled."""
        return self in (InstallerSetPhase.SUPERSEDED, InstallerSetPhase.DELETING)


class ItemState(StrEnum):
    """Apply state of a single manifest item within an InstallerSet."""

    PENDING = "Pending"
    APPLIED = "Applied"
    READY = "Ready"
    FAILED = "Failed"


class ComponentPhase(StrEnum):
    """Processing phase of a Component."""

    PENDING = "Pending"
    WAITING = "Waiting"
    INSTALLING = "Installing"
    READY = "Ready"
    UPGRADING = "Upgrading"
    ERROR = "Error"
    DELETING = "Deleting"


class PlatformPhase(StrEnum):
    """Aggregated phase of a Platform."""

    PENDING = "Pending"
    WAITING = "Waiting"
    INSTALLING = "Installing"
    READY = "Ready"
    ERROR = "Error"
    DELETING = "Deleting"
