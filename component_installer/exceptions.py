"""Exceptions related to component-installer."""

__all__ = [
    "InstallerException",
    "InputException",
    "ConfigurationError",
    "DependencyCycleError",
    "StoreError",
    "ObjectNotFoundError",
    "AlreadyExistsError",
    "ConflictError",
    "TransientClusterError",
    "ForbiddenError",
    "InvalidObjectError",
    "ValidationError",
    "ManifestTransformError",
    "ManifestApplyError",
    "DependencyNotReadyError",
    "PrerequisiteDisabledError",
    "FinalizationError",
]


class InstallerException(Exception):
    """Generic base exception used for this library."""


class InputException(InstallerException):
    """Raised when the input files or values are not formatted as expected."""


class ConfigurationError(InstallerException):
    """Raised when the operator configuration is invalid.

    This is fatal at startup and never retried.
    """


class DependencyCycleError(ConfigurationError):
    """Raised when the component dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Dependency graph contains a cycle: {' -> '.join(cycle)}")
        self.cycle = cycle


class StoreError(InstallerException):
    """Base class for failures talking to the resource store."""


class ObjectNotFoundError(StoreError):
    """Raised when an object is not found in the store."""


class AlreadyExistsError(StoreError):
    """Raised when creating an object that already exists."""


class ConflictError(StoreError):
    """Raised when a write carries a stale version token."""


class TransientClusterError(StoreError):
    """Raised for network, timeout or server busy errors that may succeed later."""


class ForbiddenError(StoreError):
    """Raised when the store refuses a write."""


class InvalidObjectError(StoreError):
    """Raised when the store rejects a malformed object."""


class ValidationError(InstallerException):
    """Raised when a component spec is rejected.

    Terminal for the current spec generation.
    """

    reason = "ValidationFailed"


class ManifestTransformError(InstallerException):
    """Raised when a transform stage cannot resolve a required input.

    Retrying with the same inputs cannot succeed.
    """

    reason = "TransformFailed"


class ManifestApplyError(InstallerException):
    """Raised when a single manifest item fails to apply."""

    def __init__(
        self, identity: str, reason: str, message: str, *, transient: bool
    ) -> None:
        super().__init__(f"Failed to apply {identity}: {message}")
        self.identity = identity
        self.reason = reason
        self.message = message
        self.transient = transient


class DependencyNotReadyError(InstallerException):
    """Raised when a prerequisite component kind is not Ready.

    This is a waiting state, not a failure.
    """

    reason = "DependencyNotReady"

    def __init__(self, kind: str, dependency: str) -> None:
        super().__init__(f"{dependency.lower()} not ready")
        self.kind = kind
        self.dependency = dependency


class PrerequisiteDisabledError(InstallerException):
    """Raised when a Platform enables a kind but not one of its prerequisites.

    Unlike `DependencyNotReadyError` this does not clear on its own, the
    Platform spec must change.
    """

    reason = "PrerequisiteDisabled"

    def __init__(self, kind: str, dependency: str) -> None:
        super().__init__(f"{kind} requires {dependency}, which the platform does not enable")
        self.kind = kind
        self.dependency = dependency


class FinalizationError(InstallerException):
    """Raised when owned resources could not be removed during deletion."""

    reason = "FinalizationFailed"
