"""Configuration objects for component-installer.

The operator configuration is a YAML document, for example:

```yaml
default_namespace: installer-system
registry: registry.example.com/installer
manifest_root: ./manifests
installer_set:
  retry_budget: 5
  rollback_on_failure: true
controller:
  workers: 4
dependencies:
  Pipeline: []
  Trigger: [Pipeline]
```
"""

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig
from mashumaro.exceptions import InvalidFieldValue, MissingField
import yaml

from .exceptions import ConfigurationError

__all__ = [
    "DEFAULT_DEPENDENCIES",
    "InstallerSetConfig",
    "ControllerConfig",
    "OperatorConfig",
]

_LOGGER = logging.getLogger(__name__)


DEFAULT_DEPENDENCIES: dict[str, list[str]] = {
    "Pipeline": [],
    "Trigger": ["Pipeline"],
    "Dashboard": ["Pipeline"],
    "Results": ["Pipeline"],
    "Chains": ["Pipeline"],
}


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigurationError(message)


@dataclass
class InstallerSetConfig(DataClassDictMixin):
    """Configuration for the InstallerSetController."""

    retry_budget: int = 5
    """Failed attempts of a single item before the bundle counts as exhausted."""

    item_base_delay: float = 1.0
    """Initial per item retry delay in seconds."""

    item_max_delay: float = 60.0
    """Upper bound of the per item retry delay in seconds."""

    rollback_on_failure: bool = True
    """Revert to the retained bundle when an upgrade exhausts its retries."""

    readiness_poll_interval: float = 5.0
    """How often a set waiting on workload readiness is re-checked."""

    def __post_init__(self) -> None:
        _require(self.retry_budget >= 1, "installer_set.retry_budget must be >= 1")
        _require(
            0 < self.item_base_delay <= self.item_max_delay,
            "installer_set.item_base_delay must be positive and <= item_max_delay",
        )
        _require(
            self.readiness_poll_interval > 0,
            "installer_set.readiness_poll_interval must be positive",
        )


@dataclass
class ControllerConfig(DataClassDictMixin):
    """Configuration for each worker pool."""

    workers: int = 2
    resync_interval: float | None = 300.0
    """Seconds between full resyncs, or None to disable."""

    backoff_base: float = 0.05
    backoff_max: float = 30.0
    dependency_requeue_interval: float = 5.0
    transient_retry_budget: int = 10
    """Consecutive transient failures before a resource is reported in Error."""

    def __post_init__(self) -> None:
        _require(self.workers >= 1, "controller.workers must be >= 1")
        _require(
            0 < self.backoff_base <= self.backoff_max,
            "controller.backoff_base must be positive and <= backoff_max",
        )
        _require(
            self.transient_retry_budget >= 1,
            "controller.transient_retry_budget must be >= 1",
        )

    class Config(BaseConfig):
        omit_none = True


@dataclass
class OperatorConfig(DataClassDictMixin):
    """Top level configuration for the installer."""

    installer_set: InstallerSetConfig = field(default_factory=InstallerSetConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    dependencies: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_DEPENDENCIES.items()}
    )
    """Component kind to its ordered list of prerequisite kinds."""

    default_namespace: str = "installer-system"
    default_version: str | None = None
    registry: str | None = None
    """Registry prefix used to build `${IMAGE_<NAME>}` references."""

    manifest_root: str | None = None
    """Directory of raw manifests laid out as `<kind>/<version>/*.yaml`."""

    class Config(BaseConfig):
        omit_none = True

    @property
    def component_kinds(self) -> list[str]:
        return list(self.dependencies)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any] | None) -> "OperatorConfig":
        """Parse the configuration from a raw document."""
        if doc is None:
            return cls()
        if not isinstance(doc, dict):
            raise ConfigurationError(f"Configuration must be a mapping, got: {doc}")
        try:
            return cls.from_dict(doc)
        except (MissingField, InvalidFieldValue) as err:
            raise ConfigurationError(f"Invalid configuration: {err}") from err

    @classmethod
    def from_yaml(cls, path: Path) -> "OperatorConfig":
        """Load the configuration from a YAML file."""
        _LOGGER.debug("Loading configuration from %s", path)
        try:
            doc = yaml.safe_load(path.read_text())
        except (OSError, yaml.YAMLError) as err:
            raise ConfigurationError(
                f"Unable to read configuration {path}: {err}"
            ) from err
        return cls.parse_doc(doc)
