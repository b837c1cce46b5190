"""External collaborators consumed by the component reconciler.

The reconciler does not know how an individual component kind is validated,
defaulted or where its raw manifests come from. These are supplied through
the interfaces in this module.
"""

from abc import ABC, abstractmethod
import copy
import logging
from pathlib import Path
import re
from typing import Any

import aiofiles
import yaml

from .exceptions import InputException, ValidationError
from .manifest import ComponentSpec

__all__ = [
    "Validator",
    "Defaulter",
    "ManifestSource",
    "BasicValidator",
    "BasicDefaulter",
    "StaticManifestSource",
    "DirectoryManifestSource",
]

_LOGGER = logging.getLogger(__name__)

DNS_1123_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
MAX_NAMESPACE_LENGTH = 63


class Validator(ABC):
    """Validates a component spec."""

    @abstractmethod
    def validate(self, kind: str, spec: ComponentSpec) -> None:
        """Raise ValidationError if the spec is not acceptable."""


class Defaulter(ABC):
    """Fills in defaults for a component spec."""

    @abstractmethod
    def apply_defaults(self, kind: str, spec: ComponentSpec) -> ComponentSpec:
        """Return a copy of the spec with defaults applied."""


class ManifestSource(ABC):
    """Supplies the raw manifests for a component kind and version."""

    @abstractmethod
    async def supported_versions(self, kind: str) -> list[str]:
        """Return the versions available for the kind."""

    @abstractmethod
    async def manifests(self, kind: str, version: str) -> list[dict[str, Any]]:
        """Return the raw manifests for the kind at the version.

        Raises:
            ValidationError: If the version is not supported.
        """


class BasicValidator(Validator):
    """Checks the fields every component kind requires."""

    def validate(self, kind: str, spec: ComponentSpec) -> None:
        if not spec.version:
            raise ValidationError(f"{kind} spec.version is required")
        if not spec.target_namespace:
            raise ValidationError(f"{kind} spec.targetNamespace is required")
        if len(spec.target_namespace) > MAX_NAMESPACE_LENGTH or not DNS_1123_LABEL.match(
            spec.target_namespace
        ):
            raise ValidationError(
                f"{kind} spec.targetNamespace '{spec.target_namespace}' is not a valid namespace name"
            )
        if not isinstance(spec.config, dict):
            raise ValidationError(f"{kind} spec.config must be a mapping")


class BasicDefaulter(Defaulter):
    """Fills in the namespace and version from operator defaults."""

    def __init__(self, namespace: str, version: str | None = None) -> None:
        self._namespace = namespace
        self._version = version

    def apply_defaults(self, kind: str, spec: ComponentSpec) -> ComponentSpec:
        result = copy.deepcopy(spec)
        if not result.target_namespace:
            result.target_namespace = self._namespace
        if not result.version and self._version:
            result.version = self._version
        return result


class StaticManifestSource(ManifestSource):
    """Manifests held in memory, keyed by kind and version."""

    def __init__(self, manifests: dict[str, dict[str, list[dict[str, Any]]]]) -> None:
        self._manifests = manifests

    async def supported_versions(self, kind: str) -> list[str]:
        return sorted(self._manifests.get(kind, {}))

    async def manifests(self, kind: str, version: str) -> list[dict[str, Any]]:
        if (docs := self._manifests.get(kind, {}).get(version)) is None:
            raise ValidationError(
                f"{kind} version '{version}' is not supported, expected one of {await self.supported_versions(kind)}"
            )
        return copy.deepcopy(docs)


class DirectoryManifestSource(ManifestSource):
    """Manifests read from `<root>/<kind lower>/<version>/*.yaml`."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def _kind_dir(self, kind: str) -> Path:
        return self._root / kind.lower()

    async def supported_versions(self, kind: str) -> list[str]:
        kind_dir = self._kind_dir(kind)
        if not kind_dir.is_dir():
            return []
        return sorted(p.name for p in kind_dir.iterdir() if p.is_dir())

    async def manifests(self, kind: str, version: str) -> list[dict[str, Any]]:
        version_dir = self._kind_dir(kind) / version
        if not version_dir.is_dir():
            raise ValidationError(
                f"{kind} version '{version}' is not supported, expected one of {await self.supported_versions(kind)}"
            )
        docs: list[dict[str, Any]] = []
        for path in sorted(version_dir.glob("*.y*ml")):
            _LOGGER.debug("Reading manifests from %s", path)
            async with aiofiles.open(path, mode="r") as f:
                content = await f.read()
            try:
                for doc in yaml.safe_load_all(content):
                    if doc is None:
                        continue
                    if not isinstance(doc, dict):
                        raise InputException(f"Invalid manifest in {path}: {doc}")
                    docs.append(doc)
            except yaml.YAMLError as err:
                raise InputException(f"Unable to parse {path}: {err}") from err
        return docs
