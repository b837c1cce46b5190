"""Representation of the resources managed by the installer.

There are three families of objects held in the resource store:
  - `Platform` is the top level resource describing which component kinds
    should be installed together.
  - `Component` is one independently installable unit (e.g. a pipeline
    engine or a dashboard) with a desired version and configuration.
  - `InstallerSet` is a hashed bundle of transformed manifests applied on
    behalf of one component instance.

Objects applied to the cluster on behalf of an InstallerSet are stored as
`Unstructured` documents.
"""

import copy
from dataclasses import dataclass, field
import datetime
import logging
from typing import Any, ClassVar

from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig

from .conditions import Condition
from .exceptions import InputException
from .status import (
    ComponentPhase,
    InstallerSetPhase,
    ItemState,
    PlatformPhase,
)

__all__ = [
    "NamedResource",
    "OwnerReference",
    "ComponentSpec",
    "ComponentStatus",
    "Component",
    "ManifestItem",
    "ItemStatus",
    "InstallerSet",
    "PlatformComponent",
    "PlatformSpec",
    "ComponentSummary",
    "PlatformStatus",
    "Platform",
    "Unstructured",
    "parse_raw_obj",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
# We don't check specific versions for forward compatibility on upgrade.
INSTALLER_DOMAIN = "installer.dev"
API_VERSION = f"{INSTALLER_DOMAIN}/v1alpha1"
PLATFORM_KIND = "Platform"
INSTALLER_SET_KIND = "InstallerSet"
NAMESPACE_KIND = "Namespace"
CRD_KIND = "CustomResourceDefinition"

FINALIZER = f"{INSTALLER_DOMAIN}/finalizer"

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_VERSION = "app.kubernetes.io/version"
LABEL_PART_OF = "app.kubernetes.io/part-of"
LABEL_COMPONENT = f"{INSTALLER_DOMAIN}/component"
LABEL_INSTANCE = f"{INSTALLER_DOMAIN}/instance"
LABEL_INSTALLER_SET = f"{INSTALLER_DOMAIN}/installer-set"
LABEL_PLATFORM = f"{INSTALLER_DOMAIN}/platform"
ANNOTATION_ORDER = f"{INSTALLER_DOMAIN}/apply-order"
ANNOTATION_ITEM_HASH = f"{INSTALLER_DOMAIN}/item-hash"
MANAGED_BY = "component-installer"

DEFAULT_ORDER = 0


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


def _metadata(doc: dict[str, Any]) -> dict[str, Any]:
    if not (metadata := doc.get("metadata")):
        raise InputException(f"Invalid object missing metadata: {doc}")
    if not metadata.get("name"):
        raise InputException(f"Invalid object missing metadata.name: {doc}")
    return metadata


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    @classmethod
    def parse_yaml(cls, content: str) -> "BaseManifest":
        """Parse a serialized manifest."""
        return yaml_decode(content, cls)

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a resource in the store."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class OwnerReference(BaseManifest):
    """Reference from an owned object back to its owner."""

    kind: str
    name: str
    namespace: str | None = None

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)

    @classmethod
    def of(cls, resource_id: NamedResource) -> "OwnerReference":
        return cls(
            kind=resource_id.kind, name=resource_id.name, namespace=resource_id.namespace
        )


@dataclass
class ComponentSpec(BaseManifest):
    """Desired state of a component."""

    version: str = ""
    """The target version to install."""

    target_namespace: str = ""
    """The namespace namespaced manifests are installed into."""

    config: dict[str, Any] = field(default_factory=dict)
    """Kind specific configuration overrides, opaque to the core."""

    @classmethod
    def parse_doc(cls, spec: dict[str, Any]) -> "ComponentSpec":
        config = spec.get("config") or {}
        if not isinstance(config, dict):
            raise InputException(f"Invalid spec.config, expected a mapping: {spec}")
        return cls(
            version=str(spec.get("version") or ""),
            target_namespace=spec.get("targetNamespace") or "",
            config=config,
        )


@dataclass
class ComponentStatus(BaseManifest):
    """Observed state of a component."""

    phase: ComponentPhase = ComponentPhase.PENDING
    conditions: list[Condition] = field(default_factory=list)
    observed_generation: int = 0
    installer_set: str | None = None
    """Name of the active InstallerSet."""

    retained_installer_set: str | None = None
    """Name of the previously Ready InstallerSet kept as a rollback target."""

    content_hash: str | None = None
    """Content hash of the active InstallerSet."""

    version: str | None = None
    """Version of the last bundle that reached Ready."""

    failed_hash: str | None = None
    """Content hash of the last bundle that was rolled back."""

    failed_generation: int | None = None


@dataclass
class Component(BaseManifest):
    """An independently installable unit of the managed system."""

    kind: str
    """The component kind identifier e.g. Pipeline."""

    name: str
    spec: ComponentSpec = field(default_factory=ComponentSpec)
    namespace: str | None = None
    generation: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: datetime.datetime | None = None
    status: ComponentStatus = field(default_factory=ComponentStatus)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Component":
        """Parse a Component from a raw resource document."""
        _check_version(doc, INSTALLER_DOMAIN)
        metadata = _metadata(doc)
        spec = doc.get("spec") or {}
        return cls(
            kind=doc["kind"],
            name=metadata["name"],
            namespace=metadata.get("namespace"),
            labels=dict(metadata.get("labels") or {}),
            spec=ComponentSpec.parse_doc(spec),
        )

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)

    @property
    def namespaced_name(self) -> str:
        return self.resource_id.namespaced_name

    @property
    def deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def ready(self) -> bool:
        """Return True if the component reports a True Ready condition."""
        return any(c.type == "Ready" and c.is_true for c in self.status.conditions)


@dataclass
class ManifestItem(BaseManifest):
    """A single declarative resource document to apply."""

    api_version: str
    kind: str
    name: str
    namespace: str | None
    payload: dict[str, Any]
    """The full transformed document."""

    order: int | None = None
    """Optional ordering hint, items are applied in ascending order."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ManifestItem":
        """Parse a ManifestItem from a raw resource document."""
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        if not (kind := doc.get("kind")):
            raise InputException(f"Invalid object missing kind: {doc}")
        metadata = _metadata(doc)
        order: int | None = None
        if (hint := (metadata.get("annotations") or {}).get(ANNOTATION_ORDER)) is not None:
            try:
                order = int(hint)
            except ValueError as err:
                raise InputException(
                    f"Invalid {ANNOTATION_ORDER} annotation '{hint}' on {kind} {metadata['name']}"
                ) from err
        return cls(
            api_version=api_version,
            kind=kind,
            name=metadata["name"],
            namespace=metadata.get("namespace"),
            payload=copy.deepcopy(doc),
            order=order,
        )

    @property
    def group(self) -> str:
        """API group of the item, empty for the core group."""
        if "/" in self.api_version:
            return self.api_version.split("/", 1)[0]
        return ""

    @property
    def identity(self) -> str:
        """Stable key for the item used in status maps."""
        return f"{self.group or 'core'}/{self.kind}/{self.resource_id.namespaced_name}"

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)

    @property
    def sort_key(self) -> int:
        return self.order if self.order is not None else DEFAULT_ORDER


@dataclass
class ItemStatus(BaseManifest):
    """Apply status of a single manifest item."""

    state: ItemState = ItemState.PENDING
    attempts: int = 0
    """Number of consecutive failed apply attempts."""

    reason: str | None = None
    message: str | None = None
    permanent: bool = False
    """True if the last failure will not succeed on retry."""

    next_retry_at: float | None = None
    """Epoch seconds before which a failed item is not retried."""


@dataclass
class InstallerSet(BaseManifest):
    """A versioned, hashed bundle of manifests applied for one component."""

    kind: ClassVar[str] = INSTALLER_SET_KIND

    name: str
    owner: OwnerReference
    content_hash: str
    items: list[ManifestItem] = field(default_factory=list)
    namespace: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    version: str | None = None
    phase: InstallerSetPhase = InstallerSetPhase.PENDING
    item_status: dict[str, ItemStatus] = field(default_factory=dict)
    conditions: list[Condition] = field(default_factory=list)
    failed_passes: int = 0
    """Number of apply passes that ended PartiallyFailed."""

    created_at: datetime.datetime | None = None
    superseded_at: datetime.datetime | None = None

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(INSTALLER_SET_KIND, self.namespace, self.name)

    def apply_order(self) -> list[ManifestItem]:
        """Return items in apply order.

        Items are stable sorted by ordering hint so items without a hint keep
        their relative list order.
        """
        return sorted(self.items, key=lambda item: item.sort_key)

    def ready(self) -> bool:
        return self.phase == InstallerSetPhase.READY


@dataclass
class PlatformComponent(BaseManifest):
    """A component kind enabled by a Platform."""

    kind: str
    enabled: bool = True
    version: str | None = None
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class PlatformSpec(BaseManifest):
    """Desired state of a Platform."""

    target_namespace: str = ""
    version: str = ""
    components: list[PlatformComponent] = field(default_factory=list)

    @classmethod
    def parse_doc(cls, spec: dict[str, Any]) -> "PlatformSpec":
        components: list[PlatformComponent] = []
        for entry in spec.get("components") or ():
            if not isinstance(entry, dict) or not entry.get("kind"):
                raise InputException(f"Invalid Platform component entry: {entry}")
            components.append(
                PlatformComponent(
                    kind=entry["kind"],
                    enabled=bool(entry.get("enabled", True)),
                    version=entry.get("version"),
                    config=entry.get("config") or {},
                )
            )
        return cls(
            target_namespace=spec.get("targetNamespace") or "",
            version=str(spec.get("version") or ""),
            components=components,
        )

    def enabled_kinds(self) -> list[str]:
        return [c.kind for c in self.components if c.enabled]


@dataclass
class ComponentSummary(BaseManifest):
    """Per component kind readiness reported by a Platform."""

    kind: str
    phase: ComponentPhase
    ready: bool = False
    reason: str | None = None
    message: str | None = None


@dataclass
class PlatformStatus(BaseManifest):
    """Observed state of a Platform."""

    phase: PlatformPhase = PlatformPhase.PENDING
    conditions: list[Condition] = field(default_factory=list)
    components: list[ComponentSummary] = field(default_factory=list)
    observed_generation: int = 0


@dataclass
class Platform(BaseManifest):
    """Top level resource enabling a set of component kinds."""

    kind: ClassVar[str] = PLATFORM_KIND

    name: str
    spec: PlatformSpec = field(default_factory=PlatformSpec)
    namespace: str | None = None
    generation: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: datetime.datetime | None = None
    status: PlatformStatus = field(default_factory=PlatformStatus)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Platform":
        """Parse a Platform from a raw resource document."""
        _check_version(doc, INSTALLER_DOMAIN)
        metadata = _metadata(doc)
        return cls(
            name=metadata["name"],
            labels=dict(metadata.get("labels") or {}),
            spec=PlatformSpec.parse_doc(doc.get("spec") or {}),
        )

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(PLATFORM_KIND, self.namespace, self.name)

    @property
    def deleting(self) -> bool:
        return self.deletion_timestamp is not None


@dataclass
class Unstructured(BaseManifest):
    """An arbitrary object applied to the cluster."""

    kind: str
    api_version: str
    name: str
    namespace: str | None
    doc: dict[str, Any]

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Unstructured":
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        if not (kind := doc.get("kind")):
            raise InputException(f"Invalid object missing kind: {doc}")
        metadata = _metadata(doc)
        return cls(
            kind=kind,
            api_version=api_version,
            name=metadata["name"],
            namespace=metadata.get("namespace"),
            doc=copy.deepcopy(doc),
        )

    @property
    def labels(self) -> dict[str, str]:
        return dict((self.doc.get("metadata") or {}).get("labels") or {})

    @property
    def annotations(self) -> dict[str, str]:
        return dict((self.doc.get("metadata") or {}).get("annotations") or {})

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)


def parse_raw_obj(
    obj: dict[str, Any], *, component_kinds: set[str] | None = None
) -> BaseManifest:
    """Parse a raw resource document into the most specific type.

    Documents in the installer API group are parsed as `Platform` or
    `Component`, anything else is an `Unstructured` cluster object.
    """
    kind = obj.get("kind")
    api_version = obj.get("apiVersion") or ""
    if not kind:
        raise InputException(f"Invalid object missing kind: {obj}")
    if not api_version.startswith(INSTALLER_DOMAIN):
        return Unstructured.parse_doc(obj)
    if kind == PLATFORM_KIND:
        return Platform.parse_doc(obj)
    if kind == INSTALLER_SET_KIND:
        raise InputException(
            f"InstallerSet objects are managed by the controller: {obj}"
        )
    if component_kinds is not None and kind not in component_kinds:
        raise InputException(
            f"Unknown component kind '{kind}', expected one of {sorted(component_kinds)}"
        )
    return Component.parse_doc(obj)
