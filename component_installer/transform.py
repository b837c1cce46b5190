"""Manifest transform pipeline.

The pipeline maps the raw manifests for a component version plus the
component configuration to the documents applied on the cluster. It runs
these stages in order:
  - Namespace injection
  - Version and image substitution
  - Label and annotation injection
  - Resource limit overlay

The pipeline is deterministic and never mutates its input, so the content
hash of the result identifies a bundle.
"""

import copy
from collections.abc import Iterable
from dataclasses import dataclass, field
import hashlib
import json
import logging
import re
from typing import Any

from mashumaro import DataClassDictMixin

from .exceptions import InputException, ManifestTransformError
from .manifest import (
    LABEL_COMPONENT,
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    LABEL_PART_OF,
    LABEL_VERSION,
    MANAGED_BY,
    NAMESPACE_KIND,
    Component,
    ManifestItem,
)

__all__ = [
    "TransformConfig",
    "transform",
    "manifest_items",
    "bundle_hash",
]

_LOGGER = logging.getLogger(__name__)


# Kinds that are never namespaced.
CLUSTER_SCOPED_KINDS = {
    "Namespace",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleBinding",
    "MutatingWebhookConfiguration",
    "ValidatingWebhookConfiguration",
    "PriorityClass",
    "StorageClass",
    "APIService",
    "PersistentVolume",
}

BINDING_KINDS = {"RoleBinding", "ClusterRoleBinding"}

# Object types that have a pod template, and the path to the pod spec.
POD_SPEC_PATHS: dict[str, tuple[str, ...]] = {
    "Pod": ("spec",),
    "Deployment": ("spec", "template", "spec"),
    "StatefulSet": ("spec", "template", "spec"),
    "ReplicaSet": ("spec", "template", "spec"),
    "DaemonSet": ("spec", "template", "spec"),
    "Job": ("spec", "template", "spec"),
    "CronJob": ("spec", "jobTemplate", "spec", "template", "spec"),
}

CONTAINER_KEYS = ("initContainers", "containers")

TOKEN_RE = re.compile(r"\$\{([A-Z][A-Z0-9_]*)\}")

RESOURCE_FIELDS = ("limits", "requests")


def _token_name(name: str) -> str:
    """Return the substitution token name for an image or container name."""
    return re.sub(r"[^A-Z0-9]", "_", name.upper())


@dataclass
class TransformConfig(DataClassDictMixin):
    """Inputs to the transform pipeline.

    Every field contributes to the bundle content hash.
    """

    namespace: str
    version: str
    component: str
    """The component kind, stamped as a label."""

    instance: str
    """The component instance name, stamped as a label."""

    images: dict[str, str] = field(default_factory=dict)
    """Image overrides keyed by container name."""

    substitutions: dict[str, str] = field(default_factory=dict)
    """Additional `${TOKEN}` values keyed by token name."""

    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    resources: dict[str, dict[str, dict[str, str]]] = field(default_factory=dict)
    """Resource overrides keyed by `container` or `workload/container`."""

    @classmethod
    def from_component(
        cls,
        component: Component,
        *,
        images: dict[str, str] | None = None,
        substitutions: dict[str, str] | None = None,
    ) -> "TransformConfig":
        """Build the transform inputs for a component.

        The `images` and `substitutions` arguments supply kind specific
        defaults that the component `config` may override.

        Raises:
            ManifestTransformError: If the configuration is malformed.
        """
        config = component.spec.config
        merged_images = dict(images or {})
        merged_images.update(_string_map(config, "images"))
        merged_substitutions = dict(substitutions or {})
        merged_substitutions.update(
            {k.upper(): v for k, v in _string_map(config, "substitutions").items()}
        )
        resources = config.get("resources") or {}
        if not isinstance(resources, dict):
            raise ManifestTransformError(
                f"Invalid config.resources, expected a mapping: {resources}"
            )
        overlays: dict[str, dict[str, dict[str, str]]] = {}
        for target, override in resources.items():
            if not isinstance(override, dict) or not set(override) <= set(
                RESOURCE_FIELDS
            ):
                raise ManifestTransformError(
                    f"Invalid resources for '{target}', expected limits/requests: {override}"
                )
            overlays[str(target)] = {}
            for key, value in override.items():
                if value is not None and not isinstance(value, dict):
                    raise ManifestTransformError(
                        f"Invalid resources for '{target}.{key}', expected a mapping: {value}"
                    )
                overlays[str(target)][key] = {
                    str(k): str(v) for k, v in (value or {}).items()
                }
        return cls(
            namespace=component.spec.target_namespace,
            version=component.spec.version,
            component=component.kind,
            instance=component.name,
            images=merged_images,
            substitutions=merged_substitutions,
            labels=_string_map(config, "labels"),
            annotations=_string_map(config, "annotations"),
            resources=overlays,
        )

    def tokens(self) -> dict[str, str]:
        """Return every substitution token value."""
        values = {
            f"IMAGE_{_token_name(name)}": image for name, image in self.images.items()
        }
        values.update(self.substitutions)
        values["VERSION"] = self.version
        values["NAMESPACE"] = self.namespace
        return values


def _string_map(config: dict[str, Any], key: str) -> dict[str, str]:
    value = config.get(key) or {}
    if not isinstance(value, dict):
        raise ManifestTransformError(
            f"Invalid config.{key}, expected a mapping: {value}"
        )
    return {str(k): str(v) for k, v in value.items()}


def _mapping(parent: dict[str, Any], key: str, doc: dict[str, Any]) -> dict[str, Any]:
    """Return the mapping stored at `key`, replacing a missing or null value."""
    value = parent.get(key)
    if value is None:
        value = parent[key] = {}
    elif not isinstance(value, dict):
        raise ManifestTransformError(
            f"Invalid {key} in {_doc_name(doc)}, expected a mapping: {value}"
        )
    return value


def _doc_name(doc: dict[str, Any]) -> str:
    metadata = doc.get("metadata")
    name = metadata.get("name") if isinstance(metadata, dict) else None
    return f"{doc.get('kind')}/{name}"


def _pod_spec(doc: dict[str, Any]) -> dict[str, Any] | None:
    if (path := POD_SPEC_PATHS.get(doc.get("kind", ""))) is None:
        return None
    node: Any = doc
    for key in path:
        if not isinstance(node, dict) or not isinstance(node.get(key), dict):
            return None
        node = node[key]
    return node


def _pod_template_metadata(doc: dict[str, Any]) -> dict[str, Any] | None:
    if (path := POD_SPEC_PATHS.get(doc.get("kind", ""))) is None or len(path) < 2:
        return None
    node: Any = doc
    for key in path[:-1]:
        if not isinstance(node, dict) or not isinstance(node.get(key), dict):
            return None
        node = node[key]
    return _mapping(node, "metadata", doc)


def _containers(doc: dict[str, Any]) -> Iterable[dict[str, Any]]:
    if (pod_spec := _pod_spec(doc)) is None:
        return
    for key in CONTAINER_KEYS:
        for container in pod_spec.get(key) or ():
            if isinstance(container, dict):
                yield container


def inject_namespace(doc: dict[str, Any], config: TransformConfig) -> None:
    """Rewrite the namespace of a namespaced document."""
    kind = doc.get("kind")
    metadata = _mapping(doc, "metadata", doc)
    if kind == NAMESPACE_KIND:
        metadata["name"] = config.namespace
        return
    if kind in BINDING_KINDS:
        for subject in doc.get("subjects") or ():
            if isinstance(subject, dict) and subject.get("kind") == "ServiceAccount":
                subject["namespace"] = config.namespace
    if kind in CLUSTER_SCOPED_KINDS:
        metadata.pop("namespace", None)
        return
    metadata["namespace"] = config.namespace


def _substitute(value: Any, tokens: dict[str, str], missing: set[str]) -> Any:
    if isinstance(value, str):

        def replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in tokens:
                missing.add(name)
                return match.group(0)
            return tokens[name]

        return TOKEN_RE.sub(replace, value)
    if isinstance(value, dict):
        return {key: _substitute(item, tokens, missing) for key, item in value.items()}
    if isinstance(value, list):
        return [_substitute(item, tokens, missing) for item in value]
    return value


def substitute(doc: dict[str, Any], config: TransformConfig) -> dict[str, Any]:
    """Replace `${TOKEN}` placeholders and override container images.

    Raises:
        ManifestTransformError: If a placeholder has no value.
    """
    missing: set[str] = set()
    result = _substitute(doc, config.tokens(), missing)
    if missing:
        raise ManifestTransformError(
            f"Unresolved substitution {', '.join(sorted(missing))} in {_doc_name(doc)}"
        )
    for container in _containers(result):
        if (image := config.images.get(container.get("name", ""))) is not None:
            container["image"] = image
    return result


def inject_labels(doc: dict[str, Any], config: TransformConfig) -> None:
    """Stamp ownership labels and annotations."""
    metadata = _mapping(doc, "metadata", doc)
    labels = _mapping(metadata, "labels", doc)
    labels.update(config.labels)
    labels[LABEL_MANAGED_BY] = MANAGED_BY
    labels[LABEL_PART_OF] = MANAGED_BY
    labels[LABEL_VERSION] = config.version
    labels[LABEL_COMPONENT] = config.component
    labels[LABEL_INSTANCE] = config.instance
    if config.annotations:
        _mapping(metadata, "annotations", doc).update(config.annotations)
    if (template := _pod_template_metadata(doc)) is not None:
        _mapping(template, "labels", doc)[LABEL_VERSION] = config.version


def overlay_resources(doc: dict[str, Any], config: TransformConfig) -> None:
    """Merge resource overrides onto container defaults, last write wins."""
    if not config.resources:
        return
    workload = (doc.get("metadata") or {}).get("name", "")
    for container in _containers(doc):
        name = container.get("name", "")
        # Unqualified overrides apply first so qualified ones win
        for target in (name, f"{workload}/{name}"):
            if (override := config.resources.get(target)) is None:
                continue
            resources = _mapping(container, "resources", doc)
            for key in RESOURCE_FIELDS:
                if values := override.get(key):
                    _mapping(resources, key, doc).update(values)


def transform(
    raw_manifests: Iterable[dict[str, Any]], config: TransformConfig
) -> list[dict[str, Any]]:
    """Run every transform stage over a copy of the raw manifests.

    Raises:
        ManifestTransformError: If a stage cannot resolve a required input.
    """
    results = []
    for raw in raw_manifests:
        if not isinstance(raw, dict) or not raw.get("kind"):
            raise ManifestTransformError(f"Invalid manifest document: {raw}")
        doc = copy.deepcopy(raw)
        inject_namespace(doc, config)
        doc = substitute(doc, config)
        inject_labels(doc, config)
        overlay_resources(doc, config)
        results.append(doc)
    _LOGGER.debug(
        "Transformed %d manifests for %s/%s",
        len(results),
        config.component,
        config.instance,
    )
    return results


def manifest_items(docs: Iterable[dict[str, Any]]) -> list[ManifestItem]:
    """Convert transformed documents to items in apply order.

    Raises:
        ManifestTransformError: If a document is not a valid resource.
    """
    items = []
    seen: set[str] = set()
    for doc in docs:
        try:
            item = ManifestItem.parse_doc(doc)
        except InputException as err:
            raise ManifestTransformError(str(err)) from err
        if item.identity in seen:
            raise ManifestTransformError(f"Duplicate manifest {item.identity}")
        seen.add(item.identity)
        items.append(item)
    return sorted(items, key=lambda item: item.sort_key)


def bundle_hash(items: Iterable[ManifestItem], config: TransformConfig) -> str:
    """Return the content hash of a bundle.

    The hash covers the transformed documents in apply order and every
    transform input.
    """
    content = {
        "items": [item.payload for item in items],
        "config": config.to_dict(),
    }
    encoded = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()
