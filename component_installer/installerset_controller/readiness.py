"""Readiness predicates for applied objects.

A predicate receives the live document of an applied object and returns True
once the object is ready to serve. Kinds without a predicate are ready as
soon as they exist.
"""

from collections.abc import Callable, Mapping
import logging
from typing import Any

__all__ = [
    "ReadinessCheck",
    "DEFAULT_CHECKS",
    "is_ready",
]

_LOGGER = logging.getLogger(__name__)

ReadinessCheck = Callable[[dict[str, Any]], bool]


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _status(doc: dict[str, Any]) -> dict[str, Any]:
    return doc.get("status") or {}


def replicas_ready(doc: dict[str, Any]) -> bool:
    """Deployment and StatefulSet have every desired replica ready."""
    desired = _int((doc.get("spec") or {}).get("replicas"), 1)
    return _int(_status(doc).get("readyReplicas")) >= desired


def daemonset_ready(doc: dict[str, Any]) -> bool:
    """DaemonSet has a ready pod on every scheduled node."""
    status = _status(doc)
    desired = _int(status.get("desiredNumberScheduled"))
    return desired > 0 and _int(status.get("numberReady")) >= desired


def job_complete(doc: dict[str, Any]) -> bool:
    """Job has at least one successful completion."""
    return _int(_status(doc).get("succeeded")) >= 1


def crd_established(doc: dict[str, Any]) -> bool:
    """CustomResourceDefinition is served by the API server."""
    for condition in _status(doc).get("conditions") or ():
        if condition.get("type") == "Established":
            return condition.get("status") == "True"
    return False


def exists(doc: dict[str, Any]) -> bool:
    return True


DEFAULT_CHECKS: dict[str, ReadinessCheck] = {
    "Deployment": replicas_ready,
    "StatefulSet": replicas_ready,
    "DaemonSet": daemonset_ready,
    "Job": job_complete,
    "CustomResourceDefinition": crd_established,
}


def is_ready(
    doc: dict[str, Any], overrides: Mapping[str, ReadinessCheck] | None = None
) -> bool:
    """Return True if the live object is ready."""
    kind = doc.get("kind", "")
    check = (overrides or {}).get(kind) or DEFAULT_CHECKS.get(kind, exists)
    return check(doc)
