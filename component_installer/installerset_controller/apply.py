"""Apply and remove individual manifest items.

Every applied object is labelled with the owning InstallerSet and annotated
with the hash of the item content. An object whose owner label and hash
annotation already match is left untouched, so re-applying an unchanged item
issues no writes. Anything else, such as a manual edit that dropped the
annotation, is treated as drift and overwritten.
"""

import copy
import hashlib
import json
import logging
from typing import Any

from component_installer.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ForbiddenError,
    InputException,
    InvalidObjectError,
    ManifestApplyError,
    ObjectNotFoundError,
    StoreError,
    TransientClusterError,
)
from component_installer.manifest import (
    ANNOTATION_ITEM_HASH,
    LABEL_INSTALLER_SET,
    ManifestItem,
    Unstructured,
)
from component_installer.store import Store

__all__ = ["ManifestApplier", "item_hash"]

_LOGGER = logging.getLogger(__name__)


def item_hash(item: ManifestItem) -> str:
    """Return the hash of the desired item content."""
    encoded = json.dumps(item.payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()[:16]


def _apply_error(item: ManifestItem, err: Exception) -> ManifestApplyError:
    """Classify a store failure as transient or permanent."""
    if isinstance(err, ForbiddenError):
        return ManifestApplyError(item.identity, "Forbidden", str(err), transient=False)
    if isinstance(err, (InvalidObjectError, InputException)):
        return ManifestApplyError(
            item.identity, "InvalidObject", str(err), transient=False
        )
    if isinstance(err, (ConflictError, AlreadyExistsError)):
        return ManifestApplyError(item.identity, "Conflict", str(err), transient=True)
    if isinstance(err, ObjectNotFoundError):
        return ManifestApplyError(item.identity, "NotFound", str(err), transient=True)
    if isinstance(err, TransientClusterError):
        return ManifestApplyError(
            item.identity, "TransientError", str(err), transient=True
        )
    return ManifestApplyError(item.identity, "ApplyFailed", str(err), transient=True)


class ManifestApplier:
    """Applies manifest items to the store on behalf of an InstallerSet."""

    def __init__(self, store: Store) -> None:
        self._store = store

    async def apply(self, item: ManifestItem, owner: str) -> dict[str, Any]:
        """Apply the item, returning the live document.

        Raises:
            ManifestApplyError: If the item could not be applied.
        """
        digest = item_hash(item)
        desired = copy.deepcopy(item.payload)
        metadata = desired.setdefault("metadata", {})
        metadata.setdefault("labels", {})[LABEL_INSTALLER_SET] = owner
        metadata.setdefault("annotations", {})[ANNOTATION_ITEM_HASH] = digest
        try:
            obj = Unstructured.parse_doc(desired)
        except InputException as err:
            raise _apply_error(item, err) from err

        try:
            live, version = await self._store.get(item.resource_id, Unstructured)
        except ObjectNotFoundError:
            _LOGGER.debug("Creating %s", item.identity)
            try:
                await self._store.create(obj)
            except StoreError as err:
                raise _apply_error(item, err) from err
            return desired
        except StoreError as err:
            raise _apply_error(item, err) from err

        if (
            live.labels.get(LABEL_INSTALLER_SET) == owner
            and live.annotations.get(ANNOTATION_ITEM_HASH) == digest
        ):
            return live.doc

        _LOGGER.debug(
            "Updating %s (owner %s -> %s)",
            item.identity,
            live.labels.get(LABEL_INSTALLER_SET),
            owner,
        )
        if "status" in live.doc:
            obj.doc["status"] = copy.deepcopy(live.doc["status"])
        try:
            await self._store.update(obj, version)
        except StoreError as err:
            raise _apply_error(item, err) from err
        return obj.doc

    async def live(self, item: ManifestItem) -> dict[str, Any] | None:
        """Return the live document for the item, if present."""
        try:
            live, _ = await self._store.get(item.resource_id, Unstructured)
        except ObjectNotFoundError:
            return None
        except StoreError as err:
            raise _apply_error(item, err) from err
        return live.doc

    async def remove(self, item: ManifestItem, owner: str) -> bool:
        """Delete the live object if it is still owned by the InstallerSet.

        Objects that are already absent, or that were taken over by another
        InstallerSet, are left alone.

        Returns:
            True if an object was deleted.

        Raises:
            StoreError: If the store could not be read or written.
        """
        try:
            live, version = await self._store.get(item.resource_id, Unstructured)
        except ObjectNotFoundError:
            return False
        if (current := live.labels.get(LABEL_INSTALLER_SET)) != owner:
            _LOGGER.debug(
                "Not removing %s, owned by %s not %s", item.identity, current, owner
            )
            return False
        try:
            await self._store.delete(item.resource_id, version)
        except ObjectNotFoundError:
            return False
        _LOGGER.debug("Removed %s", item.identity)
        return True
