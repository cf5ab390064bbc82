"""Diff-and-apply deployment of desired manifests.

The deployer makes at most one write per desired manifest. A missing object
is created as is. An existing object is compared with a kind specific
predicate that only looks at the fields the operator owns. When they differ,
the desired fields are written over the live object so that fields assigned
by the server (resource version, uid, a service's cluster IP) are kept.
"""

import copy
from enum import StrEnum
import logging
from typing import Any

from .compare import deep_derivative
from .config import ANNOTATION_SKIP_CREATION
from .exceptions import ObjectNotFoundError
from .manifest import Kind, NamedResource, get_annotation, preserve_identity
from .store import Store

__all__ = [
    "Deployer",
    "DeployResult",
]

_LOGGER = logging.getLogger(__name__)


class DeployResult(StrEnum):
    """The outcome of deploying a single manifest."""

    CREATED = "Created"
    UPDATED = "Updated"
    UNCHANGED = "Unchanged"


def _skip_update(live: dict[str, Any]) -> bool:
    value = get_annotation(live, ANNOTATION_SKIP_CREATION) or ""
    return value.lower() == "true"


def _merge_fields(
    desired: dict[str, Any], live: dict[str, Any], *keys: str
) -> dict[str, Any] | None:
    """Return the live object with the desired top level fields, or None if unchanged."""
    if all(deep_derivative(desired.get(key), live.get(key)) for key in keys):
        return None
    updated = copy.deepcopy(live)
    for key in keys:
        if key in desired:
            updated[key] = copy.deepcopy(desired[key])
        else:
            updated.pop(key, None)
    return updated


def _merge_metadata(desired: dict[str, Any], updated: dict[str, Any]) -> None:
    """Carry the desired labels and annotations onto the object being written."""
    desired_meta = desired.get("metadata", {})
    meta = updated.setdefault("metadata", {})
    for key in ("labels", "annotations"):
        if value := desired_meta.get(key):
            meta[key] = {**(meta.get(key) or {}), **value}


class Deployer:
    """Creates or updates objects in the store to match desired manifests."""

    def __init__(self, store: Store) -> None:
        """Initialize the Deployer."""
        self._store = store

    async def deploy(self, desired: dict[str, Any]) -> DeployResult:
        """Create or update the object for the desired manifest.

        Returns:
            Whether the object was created, updated or left unchanged.
        """
        resource_id = NamedResource.from_doc(desired)
        try:
            live = await self._store.get(resource_id)
        except ObjectNotFoundError:
            _LOGGER.info("Creating %s", resource_id)
            await self._store.create(desired)
            return DeployResult.CREATED

        if _skip_update(live):
            _LOGGER.debug("Skipping %s annotated %s", resource_id, ANNOTATION_SKIP_CREATION)
            return DeployResult.UNCHANGED

        updated: dict[str, Any] | None
        match Kind.of(desired):
            case Kind.DEPLOYMENT:
                updated = _merge_fields(desired, live, "spec")
            case Kind.STATEFUL_SET:
                updated = self._merge_stateful_set(desired, live)
            case Kind.SERVICE:
                updated = self._merge_service(desired, live)
            case Kind.CONFIG_MAP | Kind.SECRET:
                updated = _merge_fields(desired, live, "data")
            case Kind.CLUSTER_ROLE:
                updated = _merge_fields(desired, live, "rules", "aggregationRule")
            case Kind.CLUSTER_ROLE_BINDING:
                updated = _merge_fields(desired, live, "subjects", "roleRef")
            case _:
                _LOGGER.debug("No deployer for kind of %s, leaving unchanged", resource_id)
                return DeployResult.UNCHANGED

        if updated is None:
            _LOGGER.debug("%s is unchanged", resource_id)
            return DeployResult.UNCHANGED
        _merge_metadata(desired, updated)
        preserve_identity(updated, live)
        _LOGGER.info("Updating %s", resource_id)
        await self._store.update(updated)
        return DeployResult.UPDATED

    def _merge_stateful_set(
        self, desired: dict[str, Any], live: dict[str, Any]
    ) -> dict[str, Any] | None:
        desired_spec = desired.get("spec") or {}
        live_spec = live.get("spec") or {}
        if deep_derivative(
            desired_spec.get("template"), live_spec.get("template")
        ) and deep_derivative(desired_spec.get("replicas"), live_spec.get("replicas")):
            return None
        updated = copy.deepcopy(live)
        spec = updated.setdefault("spec", {})
        for key in ("template", "replicas"):
            if key in desired_spec:
                spec[key] = copy.deepcopy(desired_spec[key])
        return updated

    def _merge_service(
        self, desired: dict[str, Any], live: dict[str, Any]
    ) -> dict[str, Any] | None:
        if (updated := _merge_fields(desired, live, "spec")) is None:
            return None
        live_spec = live.get("spec") or {}
        spec = updated.setdefault("spec", {})
        for key in ("clusterIP", "clusterIPs"):
            if key in live_spec:
                spec[key] = live_spec[key]
        return updated

    async def undeploy(self, resource_id: NamedResource) -> bool:
        """Delete the object if it exists, returning True if it was deleted."""
        try:
            await self._store.delete(resource_id)
        except ObjectNotFoundError:
            _LOGGER.debug("%s already deleted", resource_id)
            return False
        _LOGGER.info("Deleted %s", resource_id)
        return True
