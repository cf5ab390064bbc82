"""Module for in memory object store."""

import asyncio
import copy
from collections.abc import Callable, AsyncGenerator
from datetime import datetime, timezone
import itertools
import logging
from typing import Any
import uuid

from mco_operator.manifest import NamedResource
from mco_operator.exceptions import (
    ConflictError,
    ObjectAlreadyExistsError,
    ObjectNotFoundError,
)

from .store import Store, StoreEvent, WatchEvent


_LOGGER = logging.getLogger(__name__)

# Fields owned by the store that a client write can't change
_SERVER_FIELDS = ("uid", "creationTimestamp", "deletionTimestamp")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _sort_key(item: tuple[NamedResource, dict[str, Any]]) -> tuple[str, str, str]:
    resource_id = item[0]
    return (resource_id.kind, resource_id.namespace or "", resource_id.name)


def _matches(obj: dict[str, Any], label_selector: dict[str, str] | None) -> bool:
    if not label_selector:
        return True
    labels = obj.get("metadata", {}).get("labels") or {}
    return all(labels.get(key) == value for key, value in label_selector.items())


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Objects are kept as deep copies keyed by NamedResource so callers never
    share state with the store. Every successful write is recorded in
    `writes` as a (verb, resource id) tuple.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, dict[str, Any]] = {}
        self._listeners: list[Callable[[WatchEvent], None]] = []
        self._versions = itertools.count(1)
        self.writes: list[tuple[str, NamedResource]] = []

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _current(self, resource_id: NamedResource) -> dict[str, Any]:
        if (obj := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        return obj

    def _check_version(self, resource_id: NamedResource, obj: dict[str, Any]) -> None:
        version = obj.get("metadata", {}).get("resourceVersion")
        current = self._objects[resource_id]["metadata"]["resourceVersion"]
        if version is not None and version != current:
            raise ConflictError(
                f"Object {resource_id} has been modified (resourceVersion {version} != {current})"
            )

    async def get(self, resource_id: NamedResource) -> dict[str, Any]:
        """Return a copy of the object."""
        return copy.deepcopy(self._current(resource_id))

    async def list_objects(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind, optionally filtered by namespace and labels."""
        return [
            copy.deepcopy(obj)
            for resource_id, obj in sorted(self._objects.items(), key=_sort_key)
            if resource_id.kind == kind
            and (namespace is None or resource_id.namespace == namespace)
            and _matches(obj, label_selector)
        ]

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create a new object and return it with store assigned fields."""
        resource_id = NamedResource.from_doc(obj)
        if resource_id in self._objects:
            raise ObjectAlreadyExistsError(f"Object {resource_id} already exists")
        new_obj = copy.deepcopy(obj)
        metadata = new_obj["metadata"]
        for key in _SERVER_FIELDS:
            metadata.pop(key, None)
        metadata["uid"] = str(uuid.uuid4())
        metadata["creationTimestamp"] = _now()
        metadata["resourceVersion"] = self._next_version()
        metadata.setdefault("generation", 1)
        _LOGGER.debug("Creating object %s", resource_id)
        self._objects[resource_id] = new_obj
        self.writes.append(("create", resource_id))
        self._fire_event(StoreEvent.ADDED, resource_id, new_obj)
        return copy.deepcopy(new_obj)

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing object, leaving its status unchanged."""
        resource_id = NamedResource.from_doc(obj)
        current = self._current(resource_id)
        self._check_version(resource_id, obj)
        new_obj = copy.deepcopy(obj)
        metadata = new_obj["metadata"]
        for key in _SERVER_FIELDS:
            metadata.pop(key, None)
            if (value := current["metadata"].get(key)) is not None:
                metadata[key] = value
        if "status" in current:
            new_obj["status"] = copy.deepcopy(current["status"])
        else:
            new_obj.pop("status", None)
        generation = current["metadata"].get("generation", 1)
        if {k: v for k, v in new_obj.items() if k not in ("metadata", "status")} != {
            k: v for k, v in current.items() if k not in ("metadata", "status")
        }:
            generation += 1
        metadata["generation"] = generation
        metadata["resourceVersion"] = self._next_version()
        self.writes.append(("update", resource_id))
        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            _LOGGER.debug("Removing object %s after last finalizer", resource_id)
            del self._objects[resource_id]
            self._fire_event(StoreEvent.DELETED, resource_id, new_obj)
            return copy.deepcopy(new_obj)
        _LOGGER.debug("Updating object %s", resource_id)
        self._objects[resource_id] = new_obj
        self._fire_event(StoreEvent.MODIFIED, resource_id, new_obj)
        return copy.deepcopy(new_obj)

    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace only the status of an existing object."""
        resource_id = NamedResource.from_doc(obj)
        current = self._current(resource_id)
        self._check_version(resource_id, obj)
        new_obj = copy.deepcopy(current)
        new_obj["status"] = copy.deepcopy(obj.get("status") or {})
        new_obj["metadata"]["resourceVersion"] = self._next_version()
        _LOGGER.debug("Updating status of object %s", resource_id)
        self._objects[resource_id] = new_obj
        self.writes.append(("update_status", resource_id))
        self._fire_event(StoreEvent.MODIFIED, resource_id, new_obj)
        return copy.deepcopy(new_obj)

    async def delete(self, resource_id: NamedResource) -> None:
        """Delete the object, or mark it for deletion when it has finalizers."""
        current = self._current(resource_id)
        metadata = current["metadata"]
        if metadata.get("finalizers"):
            if metadata.get("deletionTimestamp"):
                return
            _LOGGER.debug("Marking object %s for deletion", resource_id)
            metadata["deletionTimestamp"] = _now()
            metadata["resourceVersion"] = self._next_version()
            self.writes.append(("delete", resource_id))
            self._fire_event(StoreEvent.MODIFIED, resource_id, current)
            return
        _LOGGER.debug("Deleting object %s", resource_id)
        del self._objects[resource_id]
        self.writes.append(("delete", resource_id))
        self._fire_event(StoreEvent.DELETED, resource_id, current)

    def add_listener(
        self, callback: Callable[[WatchEvent], None]
    ) -> Callable[[], None]:
        """Register a callback for changes to any object."""

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        self._listeners.append(callback)
        return remove

    def _fire_event(
        self, event: StoreEvent, resource_id: NamedResource, obj: dict[str, Any]
    ) -> None:
        watch_event = WatchEvent(event, resource_id, copy.deepcopy(obj))
        for cb in list(self._listeners):  # Iterate over a copy for safe removal
            try:
                cb(watch_event)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)

    async def watch(
        self, kind: str, namespace: str | None = None
    ) -> AsyncGenerator[WatchEvent]:
        """
        Watch for changes to objects of a specific kind.

        Existing objects are yielded first as ADDED events, followed by events
        for every subsequent change.
        """
        queue: asyncio.Queue[WatchEvent] = asyncio.Queue()

        def callback(watch_event: WatchEvent) -> None:
            if watch_event.resource_id.kind != kind:
                return
            if namespace is not None and watch_event.resource_id.namespace != namespace:
                return
            queue.put_nowait(watch_event)

        # Register before yielding existing objects so no change is missed
        remove_listener = self.add_listener(callback)
        existing = [
            WatchEvent(StoreEvent.ADDED, resource_id, copy.deepcopy(obj))
            for resource_id, obj in sorted(self._objects.items(), key=_sort_key)
            if resource_id.kind == kind
            and (namespace is None or resource_id.namespace == namespace)
        ]
        try:
            for watch_event in existing:
                yield watch_event
            while True:
                yield await queue.get()
                queue.task_done()
        except asyncio.CancelledError:
            _LOGGER.debug("watch for kind '%s' cancelled.", kind)
            raise
        finally:
            _LOGGER.debug("Cleaning up listener for watch (kind: %s)", kind)
            remove_listener()
