"""Controller driving reconciles from store events.

The controller watches `MultiClusterObservability` objects and reconciles
every one that is added, has its spec or annotations changed, or is marked
for deletion. Changes to objects the stack depends on, such as its workloads,
secrets, placement rule and work bundles, reconcile every known
configuration object.

Reconciles of the same object never overlap. An event that arrives while a
reconcile is running marks the object dirty and it is reconciled again once
the running pass is done. A pass that asks to be requeued, or that failed,
is scheduled again after a delay.
"""

import asyncio
import logging
from typing import Any

from .config import REQUEUE_ERROR
from .exceptions import OperatorException
from .manifest import Kind, NamedResource
from .reconciler import Reconciler
from .status import ReconcileResult
from .store import Store, StoreEvent, WatchEvent
from .task import get_task_service

__all__ = [
    "ObservabilityController",
]

_LOGGER = logging.getLogger(__name__)

DEPENDENT_KINDS = {
    Kind.DEPLOYMENT,
    Kind.STATEFUL_SET,
    Kind.SECRET,
    Kind.CONFIG_MAP,
    Kind.STORAGE_CLASS,
    Kind.PLACEMENT_RULE,
    Kind.MANIFEST_WORK,
    Kind.OBSERVABILITY_ADDON,
}


def _trigger_key(obj: dict[str, Any]) -> tuple[Any, ...]:
    """Return the parts of the configuration object that warrant a reconcile."""
    metadata = obj.get("metadata", {})
    return (
        metadata.get("generation"),
        tuple(sorted((metadata.get("annotations") or {}).items())),
        metadata.get("deletionTimestamp"),
        tuple(metadata.get("finalizers") or ()),
    )


class ObservabilityController:
    """Reconciles configuration objects as the store changes."""

    def __init__(self, store: Store, reconciler: Reconciler) -> None:
        """Initialize the controller and start watching the store."""
        self._store = store
        self._reconciler = reconciler
        self._task_service = get_task_service()
        self._seen: dict[NamedResource, tuple[Any, ...]] = {}
        self._running: set[NamedResource] = set()
        self._dirty: set[NamedResource] = set()
        self._timers: dict[NamedResource, asyncio.Task[Any]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self.results: dict[NamedResource, ReconcileResult] = {}
        self.errors: dict[NamedResource, OperatorException] = {}
        self._remove_listener = store.add_listener(self._on_dependent_event)
        self._watch_task = self._task_service.create_background_task(
            self._watch(), name="watch-mco"
        )

    async def close(self) -> None:
        """Stop watching and cancel every pending reconcile."""
        _LOGGER.info("Closing ObservabilityController, cancelling tasks")
        self._remove_listener()
        tasks = [self._watch_task, *self._timers.values(), *self._tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._tasks.clear()

    async def _watch(self) -> None:
        _LOGGER.info("Watching for MultiClusterObservability objects")
        async for event in self._store.watch(Kind.MULTICLUSTER_OBSERVABILITY):
            self._on_event(event)

    def _on_event(self, event: WatchEvent) -> None:
        resource_id = event.resource_id
        if event.event == StoreEvent.DELETED:
            self._seen.pop(resource_id, None)
            if timer := self._timers.pop(resource_id, None):
                timer.cancel()
            return
        key = _trigger_key(event.obj)
        if self._seen.get(resource_id) == key:
            return
        self._seen[resource_id] = key
        self.enqueue(resource_id)

    def _on_dependent_event(self, event: WatchEvent) -> None:
        if event.resource_id.kind not in DEPENDENT_KINDS:
            return
        for resource_id in list(self._seen):
            self.enqueue(resource_id)

    def enqueue(self, resource_id: NamedResource) -> None:
        """Request a reconcile of the configuration object."""
        if resource_id in self._running:
            self._dirty.add(resource_id)
            return
        if timer := self._timers.pop(resource_id, None):
            timer.cancel()
        self._running.add(resource_id)
        task = self._task_service.create_task(
            self._run(resource_id), name=f"reconcile-{resource_id.name}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, resource_id: NamedResource) -> None:
        try:
            while True:
                self._dirty.discard(resource_id)
                result = await self._reconcile(resource_id)
                if resource_id not in self._dirty:
                    break
        finally:
            self._running.discard(resource_id)
        if result.requeue_after is not None:
            self._schedule(resource_id, result.requeue_after)

    async def _reconcile(self, resource_id: NamedResource) -> ReconcileResult:
        try:
            result = await self._reconciler.reconcile(resource_id)
        except OperatorException as err:
            _LOGGER.error("Failed to reconcile %s: %s", resource_id, err)
            self.errors[resource_id] = err
            return ReconcileResult(requeue_after=REQUEUE_ERROR)
        self.errors.pop(resource_id, None)
        self.results[resource_id] = result
        return result

    def _schedule(self, resource_id: NamedResource, delay: float) -> None:
        _LOGGER.debug("Requeue %s in %.1fs", resource_id, delay)

        async def _requeue() -> None:
            self._timers.pop(resource_id, None)
            self.enqueue(resource_id)

        self._timers[resource_id] = self._task_service.create_delayed_task(
            delay, _requeue, name=f"requeue-{resource_id.name}"
        )
