"""Distribution of work bundles to the clusters selected by placement.

Every selected cluster gets, in its namespace on the hub:

- an `ObservabilityAddon` marker with a cleanup finalizer,
- the service account and bindings of the access token bootstrap,
- a single `ManifestWork` bundle named `<namespace>-observability`.

Clusters that were selected on a previous pass, as recorded by the markers
and bundles labelled with the operator as owner, and are no longer selected
have all of it removed. Each cluster is handled in its own task against the
same snapshot of the configuration object. A failure for one cluster is
recorded and does not stop the others.
"""

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any

from mco_operator.compare import deep_derivative, semantic_equal
from mco_operator.config import (
    FINALIZER_ADDON_CLEANUP,
    OWNER_LABEL,
    OWNER_LABEL_VALUE,
    OperatorConfig,
)
from mco_operator.context import trace_context
from mco_operator.deploying import Deployer, DeployResult
from mco_operator.exceptions import (
    DistributionError,
    InputException,
    ObjectNotFoundError,
    OperatorException,
    TerminatingError,
)
from mco_operator.manifest import (
    ADDON_API_VERSION,
    Kind,
    MultiClusterObservability,
    NamedResource,
    PlacementDecision,
    add_finalizer,
    is_terminating,
    new_object,
    preserve_identity,
    remove_finalizer,
)
from mco_operator.rendering import Renderer
from mco_operator.store import Store
from mco_operator.task import get_task_service

from .bootstrap import TokenBootstrap, global_roles
from .bundle import BundleBuilder, HubResources, work_name
from .hub_info import set_delete_flag

__all__ = [
    "Distributor",
    "DistributionResult",
]

_LOGGER = logging.getLogger(__name__)

ADDON_NAME = "observability-addon"
DELETED = "Deleted"

_OWNER_SELECTOR = {OWNER_LABEL: OWNER_LABEL_VALUE}


@dataclass
class DistributionResult:
    """The outcome of distributing work bundles, by cluster namespace."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    """Clusters with a bundle being deleted that should be retried later."""

    errors: dict[str, OperatorException] = field(default_factory=dict)

    def record(self, namespace: str, outcome: str) -> None:
        """Record the outcome for a cluster namespace."""
        match outcome:
            case DeployResult.CREATED:
                self.created.append(namespace)
            case DeployResult.UPDATED:
                self.updated.append(namespace)
            case DeployResult.UNCHANGED:
                self.unchanged.append(namespace)
            case _:
                self.deleted.append(namespace)

    def raise_for_errors(self) -> None:
        """Raise a DistributionError if any cluster failed."""
        if self.errors:
            raise DistributionError(dict(self.errors))


def _addon_marker(namespace: str, mco: MultiClusterObservability) -> dict[str, Any]:
    addon = new_object(
        ADDON_API_VERSION,
        Kind.OBSERVABILITY_ADDON,
        ADDON_NAME,
        namespace,
        labels=_OWNER_SELECTOR,
        spec=mco.addon_spec.to_dict(),
    )
    add_finalizer(addon, FINALIZER_ADDON_CLEANUP)
    return addon


def _manifests(work: dict[str, Any]) -> list[dict[str, Any]]:
    return list(work.get("spec", {}).get("workload", {}).get("manifests") or [])


def work_changed(desired: dict[str, Any], live: dict[str, Any]) -> bool:
    """Return True if the live bundle content has drifted from the desired."""
    desired_manifests = _manifests(desired)
    live_manifests = _manifests(live)
    if len(desired_manifests) != len(live_manifests):
        return True
    return not all(
        semantic_equal(a, b) for a, b in zip(desired_manifests, live_manifests)
    )


class Distributor:
    """Keeps a work bundle in every cluster selected by placement."""

    def __init__(self, store: Store, renderer: Renderer, config: OperatorConfig) -> None:
        """Initialize the Distributor."""
        self._store = store
        self._config = config
        self._deployer = Deployer(store)
        self._bootstrap = TokenBootstrap(store)
        self._builder = BundleBuilder(store, renderer, config)

    async def previous_namespaces(self) -> set[str]:
        """Return the cluster namespaces that have a marker or bundle."""
        namespaces: set[str] = set()
        for kind in (Kind.OBSERVABILITY_ADDON, Kind.MANIFEST_WORK):
            for obj in await self._store.list_objects(kind, label_selector=_OWNER_SELECTOR):
                if namespace := obj["metadata"].get("namespace"):
                    namespaces.add(namespace)
        return namespaces

    async def reconcile(
        self,
        mco: MultiClusterObservability,
        decisions: list[PlacementDecision],
    ) -> DistributionResult:
        """Distribute bundles to the selected clusters and remove stale ones.

        Raises:
            InputException: If the hub endpoint is not configured.
            OperatorException: If the shared bundle contents can't be loaded.
        """
        if not self._config.hub_endpoint:
            raise InputException("Hub endpoint is required to distribute work to clusters")
        with trace_context("distribute"):
            await self._bootstrap.ensure_global_roles()
            hub = await self._builder.load_hub_resources(mco)
            current = {d.cluster_namespace: d for d in decisions}
            stale = sorted(await self.previous_namespaces() - current.keys())
            task_service = get_task_service()
            tasks = {
                namespace: task_service.create_task(
                    self._reconcile_cluster(mco, decision, hub), name=namespace
                )
                for namespace, decision in sorted(current.items())
            }
            for namespace in stale:
                tasks[namespace] = task_service.create_task(
                    self._remove_cluster(namespace), name=namespace
                )
            return await self._collect(tasks)

    async def cleanup_all(self) -> DistributionResult:
        """Remove the bundle and marker from every cluster and the shared roles."""
        with trace_context("distribute-cleanup"):
            task_service = get_task_service()
            tasks = {
                namespace: task_service.create_task(
                    self._remove_cluster(namespace), name=namespace
                )
                for namespace in sorted(await self.previous_namespaces())
            }
            result = await self._collect(tasks)
            if not result.errors:
                for role in global_roles():
                    await self._deployer.undeploy(NamedResource.from_doc(role))
            return result

    async def _collect(self, tasks: dict[str, asyncio.Task[Any]]) -> DistributionResult:
        result = DistributionResult()
        outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)
        for namespace, outcome in zip(tasks, outcomes):
            if isinstance(outcome, TerminatingError):
                _LOGGER.info("Skipping %s: %s", namespace, outcome)
                result.skipped.append(namespace)
            elif isinstance(outcome, OperatorException):
                _LOGGER.error("Failed to distribute work to %s: %s", namespace, outcome)
                result.errors[namespace] = outcome
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.record(namespace, outcome)
        _LOGGER.info(
            "Distributed work: %d created, %d updated, %d unchanged, %d deleted, "
            "%d skipped, %d failed",
            len(result.created),
            len(result.updated),
            len(result.unchanged),
            len(result.deleted),
            len(result.skipped),
            len(result.errors),
        )
        return result

    async def _reconcile_cluster(
        self,
        mco: MultiClusterObservability,
        decision: PlacementDecision,
        hub: HubResources,
    ) -> DeployResult:
        namespace = decision.cluster_namespace
        _LOGGER.debug("Reconciling cluster %s in %s", decision.cluster_name, namespace)
        await self._ensure_addon(namespace, mco)
        access_token = await self._bootstrap.run(namespace)
        work = self._builder.build(mco, decision, hub, access_token)
        outcome = await self._apply_work(work)
        await self._delete_other_works(namespace)
        return outcome

    async def _ensure_addon(self, namespace: str, mco: MultiClusterObservability) -> None:
        desired = _addon_marker(namespace, mco)
        resource_id = NamedResource.from_doc(desired)
        try:
            live = await self._store.get(resource_id)
        except ObjectNotFoundError:
            _LOGGER.info("Creating %s", resource_id)
            await self._store.create(desired)
            return
        if is_terminating(live):
            raise TerminatingError(f"{resource_id} is terminating, skip and reconcile later")
        changed = add_finalizer(live, FINALIZER_ADDON_CLEANUP)
        if not deep_derivative(desired["spec"], live.get("spec")):
            live["spec"] = desired["spec"]
            changed = True
        if changed:
            _LOGGER.info("Updating %s", resource_id)
            await self._store.update(live)

    async def _apply_work(self, work: dict[str, Any]) -> DeployResult:
        resource_id = NamedResource.from_doc(work)
        try:
            live = await self._store.get(resource_id)
        except ObjectNotFoundError:
            _LOGGER.info("Creating %s", resource_id)
            await self._store.create(work)
            return DeployResult.CREATED
        if is_terminating(live):
            raise TerminatingError(
                "Existing manifestwork is terminating, skip and reconcile later"
            )
        if not work_changed(work, live):
            _LOGGER.debug("%s is unchanged", resource_id)
            return DeployResult.UNCHANGED
        _LOGGER.info("Updating %s", resource_id)
        preserve_identity(work, live)
        await self._store.update(work)
        return DeployResult.UPDATED

    async def _delete_other_works(self, namespace: str) -> None:
        expected = work_name(namespace)
        for work in await self._store.list_objects(Kind.MANIFEST_WORK, namespace):
            if work["metadata"]["name"] != expected:
                await self._deployer.undeploy(NamedResource.from_doc(work))

    async def _remove_cluster(self, namespace: str) -> str:
        """Remove the bundle, bootstrap objects and marker of a cluster."""
        _LOGGER.info("Removing observability from cluster namespace %s", namespace)
        addon_id = NamedResource(Kind.OBSERVABILITY_ADDON, namespace, ADDON_NAME)
        await self._deployer.undeploy(addon_id)
        for work in await self._store.list_objects(
            Kind.MANIFEST_WORK, namespace, label_selector=_OWNER_SELECTOR
        ):
            if set_delete_flag(work):
                work = await self._store.update(work)
            await self._deployer.undeploy(NamedResource.from_doc(work))
        await self._bootstrap.cleanup(namespace)
        try:
            addon = await self._store.get(addon_id)
        except ObjectNotFoundError:
            return DELETED
        if remove_finalizer(addon, FINALIZER_ADDON_CLEANUP):
            await self._store.update(addon)
        return DELETED
