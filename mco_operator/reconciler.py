"""Top level reconcile of the observability configuration object.

A reconcile pass drives the hub towards the state described by a single
`MultiClusterObservability` object:

1. Finalize the object if it is being deleted.
2. Add the cleanup finalizers and persist any defaulted fields.
3. Stop when reconciliation is paused.
4. Render the stack and deploy every manifest.
5. Create the certificate objects.
6. Distribute work bundles to the clusters selected by placement.
7. Aggregate the stack health into status conditions.

Render and deploy errors abort the pass. Distribution errors are raised only
after the status has been written so that a single failing cluster does not
hide the health of the stack.
"""

import logging
from typing import Any

from .certificates import CertificateManager
from .config import (
    ANNOTATION_DEFAULT_STORAGE_CLASS,
    FINALIZER_ADDON_CLEANUP,
    FINALIZER_CERT_CLEANUP,
    PLACEMENT_RULE_NAME,
    REQUEUE_TERMINATING,
    OperatorConfig,
    fill_defaults,
    is_paused,
)
from .context import trace_context
from .deploying import Deployer
from .exceptions import DistributionError, ObjectNotFoundError, OperatorException
from .manifest import (
    Kind,
    MultiClusterObservability,
    NamedResource,
    PlacementDecision,
    add_finalizer,
    get_annotation,
    is_terminating,
    remove_finalizer,
)
from .placement import Distributor, DistributionResult
from .rendering import Renderer, TemplateCorpus
from .status import ReconcileResult, StatusAggregator
from .store import Store

__all__ = [
    "Reconciler",
]

_LOGGER = logging.getLogger(__name__)

WORKLOAD_KINDS = {Kind.DEPLOYMENT, Kind.STATEFUL_SET}


def _add_defaults(spec: dict[str, Any], defaulted: dict[str, Any]) -> None:
    """Copy defaulted values into a raw spec without touching fields already set.

    Fields the typed model does not know about are kept as written.
    """
    for key, value in defaulted.items():
        current = spec.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            _add_defaults(current, value)
        elif current is None or current == "":
            spec[key] = value


class Reconciler:
    """Reconciles configuration objects against the store."""

    def __init__(
        self, store: Store, corpus: TemplateCorpus, config: OperatorConfig
    ) -> None:
        """Initialize the Reconciler."""
        self._store = store
        self._config = config
        self._renderer = Renderer(corpus, config)
        self._deployer = Deployer(store)
        self._certificates = CertificateManager(store, config)
        self._status = StatusAggregator(store, config)
        self._distributor = Distributor(store, self._renderer, config)
        self.last_distribution: DistributionResult | None = None

    async def reconcile(self, resource_id: NamedResource) -> ReconcileResult:
        """Run a reconcile pass for the configuration object.

        Raises:
            OperatorException: If the pass could not complete.
        """
        with trace_context(f"reconcile {resource_id.name}"):
            try:
                doc = await self._store.get(resource_id)
            except ObjectNotFoundError:
                _LOGGER.debug("%s no longer exists", resource_id)
                return ReconcileResult()
            if is_terminating(doc):
                await self._finalize(doc)
                return ReconcileResult()
            return await self._reconcile(doc)

    async def _finalize(self, doc: dict[str, Any]) -> None:
        mco = MultiClusterObservability.parse_doc(doc)
        _LOGGER.info("Finalizing %s", mco.resource_id)
        with trace_context("finalize"):
            result = await self._distributor.cleanup_all()
            self.last_distribution = result
            result.raise_for_errors()
            changed = remove_finalizer(doc, FINALIZER_ADDON_CLEANUP)
            written = await self._certificates.cleanup(doc)
            if changed and written is doc:
                await self._store.update(doc)

    async def _reconcile(self, doc: dict[str, Any]) -> ReconcileResult:
        changed = add_finalizer(doc, FINALIZER_CERT_CLEANUP)
        if self._config.enable_managed_cluster:
            changed |= add_finalizer(doc, FINALIZER_ADDON_CLEANUP)
        mco = MultiClusterObservability.parse_doc(doc)
        if fill_defaults(mco):
            _add_defaults(doc.setdefault("spec", {}), mco.spec.to_dict())
            changed = True
        if changed:
            doc = await self._store.update(doc)
            mco = MultiClusterObservability.parse_doc(doc)

        if is_paused(mco):
            _LOGGER.info("Reconciliation of %s is paused", mco.resource_id)
            return ReconcileResult()

        await self._select_storage_class(mco)

        manifests = await self._renderer.render(mco)
        with trace_context("deploy"):
            for manifest in manifests:
                await self._deployer.deploy(manifest)
        workloads = [
            NamedResource.from_doc(m) for m in manifests if Kind.of(m) in WORKLOAD_KINDS
        ]

        with trace_context("certificates"):
            await self._certificates.ensure()

        distribution: DistributionResult | None = None
        placement_error: OperatorException | None = None
        if self._config.enable_managed_cluster:
            try:
                distribution = await self._distributor.reconcile(
                    mco, await self.placement_decisions()
                )
            except OperatorException as err:
                _LOGGER.error("Failed to distribute work for %s: %s", mco.resource_id, err)
                placement_error = err
            self.last_distribution = distribution

        with trace_context("status"):
            result = await self._status.update(mco, workloads)

        if placement_error is not None:
            raise placement_error
        if distribution is not None:
            if distribution.errors:
                raise DistributionError(dict(distribution.errors))
            if distribution.skipped:
                return ReconcileResult(
                    requeue_after=min(
                        result.requeue_after or REQUEUE_TERMINATING, REQUEUE_TERMINATING
                    )
                )
        return result

    async def placement_decisions(self) -> list[PlacementDecision]:
        """Return the clusters selected by the placement policy."""
        try:
            rule = await self._store.get(
                NamedResource(Kind.PLACEMENT_RULE, self._config.namespace, PLACEMENT_RULE_NAME)
            )
        except ObjectNotFoundError:
            _LOGGER.info("No placement rule %s, no clusters selected", PLACEMENT_RULE_NAME)
            return []
        return PlacementDecision.parse_placement_rule(rule)

    async def _select_storage_class(self, mco: MultiClusterObservability) -> None:
        """Fall back to the default storage class if the configured one is missing.

        The fallback only applies to this pass and is not written to the store.
        """
        storage = mco.storage
        classes = await self._store.list_objects(Kind.STORAGE_CLASS)
        names = {c["metadata"]["name"] for c in classes}
        if not classes or storage.storage_class in names:
            return
        for storage_class in classes:
            value = get_annotation(storage_class, ANNOTATION_DEFAULT_STORAGE_CLASS) or ""
            if value.lower() == "true":
                default = storage_class["metadata"]["name"]
                _LOGGER.info(
                    "Storage class %s not found, using default %s",
                    storage.storage_class,
                    default,
                )
                if mco.spec.storage_config is not None:
                    mco.spec.storage_config.storage_class = default
                return
        _LOGGER.warning("Storage class %s not found and no default", storage.storage_class)
