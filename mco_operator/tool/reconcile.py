"""mco-operator reconcile action.

Runs a single reconcile pass against a snapshot of cluster objects held in
memory and reports the resulting status and work bundles.
"""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import Any, cast

import yaml

from mco_operator.config import PLACEMENT_RULE_NAME
from mco_operator.exceptions import DistributionError
from mco_operator.manifest import (
    PLACEMENT_API_VERSION,
    Kind,
    MultiClusterObservability,
    NamedResource,
    new_object,
)
from mco_operator.reconciler import Reconciler
from mco_operator.rendering import TemplateCorpus
from mco_operator.store import InMemoryStore
from mco_operator.task import task_service_context

from .common import add_common_flags, load_documents, make_config, write_output

_LOGGER = logging.getLogger(__name__)


def placement_rule(namespace: str, clusters: list[str]) -> dict[str, Any]:
    """Return a placement rule selecting clusters in namespaces of the same name."""
    return new_object(
        PLACEMENT_API_VERSION,
        Kind.PLACEMENT_RULE,
        PLACEMENT_RULE_NAME,
        namespace,
        spec={},
        status={
            "decisions": [
                {"clusterName": name, "clusterNamespace": name} for name in clusters
            ]
        },
    )


class ReconcileAction:
    """mco-operator reconcile action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "reconcile",
                help="Reconcile a snapshot of cluster objects in memory",
                description="""Loads every object from a state file, runs one
                    reconcile pass for each MultiClusterObservability object and
                    prints the resulting conditions and work bundles.""",
            ),
        )
        args.add_argument(
            "--state",
            type=pathlib.Path,
            required=True,
            help="Path to a yaml file with the cluster objects",
        )
        args.add_argument(
            "--cluster",
            type=str,
            action="append",
            default=[],
            help="Name of a managed cluster selected by placement, may be repeated",
        )
        args.add_argument(
            "--hub-endpoint",
            type=str,
            default=None,
            help="Hub endpoint managed clusters push metrics to, overriding HUB_ENDPOINT",
        )
        add_common_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        templates: pathlib.Path,
        state: pathlib.Path,
        cluster: list[str],
        hub_endpoint: str | None,
        namespace: str | None,
        output_file: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        overrides: dict[str, Any] = {"enable_managed_cluster": bool(cluster)}
        if hub_endpoint:
            overrides["hub_endpoint"] = hub_endpoint
        config = make_config(templates, namespace, **overrides)

        store = InMemoryStore()
        for doc in await load_documents(state):
            await store.create(doc)
        if cluster:
            await store.create(placement_rule(config.namespace, cluster))

        results: list[dict[str, Any]] = []
        with task_service_context() as task_service:
            reconciler = Reconciler(store, TemplateCorpus(templates), config)
            for doc in await store.list_objects(Kind.MULTICLUSTER_OBSERVABILITY):
                resource_id = NamedResource.from_doc(doc)
                output: dict[str, Any] = {"name": resource_id.name}
                try:
                    result = await reconciler.reconcile(resource_id)
                except DistributionError as err:
                    output["errors"] = {ns: str(e) for ns, e in err.errors.items()}
                else:
                    if result.requeue_after is not None:
                        output["requeueAfter"] = result.requeue_after
                mco = MultiClusterObservability.parse_doc(await store.get(resource_id))
                output["conditions"] = mco.status_dict()["conditions"]
                results.append(output)
            await task_service.block_till_done()

        works = [
            str(NamedResource.from_doc(work))
            for work in await store.list_objects(Kind.MANIFEST_WORK)
        ]
        await write_output(
            output_file,
            yaml.dump({"reconciled": results, "works": works}, sort_keys=False),
        )
