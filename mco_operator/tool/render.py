"""mco-operator render action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import cast

import yaml

from mco_operator.config import fill_defaults
from mco_operator.exceptions import InputException
from mco_operator.manifest import Kind, MultiClusterObservability
from mco_operator.rendering import Renderer, TemplateCorpus

from .common import add_common_flags, load_documents, make_config, write_output

_LOGGER = logging.getLogger(__name__)


class RenderAction:
    """mco-operator render action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "render",
                help="Render the observability stack manifests",
                description="""Renders the manifests of the observability stack
                    for a MultiClusterObservability object without applying them.""",
            ),
        )
        args.add_argument(
            "--config",
            type=pathlib.Path,
            required=True,
            help="Path to a MultiClusterObservability yaml file",
        )
        args.add_argument(
            "--endpoint",
            action="store_true",
            help="Render the operator shipped to managed clusters instead",
        )
        add_common_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        templates: pathlib.Path,
        config: pathlib.Path,
        namespace: str | None,
        endpoint: bool,
        output_file: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        docs = [
            doc
            for doc in await load_documents(config)
            if doc.get("kind") == Kind.MULTICLUSTER_OBSERVABILITY
        ]
        if len(docs) != 1:
            raise InputException(
                f"Expected one MultiClusterObservability in {config}, found {len(docs)}"
            )
        mco = MultiClusterObservability.parse_doc(docs[0])
        fill_defaults(mco)
        operator_config = make_config(templates, namespace)
        renderer = Renderer(TemplateCorpus(templates), operator_config)
        if endpoint:
            manifests = await renderer.render_endpoint_operator(mco)
        else:
            manifests = await renderer.render(mco)
        await write_output(
            output_file, yaml.dump_all(manifests, sort_keys=False, explicit_start=True)
        )
