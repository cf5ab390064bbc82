"""Command line tool for rendering and reconciling observability stacks offline."""

import argparse
import asyncio
import logging
import sys
import traceback
from typing import Any

import yaml

from mco_operator.exceptions import OperatorException
from . import reconcile, render

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for the multicluster observability operator.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    render.RenderAction.register(subparsers)
    reconcile.ReconcileAction.register(subparsers)
    return parser


def main(argv: list[str] | None = None) -> None:
    """mco-operator command line tool main entry point."""

    def str_presenter(dumper: yaml.Dumper, data: Any) -> Any:
        """Represent multi-line yaml strings as block literals."""
        return dumper.represent_scalar(
            "tag:yaml.org,2002:str", data, style="|" if data.count("\n") > 0 else None
        )

    yaml.add_representer(str, str_presenter)

    parser = _make_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except OperatorException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("mco-operator error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
