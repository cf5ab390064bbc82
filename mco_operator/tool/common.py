"""Flags and helpers shared by the mco-operator commands."""

from argparse import ArgumentParser
import dataclasses
import pathlib
from typing import Any

import aiofiles
import yaml

from mco_operator.config import OperatorConfig
from mco_operator.exceptions import InputException


def add_common_flags(args: ArgumentParser) -> None:
    """Add flags common to every command."""
    args.add_argument(
        "--templates",
        type=pathlib.Path,
        required=True,
        help="Path to the directory of manifest templates",
    )
    args.add_argument(
        "--namespace",
        type=str,
        default=None,
        help="Namespace of the observability stack, overriding MCO_NAMESPACE",
    )
    args.add_argument(
        "--output-file",
        type=str,
        default="/dev/stdout",
        help="Output file for the results of the command",
    )


def make_config(templates: pathlib.Path, namespace: str | None, **overrides: Any) -> OperatorConfig:
    """Return the configuration from the environment with command line overrides."""
    config = OperatorConfig.from_env()
    changes: dict[str, Any] = {"templates_path": templates, **overrides}
    if namespace:
        changes["namespace"] = namespace
    return dataclasses.replace(config, **changes)


async def load_documents(path: pathlib.Path) -> list[dict[str, Any]]:
    """Load every document of a yaml file."""
    try:
        async with aiofiles.open(path) as f:
            content = await f.read()
    except OSError as err:
        raise InputException(f"Unable to read {path}: {err}") from err
    try:
        docs = [doc for doc in yaml.safe_load_all(content) if doc]
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse {path}: {err}") from err
    for doc in docs:
        if not isinstance(doc, dict):
            raise InputException(f"Document in {path} is not an object: {doc}")
    return docs


async def write_output(output_file: str, content: str) -> None:
    """Write the command output."""
    async with aiofiles.open(output_file, mode="w") as f:
        await f.write(content)
