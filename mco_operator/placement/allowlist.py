"""The metrics allowlist shipped to every managed cluster.

The base allowlist is provided with the stack and can be extended with a
custom allowlist. A custom name prefixed with `-` removes that name from the
base list.
"""

from dataclasses import dataclass, field
import logging
from typing import Any

from mco_operator.config import ADDON_NAMESPACE
from mco_operator.exceptions import InputException, ObjectNotFoundError
from mco_operator.manifest import BaseManifest, Kind, NamedResource, new_object
from mco_operator.store import Store

__all__ = [
    "MetricsAllowlist",
    "RecordingRule",
    "merge_names",
    "merge_allowlist",
    "load_allowlist",
    "allowlist_config_map",
]

_LOGGER = logging.getLogger(__name__)

ALLOWLIST_NAME = "observability-metrics-allowlist"
CUSTOM_ALLOWLIST_NAME = "observability-metrics-custom-allowlist"
ALLOWLIST_KEY = "metrics_list.yaml"
REMOVE_PREFIX = "-"


@dataclass
class RecordingRule(BaseManifest):
    """A recording rule evaluated by the metrics collector."""

    record: str
    expr: str


@dataclass
class MetricsAllowlist(BaseManifest):
    """The metrics collected from a managed cluster."""

    names: list[str] = field(default_factory=list)
    """Metric names to collect."""

    matches: list[str] = field(default_factory=list)
    """Label matchers selecting series to collect."""

    renames: dict[str, str] = field(default_factory=dict)
    """Metrics renamed before they are pushed."""

    rules: list[RecordingRule] = field(default_factory=list)
    """Recording rules evaluated before the metrics are pushed."""


def merge_names(base: list[str], custom: list[str]) -> list[str]:
    """Merge the custom names into the base names.

    Duplicates are dropped keeping the first occurrence.
    """
    removed = {n[len(REMOVE_PREFIX) :] for n in custom if n.startswith(REMOVE_PREFIX)}
    added = [n for n in custom if not n.startswith(REMOVE_PREFIX)]
    merged: list[str] = []
    seen: set[str] = set()
    for name in (*base, *added):
        if name in seen or name in removed:
            continue
        seen.add(name)
        merged.append(name)
    return merged


def merge_allowlist(
    base: MetricsAllowlist, custom: MetricsAllowlist | None
) -> MetricsAllowlist:
    """Return the base allowlist extended by the custom allowlist."""
    if custom is None:
        return base
    return MetricsAllowlist(
        names=merge_names(base.names, custom.names),
        matches=merge_names(base.matches, custom.matches),
        renames={**base.renames, **custom.renames},
        rules=[*base.rules, *custom.rules],
    )


async def _read_allowlist(store: Store, namespace: str, name: str) -> MetricsAllowlist:
    config_map = await store.get(NamedResource(Kind.CONFIG_MAP, namespace, name))
    content = (config_map.get("data") or {}).get(ALLOWLIST_KEY)
    if content is None:
        raise InputException(f"ConfigMap {namespace}/{name} has no {ALLOWLIST_KEY} key")
    return MetricsAllowlist.from_yaml(content)


async def load_allowlist(store: Store, namespace: str) -> MetricsAllowlist:
    """Load the base allowlist merged with the custom allowlist, if present.

    Raises:
        ObjectNotFoundError: If the base allowlist does not exist.
        InputException: If an allowlist can't be parsed.
    """
    base = await _read_allowlist(store, namespace, ALLOWLIST_NAME)
    try:
        custom = await _read_allowlist(store, namespace, CUSTOM_ALLOWLIST_NAME)
    except ObjectNotFoundError:
        _LOGGER.warning(
            "There is no custom metrics allowlist %s/%s", namespace, CUSTOM_ALLOWLIST_NAME
        )
        custom = None
    return merge_allowlist(base, custom)


def allowlist_config_map(allowlist: MetricsAllowlist) -> dict[str, Any]:
    """Return the allowlist ConfigMap placed on a managed cluster."""
    return new_object(
        "v1",
        Kind.CONFIG_MAP,
        ALLOWLIST_NAME,
        ADDON_NAMESPACE,
        data={ALLOWLIST_KEY: allowlist.to_yaml()},
    )
