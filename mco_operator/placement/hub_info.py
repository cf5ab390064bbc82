"""Connection information for the managed clusters to reach the hub."""

import base64
import binascii
from dataclasses import dataclass, field
import logging
from typing import Any

from mashumaro import field_options

from mco_operator.config import ADDON_NAMESPACE
from mco_operator.exceptions import InputException
from mco_operator.manifest import (
    BaseManifest,
    Kind,
    MultiClusterObservability,
    new_object,
)

__all__ = [
    "HubInfo",
    "generate_hub_info_secret",
    "parse_hub_info_secret",
    "set_delete_flag",
]

_LOGGER = logging.getLogger(__name__)

HUB_INFO_NAME = "hub-info-secret"
HUB_INFO_KEY = "hub-info.yaml"
URL_SUB_PATH = "/api/metrics/v1/default/api/v1/receive"
PROTOCOL = "https://"


@dataclass
class HubInfo(BaseManifest):
    """The contents of the hub info secret shipped to a managed cluster."""

    cluster_name: str = field(metadata=field_options(alias="cluster-name"))
    """The name of the managed cluster."""

    endpoint: str
    """URL the managed cluster pushes metrics to."""

    enable_metrics: bool = field(
        metadata=field_options(alias="enable-metrics"), default=True
    )
    """Push metrics from the managed cluster."""

    interval: int = 60
    """Interval in seconds between metric pushes."""

    delete_flag: bool = field(metadata=field_options(alias="delete-flag"), default=False)
    """Set when the bundle is about to be removed from the managed cluster."""


def metrics_endpoint(host: str) -> str:
    """Return the metrics receive URL for the hub endpoint host."""
    if not host.startswith("http"):
        host = PROTOCOL + host
    return host.rstrip("/") + URL_SUB_PATH


def _hub_info_secret(hub_info: HubInfo) -> dict[str, Any]:
    content = base64.b64encode(hub_info.to_yaml().encode()).decode()
    return new_object(
        "v1",
        Kind.SECRET,
        HUB_INFO_NAME,
        ADDON_NAMESPACE,
        data={HUB_INFO_KEY: content},
    )


def generate_hub_info_secret(
    endpoint_host: str, mco: MultiClusterObservability, cluster_name: str
) -> dict[str, Any]:
    """Return the hub info secret for a managed cluster."""
    addon_spec = mco.addon_spec
    return _hub_info_secret(
        HubInfo(
            cluster_name=cluster_name,
            endpoint=metrics_endpoint(endpoint_host),
            enable_metrics=addon_spec.enable_metrics,
            interval=addon_spec.interval,
        )
    )


def parse_hub_info_secret(secret: dict[str, Any]) -> HubInfo:
    """Parse the hub info from a hub info secret."""
    if not (content := (secret.get("data") or {}).get(HUB_INFO_KEY)):
        raise InputException(f"Invalid hub info secret missing {HUB_INFO_KEY}: {secret}")
    try:
        decoded = base64.b64decode(content, validate=True).decode()
    except (binascii.Error, UnicodeDecodeError) as err:
        raise InputException(f"Invalid hub info secret encoding: {err}") from err
    return HubInfo.from_yaml(decoded)


def set_delete_flag(work: dict[str, Any]) -> bool:
    """Flag the hub info in a work bundle for removal.

    The hub info secret is always the first manifest of the bundle. Returns
    True if the bundle was changed. A bundle whose hub info cannot be read is
    left as is.
    """
    manifests = work.get("spec", {}).get("workload", {}).get("manifests") or []
    if not manifests:
        _LOGGER.warning("Work %s has no manifests", work.get("metadata", {}).get("name"))
        return False
    try:
        hub_info = parse_hub_info_secret(manifests[0])
    except InputException as err:
        _LOGGER.warning(
            "Work %s has no readable hub info: %s", work.get("metadata", {}).get("name"), err
        )
        return False
    if hub_info.delete_flag:
        return False
    hub_info.delete_flag = True
    manifests[0] = _hub_info_secret(hub_info)
    return True
