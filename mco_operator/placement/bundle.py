"""Assembly of the work bundle shipped to a managed cluster."""

import copy
from dataclasses import dataclass, field
import logging
from typing import Any

from mco_operator.config import (
    ADDON_NAMESPACE,
    LOCAL_CLUSTER,
    OWNER_LABEL,
    OWNER_LABEL_VALUE,
    OperatorConfig,
)
from mco_operator.exceptions import InputException, ObjectNotFoundError
from mco_operator.manifest import (
    WORK_API_VERSION,
    Kind,
    MultiClusterObservability,
    NamedResource,
    PlacementDecision,
    new_object,
)
from mco_operator.rendering import Renderer
from mco_operator.rendering.renderer import ENDPOINT_OPERATOR_NAME
from mco_operator.store import Store

from .allowlist import allowlist_config_map, load_allowlist
from .bootstrap import AccessToken, build_kubeconfig_secret
from .hub_info import generate_hub_info_secret

__all__ = [
    "BundleBuilder",
    "HubResources",
    "work_name",
]

_LOGGER = logging.getLogger(__name__)

WORK_NAME_SUFFIX = "-observability"
MANAGED_CLUSTER_CERTS = "observability-managed-cluster-certs"
SERVER_CA_CERTS = "observability-server-ca-certs"
SERVER_CERTS = "observability-server-certs"
DOCKER_CONFIG_KEY = ".dockerconfigjson"
DOCKER_CONFIG_TYPE = "kubernetes.io/dockerconfigjson"
HUB_NAMESPACE_ENV = "HUB_NAMESPACE"


def work_name(cluster_namespace: str) -> str:
    """Return the name of the work bundle in a cluster namespace."""
    return cluster_namespace + WORK_NAME_SUFFIX


@dataclass
class HubResources:
    """The parts of a work bundle shared by every managed cluster."""

    certs: dict[str, Any]
    """The certificates for the managed cluster to trust and reach the hub."""

    allowlist: dict[str, Any]
    """The metrics allowlist ConfigMap."""

    endpoint_manifests: list[dict[str, Any]] = field(default_factory=list)
    """The rendered endpoint operator manifests."""

    pull_secret: dict[str, Any] | None = None
    """The image pull secret, when one exists on the hub."""


def _addon_namespace() -> dict[str, Any]:
    return new_object("v1", Kind.NAMESPACE, ADDON_NAMESPACE)


def _set_hub_namespace(manifest: dict[str, Any], cluster_namespace: str) -> None:
    if Kind.of(manifest) != Kind.DEPLOYMENT:
        return
    if manifest["metadata"]["name"] != ENDPOINT_OPERATOR_NAME:
        return
    for container in manifest["spec"]["template"]["spec"].get("containers") or ():
        if container.get("name") != ENDPOINT_OPERATOR_NAME:
            continue
        for env in container.get("env") or ():
            if env.get("name") == HUB_NAMESPACE_ENV:
                env["value"] = cluster_namespace


class BundleBuilder:
    """Builds the work bundles for the managed clusters."""

    def __init__(self, store: Store, renderer: Renderer, config: OperatorConfig) -> None:
        """Initialize the BundleBuilder."""
        self._store = store
        self._renderer = renderer
        self._config = config

    async def load_hub_resources(self, mco: MultiClusterObservability) -> HubResources:
        """Read the shared parts of the work bundle from the hub.

        Raises:
            ObjectNotFoundError: If the certificates or allowlist don't exist yet.
            RenderException: If the endpoint operator can't be rendered.
        """
        return HubResources(
            certs=await self._certs(),
            allowlist=allowlist_config_map(
                await load_allowlist(self._store, self._config.namespace)
            ),
            endpoint_manifests=await self._renderer.render_endpoint_operator(mco),
            pull_secret=await self._pull_secret(mco),
        )

    async def _pull_secret(self, mco: MultiClusterObservability) -> dict[str, Any] | None:
        if not (name := mco.spec.image_pull_secret):
            return None
        try:
            source = await self._store.get(
                NamedResource(Kind.SECRET, self._config.pod_namespace, name)
            )
        except ObjectNotFoundError:
            _LOGGER.info("No image pull secret %s/%s", self._config.pod_namespace, name)
            return None
        secret = new_object(
            "v1",
            Kind.SECRET,
            name,
            ADDON_NAMESPACE,
            data={DOCKER_CONFIG_KEY: (source.get("data") or {}).get(DOCKER_CONFIG_KEY, "")},
        )
        secret["type"] = DOCKER_CONFIG_TYPE
        return secret

    async def _certs(self) -> dict[str, Any]:
        namespace = self._config.namespace
        ca_data = (await self._store.get(
            NamedResource(Kind.SECRET, namespace, SERVER_CA_CERTS)
        )).get("data") or {}
        leaf_data = (await self._store.get(
            NamedResource(Kind.SECRET, namespace, SERVER_CERTS)
        )).get("data") or {}
        if not ca_data.get("tls.crt"):
            raise InputException(f"Secret {namespace}/{SERVER_CA_CERTS} has no tls.crt")
        return new_object(
            "v1",
            Kind.SECRET,
            MANAGED_CLUSTER_CERTS,
            ADDON_NAMESPACE,
            data={
                "ca.crt": ca_data["tls.crt"],
                "tls.crt": leaf_data.get("tls.crt", ""),
                "tls.key": leaf_data.get("tls.key", ""),
            },
        )

    def build(
        self,
        mco: MultiClusterObservability,
        decision: PlacementDecision,
        hub: HubResources,
        access_token: AccessToken,
    ) -> dict[str, Any]:
        """Return the work bundle for a managed cluster.

        The hub info secret is always the first manifest of the bundle.
        """
        if not self._config.hub_endpoint:
            raise InputException("Hub endpoint is not configured")
        cluster_namespace = decision.cluster_namespace
        manifests = [
            generate_hub_info_secret(self._config.hub_endpoint, mco, decision.cluster_name),
            _addon_namespace(),
            build_kubeconfig_secret(
                self._config.hub_api_server, access_token, cluster_namespace
            ),
        ]
        if hub.pull_secret is not None:
            manifests.append(copy.deepcopy(hub.pull_secret))
        manifests.append(copy.deepcopy(hub.certs))
        manifests.append(copy.deepcopy(hub.allowlist))
        for manifest in hub.endpoint_manifests:
            if (
                decision.cluster_name == LOCAL_CLUSTER
                and Kind.of(manifest) == Kind.CUSTOM_RESOURCE_DEFINITION
            ):
                continue
            manifest = copy.deepcopy(manifest)
            _set_hub_namespace(manifest, cluster_namespace)
            manifests.append(manifest)
        return new_object(
            WORK_API_VERSION,
            Kind.MANIFEST_WORK,
            work_name(cluster_namespace),
            cluster_namespace,
            labels={OWNER_LABEL: OWNER_LABEL_VALUE},
            spec={"workload": {"manifests": manifests}},
        )
