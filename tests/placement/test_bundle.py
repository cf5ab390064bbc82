"""Tests for assembling the work bundle of a managed cluster."""

from collections.abc import Callable
from typing import Any

import pytest

from mco_operator.config import OperatorConfig, fill_defaults
from mco_operator.exceptions import InputException, ObjectNotFoundError
from mco_operator.manifest import (
    Kind,
    MultiClusterObservability,
    NamedResource,
    PlacementDecision,
)
from mco_operator.placement.bootstrap import AccessToken
from mco_operator.placement.bundle import BundleBuilder, work_name
from mco_operator.placement.hub_info import parse_hub_info_secret
from mco_operator.rendering import Renderer
from mco_operator.store import InMemoryStore

ADDON_NAMESPACE = "open-cluster-management-addon-observability"
TOKEN = AccessToken(token="secret-token")


@pytest.fixture
def mco(mco_doc: dict[str, Any]) -> MultiClusterObservability:
    """The configuration object with defaults filled in."""
    mco = MultiClusterObservability.parse_doc(mco_doc)
    fill_defaults(mco)
    return mco


def _ids(manifests: list[dict[str, Any]]) -> list[str]:
    return [str(NamedResource.from_doc(m)) for m in manifests]


def test_work_name() -> None:
    """Test the work bundle name."""
    assert work_name("cluster1") == "cluster1-observability"


async def test_build(
    hub_store: Callable[..., Any],
    renderer: Renderer,
    config: OperatorConfig,
    mco: MultiClusterObservability,
) -> None:
    """Test the bundle for a managed cluster."""
    builder = BundleBuilder(await hub_store(), renderer, config)
    hub = await builder.load_hub_resources(mco)
    work = builder.build(
        mco, PlacementDecision(cluster_name="cluster1", cluster_namespace="cluster1"), hub, TOKEN
    )
    assert work["metadata"] == {
        "name": "cluster1-observability",
        "namespace": "cluster1",
        "labels": {"owner": "multicluster-observability-operator"},
    }
    manifests = work["spec"]["workload"]["manifests"]
    assert _ids(manifests)[:6] == [
        f"Secret/{ADDON_NAMESPACE}/hub-info-secret",
        f"Namespace/{ADDON_NAMESPACE}",
        f"Secret/{ADDON_NAMESPACE}/hub-kube-config",
        f"Secret/{ADDON_NAMESPACE}/multiclusterhub-operator-pull-secret",
        f"Secret/{ADDON_NAMESPACE}/observability-managed-cluster-certs",
        f"ConfigMap/{ADDON_NAMESPACE}/observability-metrics-allowlist",
    ]
    assert sorted(_ids(manifests)[6:]) == [
        "ClusterRoleBinding/open-cluster-management:endpoint-observability-operator-rb",
        "CustomResourceDefinition/observabilityaddons.observability.open-cluster-management.io",
        f"Deployment/{ADDON_NAMESPACE}/endpoint-observability-operator",
        f"ServiceAccount/{ADDON_NAMESPACE}/endpoint-observability-operator-sa",
    ]

    hub_info = parse_hub_info_secret(manifests[0])
    assert hub_info.cluster_name == "cluster1"
    assert hub_info.endpoint == (
        "https://observatorium-api.apps.hub.example.com/api/metrics/v1/default/api/v1/receive"
    )

    pull_secret = manifests[3]
    assert pull_secret["type"] == "kubernetes.io/dockerconfigjson"
    assert pull_secret["data"] == {".dockerconfigjson": "e30="}

    assert manifests[4]["data"] == {
        "ca.crt": "Y2EtY2VydA==",
        "tls.crt": "c2VydmVyLWNlcnQ=",
        "tls.key": "c2VydmVyLWtleQ==",
    }

    deployment = next(m for m in manifests if m["kind"] == Kind.DEPLOYMENT)
    env = deployment["spec"]["template"]["spec"]["containers"][0]["env"]
    assert {"name": "HUB_NAMESPACE", "value": "cluster1"} in env

    # The shared resources are not modified by building a bundle
    assert all(
        m["kind"] != Kind.DEPLOYMENT
        or m["spec"]["template"]["spec"]["containers"][0]["env"][0]["value"] == ""
        for m in hub.endpoint_manifests
    )


async def test_build_local_cluster(
    hub_store: Callable[..., Any],
    renderer: Renderer,
    config: OperatorConfig,
    mco: MultiClusterObservability,
) -> None:
    """Test the hub's own cluster does not get the custom resource definitions."""
    builder = BundleBuilder(await hub_store(), renderer, config)
    hub = await builder.load_hub_resources(mco)
    work = builder.build(
        mco,
        PlacementDecision(cluster_name="local-cluster", cluster_namespace="local-cluster"),
        hub,
        TOKEN,
    )
    kinds = [m["kind"] for m in work["spec"]["workload"]["manifests"]]
    assert Kind.CUSTOM_RESOURCE_DEFINITION not in kinds
    assert Kind.DEPLOYMENT in kinds


async def test_no_pull_secret(
    hub_store: Callable[..., Any],
    renderer: Renderer,
    config: OperatorConfig,
    mco: MultiClusterObservability,
) -> None:
    """Test the pull secret is left out when the hub has none."""
    store: InMemoryStore = await hub_store()
    await store.delete(
        NamedResource(Kind.SECRET, "open-cluster-management", "multiclusterhub-operator-pull-secret")
    )
    hub = await BundleBuilder(store, renderer, config).load_hub_resources(mco)
    assert hub.pull_secret is None


async def test_missing_certificates(
    store: InMemoryStore,
    renderer: Renderer,
    config: OperatorConfig,
    mco: MultiClusterObservability,
) -> None:
    """Test the hub resources require the server certificates."""
    with pytest.raises(ObjectNotFoundError):
        await BundleBuilder(store, renderer, config).load_hub_resources(mco)


async def test_hub_endpoint_required(
    hub_store: Callable[..., Any],
    renderer: Renderer,
    config: OperatorConfig,
    mco: MultiClusterObservability,
) -> None:
    """Test a bundle can't be built without the hub endpoint."""
    builder = BundleBuilder(await hub_store(), renderer, config)
    hub = await builder.load_hub_resources(mco)
    config.hub_endpoint = None
    with pytest.raises(InputException, match="Hub endpoint is not configured"):
        builder.build(
            mco,
            PlacementDecision(cluster_name="cluster1", cluster_namespace="cluster1"),
            hub,
            TOKEN,
        )
