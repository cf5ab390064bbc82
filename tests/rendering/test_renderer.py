"""Tests for rendering the configuration object into manifests."""

from pathlib import Path
from typing import Any

import pytest

from mco_operator.config import (
    ADDON_NAMESPACE,
    CR_LABEL,
    DEFAULT_NAMESPACE,
    OperatorConfig,
    fill_defaults,
)
from mco_operator.exceptions import RenderException
from mco_operator.manifest import Kind, MultiClusterObservability, NamedResource
from mco_operator.rendering import Renderer, TemplateCorpus
from mco_operator.rendering.renderer import update_namespace_allowed

NAMESPACE = DEFAULT_NAMESPACE


def _mco(doc: dict[str, Any]) -> MultiClusterObservability:
    mco = MultiClusterObservability.parse_doc(doc)
    fill_defaults(mco)
    return mco


def _by_id(manifests: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    return {str(NamedResource.from_doc(m)): m for m in manifests}


@pytest.mark.parametrize(
    ("annotations", "expected"),
    [
        (None, True),
        ({"update-namespace": "true"}, True),
        ({"update-namespace": "false"}, False),
        ({"update-namespace": "F"}, False),
        ({"update-namespace": "bogus"}, False),
    ],
)
def test_update_namespace_allowed(annotations: dict[str, str] | None, expected: bool) -> None:
    """Test the namespace opt out annotation."""
    doc: dict[str, Any] = {"kind": "ConfigMap", "apiVersion": "v1", "metadata": {"name": "a"}}
    if annotations:
        doc["metadata"]["annotations"] = annotations
    assert update_namespace_allowed(doc) == expected


async def test_render(renderer: Renderer, mco_doc: dict[str, Any]) -> None:
    """Test rendering the hub stack."""
    manifests = await renderer.render(_mco(mco_doc))
    assert list(_by_id(manifests)) == [
        f"Deployment/{NAMESPACE}/observability-grafana",
        f"Service/{NAMESPACE}/grafana",
        f"ServiceAccount/{NAMESPACE}/grafana",
        "ClusterRole/open-cluster-management:grafana-crd-observability",
        "ClusterRoleBinding/open-cluster-management:grafana-crb-observability",
        "ClusterRoleBinding/open-cluster-management:observability-authenticated",
        "ConfigMap/open-cluster-management/grafana-dashboard-clusters",
        f"StatefulSet/{NAMESPACE}/observability-thanos-receive-default",
    ]
    by_id = _by_id(manifests)

    deployment = by_id[f"Deployment/{NAMESPACE}/observability-grafana"]
    assert deployment["spec"]["replicas"] == 1
    assert deployment["metadata"]["labels"][CR_LABEL] == "observability"
    assert deployment["spec"]["selector"]["matchLabels"][CR_LABEL] == "observability"
    assert deployment["spec"]["template"]["metadata"]["labels"][CR_LABEL] == "observability"
    pod_spec = deployment["spec"]["template"]["spec"]
    assert pod_spec["imagePullSecrets"] == [{"name": "multiclusterhub-operator-pull-secret"}]
    container = pod_spec["containers"][0]
    assert container["image"] == "quay.io/open-cluster-management/grafana:2.3.0"
    assert container["imagePullPolicy"] == "Always"

    stateful_set = by_id[f"StatefulSet/{NAMESPACE}/observability-thanos-receive-default"]
    assert stateful_set["spec"]["replicas"] == 1
    assert "--tsdb.retention=5d" in stateful_set["spec"]["template"]["spec"]["containers"][0]["args"]
    claim = stateful_set["spec"]["volumeClaimTemplates"][0]["spec"]
    assert claim["storageClassName"] == "standard"
    assert claim["resources"]["requests"]["storage"] == "10Gi"

    role = by_id["ClusterRole/open-cluster-management:grafana-crd-observability"]
    assert role["metadata"]["labels"][CR_LABEL] == "observability"

    binding = by_id["ClusterRoleBinding/open-cluster-management:grafana-crb-observability"]
    assert binding["subjects"][0]["namespace"] == NAMESPACE
    group_binding = by_id["ClusterRoleBinding/open-cluster-management:observability-authenticated"]
    assert "namespace" not in group_binding["subjects"][0]


async def test_render_high_availability(renderer: Renderer, mco_doc: dict[str, Any]) -> None:
    """Test replica counts for the high availability level."""
    mco_doc["spec"]["availabilityConfig"] = "High"
    by_id = _by_id(await renderer.render(_mco(mco_doc)))
    assert by_id[f"Deployment/{NAMESPACE}/observability-grafana"]["spec"]["replicas"] == 2
    assert (
        by_id[f"StatefulSet/{NAMESPACE}/observability-thanos-receive-default"]["spec"]["replicas"]
        == 3
    )


async def test_render_pod_settings(renderer: Renderer, mco_doc: dict[str, Any]) -> None:
    """Test scheduling settings and image overrides are propagated to pods."""
    mco_doc["metadata"]["annotations"] = {"mco-imageTagSuffix": "2.4.0-SNAPSHOT"}
    mco_doc["spec"]["nodeSelector"] = {"kubernetes.io/os": "linux"}
    mco_doc["spec"]["tolerations"] = [{"key": "infra", "operator": "Exists"}]
    by_id = _by_id(await renderer.render(_mco(mco_doc)))
    pod_spec = by_id[f"Deployment/{NAMESPACE}/observability-grafana"]["spec"]["template"]["spec"]
    assert pod_spec["nodeSelector"] == {"kubernetes.io/os": "linux"}
    assert pod_spec["tolerations"] == [{"key": "infra", "operator": "Exists"}]
    assert (
        pod_spec["containers"][0]["image"]
        == "quay.io/open-cluster-management/grafana:2.4.0-SNAPSHOT"
    )
    stateful_pod = by_id[f"StatefulSet/{NAMESPACE}/observability-thanos-receive-default"][
        "spec"
    ]["template"]["spec"]
    assert stateful_pod["containers"][0]["image"] == "quay.io/thanos/thanos:v0.19.0"


async def test_render_is_deterministic(renderer: Renderer, mco_doc: dict[str, Any]) -> None:
    """Test rendering twice gives the same manifests."""
    mco = _mco(mco_doc)
    assert await renderer.render(mco) == await renderer.render(mco)


async def test_render_missing_value(renderer: Renderer, mco_doc: dict[str, Any]) -> None:
    """Test an unresolved placeholder fails the whole render."""
    mco = MultiClusterObservability.parse_doc(mco_doc)
    with pytest.raises(RenderException, match="unresolved placeholder"):
        await renderer.render(mco)


async def test_render_endpoint_operator(renderer: Renderer, mco_doc: dict[str, Any]) -> None:
    """Test rendering the operator shipped to managed clusters."""
    mco_doc["metadata"]["annotations"] = {"mco-imageTagSuffix": "2.4.0-SNAPSHOT"}
    manifests = await renderer.render_endpoint_operator(_mco(mco_doc))
    by_id = _by_id(manifests)
    assert list(by_id) == [
        "CustomResourceDefinition/observabilityaddons.observability.open-cluster-management.io",
        f"ServiceAccount/{ADDON_NAMESPACE}/endpoint-observability-operator-sa",
        "ClusterRoleBinding/open-cluster-management:endpoint-observability-operator-rb",
        f"Deployment/{ADDON_NAMESPACE}/endpoint-observability-operator",
    ]

    service_account = by_id[f"ServiceAccount/{ADDON_NAMESPACE}/endpoint-observability-operator-sa"]
    assert service_account["imagePullSecrets"] == [
        {"name": "multiclusterhub-operator-pull-secret"}
    ]
    binding = by_id["ClusterRoleBinding/open-cluster-management:endpoint-observability-operator-rb"]
    assert binding["subjects"][0]["namespace"] == ADDON_NAMESPACE

    deployment = by_id[f"Deployment/{ADDON_NAMESPACE}/endpoint-observability-operator"]
    container = deployment["spec"]["template"]["spec"]["containers"][0]
    assert (
        container["image"]
        == "quay.io/open-cluster-management/endpoint-monitoring-operator:2.4.0-SNAPSHOT"
    )
    assert container["imagePullPolicy"] == "Always"
    env = {e["name"]: e["value"] for e in container["env"]}
    assert env["COLLECTOR_IMAGE"] == "quay.io/open-cluster-management/metrics-collector:2.4.0-SNAPSHOT"
    assert Kind.of(manifests[0]) == Kind.CUSTOM_RESOURCE_DEFINITION


async def test_render_keeps_workload_namespace(
    tmp_path: Path, config: OperatorConfig, mco_doc: dict[str, Any]
) -> None:
    """Test workloads annotated to keep their namespace are not moved."""
    (tmp_path / "base").mkdir()
    (tmp_path / "base" / "workloads.yaml").write_text(
        """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: pinned
  namespace: keep-me
  annotations:
    update-namespace: 'false'
spec:
  template:
    spec:
      containers:
      - name: pinned
        image: example/pinned:1.0
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: moved
  namespace: keep-me
spec:
  template:
    spec:
      containers:
      - name: moved
        image: example/moved:1.0
"""
    )
    renderer = Renderer(TemplateCorpus(tmp_path), config)
    manifests = await renderer.render(_mco(mco_doc))
    assert list(_by_id(manifests)) == [
        "Deployment/keep-me/pinned",
        f"Deployment/{NAMESPACE}/moved",
    ]
