"""Tests for the top level reconcile of the configuration object."""

import base64
from collections.abc import Callable
from typing import Any

import pytest

from mco_operator.config import (
    FINALIZER_ADDON_CLEANUP,
    FINALIZER_CERT_CLEANUP,
    OperatorConfig,
)
from mco_operator.exceptions import DistributionError, InputException, ObjectNotFoundError
from mco_operator.manifest import Kind, MultiClusterObservability, NamedResource, new_object
from mco_operator.reconciler import Reconciler
from mco_operator.rendering import TemplateCorpus
from mco_operator.status import ReconcileResult
from mco_operator.store import InMemoryStore
from mco_operator.task import TaskService

NAMESPACE = "open-cluster-management-observability"
MCO_ID = NamedResource(Kind.MULTICLUSTER_OBSERVABILITY, None, "observability")
GRAFANA = NamedResource(Kind.DEPLOYMENT, NAMESPACE, "observability-grafana")
RECEIVE = NamedResource(Kind.STATEFUL_SET, NAMESPACE, "observability-thanos-receive-default")


def _placement_rule(*clusters: str) -> dict[str, Any]:
    rule = new_object(
        "apps.open-cluster-management.io/v1", Kind.PLACEMENT_RULE, "observability", NAMESPACE
    )
    rule["status"] = {
        "decisions": [{"clusterName": c, "clusterNamespace": c} for c in clusters]
    }
    return rule


async def _create_token_secret(store: InMemoryStore, namespace: str) -> None:
    secret = new_object(
        "v1",
        Kind.SECRET,
        "endpoint-observability-sa-token-abcde",
        namespace,
        data={"token": base64.b64encode(b"secret-token").decode()},
    )
    secret["type"] = "kubernetes.io/service-account-token"
    secret["metadata"]["annotations"] = {
        "kubernetes.io/service-account.name": "endpoint-observability-sa"
    }
    await store.create(secret)


async def _mark_ready(store: InMemoryStore) -> None:
    for resource_id in (GRAFANA, RECEIVE):
        workload = await store.get(resource_id)
        workload["status"] = {"readyReplicas": 1}
        await store.update_status(workload)


async def _conditions(store: InMemoryStore) -> dict[str, str]:
    mco = MultiClusterObservability.parse_doc(await store.get(MCO_ID))
    return {c.type: c.reason for c in mco.conditions}


@pytest.fixture
def reconciler(
    store: InMemoryStore,
    corpus: TemplateCorpus,
    config: OperatorConfig,
    task_service: TaskService,
) -> Reconciler:
    """A reconciler for the test hub."""
    return Reconciler(store, corpus, config)


async def test_not_found(reconciler: Reconciler) -> None:
    """Test a missing configuration object is ignored."""
    assert await reconciler.reconcile(MCO_ID) == ReconcileResult()


async def test_reconcile_stack(
    hub_store: Callable[..., Any], reconciler: Reconciler
) -> None:
    """Test the stack is deployed and reported as it becomes ready."""
    store: InMemoryStore = await hub_store()

    result = await reconciler.reconcile(MCO_ID)
    assert result.requeue_after == 2.0

    doc = await store.get(MCO_ID)
    assert doc["metadata"]["finalizers"] == [FINALIZER_CERT_CLEANUP, FINALIZER_ADDON_CLEANUP]
    # Defaults are written back
    assert doc["spec"]["enableDownsampling"] is True
    assert doc["spec"]["storageConfig"]["storageClass"] == "standard"
    assert doc["spec"]["storageConfig"]["receiveStorageSize"] == "10Gi"
    assert await _conditions(store) == {
        "Installing": "Installing",
        "Failed": "DeploymentNotReady",
    }

    receive = await store.get(RECEIVE)
    claim = receive["spec"]["volumeClaimTemplates"][0]["spec"]
    assert claim["storageClassName"] == "standard"
    assert claim["resources"]["requests"]["storage"] == "10Gi"
    await store.get(
        NamedResource(Kind.CERTIFICATE, NAMESPACE, "observability-server-certificate")
    )
    assert reconciler.last_distribution is not None
    assert reconciler.last_distribution.created == []

    await _mark_ready(store)
    result = await reconciler.reconcile(MCO_ID)
    assert result.requeue_after is None
    assert await _conditions(store) == {"Ready": "Ready"}


async def test_defaults_keep_user_fields(
    hub_store: Callable[..., Any], reconciler: Reconciler, mco_doc: dict[str, Any]
) -> None:
    """Test filling defaults leaves fields it does not manage untouched."""
    mco_doc["spec"]["advanced"] = {"retentionConfig": {"blockDuration": "2h"}}
    mco_doc["spec"]["observabilityAddonSpec"] = {
        "enableMetrics": True,
        "interval": 30,
        "scrapeSizeLimitBytes": 1000,
    }
    store: InMemoryStore = await hub_store()

    await reconciler.reconcile(MCO_ID)

    spec = (await store.get(MCO_ID))["spec"]
    assert spec["advanced"] == {"retentionConfig": {"blockDuration": "2h"}}
    assert spec["observabilityAddonSpec"] == {
        "enableMetrics": True,
        "interval": 30,
        "scrapeSizeLimitBytes": 1000,
    }
    assert spec["availabilityConfig"] == "Basic"
    assert spec["storageConfig"]["storageClass"] == "standard"
    assert spec["storageConfig"]["metricObjectStorage"] == {
        "name": "thanos-object-storage",
        "key": "thanos.yaml",
    }
    assert spec["storageConfig"]["receiveStorageSize"] == "10Gi"
    assert spec["retentionConfig"]["retentionResolutionRaw"] == "5d"
    assert spec["enableDownsampling"] is True


async def test_reconcile_is_stable(
    hub_store: Callable[..., Any], reconciler: Reconciler
) -> None:
    """Test a second pass only writes the status."""
    store: InMemoryStore = await hub_store()
    await store.create(_placement_rule("cluster1"))
    await _create_token_secret(store, "cluster1")
    await reconciler.reconcile(MCO_ID)

    writes = len(store.writes)
    await reconciler.reconcile(MCO_ID)
    assert store.writes[writes:] == [("update_status", MCO_ID)]


async def test_paused(hub_store: Callable[..., Any], reconciler: Reconciler) -> None:
    """Test a paused object gets its finalizers and nothing else."""
    store: InMemoryStore = await hub_store()
    doc = await store.get(MCO_ID)
    doc["metadata"]["annotations"] = {"mco-pause": "true"}
    await store.update(doc)

    assert await reconciler.reconcile(MCO_ID) == ReconcileResult()
    doc = await store.get(MCO_ID)
    assert FINALIZER_CERT_CLEANUP in doc["metadata"]["finalizers"]
    with pytest.raises(ObjectNotFoundError):
        await store.get(GRAFANA)
    assert "status" not in doc


async def test_default_storage_class(
    hub_store: Callable[..., Any], reconciler: Reconciler
) -> None:
    """Test a missing storage class falls back to the cluster default."""
    store: InMemoryStore = await hub_store()
    doc = await store.get(MCO_ID)
    doc["spec"]["storageConfig"]["storageClass"] = "missing"
    await store.update(doc)

    await reconciler.reconcile(MCO_ID)
    receive = await store.get(RECEIVE)
    claim = receive["spec"]["volumeClaimTemplates"][0]["spec"]
    assert claim["storageClassName"] == "standard"
    # The fallback is not written to the configuration object
    doc = await store.get(MCO_ID)
    assert doc["spec"]["storageConfig"]["storageClass"] == "missing"


async def test_distribute(hub_store: Callable[..., Any], reconciler: Reconciler) -> None:
    """Test work is distributed to the clusters selected by placement."""
    store: InMemoryStore = await hub_store()
    await store.create(_placement_rule("cluster1"))
    await _create_token_secret(store, "cluster1")

    await reconciler.reconcile(MCO_ID)
    assert reconciler.last_distribution is not None
    assert reconciler.last_distribution.created == ["cluster1"]
    await store.get(NamedResource(Kind.MANIFEST_WORK, "cluster1", "cluster1-observability"))


async def test_distribution_error_after_status(
    hub_store: Callable[..., Any], reconciler: Reconciler
) -> None:
    """Test a failing cluster is raised after the status is written."""
    store: InMemoryStore = await hub_store()
    await store.create(_placement_rule("cluster1", "cluster2"))
    await _create_token_secret(store, "cluster1")

    with pytest.raises(DistributionError, match="cluster2"):
        await reconciler.reconcile(MCO_ID)
    assert await _conditions(store) == {
        "Installing": "Installing",
        "Failed": "DeploymentNotReady",
    }
    await store.get(NamedResource(Kind.MANIFEST_WORK, "cluster1", "cluster1-observability"))


async def test_placement_error_after_status(
    hub_store: Callable[..., Any], reconciler: Reconciler, config: OperatorConfig
) -> None:
    """Test a missing hub endpoint is raised after the status is written."""
    store: InMemoryStore = await hub_store()
    config.hub_endpoint = None
    with pytest.raises(InputException, match="Hub endpoint"):
        await reconciler.reconcile(MCO_ID)
    assert "Failed" in await _conditions(store)


async def test_managed_clusters_disabled(
    hub_store: Callable[..., Any],
    corpus: TemplateCorpus,
    config: OperatorConfig,
    task_service: TaskService,
) -> None:
    """Test nothing is distributed when managed clusters are disabled."""
    store: InMemoryStore = await hub_store()
    await store.create(_placement_rule("cluster1"))
    config.enable_managed_cluster = False
    reconciler = Reconciler(store, corpus, config)

    await reconciler.reconcile(MCO_ID)
    doc = await store.get(MCO_ID)
    assert doc["metadata"]["finalizers"] == [FINALIZER_CERT_CLEANUP]
    assert reconciler.last_distribution is None
    assert await store.list_objects(Kind.MANIFEST_WORK) == []


async def test_finalize(hub_store: Callable[..., Any], reconciler: Reconciler) -> None:
    """Test deleting the object removes the clusters and certificates."""
    store: InMemoryStore = await hub_store()
    await store.create(_placement_rule("cluster1"))
    await _create_token_secret(store, "cluster1")
    await reconciler.reconcile(MCO_ID)

    await store.delete(MCO_ID)
    assert await reconciler.reconcile(MCO_ID) == ReconcileResult()

    with pytest.raises(ObjectNotFoundError):
        await store.get(MCO_ID)
    assert await store.list_objects(Kind.MANIFEST_WORK) == []
    assert await store.list_objects(Kind.OBSERVABILITY_ADDON) == []
    with pytest.raises(ObjectNotFoundError):
        await store.get(
            NamedResource(Kind.CLUSTER_ISSUER, None, "observability-client-ca-issuer")
        )
    assert reconciler.last_distribution is not None
    assert reconciler.last_distribution.deleted == ["cluster1"]
