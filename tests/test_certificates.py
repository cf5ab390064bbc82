"""Tests for the certificate objects of the stack."""

from typing import Any

import pytest

from mco_operator.certificates import CertificateManager, split_hosts
from mco_operator.config import (
    FINALIZER_ADDON_CLEANUP,
    FINALIZER_CERT_CLEANUP,
    OperatorConfig,
)
from mco_operator.exceptions import ObjectNotFoundError
from mco_operator.manifest import Kind, NamedResource
from mco_operator.store import InMemoryStore

NAMESPACE = "open-cluster-management-observability"
ISSUER_NAMESPACE = "open-cluster-management-issuer"

SERVER_CERTIFICATE = NamedResource(
    Kind.CERTIFICATE, NAMESPACE, "observability-server-certificate"
)
CLIENT_ISSUER = NamedResource(Kind.CLUSTER_ISSUER, None, "observability-client-ca-issuer")


def test_split_hosts() -> None:
    """Test hosts are split into DNS names and IP addresses."""
    assert split_hosts(["example.com", "10.0.0.1", "::1", "svc"]) == (
        ["example.com", "svc"],
        ["10.0.0.1", "::1"],
    )


def test_desired_objects(config: OperatorConfig) -> None:
    """Test the objects and the namespaces they are placed in."""
    objects = CertificateManager(InMemoryStore(), config).desired_objects()
    assert [str(NamedResource.from_doc(obj)) for obj in objects] == [
        f"Issuer/{NAMESPACE}/observability-server-selfsign-issuer",
        f"Certificate/{NAMESPACE}/observability-server-ca-certificate",
        f"Issuer/{NAMESPACE}/observability-server-ca-issuer",
        f"Certificate/{NAMESPACE}/observability-server-certificate",
        f"Issuer/{ISSUER_NAMESPACE}/observability-client-selfsign-issuer",
        f"Certificate/{ISSUER_NAMESPACE}/observability-client-ca-certificate",
        "ClusterIssuer/observability-client-ca-issuer",
        f"Certificate/{NAMESPACE}/observability-grafana-certificate",
    ]


def test_server_hosts(config: OperatorConfig) -> None:
    """Test the hub endpoint is added to the server certificate hosts."""
    server = CertificateManager(InMemoryStore(), config).desired_objects()[3]
    assert server["spec"]["dnsNames"] == [
        "observability-observatorium-api",
        f"observability-observatorium-api.{NAMESPACE}.svc",
        "observatorium-api.apps.hub.example.com",
    ]
    assert "ipAddresses" not in server["spec"]

    config.hub_endpoint = "https://10.1.2.3:8443"
    server = CertificateManager(InMemoryStore(), config).desired_objects()[3]
    assert server["spec"]["ipAddresses"] == ["10.1.2.3"]


async def test_ensure(store: InMemoryStore, config: OperatorConfig) -> None:
    """Test objects are created once and drift is reverted."""
    manager = CertificateManager(store, config)
    await manager.ensure()
    assert len(store.writes) == 8
    assert all(verb == "create" for verb, _ in store.writes)

    await manager.ensure()
    assert len(store.writes) == 8

    live = await store.get(SERVER_CERTIFICATE)
    live["spec"]["commonName"] = "changed"
    await store.update(live)

    await manager.ensure()
    assert store.writes[-1] == ("update", SERVER_CERTIFICATE)
    live = await store.get(SERVER_CERTIFICATE)
    assert live["spec"]["commonName"] == "observability-server-certificate"


async def test_cleanup(
    store: InMemoryStore, config: OperatorConfig, mco_doc: dict[str, Any]
) -> None:
    """Test cleanup removes the cross namespace objects and the finalizer."""
    manager = CertificateManager(store, config)
    await manager.ensure()
    mco_doc["metadata"]["finalizers"] = [FINALIZER_CERT_CLEANUP, FINALIZER_ADDON_CLEANUP]
    mco_doc = await store.create(mco_doc)

    updated = await manager.cleanup(mco_doc)
    assert updated["metadata"]["finalizers"] == [FINALIZER_ADDON_CLEANUP]
    with pytest.raises(ObjectNotFoundError):
        await store.get(CLIENT_ISSUER)
    # Objects in the stack namespace are left to garbage collection
    await store.get(SERVER_CERTIFICATE)

    # A second cleanup has nothing left to do
    writes = len(store.writes)
    assert await manager.cleanup(updated) == updated
    assert len(store.writes) == writes
