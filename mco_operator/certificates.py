"""Certificate authority and certificate objects for the observability stack.

Two chains are managed through cert-manager objects:

- The server chain in the stack namespace: a self signed bootstrap issuer
  signs a CA certificate, a CA issuer backed by that CA secret signs the
  server and grafana leaf certificates.
- The client chain in the issuer namespace: a self signed bootstrap issuer
  signs a client CA certificate and a cluster wide issuer is backed by it.

The cluster wide and cross namespace objects can't be garbage collected with
the configuration object, so a finalizer on the configuration object blocks
its removal until `cleanup` has deleted them.
"""

import ipaddress
import logging
from typing import Any

from .compare import deep_derivative
from .config import FINALIZER_CERT_CLEANUP, OperatorConfig
from .exceptions import ObjectNotFoundError
from .manifest import (
    CERT_MANAGER_API_VERSION,
    Kind,
    NamedResource,
    new_object,
    preserve_identity,
    remove_finalizer,
)
from .store import Store

__all__ = [
    "CertificateManager",
    "split_hosts",
]

_LOGGER = logging.getLogger(__name__)

SERVER_SELF_SIGN_ISSUER = "observability-server-selfsign-issuer"
SERVER_CA_ISSUER = "observability-server-ca-issuer"
SERVER_CA_CERTIFICATE = "observability-server-ca-certificate"
SERVER_CA_CERTS = "observability-server-ca-certs"
SERVER_CERTIFICATE = "observability-server-certificate"
SERVER_CERTS = "observability-server-certs"

CLIENT_SELF_SIGN_ISSUER = "observability-client-selfsign-issuer"
CLIENT_CA_ISSUER = "observability-client-ca-issuer"
CLIENT_CA_CERTIFICATE = "observability-client-ca-certificate"
CLIENT_CA_CERTS = "observability-client-ca-certs"

GRAFANA_CERTIFICATE = "observability-grafana-certificate"
GRAFANA_CERTS = "observability-grafana-certs"
GRAFANA_SUBJECT = "grafana"

SERVER_SUBJECT = "observability-server-certificate"
SERVER_CA_SUBJECT = "observability-server-ca-certificate"
CLIENT_CA_SUBJECT = "observability-client-ca-certificate"

OBSERVATORIUM_API_SERVICE = "observability-observatorium-api"

CA_DURATION = "43800h"  # 5 years
LEAF_DURATION = "8760h"  # 1 year


def split_hosts(hosts: list[str]) -> tuple[list[str], list[str]]:
    """Split hosts into DNS names and IP addresses."""
    dns_names: list[str] = []
    ip_addresses: list[str] = []
    for host in hosts:
        try:
            ipaddress.ip_address(host)
        except ValueError:
            dns_names.append(host)
        else:
            ip_addresses.append(host)
    return dns_names, ip_addresses


def _issuer(name: str, namespace: str | None, spec: dict[str, Any]) -> dict[str, Any]:
    kind = Kind.ISSUER if namespace else Kind.CLUSTER_ISSUER
    return new_object(CERT_MANAGER_API_VERSION, kind, name, namespace, spec=spec)


def _certificate(
    name: str,
    namespace: str,
    *,
    secret_name: str,
    common_name: str,
    issuer: str,
    issuer_kind: str = Kind.ISSUER,
    is_ca: bool = False,
    hosts: list[str] | None = None,
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "secretName": secret_name,
        "commonName": common_name,
        "duration": CA_DURATION if is_ca else LEAF_DURATION,
        "issuerRef": {"name": issuer, "kind": str(issuer_kind)},
    }
    if is_ca:
        spec["isCA"] = True
    if hosts:
        dns_names, ip_addresses = split_hosts(hosts)
        if dns_names:
            spec["dnsNames"] = dns_names
        if ip_addresses:
            spec["ipAddresses"] = ip_addresses
    return new_object(CERT_MANAGER_API_VERSION, Kind.CERTIFICATE, name, namespace, spec=spec)


class CertificateManager:
    """Creates and cleans up the certificate objects of the stack."""

    def __init__(self, store: Store, config: OperatorConfig) -> None:
        """Initialize the CertificateManager."""
        self._store = store
        self._config = config

    def server_hosts(self) -> list[str]:
        """Hosts the server certificate is valid for."""
        namespace = self._config.namespace
        hosts = [
            OBSERVATORIUM_API_SERVICE,
            f"{OBSERVATORIUM_API_SERVICE}.{namespace}.svc",
        ]
        if self._config.hub_endpoint:
            hosts.append(self._config.hub_endpoint.split("://")[-1].split(":")[0])
        return hosts

    def desired_objects(self) -> list[dict[str, Any]]:
        """Return the certificate objects in the order they must be created."""
        namespace = self._config.namespace
        issuer_namespace = self._config.issuer_namespace
        return [
            _issuer(SERVER_SELF_SIGN_ISSUER, namespace, {"selfSigned": {}}),
            _certificate(
                SERVER_CA_CERTIFICATE,
                namespace,
                secret_name=SERVER_CA_CERTS,
                common_name=SERVER_CA_SUBJECT,
                issuer=SERVER_SELF_SIGN_ISSUER,
                is_ca=True,
            ),
            _issuer(SERVER_CA_ISSUER, namespace, {"ca": {"secretName": SERVER_CA_CERTS}}),
            _certificate(
                SERVER_CERTIFICATE,
                namespace,
                secret_name=SERVER_CERTS,
                common_name=SERVER_SUBJECT,
                issuer=SERVER_CA_ISSUER,
                hosts=self.server_hosts(),
            ),
            _issuer(CLIENT_SELF_SIGN_ISSUER, issuer_namespace, {"selfSigned": {}}),
            _certificate(
                CLIENT_CA_CERTIFICATE,
                issuer_namespace,
                secret_name=CLIENT_CA_CERTS,
                common_name=CLIENT_CA_SUBJECT,
                issuer=CLIENT_SELF_SIGN_ISSUER,
                is_ca=True,
            ),
            _issuer(CLIENT_CA_ISSUER, None, {"ca": {"secretName": CLIENT_CA_CERTS}}),
            _certificate(
                GRAFANA_CERTIFICATE,
                namespace,
                secret_name=GRAFANA_CERTS,
                common_name=GRAFANA_SUBJECT,
                issuer=CLIENT_CA_ISSUER,
                issuer_kind=Kind.CLUSTER_ISSUER,
            ),
        ]

    async def ensure(self) -> None:
        """Create or update every certificate object."""
        for desired in self.desired_objects():
            await self._create_or_update(desired)

    async def _create_or_update(self, desired: dict[str, Any]) -> None:
        resource_id = NamedResource.from_doc(desired)
        try:
            live = await self._store.get(resource_id)
        except ObjectNotFoundError:
            _LOGGER.info("Creating %s", resource_id)
            await self._store.create(desired)
            return
        if deep_derivative(desired["spec"], live.get("spec")):
            _LOGGER.debug("%s is unchanged", resource_id)
            return
        _LOGGER.info("Updating %s", resource_id)
        preserve_identity(desired, live)
        await self._store.update(desired)

    async def cleanup(self, mco_doc: dict[str, Any]) -> dict[str, Any]:
        """Delete the cross namespace objects and strip the cleanup finalizer.

        Returns:
            The configuration object as written to the store.
        """
        for resource_id in (
            NamedResource(Kind.CLUSTER_ISSUER, None, CLIENT_CA_ISSUER),
            NamedResource(Kind.ISSUER, self._config.issuer_namespace, CLIENT_SELF_SIGN_ISSUER),
            NamedResource(
                Kind.CERTIFICATE, self._config.issuer_namespace, CLIENT_CA_CERTIFICATE
            ),
        ):
            try:
                await self._store.delete(resource_id)
            except ObjectNotFoundError:
                _LOGGER.debug("%s already deleted", resource_id)
            else:
                _LOGGER.info("Deleted %s", resource_id)
        if not remove_finalizer(mco_doc, FINALIZER_CERT_CLEANUP):
            return mco_doc
        return await self._store.update(mco_doc)
