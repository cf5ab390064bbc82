"""Access token bootstrap for the managed cluster agents.

Each managed cluster reaches the hub with the token of a service account in
its cluster namespace. The bootstrap is a sequence of idempotent steps run in
order on every reconcile:

1. A ClusterRoleBinding granting read access to the configuration objects.
2. A RoleBinding granting access to the addon objects in the namespace.
3. The ServiceAccount itself.
4. A token secret for the ServiceAccount, populated by the token controller.

A step that can't complete raises `BootstrapError` naming the step. The next
reconcile starts again from the first step.
"""

import base64
import binascii
from dataclasses import dataclass
from enum import StrEnum
import logging
from typing import Any

import yaml

from mco_operator.config import ADDON_NAMESPACE, OWNER_LABEL, OWNER_LABEL_VALUE
from mco_operator.deploying import Deployer
from mco_operator.exceptions import BootstrapError, OperatorException
from mco_operator.manifest import (
    MCO_DOMAIN,
    RBAC_API_VERSION,
    Kind,
    NamedResource,
    get_annotation,
    new_object,
)
from mco_operator.store import Store

__all__ = [
    "AccessToken",
    "BootstrapStep",
    "TokenBootstrap",
    "build_kubeconfig_secret",
]

_LOGGER = logging.getLogger(__name__)

MCO_ROLE_NAME = "endpoint-observability-mco-role"
MCO_ROLE_BINDING_SUFFIX = "-endpoint-observability-mco-rolebinding"
RES_ROLE_NAME = "endpoint-observability-res-role"
RES_ROLE_BINDING_NAME = "endpoint-observability-res-rolebinding"
SERVICE_ACCOUNT_NAME = "endpoint-observability-sa"
TOKEN_SECRET_NAME = f"{SERVICE_ACCOUNT_NAME}-token"
TOKEN_SECRET_TYPE = "kubernetes.io/service-account-token"
SERVICE_ACCOUNT_ANNOTATION = "kubernetes.io/service-account.name"

KUBECONFIG_NAME = "hub-kube-config"
KUBECONFIG_KEY = "kubeconfig"
KUBECONFIG_CLUSTER = "default-cluster"
KUBECONFIG_USER = "default-user"
KUBECONFIG_CONTEXT = "default-context"

_OWNER_LABELS = {OWNER_LABEL: OWNER_LABEL_VALUE}


class BootstrapStep(StrEnum):
    """The ordered steps of the access token bootstrap."""

    ENSURE_CLUSTER_ROLE_BINDING = "EnsureClusterRoleBinding"
    ENSURE_ROLE_BINDING = "EnsureRoleBinding"
    ENSURE_SERVICE_ACCOUNT = "EnsureServiceAccount"
    FIND_TOKEN_SECRET = "FindTokenSecret"


@dataclass(frozen=True)
class AccessToken:
    """A bearer token for a managed cluster to access the hub."""

    token: str
    ca_crt: str | None = None


def _rule(api_group: str, resources: list[str], verbs: list[str]) -> dict[str, Any]:
    return {"apiGroups": [api_group], "resources": resources, "verbs": verbs}


def global_roles() -> list[dict[str, Any]]:
    """Return the cluster roles shared by every managed cluster."""
    return [
        new_object(
            RBAC_API_VERSION,
            Kind.CLUSTER_ROLE,
            MCO_ROLE_NAME,
            labels=_OWNER_LABELS,
            rules=[
                _rule(MCO_DOMAIN, ["multiclusterobservabilities"], ["watch", "list", "get"]),
            ],
        ),
        new_object(
            RBAC_API_VERSION,
            Kind.CLUSTER_ROLE,
            RES_ROLE_NAME,
            labels=_OWNER_LABELS,
            rules=[
                _rule(
                    MCO_DOMAIN,
                    ["observabilityaddons", "observabilityaddons/status"],
                    ["watch", "list", "get", "update"],
                ),
                _rule("", ["pods"], ["watch", "list", "get"]),
                _rule(
                    "coordination.k8s.io",
                    ["leases"],
                    ["watch", "list", "get", "create", "update"],
                ),
            ],
        ),
    ]


def _subject(namespace: str) -> dict[str, Any]:
    return {"kind": "ServiceAccount", "name": SERVICE_ACCOUNT_NAME, "namespace": namespace}


def _decode(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return base64.b64decode(value).decode()
    except (binascii.Error, UnicodeDecodeError):
        _LOGGER.warning("Token secret value is not valid base64")
        return None


class TokenBootstrap:
    """Runs the access token bootstrap for a cluster namespace."""

    def __init__(self, store: Store) -> None:
        """Initialize the TokenBootstrap."""
        self._store = store
        self._deployer = Deployer(store)

    async def ensure_global_roles(self) -> None:
        """Create or update the cluster roles shared by every managed cluster."""
        for role in global_roles():
            await self._deployer.deploy(role)

    async def run(self, cluster_namespace: str) -> AccessToken:
        """Run every step and return the access token for the cluster.

        Raises:
            BootstrapError: If a step can't complete.
        """
        steps = (
            (BootstrapStep.ENSURE_CLUSTER_ROLE_BINDING, self._ensure_cluster_role_binding),
            (BootstrapStep.ENSURE_ROLE_BINDING, self._ensure_role_binding),
            (BootstrapStep.ENSURE_SERVICE_ACCOUNT, self._ensure_service_account),
        )
        for step, func in steps:
            _LOGGER.debug("Bootstrap %s: %s", cluster_namespace, step)
            try:
                await func(cluster_namespace)
            except OperatorException as err:
                raise BootstrapError(cluster_namespace, step, str(err)) from err
        return await self._find_token(cluster_namespace)

    async def _ensure_cluster_role_binding(self, namespace: str) -> None:
        await self._deployer.deploy(
            new_object(
                RBAC_API_VERSION,
                Kind.CLUSTER_ROLE_BINDING,
                namespace + MCO_ROLE_BINDING_SUFFIX,
                labels=_OWNER_LABELS,
                roleRef={
                    "apiGroup": "rbac.authorization.k8s.io",
                    "kind": "ClusterRole",
                    "name": MCO_ROLE_NAME,
                },
                subjects=[_subject(namespace)],
            )
        )

    async def _ensure_role_binding(self, namespace: str) -> None:
        await self._deployer.deploy(
            new_object(
                RBAC_API_VERSION,
                Kind.ROLE_BINDING,
                RES_ROLE_BINDING_NAME,
                namespace,
                labels=_OWNER_LABELS,
                roleRef={
                    "apiGroup": "rbac.authorization.k8s.io",
                    "kind": "ClusterRole",
                    "name": RES_ROLE_NAME,
                },
                subjects=[_subject(namespace)],
            )
        )

    async def _ensure_service_account(self, namespace: str) -> None:
        await self._deployer.deploy(
            new_object(
                "v1",
                Kind.SERVICE_ACCOUNT,
                SERVICE_ACCOUNT_NAME,
                namespace,
                labels=_OWNER_LABELS,
            )
        )

    async def _find_token(self, namespace: str) -> AccessToken:
        """Find the populated token secret of the service account.

        A token secret is requested when none exists. The token controller
        fills it in asynchronously so the bootstrap fails until then.
        """
        step = BootstrapStep.FIND_TOKEN_SECRET
        secrets = await self._store.list_objects(Kind.SECRET, namespace)
        candidates = [
            s
            for s in secrets
            if s.get("type") == TOKEN_SECRET_TYPE
            and get_annotation(s, SERVICE_ACCOUNT_ANNOTATION) == SERVICE_ACCOUNT_NAME
        ]
        for secret in candidates:
            data = secret.get("data") or {}
            if token := _decode(data.get("token")):
                return AccessToken(token=token, ca_crt=_decode(data.get("ca.crt")))
        if not candidates:
            _LOGGER.info("Requesting token secret for %s/%s", namespace, SERVICE_ACCOUNT_NAME)
            request = new_object("v1", Kind.SECRET, TOKEN_SECRET_NAME, namespace)
            request["metadata"]["annotations"] = {
                SERVICE_ACCOUNT_ANNOTATION: SERVICE_ACCOUNT_NAME
            }
            request["type"] = TOKEN_SECRET_TYPE
            try:
                await self._store.create(request)
            except OperatorException as err:
                raise BootstrapError(namespace, step, str(err)) from err
        raise BootstrapError(
            namespace,
            step,
            f"token secret for service account {SERVICE_ACCOUNT_NAME} is not populated",
        )

    async def cleanup(self, namespace: str) -> None:
        """Delete the bindings and service account of a cluster namespace."""
        for resource_id in (
            NamedResource(Kind.CLUSTER_ROLE_BINDING, None, namespace + MCO_ROLE_BINDING_SUFFIX),
            NamedResource(Kind.ROLE_BINDING, namespace, RES_ROLE_BINDING_NAME),
            NamedResource(Kind.SERVICE_ACCOUNT, namespace, SERVICE_ACCOUNT_NAME),
        ):
            await self._deployer.undeploy(resource_id)


def build_kubeconfig(server: str, access_token: AccessToken, namespace: str) -> dict[str, Any]:
    """Return a kubeconfig document for the access token."""
    cluster: dict[str, Any] = {"server": server}
    if access_token.ca_crt:
        cluster["certificate-authority-data"] = base64.b64encode(
            access_token.ca_crt.encode()
        ).decode()
    else:
        cluster["insecure-skip-tls-verify"] = True
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": KUBECONFIG_CLUSTER, "cluster": cluster}],
        "users": [{"name": KUBECONFIG_USER, "user": {"token": access_token.token}}],
        "contexts": [
            {
                "name": KUBECONFIG_CONTEXT,
                "context": {
                    "cluster": KUBECONFIG_CLUSTER,
                    "user": KUBECONFIG_USER,
                    "namespace": namespace,
                },
            }
        ],
        "current-context": KUBECONFIG_CONTEXT,
    }


def build_kubeconfig_secret(
    server: str, access_token: AccessToken, namespace: str
) -> dict[str, Any]:
    """Return the kubeconfig secret shipped to a managed cluster.

    Args:
        server: URL of the hub API server.
        access_token: The token of the cluster's service account.
        namespace: The cluster namespace on the hub.
    """
    content = yaml.dump(build_kubeconfig(server, access_token, namespace), sort_keys=False)
    return new_object(
        "v1",
        Kind.SECRET,
        KUBECONFIG_NAME,
        ADDON_NAMESPACE,
        data={KUBECONFIG_KEY: base64.b64encode(content.encode()).decode()},
    )
