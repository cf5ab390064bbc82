"""Renderer of the configuration object into desired manifests.

Rendering is a pure function of the configuration object and the template
corpus. Each template is copied, its `{{NAME}}` placeholders are substituted
and then a kind specific handler patches it:

- Deployments and StatefulSets get the pod level patches (images, pull
  secrets, node selector, tolerations), the CR label and a replica count from
  the availability level.
- Namespaced kinds are moved into the stack namespace unless the template has
  an `update-namespace: "false"` annotation.
- ClusterRoleBinding subjects are moved into the stack namespace, except
  for `Group` subjects.
- Any other kind is passed through.

A placeholder without a value fails the whole render so that no partial set
of manifests is ever applied.
"""

import logging
from typing import Any

from mco_operator.config import (
    ADDON_NAMESPACE,
    ANNOTATION_IMAGE_REPOSITORY,
    ANNOTATION_UPDATE_NAMESPACE,
    CR_LABEL,
    DEFAULT_IMAGE_REPOSITORY,
    DEPLOYMENT_REPLICAS,
    STATEFUL_SET_REPLICAS,
    OperatorConfig,
)
from mco_operator.context import trace_context
from mco_operator.manifest import (
    CLUSTER_SCOPED_KINDS,
    Kind,
    MultiClusterObservability,
    NamedResource,
    get_annotation,
)

from . import patching
from .templates import (
    BASE_GROUP,
    ENDPOINT_GROUP,
    OBJECT_STORAGE_GROUP,
    TemplateCorpus,
)

__all__ = [
    "Renderer",
    "update_namespace_allowed",
]

_LOGGER = logging.getLogger(__name__)

ENDPOINT_OPERATOR_NAME = "endpoint-observability-operator"
ENDPOINT_OPERATOR_SA = "endpoint-observability-operator-sa"
ENDPOINT_OPERATOR_BINDING = "open-cluster-management:endpoint-observability-operator-rb"
COLLECTOR_IMAGE_ENV = "COLLECTOR_IMAGE"
IMAGE_PULL_SECRET_PLACEHOLDER = "REPLACE_WITH_IMAGEPULLSECRET"

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}


def update_namespace_allowed(doc: dict[str, Any]) -> bool:
    """Return False if the template opts out of namespace rewriting.

    An unparsable annotation value also opts out.
    """
    value = get_annotation(doc, ANNOTATION_UPDATE_NAMESPACE)
    if not value:
        return True
    if value in _TRUE_VALUES:
        return True
    if value not in _FALSE_VALUES:
        _LOGGER.warning(
            "Invalid %s annotation value %r on %s",
            ANNOTATION_UPDATE_NAMESPACE,
            value,
            NamedResource.from_doc(doc),
        )
    return False


def placeholder_values(
    mco: MultiClusterObservability, config: OperatorConfig
) -> dict[str, str]:
    """Return the values for template placeholders that are set."""
    spec = mco.spec
    storage = mco.storage
    retention = mco.retention
    values = {
        "IMAGEREPO": mco.annotations.get(ANNOTATION_IMAGE_REPOSITORY)
        or DEFAULT_IMAGE_REPOSITORY,
        "NAMESPACE": config.namespace,
        "MULTICLUSTEROBSERVABILITY_CR_NAME": mco.name,
        "PULLSECRET": spec.image_pull_secret,
        "PULLPOLICY": spec.image_pull_policy,
        "STORAGECLASS": storage.storage_class,
        "ALERTMANAGER_STORAGE_SIZE": storage.alertmanager_storage_size,
        "RULE_STORAGE_SIZE": storage.rule_storage_size,
        "COMPACT_STORAGE_SIZE": storage.compact_storage_size,
        "RECEIVE_STORAGE_SIZE": storage.receive_storage_size,
        "STORE_STORAGE_SIZE": storage.store_storage_size,
        "RETENTION_RAW": retention.retention_resolution_raw,
        "RETENTION_5M": retention.retention_resolution_5m,
        "RETENTION_1H": retention.retention_resolution_1h,
    }
    return {key: value for key, value in values.items() if value is not None}


class Renderer:
    """Renders templates for a configuration object."""

    def __init__(self, corpus: TemplateCorpus, config: OperatorConfig) -> None:
        """Initialize the Renderer."""
        self._corpus = corpus
        self._config = config

    async def render(self, mco: MultiClusterObservability) -> list[dict[str, Any]]:
        """Render the hub stack manifests in stable template order.

        Raises:
            RenderException: If a template is invalid or a placeholder has no value.
        """
        with trace_context("render"):
            templates = await self._corpus.load(BASE_GROUP)
            if self._corpus.has_group(OBJECT_STORAGE_GROUP):
                templates.extend(await self._corpus.load(OBJECT_STORAGE_GROUP))
            values = placeholder_values(mco, self._config)
            manifests = [self._render_template(t, mco, values) for t in templates]
        _LOGGER.info("Rendered %d manifests for %s", len(manifests), mco.resource_id)
        return manifests

    def _render_template(
        self,
        doc: dict[str, Any],
        mco: MultiClusterObservability,
        values: dict[str, str],
    ) -> dict[str, Any]:
        resource_id = NamedResource.from_doc(doc)
        patching.substitute(doc, values, str(resource_id))
        namespace = self._config.namespace
        match Kind.of(doc):
            case Kind.DEPLOYMENT:
                patching.apply_pod_patches(doc, mco)
                patching.apply_label_patches(doc, mco)
                patching.set_replicas(
                    doc, DEPLOYMENT_REPLICAS, mco.spec.availability_config
                )
                if update_namespace_allowed(doc):
                    doc["metadata"]["namespace"] = namespace
            case Kind.STATEFUL_SET:
                patching.apply_pod_patches(doc, mco)
                patching.apply_label_patches(doc, mco)
                if update_namespace_allowed(doc):
                    doc["metadata"]["namespace"] = namespace
                patching.set_replicas(
                    doc, STATEFUL_SET_REPLICAS, mco.spec.availability_config
                )
            case (
                Kind.DAEMON_SET
                | Kind.SERVICE
                | Kind.SERVICE_ACCOUNT
                | Kind.CONFIG_MAP
                | Kind.SECRET
                | Kind.ROLE
                | Kind.ROLE_BINDING
                | Kind.INGRESS
                | Kind.PERSISTENT_VOLUME_CLAIM
            ):
                if update_namespace_allowed(doc):
                    doc["metadata"]["namespace"] = namespace
            case Kind.CLUSTER_ROLE:
                labels = doc["metadata"].setdefault("labels", {})
                labels[CR_LABEL] = mco.name
            case Kind.CLUSTER_ROLE_BINDING:
                self._render_cluster_role_binding(doc, namespace)
            case _:
                _LOGGER.debug("Passing through template %s", resource_id)
        return doc

    def _render_cluster_role_binding(self, doc: dict[str, Any], namespace: str) -> None:
        if not (subjects := doc.get("subjects")):
            return
        subject = subjects[0]
        if subject.get("kind") == "Group":
            return
        if update_namespace_allowed(doc):
            subject["namespace"] = namespace

    async def render_endpoint_operator(
        self, mco: MultiClusterObservability
    ) -> list[dict[str, Any]]:
        """Render the operator manifests shipped to every managed cluster.

        Namespaced objects are placed in the addon namespace on the managed
        cluster.
        """
        with trace_context("render-endpoint"):
            templates = await self._corpus.load(ENDPOINT_GROUP)
            values = placeholder_values(mco, self._config)
            return [self._render_endpoint_template(t, mco, values) for t in templates]

    def _render_endpoint_template(
        self,
        doc: dict[str, Any],
        mco: MultiClusterObservability,
        values: dict[str, str],
    ) -> dict[str, Any]:
        resource_id = NamedResource.from_doc(doc)
        patching.substitute(doc, values, str(resource_id))
        kind = Kind.of(doc)
        if kind not in CLUSTER_SCOPED_KINDS:
            doc["metadata"]["namespace"] = ADDON_NAMESPACE
        name = resource_id.name
        match kind:
            case Kind.DEPLOYMENT if name == ENDPOINT_OPERATOR_NAME:
                pod_spec = doc["spec"]["template"]["spec"]
                for container in pod_spec.get("containers") or ():
                    if container.get("name") != ENDPOINT_OPERATOR_NAME:
                        continue
                    self._patch_endpoint_container(container, mco)
            case Kind.SERVICE_ACCOUNT if name == ENDPOINT_OPERATOR_SA:
                for pull_secret in doc.get("imagePullSecrets") or ():
                    if pull_secret.get("name") == IMAGE_PULL_SECRET_PLACEHOLDER:
                        pull_secret["name"] = mco.spec.image_pull_secret
                        break
            case Kind.CLUSTER_ROLE_BINDING if name == ENDPOINT_OPERATOR_BINDING:
                if subjects := doc.get("subjects"):
                    subjects[0]["namespace"] = ADDON_NAMESPACE
            case _:
                pass
        return doc

    def _patch_endpoint_container(
        self, container: dict[str, Any], mco: MultiClusterObservability
    ) -> None:
        if image := container.get("image"):
            container["image"] = (
                patching.replace_image(
                    mco.annotations, image, "endpoint_monitoring_operator"
                )
                or image
            )
        if mco.spec.image_pull_policy:
            container["imagePullPolicy"] = mco.spec.image_pull_policy
        for env in container.get("env") or ():
            if env.get("name") == COLLECTOR_IMAGE_ENV and (value := env.get("value")):
                env["value"] = (
                    patching.replace_image(mco.annotations, value, "metrics_collector")
                    or value
                )
