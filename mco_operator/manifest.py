"""Representation of the objects managed by the observability operator.

Objects in the resource store are plain kubernetes documents (a `dict` with
`apiVersion`, `kind`, `metadata` and a body). This module provides the
identity used as a key for those documents, the finite set of kinds the
operator knows how to handle, and typed views for the objects whose contents
the operator interprets such as the `MultiClusterObservability` configuration
object and its status conditions.
"""

from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import Any, ClassVar, TypeVar, cast

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import MissingField, InvalidFieldValue
import yaml

from .exceptions import InputException

__all__ = [
    "Kind",
    "NamedResource",
    "MultiClusterObservability",
    "MultiClusterObservabilitySpec",
    "Condition",
    "PlacementDecision",
]

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T", bound="BaseManifest")


MCO_DOMAIN = "observability.open-cluster-management.io"
ADDON_API_VERSION = f"{MCO_DOMAIN}/v1beta1"
WORK_API_VERSION = "work.open-cluster-management.io/v1"
PLACEMENT_API_VERSION = "apps.open-cluster-management.io/v1"
CERT_MANAGER_API_VERSION = "cert-manager.io/v1"
RBAC_API_VERSION = "rbac.authorization.k8s.io/v1"


class Kind(StrEnum):
    """The kinds of objects the operator renders, deploys or inspects."""

    NAMESPACE = "Namespace"
    DEPLOYMENT = "Deployment"
    STATEFUL_SET = "StatefulSet"
    DAEMON_SET = "DaemonSet"
    SERVICE = "Service"
    SERVICE_ACCOUNT = "ServiceAccount"
    CONFIG_MAP = "ConfigMap"
    SECRET = "Secret"
    ROLE = "Role"
    ROLE_BINDING = "RoleBinding"
    CLUSTER_ROLE = "ClusterRole"
    CLUSTER_ROLE_BINDING = "ClusterRoleBinding"
    INGRESS = "Ingress"
    PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"
    CUSTOM_RESOURCE_DEFINITION = "CustomResourceDefinition"
    STORAGE_CLASS = "StorageClass"
    ISSUER = "Issuer"
    CLUSTER_ISSUER = "ClusterIssuer"
    CERTIFICATE = "Certificate"
    MANIFEST_WORK = "ManifestWork"
    OBSERVABILITY_ADDON = "ObservabilityAddon"
    PLACEMENT_RULE = "PlacementRule"
    MULTICLUSTER_OBSERVABILITY = "MultiClusterObservability"

    @classmethod
    def of(cls, doc: dict[str, Any]) -> "Kind | None":
        """Return the kind of the document or None when not a known kind."""
        try:
            return cls(doc.get("kind"))
        except ValueError:
            return None


CLUSTER_SCOPED_KINDS = {
    Kind.NAMESPACE,
    Kind.CLUSTER_ROLE,
    Kind.CLUSTER_ROLE_BINDING,
    Kind.CUSTOM_RESOURCE_DEFINITION,
    Kind.STORAGE_CLASS,
    Kind.CLUSTER_ISSUER,
    Kind.MULTICLUSTER_OBSERVABILITY,
}


def _check_object(doc: dict[str, Any]) -> dict[str, Any]:
    """Assert the document is a kubernetes object and return its metadata."""
    if not isinstance(doc, dict):
        raise InputException(f"Invalid object expected dictionary: {doc}")
    if not doc.get("kind"):
        raise InputException(f"Invalid object missing kind: {doc}")
    if not doc.get("apiVersion"):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not (metadata := doc.get("metadata")):
        raise InputException(f"Invalid object missing metadata: {doc}")
    if not metadata.get("name"):
        raise InputException(f"Invalid object missing metadata.name: {doc}")
    return cast(dict[str, Any], metadata)


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "NamedResource":
        """Return the identity of a kubernetes object."""
        metadata = _check_object(doc)
        kind = doc["kind"]
        namespace = metadata.get("namespace")
        if kind in CLUSTER_SCOPED_KINDS:
            namespace = None
        return cls(kind, namespace, metadata["name"])

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


def new_object(
    api_version: str,
    kind: str,
    name: str,
    namespace: str | None = None,
    labels: dict[str, str] | None = None,
    **body: Any,
) -> dict[str, Any]:
    """Build a kubernetes document with the given identity and body."""
    metadata: dict[str, Any] = {"name": name}
    if namespace is not None:
        metadata["namespace"] = namespace
    if labels:
        metadata["labels"] = dict(labels)
    return {"apiVersion": api_version, "kind": kind, "metadata": metadata, **body}


def get_annotation(doc: dict[str, Any], key: str) -> str | None:
    """Return an annotation value of the object."""
    annotations = doc.get("metadata", {}).get("annotations") or {}
    return cast(str | None, annotations.get(key))


def is_terminating(doc: dict[str, Any]) -> bool:
    """Return True if the object has been marked for deletion."""
    return bool(doc.get("metadata", {}).get("deletionTimestamp"))


def add_finalizer(doc: dict[str, Any], finalizer: str) -> bool:
    """Add the finalizer to the object, returning True if it was changed."""
    finalizers = doc.setdefault("metadata", {}).setdefault("finalizers", [])
    if finalizer in finalizers:
        return False
    finalizers.append(finalizer)
    return True


def remove_finalizer(doc: dict[str, Any], finalizer: str) -> bool:
    """Remove the finalizer from the object, returning True if it was changed."""
    finalizers = doc.get("metadata", {}).get("finalizers") or []
    if finalizer not in finalizers:
        return False
    doc["metadata"]["finalizers"] = [f for f in finalizers if f != finalizer]
    return True


def preserve_identity(desired: dict[str, Any], live: dict[str, Any]) -> None:
    """Copy the store assigned identity fields from the live object."""
    live_metadata = live.get("metadata", {})
    metadata = desired.setdefault("metadata", {})
    for key in ("resourceVersion", "uid", "creationTimestamp", "generation"):
        if (value := live_metadata.get(key)) is not None:
            metadata[key] = value


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all typed manifest objects."""

    @classmethod
    def from_yaml(cls: type[_T], content: str) -> _T:
        """Parse a serialized manifest.

        Raises:
            InputException: If the content is not a valid manifest.
        """
        try:
            doc = yaml.safe_load(content)
        except yaml.YAMLError as err:
            raise InputException(f"Invalid {cls.__name__} yaml: {err}") from err
        if not isinstance(doc, dict):
            raise InputException(f"Invalid {cls.__name__} expected dictionary: {doc}")
        try:
            return cls.from_dict(doc)
        except (MissingField, InvalidFieldValue) as err:
            raise InputException(f"Invalid {cls.__name__}: {err}") from err

    def to_yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml.dump(self.to_dict(), sort_keys=False)

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


class AvailabilityType(StrEnum):
    """The high availability level of the observability stack."""

    BASIC = "Basic"
    HIGH = "High"


@dataclass
class ObjectStorageRef(BaseManifest):
    """A reference to the secret holding the object storage configuration."""

    name: str
    """The name of the secret."""

    key: str
    """The key in the secret with the object storage configuration."""


@dataclass
class StorageConfig(BaseManifest):
    """Storage settings for the observability stack."""

    metric_object_storage: ObjectStorageRef | None = field(
        metadata=field_options(alias="metricObjectStorage"), default=None
    )
    storage_class: str | None = field(
        metadata=field_options(alias="storageClass"), default=None
    )
    alertmanager_storage_size: str | None = field(
        metadata=field_options(alias="alertmanagerStorageSize"), default=None
    )
    rule_storage_size: str | None = field(
        metadata=field_options(alias="ruleStorageSize"), default=None
    )
    compact_storage_size: str | None = field(
        metadata=field_options(alias="compactStorageSize"), default=None
    )
    receive_storage_size: str | None = field(
        metadata=field_options(alias="receiveStorageSize"), default=None
    )
    store_storage_size: str | None = field(
        metadata=field_options(alias="storeStorageSize"), default=None
    )


@dataclass
class RetentionConfig(BaseManifest):
    """Retention windows for the raw and downsampled metrics."""

    retention_resolution_raw: str | None = field(
        metadata=field_options(alias="retentionResolutionRaw"), default=None
    )
    retention_resolution_5m: str | None = field(
        metadata=field_options(alias="retentionResolution5m"), default=None
    )
    retention_resolution_1h: str | None = field(
        metadata=field_options(alias="retentionResolution1h"), default=None
    )


@dataclass
class AddonSpec(BaseManifest):
    """Settings for the metrics collection on the managed clusters."""

    enable_metrics: bool = field(
        metadata=field_options(alias="enableMetrics"), default=True
    )
    """Push metrics from the managed clusters to the hub."""

    interval: int = 60
    """Interval in seconds between metric pushes."""


@dataclass
class MultiClusterObservabilitySpec(BaseManifest):
    """The desired state of the observability stack."""

    availability_config: AvailabilityType | None = field(
        metadata=field_options(alias="availabilityConfig"), default=None
    )
    enable_downsampling: bool | None = field(
        metadata=field_options(alias="enableDownsampling"), default=None
    )
    image_pull_policy: str | None = field(
        metadata=field_options(alias="imagePullPolicy"), default=None
    )
    image_pull_secret: str | None = field(
        metadata=field_options(alias="imagePullSecret"), default=None
    )
    node_selector: dict[str, str] | None = field(
        metadata=field_options(alias="nodeSelector"), default=None
    )
    tolerations: list[dict[str, Any]] | None = None
    retention_config: RetentionConfig | None = field(
        metadata=field_options(alias="retentionConfig"), default=None
    )
    storage_config: StorageConfig | None = field(
        metadata=field_options(alias="storageConfig"), default=None
    )
    observability_addon_spec: AddonSpec | None = field(
        metadata=field_options(alias="observabilityAddonSpec"), default=None
    )


@dataclass
class Condition(BaseManifest):
    """A typed, timestamped health fact attached to the configuration object."""

    type: str
    """The type of the condition e.g. Ready or Failed."""

    status: str = ""
    """One of True, False or Unknown."""

    reason: str = ""
    """A machine readable reason for the last transition."""

    message: str = ""
    """A human readable description of the last transition."""

    last_transition_time: str | None = field(
        metadata=field_options(alias="lastTransitionTime"), default=None
    )
    """RFC 3339 time when the status last changed."""

    observed_generation: int | None = field(
        metadata=field_options(alias="observedGeneration"), default=None
    )
    """The generation of the configuration object the condition was computed for."""


@dataclass
class MultiClusterObservability(BaseManifest):
    """A representation of the top level configuration object."""

    kind: ClassVar[str] = Kind.MULTICLUSTER_OBSERVABILITY

    name: str
    """The name of the configuration object."""

    spec: MultiClusterObservabilitySpec = field(
        default_factory=MultiClusterObservabilitySpec
    )
    """The desired state of the stack."""

    annotations: dict[str, str] = field(default_factory=dict)
    """Annotations used for pausing and image overrides."""

    generation: int | None = None
    """The generation of the spec."""

    resource_version: str | None = None
    """The resource version the object was read at."""

    conditions: list[Condition] = field(default_factory=list)
    """The status conditions of the stack."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "MultiClusterObservability":
        """Parse a MultiClusterObservability from a kubernetes resource object."""
        metadata = _check_object(doc)
        if doc["kind"] != cls.kind:
            raise InputException(f"Invalid {cls.__name__} unexpected kind: {doc}")
        try:
            spec = MultiClusterObservabilitySpec.from_dict(doc.get("spec") or {})
            conditions = [
                Condition.from_dict(c)
                for c in (doc.get("status") or {}).get("conditions") or ()
            ]
        except (MissingField, InvalidFieldValue, ValueError) as err:
            raise InputException(
                f"Invalid {cls.__name__} {metadata['name']}: {err}"
            ) from err
        return cls(
            name=metadata["name"],
            spec=spec,
            annotations=dict(metadata.get("annotations") or {}),
            generation=metadata.get("generation"),
            resource_version=metadata.get("resourceVersion"),
            conditions=conditions,
        )

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, None, self.name)

    @property
    def addon_spec(self) -> AddonSpec:
        return self.spec.observability_addon_spec or AddonSpec()

    @property
    def storage(self) -> StorageConfig:
        return self.spec.storage_config or StorageConfig()

    @property
    def retention(self) -> RetentionConfig:
        return self.spec.retention_config or RetentionConfig()

    def find_condition(self, condition_type: str) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def status_dict(self) -> dict[str, Any]:
        """Return the status body as written to the store."""
        return {"conditions": [c.to_dict() for c in self.conditions]}


@dataclass
class PlacementDecision(BaseManifest):
    """A cluster selected by the placement policy."""

    cluster_name: str = field(metadata=field_options(alias="clusterName"))
    """The name of the managed cluster."""

    cluster_namespace: str = field(metadata=field_options(alias="clusterNamespace"))
    """The namespace on the hub that holds the managed cluster's resources."""

    @classmethod
    def parse_placement_rule(cls, doc: dict[str, Any]) -> list["PlacementDecision"]:
        """Parse the decisions from the status of a PlacementRule."""
        _check_object(doc)
        decisions = (doc.get("status") or {}).get("decisions") or ()
        try:
            return [cls.from_dict(d) for d in decisions]
        except (MissingField, InvalidFieldValue) as err:
            raise InputException(f"Invalid PlacementRule decisions: {err}") from err
