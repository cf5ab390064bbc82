"""Configuration for the observability operator.

Names, label and annotation keys and defaults shared by the components live
here. Settings that vary per deployment of the operator are read from the
environment once into an `OperatorConfig` and passed to each component.
"""

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path

from .manifest import (
    AddonSpec,
    AvailabilityType,
    MultiClusterObservability,
    RetentionConfig,
    StorageConfig,
)

__all__ = [
    "OperatorConfig",
    "fill_defaults",
]

_LOGGER = logging.getLogger(__name__)


DEFAULT_NAMESPACE = "open-cluster-management-observability"
DEFAULT_POD_NAMESPACE = "open-cluster-management"
DEFAULT_TEMPLATES_PATH = "/usr/local/manifests"
DEFAULT_HUB_API_SERVER = "https://kubernetes.default.svc"
ADDON_NAMESPACE = "open-cluster-management-addon-observability"
LOCAL_CLUSTER = "local-cluster"

# Annotations on the configuration object
ANNOTATION_PAUSE = "mco-pause"
ANNOTATION_IMAGE_REPOSITORY = "mco-imageRepository"
ANNOTATION_IMAGE_TAG_SUFFIX = "mco-imageTagSuffix"

# Annotations on templates and live objects
ANNOTATION_UPDATE_NAMESPACE = "update-namespace"
ANNOTATION_SKIP_CREATION = "skip-creation-if-exist"
ANNOTATION_DEFAULT_STORAGE_CLASS = "storageclass.kubernetes.io/is-default-class"

CR_LABEL = "observability.open-cluster-management.io/name"
OWNER_LABEL = "owner"
OWNER_LABEL_VALUE = "multicluster-observability-operator"

FINALIZER_CERT_CLEANUP = "observability.open-cluster-management.io/cert-cleanup"
FINALIZER_ADDON_CLEANUP = "observability.open-cluster-management.io/addon-cleanup"

PLACEMENT_RULE_NAME = "observability"

DEFAULT_STORAGE_CLASS = "gp2"
DEFAULT_STORAGE_SIZE = "10Gi"
DEFAULT_RETENTION_RAW = "5d"
DEFAULT_RETENTION_5M = "14d"
DEFAULT_RETENTION_1H = "30d"
DEFAULT_ADDON_INTERVAL = 60
DEFAULT_IMAGE_PULL_SECRET = "multiclusterhub-operator-pull-secret"
DEFAULT_IMAGE_PULL_POLICY = "Always"
DEFAULT_IMAGE_REPOSITORY = "quay.io/open-cluster-management"

# Replicas per availability level for stateless and stateful workloads
DEPLOYMENT_REPLICAS = {
    AvailabilityType.BASIC: 1,
    AvailabilityType.HIGH: 2,
}
STATEFUL_SET_REPLICAS = {
    AvailabilityType.BASIC: 1,
    AvailabilityType.HIGH: 3,
}

# Requeue intervals in seconds
REQUEUE_STATUS_CONFLICT = 1.0
REQUEUE_NOT_READY = 2.0
REQUEUE_TERMINATING = 10.0
REQUEUE_ERROR = 10.0


@dataclass
class OperatorConfig:
    """Settings for a running instance of the operator."""

    namespace: str = DEFAULT_NAMESPACE
    """The namespace the observability stack is deployed into."""

    pod_namespace: str = DEFAULT_POD_NAMESPACE
    """The namespace the operator itself runs in."""

    templates_path: Path = field(default_factory=lambda: Path(DEFAULT_TEMPLATES_PATH))
    """Root directory of the manifest template corpus."""

    enable_managed_cluster: bool = True
    """Distribute work to managed clusters chosen by the placement policy."""

    hub_endpoint: str | None = None
    """Host of the hub metrics endpoint that managed clusters push to."""

    hub_api_server: str = DEFAULT_HUB_API_SERVER
    """URL of the hub API server written into managed cluster kubeconfigs."""

    @property
    def issuer_namespace(self) -> str:
        """Namespace holding the client certificate authority objects."""
        return f"{self.pod_namespace}-issuer"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "OperatorConfig":
        """Create the configuration from environment variables."""
        env = dict(os.environ if environ is None else environ)
        return cls(
            namespace=env.get("MCO_NAMESPACE", DEFAULT_NAMESPACE),
            pod_namespace=env.get("POD_NAMESPACE", DEFAULT_POD_NAMESPACE),
            templates_path=Path(env.get("TEMPLATES_PATH", DEFAULT_TEMPLATES_PATH)),
            enable_managed_cluster=env.get("ENABLE_MANAGED_CLUSTER", "") != "false",
            hub_endpoint=env.get("HUB_ENDPOINT") or None,
            hub_api_server=env.get("HUB_API_SERVER", DEFAULT_HUB_API_SERVER),
        )


def is_paused(mco: MultiClusterObservability) -> bool:
    """Return True if reconciliation of the object is paused."""
    return mco.annotations.get(ANNOTATION_PAUSE, "").lower() == "true"


def fill_defaults(mco: MultiClusterObservability) -> bool:
    """Fill in defaults for unset fields, returning True if anything changed."""
    before = mco.spec.to_dict()
    spec = mco.spec
    if spec.availability_config is None:
        spec.availability_config = AvailabilityType.HIGH
    if not spec.image_pull_secret:
        spec.image_pull_secret = DEFAULT_IMAGE_PULL_SECRET
    if not spec.image_pull_policy:
        spec.image_pull_policy = DEFAULT_IMAGE_PULL_POLICY
    if spec.enable_downsampling is None:
        spec.enable_downsampling = True

    storage = spec.storage_config = spec.storage_config or StorageConfig()
    storage.storage_class = storage.storage_class or DEFAULT_STORAGE_CLASS
    for attr in (
        "alertmanager_storage_size",
        "rule_storage_size",
        "compact_storage_size",
        "receive_storage_size",
        "store_storage_size",
    ):
        if not getattr(storage, attr):
            setattr(storage, attr, DEFAULT_STORAGE_SIZE)

    retention = spec.retention_config = spec.retention_config or RetentionConfig()
    retention.retention_resolution_raw = (
        retention.retention_resolution_raw or DEFAULT_RETENTION_RAW
    )
    retention.retention_resolution_5m = (
        retention.retention_resolution_5m or DEFAULT_RETENTION_5M
    )
    retention.retention_resolution_1h = (
        retention.retention_resolution_1h or DEFAULT_RETENTION_1H
    )

    if spec.observability_addon_spec is None:
        spec.observability_addon_spec = AddonSpec(interval=DEFAULT_ADDON_INTERVAL)

    changed = before != spec.to_dict()
    if changed:
        _LOGGER.info("Filled defaults for %s", mco.resource_id)
    return changed
