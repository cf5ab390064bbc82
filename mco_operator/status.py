"""Aggregation of stack health into status conditions.

Conditions are keyed by type and kept in insertion order. The ready check is
a priority ordered chain where the first failing step records a `Failed`
condition with a specific reason and skips the rest:

1. The object storage secret exists and holds a valid configuration.
2. Every expected Deployment exists and has a ready replica.
3. Every expected StatefulSet exists and has a ready replica.

When every step passes the stack is `Ready`. `Ready` and `Failed` are never
present at the same time. The `MetricsDisabled` condition follows only the
addon spec of the configuration object.
"""

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

import yaml

from .config import (
    REQUEUE_NOT_READY,
    REQUEUE_STATUS_CONFLICT,
    OperatorConfig,
)
from .exceptions import (
    ConflictError,
    InvalidObjectStorageConfig,
    ObjectNotFoundError,
)
from .manifest import Condition, Kind, MultiClusterObservability, NamedResource
from .store import Store

__all__ = [
    "StatusAggregator",
    "ReconcileResult",
    "set_condition",
    "remove_condition",
    "validate_object_storage_config",
]

_LOGGER = logging.getLogger(__name__)

INSTALLING = "Installing"
READY = "Ready"
FAILED = "Failed"
METRICS_DISABLED = "MetricsDisabled"

STATUS_TRUE = "True"
STATUS_FALSE = "False"
STATUS_UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ReconcileResult:
    """The outcome of a reconcile pass."""

    requeue_after: float | None = None
    """Seconds to wait before reconciling again, if at all."""


def now() -> str:
    """Return the current time in the format used for conditions."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def fill_conditions(conditions: list[Condition]) -> None:
    """Fill in conditions written without a status or transition time."""
    for condition in conditions:
        if not condition.status:
            condition.status = STATUS_UNKNOWN
        if not condition.last_transition_time:
            condition.last_transition_time = now()


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(conditions: list[Condition], new_condition: Condition) -> None:
    """Set or merge the condition into the list.

    The transition time only moves when the status changes. The reason and
    message are always updated.
    """
    if (existing := find_condition(conditions, new_condition.type)) is None:
        if not new_condition.last_transition_time:
            new_condition.last_transition_time = now()
        conditions.append(new_condition)
        return
    if existing.status != new_condition.status:
        existing.status = new_condition.status
        existing.last_transition_time = new_condition.last_transition_time or now()
    existing.reason = new_condition.reason
    existing.message = new_condition.message
    if new_condition.observed_generation is not None:
        existing.observed_generation = new_condition.observed_generation


def remove_condition(conditions: list[Condition], condition_type: str) -> None:
    conditions[:] = [c for c in conditions if c.type != condition_type]


def validate_object_storage_config(content: str) -> None:
    """Check an object storage configuration document.

    Raises:
        InvalidObjectStorageConfig: If the configuration can't be used.
    """
    try:
        conf = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise InvalidObjectStorageConfig(str(err)) from err
    if not isinstance(conf, dict) or not isinstance(conf.get("type"), str):
        raise InvalidObjectStorageConfig("invalid config format")
    if conf["type"].lower() != "s3":
        raise InvalidObjectStorageConfig("invalid type config, only s3 type is supported")
    s3_conf = conf.get("config")
    if not isinstance(s3_conf, dict):
        raise InvalidObjectStorageConfig("invalid config format")
    for key in ("bucket", "endpoint", "access_key", "secret_key"):
        if not s3_conf.get(key):
            raise InvalidObjectStorageConfig(f"no s3 {key} in config file")


def _secret_value(secret: dict[str, Any], key: str) -> str | None:
    if (value := (secret.get("stringData") or {}).get(key)) is not None:
        return str(value)
    if (value := (secret.get("data") or {}).get(key)) is None:
        return None
    try:
        return base64.b64decode(value).decode()
    except (binascii.Error, UnicodeDecodeError) as err:
        raise InvalidObjectStorageConfig(
            f"Object storage configuration key {key} is not valid base64: {err}"
        ) from err


def _failed(reason: str, message: str) -> Condition:
    return Condition(type=FAILED, status=STATUS_FALSE, reason=reason, message=message)


class StatusAggregator:
    """Computes and persists the status conditions of the configuration object."""

    def __init__(self, store: Store, config: OperatorConfig) -> None:
        """Initialize the StatusAggregator."""
        self._store = store
        self._config = config

    async def compute(
        self,
        mco: MultiClusterObservability,
        workloads: list[NamedResource],
    ) -> list[Condition]:
        """Return the updated condition list for the configuration object.

        Args:
            mco: The configuration object with its current conditions.
            workloads: The Deployments and StatefulSets expected to be running.
        """
        conditions = [Condition.from_dict(c.to_dict()) for c in mco.conditions]
        fill_conditions(conditions)
        if not conditions:
            set_condition(
                conditions,
                Condition(
                    type=INSTALLING,
                    status=STATUS_TRUE,
                    reason=INSTALLING,
                    message="Installation is in progress",
                ),
            )

        if (failure := await self._check_ready(mco, workloads)) is not None:
            _LOGGER.info(
                "%s is not ready: %s: %s", mco.resource_id, failure.reason, failure.message
            )
            set_condition(conditions, failure)
            remove_condition(conditions, READY)
        else:
            set_condition(
                conditions,
                Condition(
                    type=READY,
                    status=STATUS_TRUE,
                    reason=READY,
                    message="Observability components are deployed and running",
                ),
            )
            remove_condition(conditions, FAILED)
            remove_condition(conditions, INSTALLING)

        if not mco.addon_spec.enable_metrics:
            set_condition(
                conditions,
                Condition(
                    type=METRICS_DISABLED,
                    status=STATUS_TRUE,
                    reason=METRICS_DISABLED,
                    message="Collect metrics from the managed clusters is disabled",
                ),
            )
        else:
            remove_condition(conditions, METRICS_DISABLED)

        for condition in conditions:
            if condition.type != METRICS_DISABLED:
                condition.observed_generation = mco.generation
        return conditions

    async def _check_ready(
        self, mco: MultiClusterObservability, workloads: list[NamedResource]
    ) -> Condition | None:
        if (failure := await self._check_object_storage(mco)) is not None:
            return failure
        for kind, label in ((Kind.DEPLOYMENT, "deployment"), (Kind.STATEFUL_SET, "stateful set")):
            for resource_id in workloads:
                if resource_id.kind != kind:
                    continue
                try:
                    workload = await self._store.get(resource_id)
                except ObjectNotFoundError:
                    return _failed(
                        f"{kind}NotFound",
                        f"Failed to found expected {label} {resource_id.name}",
                    )
                ready = (workload.get("status") or {}).get("readyReplicas") or 0
                if ready < 1:
                    return _failed(
                        f"{kind}NotReady", f"{kind} {resource_id.name} is not ready"
                    )
        return None

    async def _check_object_storage(
        self, mco: MultiClusterObservability
    ) -> Condition | None:
        if (ref := mco.storage.metric_object_storage) is None:
            return _failed(
                "ObjectStorageSecretNotFound",
                "No object storage configuration secret is specified",
            )
        secret_id = NamedResource(Kind.SECRET, self._config.namespace, ref.name)
        try:
            secret = await self._store.get(secret_id)
        except ObjectNotFoundError as err:
            return _failed("ObjectStorageSecretNotFound", str(err))
        try:
            if (content := _secret_value(secret, ref.key)) is None:
                return _failed(
                    "ObjectStorageConfInvalid",
                    f"Failed to found the object storage configuration key from secret {ref.name}",
                )
            validate_object_storage_config(content)
        except InvalidObjectStorageConfig as err:
            return _failed("ObjectStorageConfInvalid", str(err))
        return None

    async def update(
        self,
        mco: MultiClusterObservability,
        workloads: list[NamedResource],
    ) -> ReconcileResult:
        """Compute the conditions and write them to the configuration object.

        A write that conflicts is retried once against the latest object.

        Raises:
            ConflictError: If the retried write also conflicts.
        """
        conditions = await self.compute(mco, workloads)
        latest = await self._store.get(mco.resource_id)
        if mco.resource_version is not None:
            latest["metadata"]["resourceVersion"] = mco.resource_version
        latest["status"] = {
            **(latest.get("status") or {}),
            "conditions": [c.to_dict() for c in conditions],
        }
        try:
            await self._store.update_status(latest)
        except ConflictError:
            _LOGGER.info("Conflict updating status of %s, retrying", mco.resource_id)
            refetched = await self._store.get(mco.resource_id)
            latest["metadata"]["resourceVersion"] = refetched["metadata"][
                "resourceVersion"
            ]
            await self._store.update_status(latest)
            mco.conditions = conditions
            return ReconcileResult(requeue_after=REQUEUE_STATUS_CONFLICT)
        mco.conditions = conditions
        if find_condition(conditions, READY) is None:
            return ReconcileResult(requeue_after=REQUEUE_NOT_READY)
        return ReconcileResult()
