"""Structural patches applied to rendered workloads."""

import logging
import re
from typing import Any

from mco_operator.config import (
    ANNOTATION_IMAGE_REPOSITORY,
    ANNOTATION_IMAGE_TAG_SUFFIX,
    CR_LABEL,
    DEFAULT_IMAGE_REPOSITORY,
)
from mco_operator.exceptions import RenderException
from mco_operator.manifest import AvailabilityType, MultiClusterObservability

_LOGGER = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{([A-Z0-9_]+)\}\}")


def replace_image(annotations: dict[str, str], image: str, component: str) -> str | None:
    """Return the image overridden by the annotations, if any.

    An `mco-<component>-tag` annotation always wins. Otherwise the tag suffix
    annotation applies to images from the default repository. In both cases
    the repository annotation replaces the registry and organization.
    """
    repository = annotations.get(ANNOTATION_IMAGE_REPOSITORY) or DEFAULT_IMAGE_REPOSITORY
    image_name = image.rsplit("/", 1)[-1].split(":", 1)[0]
    if component_tag := annotations.get(f"mco-{component}-tag"):
        return f"{repository}/{image_name}:{component_tag}"
    tag_suffix = annotations.get(ANNOTATION_IMAGE_TAG_SUFFIX)
    if tag_suffix and DEFAULT_IMAGE_REPOSITORY in image:
        return f"{repository}/{image_name}:{tag_suffix}"
    return None


def _component_key(name: str) -> str:
    return name.replace("-", "_")


def _pod_spec(doc: dict[str, Any]) -> dict[str, Any] | None:
    spec = doc.get("spec") or {}
    template = spec.get("template") or {}
    return template.get("spec")


def _set_label(parent: dict[str, Any], key: str, value: str) -> None:
    labels = parent.get(key)
    if labels is None:
        labels = parent[key] = {}
    labels[CR_LABEL] = value


def apply_pod_patches(doc: dict[str, Any], mco: MultiClusterObservability) -> None:
    """Propagate images, pull secrets and scheduling settings to the pod spec."""
    if (pod_spec := _pod_spec(doc)) is None:
        return
    spec = mco.spec
    for container in pod_spec.get("containers") or ():
        if spec.image_pull_policy:
            container["imagePullPolicy"] = spec.image_pull_policy
        if (image := container.get("image")) and (
            replaced := replace_image(
                mco.annotations, image, _component_key(container.get("name", ""))
            )
        ):
            _LOGGER.debug("Replacing image %s with %s", image, replaced)
            container["image"] = replaced
    if spec.image_pull_secret:
        pod_spec["imagePullSecrets"] = [{"name": spec.image_pull_secret}]
    if spec.node_selector:
        pod_spec["nodeSelector"] = dict(spec.node_selector)
    if spec.tolerations:
        pod_spec["tolerations"] = [dict(t) for t in spec.tolerations]


def apply_label_patches(doc: dict[str, Any], mco: MultiClusterObservability) -> None:
    """Label the workload, its selector and its pods with the CR name."""
    _set_label(doc.setdefault("metadata", {}), "labels", mco.name)
    spec = doc.setdefault("spec", {})
    _set_label(spec.setdefault("selector", {}), "matchLabels", mco.name)
    template = spec.setdefault("template", {})
    _set_label(template.setdefault("metadata", {}), "labels", mco.name)


def set_replicas(
    doc: dict[str, Any],
    table: dict[AvailabilityType, int],
    availability: AvailabilityType | None,
) -> None:
    """Set the replica count from the availability lookup table."""
    doc.setdefault("spec", {})["replicas"] = table[availability or AvailabilityType.HIGH]


def _substitute_str(value: str, values: dict[str, str], context: str) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if (replacement := values.get(name)) is None:
            raise RenderException(
                f"Template {context} has unresolved placeholder {match.group(0)}"
            )
        return replacement

    return PLACEHOLDER_RE.sub(replace, value)


def substitute(obj: Any, values: dict[str, str], context: str) -> Any:
    """Substitute `{{NAME}}` placeholders recursively through maps and lists.

    Raises:
        RenderException: If a placeholder has no value.
    """
    if isinstance(obj, str):
        return _substitute_str(obj, values, context)
    if isinstance(obj, dict):
        for key, value in obj.items():
            obj[key] = substitute(value, values, context)
    elif isinstance(obj, list):
        for i, value in enumerate(obj):
            obj[i] = substitute(value, values, context)
    return obj
