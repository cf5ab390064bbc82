"""Semantic equality of kubernetes objects.

Two flavors of comparison are used when reconciling:

- `deep_derivative` is used by the deployer to decide if a live object has
  drifted from a desired manifest. Fields left unset in the desired manifest
  are ignored so that values defaulted by the server don't cause updates.
- `semantic_equal` is used for the manifests inside a work bundle and compares
  only the fields that are meaningful for each kind.
"""

from typing import Any

from .manifest import Kind

__all__ = [
    "deep_derivative",
    "semantic_equal",
]


def deep_derivative(desired: Any, live: Any) -> bool:
    """Return True if every field set in desired has the same value in live."""
    if desired is None:
        return True
    if isinstance(desired, dict):
        if not desired:
            return True
        if not isinstance(live, dict):
            return False
        return all(deep_derivative(value, live.get(key)) for key, value in desired.items())
    if isinstance(desired, list):
        if not desired:
            return True
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(deep_derivative(d, l) for d, l in zip(desired, live))
    if isinstance(desired, str) and not desired:
        return True
    return bool(desired == live)


def _fields_equal(a: dict[str, Any], b: dict[str, Any], *keys: str) -> bool:
    return all(a.get(key) == b.get(key) for key in keys)


def _meta(doc: dict[str, Any], key: str) -> Any:
    return doc.get("metadata", {}).get(key)


def semantic_equal(a: dict[str, Any], b: dict[str, Any]) -> bool:
    """Return True if the two objects are equal for the fields their kind owns."""
    if a.get("kind") != b.get("kind"):
        return False
    match Kind.of(a):
        case Kind.NAMESPACE:
            return bool(_meta(a, "name") == _meta(b, "name"))
        case Kind.DEPLOYMENT:
            return (
                _meta(a, "name") == _meta(b, "name")
                and _meta(a, "namespace") == _meta(b, "namespace")
                and a.get("spec") == b.get("spec")
            )
        case Kind.SERVICE_ACCOUNT:
            return _fields_equal(a, b, "imagePullSecrets")
        case Kind.CLUSTER_ROLE:
            return _fields_equal(a, b, "rules")
        case Kind.CLUSTER_ROLE_BINDING:
            return _fields_equal(a, b, "subjects", "roleRef")
        case Kind.SECRET | Kind.CONFIG_MAP:
            return _fields_equal(a, b, "data")
        case Kind.SERVICE | Kind.CUSTOM_RESOURCE_DEFINITION:
            return _fields_equal(a, b, "spec")
        case _:
            return a == b
