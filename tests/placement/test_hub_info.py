"""Tests for the hub info secret."""

import base64

import pytest
import yaml

from mco_operator.exceptions import InputException
from mco_operator.manifest import MultiClusterObservability
from mco_operator.placement.hub_info import (
    HubInfo,
    generate_hub_info_secret,
    metrics_endpoint,
    parse_hub_info_secret,
    set_delete_flag,
)

MCO = MultiClusterObservability(name="observability")


@pytest.mark.parametrize(
    ("host", "expected"),
    [
        ("hub.example.com", "https://hub.example.com/api/metrics/v1/default/api/v1/receive"),
        (
            "http://hub.example.com/",
            "http://hub.example.com/api/metrics/v1/default/api/v1/receive",
        ),
    ],
)
def test_metrics_endpoint(host: str, expected: str) -> None:
    """Test building the receive URL from the hub endpoint."""
    assert metrics_endpoint(host) == expected


def test_generate_hub_info_secret() -> None:
    """Test the secret contents use the managed cluster's serialized keys."""
    secret = generate_hub_info_secret("hub.example.com", MCO, "cluster1")
    assert secret["metadata"] == {
        "name": "hub-info-secret",
        "namespace": "open-cluster-management-addon-observability",
    }
    content = yaml.safe_load(base64.b64decode(secret["data"]["hub-info.yaml"]))
    assert content == {
        "cluster-name": "cluster1",
        "endpoint": "https://hub.example.com/api/metrics/v1/default/api/v1/receive",
        "enable-metrics": True,
        "interval": 60,
        "delete-flag": False,
    }
    assert parse_hub_info_secret(secret) == HubInfo(
        cluster_name="cluster1",
        endpoint="https://hub.example.com/api/metrics/v1/default/api/v1/receive",
    )


def test_parse_hub_info_secret_invalid() -> None:
    """Test a secret without the hub info key."""
    with pytest.raises(InputException, match="missing hub-info.yaml"):
        parse_hub_info_secret({"data": {}})


def test_set_delete_flag() -> None:
    """Test flagging a bundle for removal only changes it once."""
    secret = generate_hub_info_secret("hub.example.com", MCO, "cluster1")
    work = {"spec": {"workload": {"manifests": [secret, {"kind": "Namespace"}]}}}

    assert set_delete_flag(work)
    manifests = work["spec"]["workload"]["manifests"]
    assert parse_hub_info_secret(manifests[0]).delete_flag
    assert manifests[1] == {"kind": "Namespace"}

    assert not set_delete_flag(work)
    assert not set_delete_flag({"spec": {}})


@pytest.mark.parametrize(
    "data",
    [
        {"other": "eA=="},
        {"hub-info.yaml": "not base64!"},
        {"hub-info.yaml": "LSBhCi0gYgo="},
    ],
)
def test_set_delete_flag_unreadable(data: dict[str, str]) -> None:
    """Test a bundle with edited hub info is left unchanged."""
    secret = generate_hub_info_secret("hub.example.com", MCO, "cluster1")
    secret["data"] = data
    work = {"spec": {"workload": {"manifests": [secret]}}}

    assert not set_delete_flag(work)
    assert work["spec"]["workload"]["manifests"][0]["data"] == data
