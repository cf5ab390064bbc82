"""Test fixtures shared by the mco-operator tests."""

from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

from mco_operator.config import OperatorConfig
from mco_operator.manifest import MultiClusterObservability
from mco_operator.rendering import Renderer, TemplateCorpus
from mco_operator.store import InMemoryStore
from mco_operator.task import TaskService, task_service_context

TESTDATA_DIR = Path("tests/testdata")
TEMPLATES_DIR = TESTDATA_DIR / "manifests"
HUB_STATE = TESTDATA_DIR / "hub.yaml"

NAMESPACE = "open-cluster-management-observability"
HUB_ENDPOINT = "observatorium-api.apps.hub.example.com"


@pytest.fixture
def store() -> InMemoryStore:
    """Create an in-memory store for testing."""
    return InMemoryStore()


@pytest.fixture
async def task_service() -> AsyncGenerator[TaskService, None]:
    """Run the test with its own task service."""
    with task_service_context() as service:
        yield service
        await service.cancel_all()


@pytest.fixture
def config() -> OperatorConfig:
    """Operator configuration pointing at the test templates."""
    return OperatorConfig(
        namespace=NAMESPACE,
        templates_path=TEMPLATES_DIR,
        hub_endpoint=HUB_ENDPOINT,
    )


@pytest.fixture
def corpus(config: OperatorConfig) -> TemplateCorpus:
    """The test template corpus."""
    return TemplateCorpus(config.templates_path)


@pytest.fixture
def renderer(corpus: TemplateCorpus, config: OperatorConfig) -> Renderer:
    """A renderer for the test template corpus."""
    return Renderer(corpus, config)


@pytest.fixture
def hub_docs() -> list[dict[str, Any]]:
    """Every object in the test hub state."""
    return [doc for doc in yaml.safe_load_all(HUB_STATE.read_text()) if doc]


@pytest.fixture
def mco_doc(hub_docs: list[dict[str, Any]]) -> dict[str, Any]:
    """The configuration object from the test hub state."""
    return next(d for d in hub_docs if d["kind"] == MultiClusterObservability.kind)


@pytest.fixture
def hub_store(store: InMemoryStore, hub_docs: list[dict[str, Any]]) -> Callable[..., Any]:
    """Return a coroutine function that loads the hub state into the store."""

    async def load(skip_kinds: tuple[str, ...] = ()) -> InMemoryStore:
        for doc in hub_docs:
            if doc["kind"] not in skip_kinds:
                await store.create(doc)
        return store

    return load
