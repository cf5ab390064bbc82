"""Loading of manifest templates from disk.

The template corpus is a directory with one sub directory per group of
templates, for example:

```
manifests/
  base/                     # the observability stack on the hub
  endpoint-observability/   # the operator shipped to managed clusters
  object-storage/           # optional object storage for the stack
```

Each group holds yaml files, possibly nested and possibly containing multiple
documents. Groups are read once and cached for the lifetime of the corpus.
"""

import asyncio
import copy
import logging
from pathlib import Path
from typing import Any

import aiofiles
import yaml

from mco_operator.exceptions import RenderException

__all__ = [
    "TemplateCorpus",
    "BASE_GROUP",
    "ENDPOINT_GROUP",
    "OBJECT_STORAGE_GROUP",
]

_LOGGER = logging.getLogger(__name__)

BASE_GROUP = "base"
ENDPOINT_GROUP = "endpoint-observability"
OBJECT_STORAGE_GROUP = "object-storage"

YAML_SUFFIXES = {".yaml", ".yml"}


class TemplateCorpus:
    """A cached collection of manifest templates rooted at a path."""

    def __init__(self, path: Path) -> None:
        """Initialize the TemplateCorpus."""
        self._path = path
        self._cache: dict[Path, list[dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def has_group(self, group: str) -> bool:
        """Return True if the corpus contains the template group."""
        return (self._path / group).is_dir()

    async def load(self, group: str) -> list[dict[str, Any]]:
        """Return a copy of the templates in the group in stable order.

        Raises:
            RenderException: If the group does not exist or a template is invalid.
        """
        group_path = self._path / group
        async with self._lock:
            if (templates := self._cache.get(group_path)) is None:
                templates = await self._read_group(group_path)
                self._cache[group_path] = templates
        return copy.deepcopy(templates)

    async def _read_group(self, group_path: Path) -> list[dict[str, Any]]:
        if not group_path.is_dir():
            raise RenderException(f"Template directory {group_path} does not exist")
        _LOGGER.info("Loading templates from %s", group_path)
        templates: list[dict[str, Any]] = []
        for template_file in sorted(group_path.rglob("*")):
            if template_file.suffix not in YAML_SUFFIXES or not template_file.is_file():
                continue
            async with aiofiles.open(template_file, encoding="utf-8") as fd:
                content = await fd.read()
            try:
                docs = list(yaml.safe_load_all(content))
            except yaml.YAMLError as err:
                raise RenderException(
                    f"Template {template_file} failed to parse as yaml: {err}"
                ) from err
            for doc in docs:
                if not doc:
                    continue
                if not isinstance(doc, dict):
                    raise RenderException(
                        f"Template {template_file} was not a dictionary: {type(doc)}: {doc}"
                    )
                templates.append(doc)
        _LOGGER.debug("Loaded %d templates from %s", len(templates), group_path)
        return templates
