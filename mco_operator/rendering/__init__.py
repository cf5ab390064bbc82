"""Rendering of the configuration object into desired manifests.

The `TemplateCorpus` loads manifest templates from disk and the `Renderer`
turns them into concrete manifests for a `MultiClusterObservability`.
"""

from .templates import TemplateCorpus
from .renderer import Renderer

__all__ = [
    "TemplateCorpus",
    "Renderer",
]
