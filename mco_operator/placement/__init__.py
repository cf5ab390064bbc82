"""Distribution of work bundles to the managed clusters.

A placement policy selects the managed clusters that should run metrics
collection. For every selected cluster the `Distributor` keeps an addon marker
and a `ManifestWork` bundle in the cluster's namespace on the hub, and removes
both once the cluster is no longer selected.
"""

from .distributor import Distributor, DistributionResult
from .bundle import BundleBuilder, work_name

__all__ = [
    "Distributor",
    "DistributionResult",
    "BundleBuilder",
    "work_name",
]
