"""
The store module is the resource store API the operator reconciles against.

- Uses NamedResource as the key for all objects.
- Stores values as plain kubernetes documents.
- Writes use optimistic concurrency on `metadata.resourceVersion`.
- Objects with finalizers are marked for deletion and only removed once the
  last finalizer is stripped.

This abstract interface allows for various implementations (in-memory, a
live cluster client, etc.).
"""

from .store import Store, StoreEvent, WatchEvent
from .in_memory import InMemoryStore

__all__ = [
    "Store",
    "StoreEvent",
    "WatchEvent",
    "InMemoryStore",
]
