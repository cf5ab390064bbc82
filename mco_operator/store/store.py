"""Store module for reading and writing kubernetes objects."""

from abc import ABC, abstractmethod
from collections.abc import Callable, AsyncGenerator
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TYPE_CHECKING

from mco_operator.manifest import NamedResource


class StoreEvent(StrEnum):
    """Enum for store events."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class WatchEvent:
    """A change to an object in the store."""

    event: StoreEvent
    resource_id: NamedResource
    obj: dict[str, Any]


class Store(ABC):
    """Abstract base class for the resource store with listener support."""

    @abstractmethod
    async def get(self, resource_id: NamedResource) -> dict[str, Any]:
        """Return a copy of the object.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """

    @abstractmethod
    async def list_objects(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind, optionally filtered by namespace and labels."""

    @abstractmethod
    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create a new object and return it with store assigned fields.

        Raises:
            ObjectAlreadyExistsError: If the object already exists.
        """

    @abstractmethod
    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing object, leaving its status unchanged.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ConflictError: If the object has a stale resourceVersion.
        """

    @abstractmethod
    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace only the status of an existing object.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ConflictError: If the object has a stale resourceVersion.
        """

    @abstractmethod
    async def delete(self, resource_id: NamedResource) -> None:
        """Delete the object, or mark it for deletion when it has finalizers.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """

    @abstractmethod
    def add_listener(
        self, callback: Callable[[WatchEvent], None]
    ) -> Callable[[], None]:
        """Register a callback for changes to any object.

        Returns a callable that can be called to remove the listener.
        """

    @abstractmethod
    async def watch(
        self, kind: str, namespace: str | None = None
    ) -> AsyncGenerator[WatchEvent]:
        """
        Watch for changes to objects of a specific kind.

        Existing objects are yielded first as ADDED events, followed by events
        for every subsequent change.

        Args:
            kind: The kind of resource to watch for (e.g. "Deployment").
            namespace: Only watch objects in this namespace when set.

        Yields:
            A WatchEvent for each change.
        """
        if TYPE_CHECKING:
            yield None  # type: ignore[misc]
