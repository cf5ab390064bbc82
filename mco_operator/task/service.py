"""Task tracking service.

Active tasks are the work being done now and are what `block_till_done` waits
for. Background tasks are long running loops such as watches. Delayed tasks
are timers that start an active task later, such as a requeued reconcile.
Background and delayed tasks are only ever cancelled.
"""

import asyncio
from collections.abc import Callable
from functools import partial
import logging
from typing import Any, Coroutine
from abc import ABC, abstractmethod

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []


class TaskService(ABC):
    """Service for tracking and waiting for asynchronous tasks."""

    @abstractmethod
    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task.

        Args:
            coro: The coroutine to run as a task
            name: Optional name of the task used in logs

        Returns:
            The created task
        """

    @abstractmethod
    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new long running background task."""

    @abstractmethod
    def create_delayed_task(
        self,
        delay: float,
        factory: Callable[[], Coroutine[None, None, Any]],
        name: str | None = None,
    ) -> asyncio.Task[Any]:
        """Start a task from the factory after a delay in seconds.

        The coroutine is only created once the delay has passed.

        Returns:
            The timer task, which can be cancelled before the delay passes.
        """

    @abstractmethod
    async def block_till_done(self) -> None:
        """Wait for all active tasks to complete.

        Tasks created while waiting are also waited for. Background tasks and
        delayed tasks that have not started are not waited for.
        """

    @abstractmethod
    async def cancel_all(self) -> None:
        """Cancel every tracked task and wait for them to finish."""

    @abstractmethod
    def get_num_active_tasks(self) -> int:
        """Get the number of active tasks."""

    @abstractmethod
    def get_num_delayed_tasks(self) -> int:
        """Get the number of delayed tasks that have not started yet."""


class TaskServiceImpl(TaskService):
    """Tracks tasks created on the running event loop."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._active_tasks: set[asyncio.Task[Any]] = set()
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._delayed_tasks: set[asyncio.Task[Any]] = set()

    def _track(
        self, task_set: set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> asyncio.Task[Any]:
        task_set.add(task)
        task.add_done_callback(partial(self._task_done, task_set))
        return task

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task."""
        return self._track(self._active_tasks, asyncio.create_task(coro, name=name))

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new background task."""
        return self._track(
            self._background_tasks, asyncio.create_task(coro, name=name)
        )

    def create_delayed_task(
        self,
        delay: float,
        factory: Callable[[], Coroutine[None, None, Any]],
        name: str | None = None,
    ) -> asyncio.Task[Any]:
        """Start a task from the factory after a delay in seconds."""

        async def _delayed() -> None:
            await asyncio.sleep(delay)
            self.create_task(factory(), name=name)

        return self._track(
            self._delayed_tasks,
            asyncio.create_task(_delayed(), name=f"delayed-{name}" if name else None),
        )

    def _task_done(
        self, task_set: set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> None:
        """Callback when a task is done."""
        try:
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            _LOGGER.error("Task %s failed: %s", task.get_name(), e)
        finally:
            task_set.discard(task)

    async def block_till_done(self) -> None:
        """Wait for all active tasks to complete."""
        while active_tasks := list(self._active_tasks):
            _LOGGER.debug("Waiting for %d tasks to complete", len(active_tasks))
            await asyncio.gather(*active_tasks, return_exceptions=True)
        await asyncio.sleep(0)

    async def cancel_all(self) -> None:
        """Cancel every tracked task."""
        tasks = [*self._background_tasks, *self._delayed_tasks, *self._active_tasks]
        for task in tasks:
            task.cancel()
        if tasks:
            _LOGGER.debug("Cancelled %d tasks", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_num_active_tasks(self) -> int:
        """Get the number of active tasks."""
        return len(self._active_tasks)

    def get_num_delayed_tasks(self) -> int:
        """Get the number of delayed tasks that have not started yet."""
        return len(self._delayed_tasks)
