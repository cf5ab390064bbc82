"""Task tracking for concurrent reconcile work.

Controllers and the distributor start their asynchronous work through the
task service so that callers can wait for it to finish or cancel it.
"""

from .context import task_service_context, get_task_service
from .service import TaskService

__all__ = ["get_task_service", "task_service_context", "TaskService"]
