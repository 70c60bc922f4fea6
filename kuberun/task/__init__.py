"""Task tracking module for kuberun.

Run sessions execute in tasks owned by a task service, and the cleanup of
finished pods runs as detached background tasks whose outcome is only logged.
"""

from .context import task_service_context, get_task_service
from .service import TaskService

__all__ = ["get_task_service", "task_service_context", "TaskService"]
