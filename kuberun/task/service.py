"""Task tracking service for kuberun.

Run sessions are tracked as active tasks so a caller can wait for every
session it started. Pod cleanup is tracked separately as background work that
nobody waits on for a result, and whose failures are only logged.
"""

import asyncio
from functools import partial
import logging
from typing import Any, Coroutine, Set
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
            name: Optional name of the task, used in log messages

        Returns:
            The created task
        """

    @abstractmethod
    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a fire and forget task.

        Failures of background tasks are logged and never raised.
        """

    @abstractmethod
    async def block_till_done(self, include_background: bool = False) -> None:
        """Wait for all tracked tasks to complete.

        Args:
            include_background: Also wait for background tasks, e.g. before
                the process exits so pending cleanup is not abandoned.
        """

    @abstractmethod
    def get_num_active_tasks(self) -> int:
        """Get the number of active non-background tasks."""

    @abstractmethod
    def get_num_background_tasks(self) -> int:
        """Get the number of pending background tasks."""


class TaskServiceImpl(TaskService):
    """Task service backed by the running event loop."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._active_tasks: Set[asyncio.Task[Any]] = set()
        self._background_tasks: Set[asyncio.Task[Any]] = set()

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._active_tasks))
        return task

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._background_tasks))
        return task

    def _task_done(
        self, task_set: Set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> None:
        """Callback when a task is done, logging its failure if any."""
        try:
            # This will raise any exception that occurred in the task
            task.result()
        except asyncio.CancelledError:
            _LOGGER.debug("Task %s was cancelled", task.get_name())
        except Exception as e:
            _LOGGER.warning("Task %s failed: %s", task.get_name(), e)
        finally:
            task_set.discard(task)

    def _pending(self, include_background: bool) -> list[asyncio.Task[Any]]:
        tasks = list(self._active_tasks)
        if include_background:
            tasks.extend(self._background_tasks)
        return tasks

    async def block_till_done(self, include_background: bool = False) -> None:
        # Finished tasks may start new ones, e.g. the cleanup of a pod
        if not (tasks := self._pending(include_background)):
            _LOGGER.debug("No active tasks to wait for")
            await asyncio.sleep(0)
            return
        while tasks:
            _LOGGER.debug("Waiting for %d tasks to complete", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)
            tasks = self._pending(include_background)

    def get_num_active_tasks(self) -> int:
        return len(self._active_tasks)

    def get_num_background_tasks(self) -> int:
        return len(self._background_tasks)
