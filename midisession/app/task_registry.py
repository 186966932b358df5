"""
TaskRegistry for relay task lifecycle management.

Tracks every asyncio.Task a session creates (connect attempts, reconnect
timers, heartbeats, publishes) so teardown can cancel all of them and no
timer fires after its owning session is gone.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

from ..logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


class TaskMetadata:
    """Metadata for tracked asyncio.Tasks."""

    def __init__(self, task: asyncio.Task[Any], task_name: str, task_type: str = "unknown"):
        """
        Initialize task metadata.

        Args:
            task: The asyncio.Task instance to track
            task_name: Human-readable name for this task
            task_type: Categorization of task (e.g., 'heartbeat', 'reconnect', 'publish')
        """
        self.task = task
        self.task_name = task_name
        self.task_type = task_type
        self.created_at = asyncio.get_running_loop().time()

    def __repr__(self):
        status = "done" if self.task.done() else "pending"
        return f"TaskMetadata({self.task_name}, {self.task_type}, {status})"


class TaskRegistry:
    """Registry of asyncio tasks owned by one relay session."""

    def __init__(self, shutdown_timeout: float = 2.0):
        self._active_tasks: dict[asyncio.Task[Any], TaskMetadata] = {}
        self._shutdown_timeout = shutdown_timeout
        self._shutdown_in_progress = False

    def register_task(self, coro: Coroutine[Any, Any, Any], task_name: str, task_type: str = "unknown") -> asyncio.Task[Any]:
        """
        Register and create a tracked asyncio.Task.

        Args:
            coro: The coroutine to wrap as a task
            task_name: Human-readable identifier for this task
            task_type: Category for task management

        Returns:
            The created asyncio.Task that is now tracked

        Raises:
            RuntimeError: If registration is attempted during shutdown
        """
        if self._shutdown_in_progress:
            coro.close()
            logger.warning("Attempting to register task during shutdown - denied", task_name=task_name)
            raise RuntimeError("Task registration denied during shutdown")

        task: asyncio.Task[Any] = asyncio.create_task(coro, name=task_name)
        self._active_tasks[task] = TaskMetadata(task, task_name, task_type)

        def task_completion_callback(completed_task: asyncio.Task[Any]) -> None:
            self._active_tasks.pop(completed_task, None)
            if not completed_task.cancelled() and completed_task.exception() is not None:
                logger.error(
                    "Tracked task failed",
                    task_name=task_name,
                    task_type=task_type,
                    error=str(completed_task.exception()),
                )

        task.add_done_callback(task_completion_callback)
        logger.debug("Registered task", task_name=task_name, task_type=task_type)
        return task

    async def shutdown_all(self) -> bool:
        """
        Cancel all tracked tasks and wait for them to finish.

        Returns:
            True if every task finished within the shutdown timeout
        """
        self._shutdown_in_progress = True
        try:
            current = asyncio.current_task()
            pending = [task for task in self._active_tasks if not task.done() and task is not current]
            for task in pending:
                task.cancel()
            if not pending:
                return True
            _, still_pending = await asyncio.wait(pending, timeout=self._shutdown_timeout)
            if still_pending:
                logger.warning("Tasks did not finish during shutdown", count=len(still_pending))
            return not still_pending
        finally:
            self._shutdown_in_progress = False

    def active_count(self, task_type: str | None = None) -> int:
        """Count tracked tasks that have not finished."""
        return sum(
            1
            for task, metadata in self._active_tasks.items()
            if not task.done() and (task_type is None or metadata.task_type == task_type)
        )
