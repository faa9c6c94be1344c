"""Background task tracking.

Fire-and-forget work (catalog refreshes triggered over the API, post-refresh
recomputes) goes through the TaskManager so failures are logged and the
tasks can be cancelled on shutdown.
"""

import asyncio
import logging
from typing import Any, Awaitable
from weakref import WeakSet

logger = logging.getLogger(__name__)


class TaskManager:
    """
    Usage:
        task_manager = TaskManager.get_instance()
        task_manager.create_task(refresh_catalog(...), name="catalog_refresh")

        # On shutdown
        await task_manager.cancel_all()
    """

    _instance: "TaskManager | None" = None

    def __init__(self):
        self._tasks: WeakSet[asyncio.Task] = WeakSet()
        self._named_tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def get_instance(cls) -> "TaskManager":
        """Get the singleton TaskManager instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    def create_task(self, coro: Awaitable[Any], name: str | None = None) -> asyncio.Task:
        """Start a tracked task. Failures are logged, then re-raised inside the task."""

        async def wrapped_coro():
            task_name = name or "unnamed"
            try:
                logger.debug(f"Starting background task: {task_name}")
                result = await coro
                logger.debug(f"Background task completed: {task_name}")
                return result
            except asyncio.CancelledError:
                logger.info(f"Background task cancelled: {task_name}")
                raise
            except Exception as e:
                logger.error(f"Background task failed: {task_name} - {type(e).__name__}: {e}")
                raise

        task = asyncio.create_task(wrapped_coro(), name=name)
        self._tasks.add(task)
        task.add_done_callback(_consume_exception)

        if name:
            self._named_tasks[name] = task
        return task

    def get_task(self, name: str) -> asyncio.Task | None:
        """Running task with this name, if any."""
        task = self._named_tasks.get(name)
        if task and task.done():
            del self._named_tasks[name]
            return None
        return task

    def get_running_tasks(self) -> list[asyncio.Task]:
        return [t for t in self._tasks if not t.done()]

    async def cancel_all(self, timeout: float = 5.0) -> dict:
        """Cancel all tracked tasks and wait up to `timeout` for them to finish."""
        running = self.get_running_tasks()
        if not running:
            return {"cancelled": 0, "timed_out": 0}

        logger.info(f"Cancelling {len(running)} background tasks...")
        for task in running:
            task.cancel()

        done, pending = await asyncio.wait(running, timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} tasks did not finish within {timeout}s timeout")
        return {"cancelled": len(done), "timed_out": len(pending)}


def _consume_exception(task: asyncio.Task) -> None:
    # Already logged by the wrapper; retrieving it silences "exception never retrieved"
    if not task.cancelled():
        task.exception()
