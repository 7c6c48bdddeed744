import asyncio
from typing import Coroutine, Dict
from core.logger import logger

class TaskManager:
    """
    Named background tasks owned by one session. Registering a name again
    cancels the previous task; cancel_all tears everything down as a unit.
    """

    def __init__(self, owner: str):
        self.owner = owner
        self._tasks: Dict[str, asyncio.Task] = {}

    def start(self, name: str, coro: Coroutine) -> asyncio.Task:
        """Schedule a coroutine under `name`, cancelling any existing one."""
        self.cancel(name)
        task = asyncio.create_task(coro, name=f"{self.owner}:{name}")
        self._tasks[name] = task
        logger.debug("Registered task", owner=self.owner, task=name)

        # Remove from dict when done
        task.add_done_callback(lambda t: self._cleanup_task(name, t))
        return task

    def cancel(self, name: str):
        """Cancel the named task if it exists. A task never cancels itself."""
        task = self._tasks.pop(name, None)
        if task is None:
            return
        if task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()
            logger.debug("Cancelled task", owner=self.owner, task=name)

    def cancel_all(self):
        for name in list(self._tasks):
            self.cancel(name)

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def _cleanup_task(self, name: str, task: asyncio.Task):
        """Remove task from dict if it's still the registered one."""
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", owner=self.owner, task=name, error=str(task.exception()))
