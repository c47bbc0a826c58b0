"""
Supervised background tasks.

Runs started by the API, an approval or the scheduler are not awaited by
their caller. They are spawned here so every task is tracked, its failures
are logged, and shutdown can cancel what is still running.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class TaskSupervisor:

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info(f"Background task {task.get_name()} cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Background task {task.get_name()} failed: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every task spawned so far (and any they spawn) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Supervisor stopped {len(tasks)} background task(s)")


class RunLauncher(ABC):
    """Hands a run id to whatever executes runs, without waiting for it."""

    @abstractmethod
    def launch(self, run_id: int) -> None:
        pass


class InProcessRunLauncher(RunLauncher):
    """
    Executes runs as supervised asyncio tasks in this process.

    launch() may be called from a worker thread (sync API endpoints run in
    a threadpool); the task is then scheduled onto the owning loop.
    """

    def __init__(self, supervisor: TaskSupervisor, run_workflow: Callable[[int], Awaitable],
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.supervisor = supervisor
        self.run_workflow = run_workflow
        self.loop = loop

    def _spawn(self, run_id: int) -> None:
        self.supervisor.spawn(self.run_workflow(run_id), name=f"run-{run_id}")

    def launch(self, run_id: int) -> None:
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None

        if current is not None and (self.loop is None or current is self.loop):
            self._spawn(run_id)
        elif self.loop is not None:
            self.loop.call_soon_threadsafe(self._spawn, run_id)
        else:
            raise RuntimeError(f"No event loop to launch run {run_id} on")
        logger.info(f"Run {run_id} launched in process")
