"""
Background routine runner for avatar tasks.

One asyncio task per avatar task, bounded by MAX_CONCURRENT_TASKS slots:
routines beyond the limit wait for a slot instead of flooding the provider.
Routines are tracked by task id so they can be cancelled individually
(explicit cancel, task deletion) or all at once on shutdown.
"""

import os
import asyncio
import logging
from typing import Awaitable, Callable

from .. import metrics
from .errors import RunnerClosedError, TaskBusyError

logger = logging.getLogger(__name__)

MAX_CONCURRENT_TASKS = int(os.getenv("MAX_CONCURRENT_TASKS", "8"))

RoutineFactory = Callable[[], Awaitable[None]]


class TaskRunner:

    def __init__(self, max_concurrent: int = MAX_CONCURRENT_TASKS):
        self.max_concurrent = max_concurrent
        self._slots = asyncio.Semaphore(max_concurrent)
        self._routines: dict[str, asyncio.Task] = {}
        self._active = 0
        self._closed = False

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def waiting_count(self) -> int:
        return len(self._routines) - self._active

    @property
    def closed(self) -> bool:
        """True once shutdown() has begun."""
        return self._closed

    def is_running(self, task_id: str) -> bool:
        routine = self._routines.get(task_id)
        return routine is not None and not routine.done()

    def _publish_gauges(self):
        metrics.set_gauge("routines.active", self._active)
        metrics.set_gauge("routines.waiting", self.waiting_count)

    def start(self, task_id: str, factory: RoutineFactory) -> asyncio.Task:
        """
        Schedule ``factory()`` as the processing routine for ``task_id``.

        Raises:
            RunnerClosedError: The runner is shutting down.
            TaskBusyError:     A routine for this task is still in flight.
        """
        if self._closed:
            raise RunnerClosedError("Task runner is shut down")
        if self.is_running(task_id):
            raise TaskBusyError(f"Task {task_id} already has a running routine")

        routine = asyncio.create_task(self._run(task_id, factory), name=f"avatar-task-{task_id}")
        self._routines[task_id] = routine
        routine.add_done_callback(lambda done: self._finished(task_id, done))
        self._publish_gauges()
        return routine

    async def _run(self, task_id: str, factory: RoutineFactory):
        async with self._slots:
            self._active += 1
            self._publish_gauges()
            try:
                await factory()
            finally:
                self._active -= 1
                self._publish_gauges()

    def _finished(self, task_id: str, routine: asyncio.Task):
        if self._routines.get(task_id) is routine:
            del self._routines[task_id]
        self._publish_gauges()

        if routine.cancelled():
            logger.info(f"[task {task_id}] Routine cancelled")
            return
        exc = routine.exception()
        if exc is not None:
            # Routines record their own failures; reaching here is a bug upstream
            logger.error(f"[task {task_id}] Routine crashed: {exc!r}", exc_info=exc)

    async def cancel(self, task_id: str) -> bool:
        """Cancel the task's routine and wait for it to unwind. False if none was running."""
        routine = self._routines.get(task_id)
        if routine is None or routine.done():
            return False
        routine.cancel()
        await asyncio.gather(routine, return_exceptions=True)
        return True

    async def wait(self, task_id: str, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the task's routine to finish, without cancelling it."""
        routine = self._routines.get(task_id)
        if routine is None or routine.done():
            return True
        done, _ = await asyncio.wait({routine}, timeout=timeout)
        return routine in done

    async def wait_idle(self):
        """Wait until every scheduled routine has finished."""
        while self._routines:
            await asyncio.gather(*list(self._routines.values()), return_exceptions=True)

    async def shutdown(self):
        """Refuse new routines and cancel the running ones."""
        self._closed = True
        routines = list(self._routines.values())
        for routine in routines:
            routine.cancel()
        if routines:
            logger.info(f"Cancelling {len(routines)} running routine(s)")
            await asyncio.gather(*routines, return_exceptions=True)
