"""Detached asyncio work with observable completion and error signals."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, List, Optional

logger = logging.getLogger(__name__)


class BackgroundTask:
    """Handle for fire-and-forget work.

    Callers may ignore the handle; failures are logged either way and stay
    inspectable through ``exception()``.
    """

    def __init__(self, name: str, coro: Coroutine[Any, Any, Any]):
        self.name = name
        self._task: asyncio.Task = asyncio.create_task(coro, name=name)
        self._task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info("Background task %s cancelled", self.name)
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background task %s failed: %s", self.name, exc)
        else:
            logger.debug("Background task %s finished", self.name)

    def done(self) -> bool:
        return self._task.done()

    def exception(self) -> Optional[BaseException]:
        if not self._task.done() or self._task.cancelled():
            return None
        return self._task.exception()

    def result(self) -> Any:
        return self._task.result()

    async def wait(self) -> Optional[BaseException]:
        """Wait for completion and return the failure, if any, without raising."""
        await asyncio.wait({self._task})
        return self.exception()


class TaskTracker:
    """Keeps strong references to running background tasks."""

    def __init__(self) -> None:
        self._tasks: List[BackgroundTask] = []

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> BackgroundTask:
        task = BackgroundTask(name, coro)
        self._tasks.append(task)
        self._tasks = [t for t in self._tasks if not t.done() or t is task]
        return task

    @property
    def pending(self) -> List[BackgroundTask]:
        return [t for t in self._tasks if not t.done()]

    async def wait_all(self) -> List[BaseException]:
        """Wait for every tracked task; return the failures."""
        errors: List[BaseException] = []
        while self.pending:
            for task in list(self.pending):
                exc = await task.wait()
                if exc is not None:
                    errors.append(exc)
        return errors
