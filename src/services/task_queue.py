"""Background execution of pipeline runs, detached from HTTP requests."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Set

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class TaskQueue:
    """
    Owns every detached pipeline execution.

    ``submit`` returns immediately; at most ``max_concurrency`` submitted
    coroutines run at once, the rest wait their turn. Tasks are kept
    referenced until they finish and anything they raise is logged.
    """

    def __init__(self, max_concurrency: int = 8) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, name: str, factory: TaskFactory) -> asyncio.Task:
        """
        Schedule ``factory()`` to run in the background.

        Args:
            name: Task name used in logs
            factory: Zero-argument callable returning the coroutine to run
        """

        async def _guarded() -> Any:
            async with self._semaphore:
                return await factory()

        task = asyncio.get_running_loop().create_task(_guarded(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug(f"Submitted {name} ({len(self._tasks)} pending)")
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Task {task.get_name()} crashed: {error!r}", exc_info=error)

    def pending_count(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every submitted task, including ones submitted meanwhile, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
