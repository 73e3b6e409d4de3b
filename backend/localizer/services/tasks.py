import asyncio
import logging
from typing import Awaitable, Coroutine, Optional, Set, TypeVar

from localizer.core.errors import Timeout

logger = logging.getLogger(__name__)

T = TypeVar('T')


class TaskRunner:
    """Single-process background task registry (no external queue)."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s crashed: %r", task.get_name(), exc, exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every spawned task, including ones spawned meanwhile, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _log_late_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Work finished with an error after its timeout: %s", exc)
    else:
        logger.info("Work finished after its timeout")


async def bounded(awaitable: Awaitable[T], seconds: float, what: str) -> T:
    """Wait at most ``seconds``; on expiry raise Timeout but let the work keep running."""
    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.wait_for(asyncio.shield(task), seconds)
    except asyncio.TimeoutError:
        task.add_done_callback(_log_late_result)
        raise Timeout(f"{what} exceeded {seconds:g}s and is still running in the background") from None
