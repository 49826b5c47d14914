"""Detached background tasks with their own error boundary."""
import asyncio
import logging
from typing import Any, Coroutine, Set

logger = logging.getLogger(__name__)

# Strong references; the event loop only keeps weak ones
_background_tasks: Set[asyncio.Task] = set()


def run_in_background(coro: Coroutine[Any, Any, Any], label: str = "background") -> asyncio.Task:
    """
    Schedule ``coro`` without awaiting it.

    Failures are logged with the label and never re-raised, so a failing
    persistence step cannot affect the request that spawned it.
    """
    task = asyncio.create_task(coro, name=label)
    _background_tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def _on_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.warning(f"Background task cancelled: {task.get_name()}")
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            f"Background task failed: {task.get_name()}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )


async def drain_background(timeout: float = 30.0) -> None:
    """Wait for in-flight background tasks (shutdown, tests)."""
    while True:
        tasks = [t for t in _background_tasks if not t.done()]
        if not tasks:
            return
        _, still_pending = await asyncio.wait(tasks, timeout=timeout)
        if still_pending:
            logger.warning(f"{len(still_pending)} background task(s) still running after {timeout}s")
            return
