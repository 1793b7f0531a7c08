# netharness/utils/async_helpers.py
"""
Async utilities for safe task management.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional

logger = logging.getLogger(__name__)


def create_safe_task(
    coro: Coroutine[Any, Any, Any],
    name: Optional[str] = None,
    on_error: Optional[Callable[[BaseException], None]] = None,
) -> asyncio.Task:
    """
    Create an asyncio task whose failure is never silently dropped.

    Args:
        coro: The coroutine to run as a task
        name: Optional name for the task (for logging)
        on_error: Called with the exception if the task fails. Without it
            the exception is logged.

    Returns:
        The created asyncio.Task
    """
    task = asyncio.get_running_loop().create_task(coro, name=name)

    def _handle_exception(t: asyncio.Task):
        if t.cancelled():
            return
        exc = t.exception()
        if exc is None:
            return
        if on_error is not None:
            on_error(exc)
        else:
            task_name = name or t.get_name()
            logger.error(f"[AsyncTask:{task_name}] Unhandled exception: {exc}", exc_info=exc)

    task.add_done_callback(_handle_exception)
    return task


async def cancel_and_wait(task: Optional[asyncio.Task]) -> None:
    """Cancel a task and wait until it has actually stopped."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        # Only swallow the cancellation we caused; propagate if we were cancelled too.
        current = asyncio.current_task()
        if current is not None and current.cancelling():
            raise
