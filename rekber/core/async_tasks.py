"""Best-effort background work that must never fail the request that spawned it.

Notifications and chat broadcasts run after a financial transition has been
committed; their failures are logged here and go no further.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)
_PENDING: set[asyncio.Task[Any]] = set()


def _reap(task: asyncio.Task[Any]) -> None:
    _PENDING.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task %s failed",
            task.get_name(),
            exc_info=(type(exc), exc, exc.__traceback__),
        )


def fire_and_forget(
    coro: Coroutine[Any, Any, Any], *, task_name: str | None = None
) -> asyncio.Task[Any] | None:
    """Schedule *coro* on the running loop without awaiting it."""
    try:
        task = asyncio.create_task(coro, name=task_name)
    except RuntimeError:
        # No running loop (e.g. during shutdown): drop the work.
        coro.close()
        logger.debug("No event loop; skipped background task %s", task_name)
        return None
    _PENDING.add(task)
    task.add_done_callback(_reap)
    return task


async def drain_background_tasks(timeout_seconds: float = 1.0) -> None:
    """Wait for in-flight background tasks, cancelling stragglers.

    Used on shutdown and by tests that assert on side effects of
    notifications or broadcasts.
    """
    pending = {task for task in _PENDING if not task.done()}
    if not pending:
        return

    _, still_pending = await asyncio.wait(pending, timeout=timeout_seconds)
    for task in still_pending:
        task.cancel()
    if still_pending:
        await asyncio.gather(*still_pending, return_exceptions=True)
