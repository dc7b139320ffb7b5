"""
Periodic background tasks.

Helpers for running a coroutine on a fixed interval and cancelling it at
shutdown. Maintenance modules register their cycle here instead of writing
their own loops.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


async def startup(task_fn: Callable[[], Awaitable[None]], interval: float) -> asyncio.Task:
    """
    Schedule ``task_fn`` to run every ``interval`` seconds.

    The first run happens after one interval. Exceptions raised by a cycle
    are logged and the loop keeps going until cancelled.
    """

    async def _periodic() -> None:
        await asyncio.sleep(interval)
        while True:
            try:
                await task_fn()
            except Exception as exc:
                logger.error("Maintenance cycle failed: %s", exc)
            await asyncio.sleep(interval)

    return asyncio.create_task(_periodic())


async def shutdown(task: asyncio.Task | None) -> None:
    """Cancel a task started with :func:`startup` and wait for it to finish."""

    if not task:
        return

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
