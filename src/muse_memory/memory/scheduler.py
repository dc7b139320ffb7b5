"""Schedule memory maintenance (reconciliation + expiry sweep)."""

from __future__ import annotations

import asyncio
import logging

from muse_memory.maintenance import startup as _startup, shutdown as _shutdown
from . import maintenance

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None


async def start(service, interval: float | None = None) -> asyncio.Task:
    """Run one maintenance cycle now and schedule the rest.

    :param service: :class:`~muse_memory.memory.service.MemoryService` whose
        repo, index and policy the cycle uses.
    :param interval: Seconds between cycles; defaults to the service setting.
    """
    global _task

    interval = interval if interval is not None else service.maintenance_interval

    async def _cycle() -> None:
        logger.info("Starting memory maintenance (interval=%ss)", interval)
        await maintenance.run(
            service.repo,
            service.index,
            reconcile_limit=service.reconcile_batch,
            policy_config=service.policy_config,
        )

    await _cycle()

    if not _task or _task.done():
        _task = await _startup(_cycle, interval)
    return _task


async def stop() -> None:
    """Cancel scheduled maintenance if running."""
    global _task

    if _task:
        await _shutdown(_task)
        _task = None
