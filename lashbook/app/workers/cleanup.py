"""Periodic pruning of stale rate-limiter keys."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable

from lashbook.app.core.context import AppContext
from lashbook.app.core.scheduler import PeriodicTask

logger = logging.getLogger(__name__)


def build_cleanup_task(ctx: AppContext) -> PeriodicTask:
    async def _cleanup_once() -> int:
        return ctx.limiter.cleanup()

    return PeriodicTask("ratelimit-cleanup", ctx.settings.rate_limit_cleanup_seconds, _cleanup_once)


async def start_cleanup_worker(ctx: AppContext) -> Callable[[], Awaitable[None]]:
    """Start the cleanup worker and return an async stop() function."""
    task = build_cleanup_task(ctx)
    task.start()
    return task.stop


__all__ = ["build_cleanup_task", "start_cleanup_worker"]
