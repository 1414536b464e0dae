"""Background worker to expire unpaid bookings.

Every ``payment_expiry_check_seconds`` the sweep moves bookings still in
``pending_payment`` past the payment timeout to ``expired`` and releases
their slots.

start_expiration_worker returns an async callable that stops the worker gracefully.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable

from lashbook.app.core.context import AppContext
from lashbook.app.core.scheduler import PeriodicTask
from lashbook.app.services.reconciliation import expire_pending_payments

logger = logging.getLogger(__name__)


def build_expiration_task(ctx: AppContext) -> PeriodicTask:
    async def _expire_once() -> int:
        return await expire_pending_payments(ctx)

    return PeriodicTask(
        "expire-worker",
        ctx.settings.payment_expiry_check_seconds,
        _expire_once,
        initial_delay=2,
    )


async def start_expiration_worker(ctx: AppContext) -> Callable[[], Awaitable[None]]:
    """Start the expiration worker and return an async stop() function."""
    task = build_expiration_task(ctx)
    task.start()
    return task.stop


__all__ = ["build_expiration_task", "start_expiration_worker"]
