"""Background worker to send 24h visit reminders.

Scans upcoming confirmed bookings and sends the client a reminder about
``reminder_hours_before`` hours before start.  ``reminder_sent`` is set only
after a successful delivery so a failed send is retried on the next pass.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from lashbook.app.core.context import AppContext
from lashbook.app.core.scheduler import PeriodicTask
from lashbook.app.domain.models import Booking, BookingStatus, Service
from lashbook.app.services.shared_services import (
    combine_local,
    format_hm,
    local_today,
    minutes_until,
    utc_now,
)

logger = logging.getLogger(__name__)


async def send_due_reminders(ctx: AppContext, now: datetime | None = None) -> int:
    now = now or utc_now()
    settings = ctx.settings
    tz = settings.tz
    window_minutes = int(settings.reminder_hours_before) * 60
    today = local_today(tz, now)
    last_day = today + timedelta(days=int(settings.reminder_hours_before) // 24 + 1)

    try:
        async with ctx.session() as session:
            rows = list((await session.execute(
                select(Booking, Service.name)
                .join(Service, Service.id == Booking.service_id)
                .where(
                    Booking.status == BookingStatus.CONFIRMED,
                    Booking.reminder_sent.is_(False),
                    Booking.date >= today,
                    Booking.date <= last_day,
                )
            )).all())
    except SQLAlchemyError as e:
        logger.error("Reminder sweep failed: %s", e)
        return 0

    count = 0
    for booking, service_name in rows:
        starts_in = minutes_until(combine_local(booking.date, booking.start_time, tz), now)
        if starts_in <= 0 or starts_in > window_minutes:
            continue
        text = (
            "<b>Напоминание о записи</b>\n\n"
            f"💅 {service_name}\n"
            f"📅 {booking.date.isoformat()} в {format_hm(booking.start_time)}"
        )
        if not await ctx.notifier.notify_user(booking.client_tg_id, text):
            logger.warning("Failed to send 24h reminder to %s for booking %s", booking.client_tg_id, booking.id)
            continue
        try:
            async with ctx.session() as session:
                await session.execute(
                    update(Booking).where(Booking.id == booking.id).values(reminder_sent=True)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Could not mark reminder sent for booking %s: %s", booking.id, e)
            continue
        count += 1
    if count:
        logger.info("Sent %d visit reminders", count)
    return count


def build_reminders_task(ctx: AppContext) -> PeriodicTask:
    async def _remind_once() -> int:
        return await send_due_reminders(ctx)

    return PeriodicTask(
        "reminders-worker",
        ctx.settings.reminders_check_seconds,
        _remind_once,
        initial_delay=2,
    )


async def start_reminders_worker(ctx: AppContext) -> Callable[[], Awaitable[None]]:
    """Start the reminders worker and return an async stop() function."""
    task = build_reminders_task(ctx)
    task.start()
    return task.stop


__all__ = ["send_due_reminders", "build_reminders_task", "start_reminders_worker"]
