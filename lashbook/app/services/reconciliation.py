"""Payment reconciliation: gateway webhooks and the unpaid-booking sweep.

Both paths change a booking only while it is still ``pending_payment`` so a
replayed webhook, or a webhook racing the sweep, is a no-op.  A payment that
succeeds after its booking expired or was cancelled is refunded.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from lashbook.app.core.context import AppContext
from lashbook.app.core.notifications import format_client_mention
from lashbook.app.domain.errors import PaymentGatewayError
from lashbook.app.domain.models import (
    Booking,
    BookingStatus,
    PaymentStatus,
    Service,
    TERMINAL_STATUSES,
)
from lashbook.app.domain.webhook import (
    PaymentCanceled,
    PaymentSucceeded,
    WebhookEvent,
)
from lashbook.app.services.booking_services import BookingRepo, release_booking
from lashbook.app.services.shared_services import format_hm, format_money, utc_now

logger = logging.getLogger(__name__)

__all__ = [
    "OUTCOME_CONFIRMED",
    "OUTCOME_EXPIRED",
    "OUTCOME_NOOP",
    "OUTCOME_IGNORED",
    "OUTCOME_REJECTED",
    "OUTCOME_LATE_PAYMENT",
    "handle_webhook",
    "expire_pending_payments",
]

OUTCOME_CONFIRMED = "confirmed"
OUTCOME_EXPIRED = "expired"
OUTCOME_NOOP = "noop"
OUTCOME_IGNORED = "ignored"
OUTCOME_REJECTED = "rejected"
OUTCOME_LATE_PAYMENT = "late_payment"


async def _notify_paid(ctx: AppContext, booking_id: int) -> None:
    async with ctx.session() as session:
        booking = await BookingRepo.get(session, booking_id)
        if booking is None:
            return
        svc = await session.get(Service, booking.service_id)
    mention = format_client_mention(booking.client_username, booking.client_first_name)
    addon = "\n   + доп. услуга" if booking.with_addon else ""
    message = (
        "📋 Новая запись! 💳 Оплачено\n\n"
        f"👤 {mention}\n"
        f"💅 {svc.name if svc else '?'}{addon}\n"
        f"📅 {booking.date.isoformat()} в {format_hm(booking.start_time)} — {format_hm(booking.end_time)}\n"
        f"💰 Предоплата {format_money(booking.prepaid_amount, ctx.settings.currency)}"
    )
    await ctx.notifier.notify_admins(message)


async def _settle_late_payment(ctx: AppContext, booking: Booking, payment_id: str) -> str:
    """Money arrived for a booking that already expired or was cancelled."""
    booking_id = booking.id
    logger.warning(
        "webhook: payment %s succeeded for %s booking %s; refunding",
        payment_id, BookingStatus(booking.status).value, booking_id,
    )
    async with ctx.session() as session:
        claimed = await BookingRepo.transition(
            session,
            booking_id,
            TERMINAL_STATUSES,
            [Booking.payment_id == payment_id, Booking.payment_status == PaymentStatus.NONE],
            payment_status=PaymentStatus.REFUNDED,
        )
    if not claimed:
        logger.info("webhook: late payment %s for booking %s already handled", payment_id, booking_id)
        return OUTCOME_NOOP

    amount = format_money(booking.prepaid_amount, ctx.settings.currency)
    try:
        await ctx.gateway.create_refund(payment_id=payment_id, amount=booking.prepaid_amount)
        note = f"Предоплата {amount} возвращена автоматически"
    except PaymentGatewayError:
        logger.error("webhook: refund of late payment %s for booking %s failed", payment_id, booking_id)
        async with ctx.session() as session:
            await BookingRepo.transition(
                session,
                booking_id,
                TERMINAL_STATUSES,
                [Booking.payment_id == payment_id],
                payment_status=PaymentStatus.PAID,
            )
        note = f"Не удалось вернуть {amount} автоматически, верните вручную"
    await ctx.notifier.notify_admins(
        "⚠️ Оплата после отмены записи\n\n"
        f"Запись #{booking_id} ({BookingStatus(booking.status).value})\n"
        f"Платёж {payment_id}\n"
        f"{note}"
    )
    return OUTCOME_LATE_PAYMENT


async def _apply_succeeded(ctx: AppContext, event: PaymentSucceeded) -> str:
    booking_id = event.booking_id
    async with ctx.session() as session:
        changed = await BookingRepo.transition(
            session,
            booking_id,
            [BookingStatus.PENDING_PAYMENT],
            [Booking.payment_id == event.payment_id],
            status=BookingStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
        )
        booking = None if changed else await BookingRepo.get(session, booking_id)
    if changed:
        logger.info("webhook: booking %s confirmed (payment=%s)", booking_id, event.payment_id)
        try:
            await _notify_paid(ctx, booking_id)
        except SQLAlchemyError as e:
            logger.error("webhook: could not load booking %s for notification: %s", booking_id, e)
        return OUTCOME_CONFIRMED

    if booking is None:
        logger.warning("webhook: payment %s names unknown booking %s", event.payment_id, booking_id)
        return OUTCOME_NOOP
    if booking.payment_id != event.payment_id:
        logger.warning(
            "webhook: payment %s does not match booking %s (stored %s); rejected",
            event.payment_id, booking_id, booking.payment_id,
        )
        return OUTCOME_REJECTED
    if BookingStatus(booking.status) in TERMINAL_STATUSES:
        return await _settle_late_payment(ctx, booking, event.payment_id)
    logger.info("webhook: payment.succeeded for booking %s is a replay; no-op", booking_id)
    return OUTCOME_NOOP


async def handle_webhook(ctx: AppContext, event: WebhookEvent) -> str:
    """Apply one decoded gateway event; never raises.

    An event only acts on the booking whose stored payment id it carries.
    Returns an outcome label for logging and tests.
    """
    if not isinstance(event, (PaymentSucceeded, PaymentCanceled)):
        logger.info("webhook: ignoring event %r payment=%s", getattr(event, "event", ""), event.payment_id)
        return OUTCOME_IGNORED
    if event.booking_id is None:
        logger.warning("webhook: missing booking_id in metadata, payment=%s", event.payment_id)
        return OUTCOME_IGNORED
    if not event.payment_id:
        logger.warning("webhook: missing payment id for booking %s", event.booking_id)
        return OUTCOME_IGNORED

    booking_id = event.booking_id
    try:
        if isinstance(event, PaymentSucceeded):
            return await _apply_succeeded(ctx, event)

        changed = await release_booking(
            ctx, booking_id, status=BookingStatus.EXPIRED, payment_id=event.payment_id
        )
        logger.info("webhook: payment.canceled for booking %s (transitioned=%s)", booking_id, changed)
        return OUTCOME_EXPIRED if changed else OUTCOME_NOOP
    except SQLAlchemyError as e:
        logger.error("webhook: store error for booking %s: %s", booking_id, e)
        return OUTCOME_NOOP


async def expire_pending_payments(ctx: AppContext, now: datetime | None = None) -> int:
    """Expire bookings left in ``pending_payment`` past the payment timeout."""
    now = now or utc_now()
    cutoff = now - timedelta(minutes=max(1, int(ctx.settings.payment_timeout_minutes)))
    try:
        async with ctx.session() as session:
            res = await session.execute(
                select(Booking.id).where(
                    Booking.status == BookingStatus.PENDING_PAYMENT,
                    Booking.created_at < cutoff,
                )
            )
            ids = [int(x) for x in res.scalars().all()]
    except SQLAlchemyError as e:
        logger.error("Expiration sweep failed: %s", e)
        return 0

    count = 0
    for booking_id in ids:
        try:
            if await release_booking(ctx, booking_id, status=BookingStatus.EXPIRED):
                count += 1
        except SQLAlchemyError as e:
            logger.error("Failed to expire booking %s: %s", booking_id, e)
    if count:
        logger.info("Expired %d unpaid bookings", count)
    return count
