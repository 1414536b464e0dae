"""Booking state machine: creation with slot reservation, cancellation, refunds.

Slot ownership changes only through conditional UPDATEs so two requests racing
for one slot cannot both win; whoever sees ``rowcount == 0`` rolls back its own
partial reservation.  Booking status changes are guarded the same way
(``WHERE status IN (...)``) which makes webhook replays and sweeps harmless.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Iterable
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lashbook.app.core.context import AppContext
from lashbook.app.core.notifications import format_client_mention
from lashbook.app.domain.errors import (
    BookingError,
    NotFound,
    PaymentGatewayError,
    SlotConflict,
    StoreError,
    ValidationFailed,
)
from lashbook.app.domain.models import (
    ACTIVE_STATUSES,
    Booking,
    BookingStatus,
    PaymentStatus,
    Service,
    ServiceKind,
    Slot,
    TERMINAL_STATUSES,
)
from lashbook.app.services.availability import slots_needed
from lashbook.app.services.shared_services import (
    add_minutes,
    combine_local,
    format_hm,
    format_money,
    local_today,
    minutes_until,
    parse_date,
    parse_hm,
    utc_now,
)

logger = logging.getLogger(__name__)

__all__ = [
    "Principal",
    "RefundDecision",
    "CreatedBooking",
    "CancelResult",
    "SlotRepo",
    "BookingRepo",
    "serialize_booking",
    "get_addon_price",
    "create_booking",
    "decide_refund",
    "cancel_booking",
    "booking_status",
    "my_bookings",
    "release_booking",
]


@dataclass(frozen=True)
class Principal:
    """Authenticated Telegram user behind a request."""

    tg_id: int
    username: str | None = None
    first_name: str = ""
    is_admin: bool = False


@dataclass(frozen=True)
class RefundDecision:
    eligible: bool
    reason: str


@dataclass
class CreatedBooking:
    booking: dict[str, Any]
    payment_url: str


@dataclass
class CancelResult:
    message: str
    refund_info: str | None = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"message": self.message}
        if self.refund_info is not None:
            out["refund_info"] = self.refund_info
        return out


class SlotRepo:
    """Slot ownership; every write checks ``rowcount``."""

    @staticmethod
    async def window(session: AsyncSession, day: date, start: time, end: time) -> list[Slot]:
        res = await session.execute(
            select(Slot)
            .where(Slot.date == day, Slot.start_time >= start, Slot.start_time < end)
            .order_by(Slot.start_time.asc())
        )
        return list(res.scalars().all())

    @staticmethod
    async def claim(session: AsyncSession, slot_id: int, booking_id: int) -> bool:
        res = await session.execute(
            update(Slot)
            .where(Slot.id == int(slot_id), Slot.is_booked.is_(False))
            .values(is_booked=True, booking_id=int(booking_id))
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return (res.rowcount or 0) == 1

    @staticmethod
    async def release_for_booking(session: AsyncSession, booking_id: int) -> int:
        res = await session.execute(
            update(Slot)
            .where(Slot.booking_id == int(booking_id))
            .values(is_booked=False, booking_id=None)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return int(res.rowcount or 0)


class BookingRepo:
    @staticmethod
    async def get(session: AsyncSession, booking_id: int) -> Booking | None:
        return await session.get(Booking, int(booking_id))

    @staticmethod
    async def insert(session: AsyncSession, **fields: Any) -> Booking:
        booking = Booking(**fields)
        session.add(booking)
        await session.commit()
        await session.refresh(booking)
        return booking

    @staticmethod
    async def set_payment_id(session: AsyncSession, booking_id: int, payment_id: str) -> None:
        await session.execute(
            update(Booking)
            .where(Booking.id == int(booking_id))
            .values(payment_id=payment_id)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    @staticmethod
    async def transition(
        session: AsyncSession,
        booking_id: int,
        expected: Iterable[BookingStatus],
        conditions: Iterable[Any] = (),
        **values: Any,
    ) -> bool:
        """Apply ``values`` only while the row is still in one of ``expected``.

        ``conditions`` are extra WHERE clauses, e.g. the gateway payment id.
        """
        res = await session.execute(
            update(Booking)
            .where(Booking.id == int(booking_id), Booking.status.in_(list(expected)), *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return (res.rowcount or 0) == 1

    @staticmethod
    async def services_by_id(session: AsyncSession, service_ids: Iterable[int]) -> dict[int, Service]:
        ids = {int(s) for s in service_ids}
        if not ids:
            return {}
        res = await session.execute(select(Service).where(Service.id.in_(ids)))
        return {s.id: s for s in res.scalars().all()}


def serialize_booking(booking: Booking, service: Service | None = None) -> dict[str, Any]:
    return {
        "id": booking.id,
        "service_id": booking.service_id,
        "service_name": service.name if service is not None else None,
        "service_price": service.price if service is not None else None,
        "date": booking.date.isoformat(),
        "start_time": format_hm(booking.start_time),
        "end_time": format_hm(booking.end_time),
        "client_tg_id": booking.client_tg_id,
        "client_username": booking.client_username,
        "client_first_name": booking.client_first_name,
        "status": BookingStatus(booking.status).value,
        "payment_status": PaymentStatus(booking.payment_status).value,
        "prepaid_amount": booking.prepaid_amount,
        "total_price": booking.total_price,
        "with_addon": bool(booking.with_addon),
        "created_at": booking.created_at.isoformat() if booking.created_at else None,
    }


async def get_addon_price(session: AsyncSession, default: int) -> int:
    res = await session.execute(
        select(Service.price)
        .where(Service.kind == ServiceKind.ADDON, Service.is_active.is_(True))
        .order_by(Service.sort_order.asc(), Service.id.asc())
        .limit(1)
    )
    price = res.scalar_one_or_none()
    return int(price) if price is not None else int(default)


async def release_booking(
    ctx: AppContext,
    booking_id: int,
    *,
    status: BookingStatus,
    payment_id: str | None = None,
) -> bool:
    """Move a pending booking to ``status`` (payment ``none``) and free its slots.

    With ``payment_id`` set, nothing changes unless it is the booking's stored
    gateway reference.  When the guarded status update does not match, slots
    are still released for an already terminal booking so a half-finished
    earlier attempt is completed; a confirmed booking keeps its slots.
    Returns whether this call performed the status transition.
    """
    conditions = [Booking.payment_id == payment_id] if payment_id is not None else []
    async with ctx.session() as session:
        changed = await BookingRepo.transition(
            session,
            booking_id,
            [BookingStatus.PENDING_PAYMENT],
            conditions,
            status=status,
            payment_status=PaymentStatus.NONE,
        )
        if not changed:
            row = (
                await session.execute(
                    select(Booking.status, Booking.payment_id).where(Booking.id == int(booking_id))
                )
            ).first()
            if row is None:
                return False
            if payment_id is not None and row.payment_id != payment_id:
                logger.warning(
                    "booking %s: payment id %s does not match stored %s; not released",
                    booking_id, payment_id, row.payment_id,
                )
                return False
            if BookingStatus(row.status) not in TERMINAL_STATUSES:
                logger.info("booking %s is %s; slots kept", booking_id, BookingStatus(row.status).value)
                return False
        released = await SlotRepo.release_for_booking(session, booking_id)
    logger.info(
        "booking %s released: status=%s transitioned=%s slots=%d",
        booking_id, status.value, changed, released,
    )
    return changed


async def _compensate(ctx: AppContext, booking_id: int) -> None:
    try:
        await release_booking(ctx, booking_id, status=BookingStatus.EXPIRED)
    except SQLAlchemyError:
        logger.exception("compensation failed for booking %s; slots may stay claimed", booking_id)


async def create_booking(
    ctx: AppContext,
    client: Principal,
    service_id: int,
    day: str | date,
    start: str | time,
    with_addon: bool = False,
    *,
    now: datetime | None = None,
) -> CreatedBooking:
    now = now or utc_now()
    target = parse_date(day)
    start_time = parse_hm(start)
    settings = ctx.settings
    if combine_local(target, start_time, settings.tz) <= now:
        raise ValidationFailed("Нельзя записаться на прошедшее время")

    try:
        async with ctx.session() as session:
            svc = await session.get(Service, int(service_id))
            if svc is None or not svc.is_active or svc.kind != ServiceKind.MAIN:
                raise NotFound("Услуга не найдена")
            end_time = add_minutes(start_time, svc.duration_min)
            needed = slots_needed(svc.duration_min)

            slots = await SlotRepo.window(session, target, start_time, end_time)
            if len(slots) < needed:
                raise NotFound("Недостаточно слотов для записи")
            slots = slots[:needed]
            if any(s.is_booked for s in slots):
                raise SlotConflict()
            if slots[0].start_time != start_time or any(
                prev.end_time != cur.start_time for prev, cur in zip(slots, slots[1:])
            ):
                raise NotFound("Недостаточно слотов для записи")

            addon_price = await get_addon_price(session, settings.default_addon_price) if with_addon else 0
            total_price = int(svc.price) + addon_price
            prepaid = min(int(settings.prepayment_amount), total_price)

            booking = await BookingRepo.insert(
                session,
                service_id=svc.id,
                date=target,
                start_time=start_time,
                end_time=end_time,
                client_tg_id=int(client.tg_id),
                client_username=client.username,
                client_first_name=client.first_name or "",
                status=BookingStatus.PENDING_PAYMENT,
                payment_status=PaymentStatus.PENDING,
                prepaid_amount=prepaid,
                total_price=total_price,
                with_addon=bool(with_addon),
                created_at=now,
            )
            booking_id = booking.id
            slot_ids = [s.id for s in slots]
            service_name = svc.name
    except SQLAlchemyError as e:
        logger.error("create_booking store error: service=%s date=%s start=%s error=%s", service_id, target, start_time, e)
        raise StoreError() from e

    try:
        async with ctx.session() as session:
            for slot_id in slot_ids:
                if not await SlotRepo.claim(session, slot_id, booking_id):
                    logger.info("booking %s lost slot %s to a concurrent booking", booking_id, slot_id)
                    raise SlotConflict()

        intent = await ctx.gateway.create_payment(
            amount=prepaid,
            description=f"Предоплата: {service_name}, {target.isoformat()} {format_hm(start_time)}",
            booking_id=booking_id,
            return_url=settings.webapp_url,
            idempotence_key=f"booking-{booking_id}",
        )

        async with ctx.session() as session:
            await BookingRepo.set_payment_id(session, booking_id, intent.payment_id)
            booking = await BookingRepo.get(session, booking_id)
            svc = await session.get(Service, int(service_id))
            detail = serialize_booking(booking, svc)
    except BookingError:
        await _compensate(ctx, booking_id)
        raise
    except SQLAlchemyError as e:
        logger.error("create_booking store error after insert: booking=%s error=%s", booking_id, e)
        await _compensate(ctx, booking_id)
        raise StoreError() from e
    except Exception:
        logger.exception("create_booking: unexpected failure for booking %s", booking_id)
        await _compensate(ctx, booking_id)
        raise

    logger.info(
        "booking %s created: client=%s service=%s %s %s-%s prepaid=%s",
        booking_id, client.tg_id, service_id, target, format_hm(start_time), format_hm(end_time), prepaid,
    )
    return CreatedBooking(booking=detail, payment_url=intent.confirmation_url)


def decide_refund(
    booking: Booking,
    *,
    by_admin: bool,
    now: datetime,
    tz: ZoneInfo,
    notice_hours: int,
) -> RefundDecision:
    if PaymentStatus(booking.payment_status) != PaymentStatus.PAID:
        return RefundDecision(False, "not_paid")
    if by_admin:
        return RefundDecision(True, "admin_cancel")
    starts_at = combine_local(booking.date, booking.start_time, tz)
    if minutes_until(starts_at, now) > notice_hours * 60:
        return RefundDecision(True, "in_advance")
    return RefundDecision(False, "too_late")


async def cancel_booking(
    ctx: AppContext,
    booking_id: int,
    actor: Principal,
    *,
    as_admin: bool = False,
    now: datetime | None = None,
) -> CancelResult:
    now = now or utc_now()
    settings = ctx.settings
    by_admin = as_admin and actor.is_admin

    try:
        async with ctx.session() as session:
            booking = await BookingRepo.get(session, booking_id)
            if booking is None or (not by_admin and booking.client_tg_id != int(actor.tg_id)):
                raise NotFound("Запись не найдена")
            if BookingStatus(booking.status) not in ACTIVE_STATUSES:
                raise NotFound("Запись не найдена или уже отменена")
            svc = await session.get(Service, booking.service_id)
    except SQLAlchemyError as e:
        logger.error("cancel_booking load failed: booking=%s error=%s", booking_id, e)
        raise StoreError() from e

    decision = decide_refund(
        booking, by_admin=by_admin, now=now, tz=settings.tz, notice_hours=settings.refund_notice_hours
    )
    payment_status = PaymentStatus(booking.payment_status)
    if payment_status == PaymentStatus.PENDING:
        payment_status = PaymentStatus.NONE
    refund_info: str | None = None
    if decision.eligible and booking.payment_id:
        amount = format_money(booking.prepaid_amount, settings.currency)
        try:
            await ctx.gateway.create_refund(payment_id=booking.payment_id, amount=booking.prepaid_amount)
            payment_status = PaymentStatus.REFUNDED
            refund_info = f"Предоплата {amount} будет возвращена"
        except PaymentGatewayError:
            logger.error("refund failed for booking %s payment %s", booking_id, booking.payment_id)
            refund_info = f"Не удалось вернуть предоплату {amount} автоматически, администратор свяжется с вами"
    elif decision.reason == "too_late":
        refund_info = (
            f"Отмена менее чем за {settings.refund_notice_hours} ч. до записи: предоплата не возвращается"
        )

    try:
        async with ctx.session() as session:
            changed = await BookingRepo.transition(
                session,
                booking_id,
                ACTIVE_STATUSES,
                status=BookingStatus.CANCELLED,
                payment_status=payment_status,
                cancelled_at=now,
            )
            released = await SlotRepo.release_for_booking(session, booking_id)
    except SQLAlchemyError as e:
        logger.error("cancel_booking update failed: booking=%s error=%s", booking_id, e)
        raise StoreError() from e
    if not changed:
        # status moved under us (webhook/sweep); slots are released either way
        logger.warning("cancel_booking: booking %s changed concurrently", booking_id)
        raise NotFound("Запись не найдена или уже отменена")

    logger.info(
        "booking %s cancelled by %s (%s): refund=%s slots=%d",
        booking_id, actor.tg_id, "admin" if by_admin else "client", decision.reason, released,
    )

    when = f"{booking.date.isoformat()} {format_hm(booking.start_time)}"
    service_name = svc.name if svc is not None else "услуга"
    mention = format_client_mention(booking.client_username, booking.client_first_name)
    who = "администратором" if by_admin else "клиентом"
    await ctx.notifier.notify_admins(f"❌ Запись отменена {who}\n\n👤 {mention}\n💅 {service_name}\n📅 {when}")
    if by_admin:
        text = f"Ваша запись на {when} ({service_name}) отменена мастером."
        if refund_info:
            text += f"\n{refund_info}"
        await ctx.notifier.notify_user(booking.client_tg_id, text)

    return CancelResult(message="Запись отменена", refund_info=refund_info)


async def booking_status(ctx: AppContext, booking_id: int, principal: Principal) -> dict[str, str]:
    try:
        async with ctx.session() as session:
            booking = await BookingRepo.get(session, booking_id)
    except SQLAlchemyError as e:
        logger.error("booking_status failed: booking=%s error=%s", booking_id, e)
        raise StoreError() from e
    if booking is None or (not principal.is_admin and booking.client_tg_id != int(principal.tg_id)):
        raise NotFound("Запись не найдена")
    return {
        "status": BookingStatus(booking.status).value,
        "payment_status": PaymentStatus(booking.payment_status).value,
    }


async def my_bookings(
    ctx: AppContext, principal: Principal, *, now: datetime | None = None
) -> list[dict[str, Any]]:
    """Upcoming confirmed and awaiting-payment bookings of the caller."""
    today = local_today(ctx.settings.tz, now)
    try:
        async with ctx.session() as session:
            res = await session.execute(
                select(Booking, Service)
                .join(Service, Service.id == Booking.service_id)
                .where(
                    Booking.client_tg_id == int(principal.tg_id),
                    Booking.status.in_(list(ACTIVE_STATUSES)),
                    Booking.date >= today,
                )
                .order_by(Booking.date.asc(), Booking.start_time.asc())
            )
            rows = res.all()
    except SQLAlchemyError as e:
        logger.error("my_bookings failed: client=%s error=%s", principal.tg_id, e)
        raise StoreError() from e
    return [serialize_booking(b, s) for b, s in rows]
