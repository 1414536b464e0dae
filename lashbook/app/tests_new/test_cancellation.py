from datetime import time, timedelta
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import select

from lashbook.app.domain.errors import NotFound
from lashbook.app.domain.models import Booking, BookingStatus, PaymentStatus, Slot
from lashbook.app.domain.webhook import PaymentSucceeded
from lashbook.app.services.booking_services import (
    Principal,
    cancel_booking,
    create_booking,
    decide_refund,
)
from lashbook.app.services.reconciliation import handle_webhook
from support import ADMIN_ID, CLIENT_ID, FIXED_NOW, TODAY

MSK = ZoneInfo("Europe/Moscow")
CLIENT = Principal(tg_id=CLIENT_ID, username="anna", first_name="Анна")
ADMIN = Principal(tg_id=ADMIN_ID, is_admin=True)


def _paid(day, start=time(12, 0), status=PaymentStatus.PAID):
    return Booking(date=day, start_time=start, payment_status=status)


def test_refund_when_cancelled_well_in_advance():
    decision = decide_refund(
        _paid(TODAY + timedelta(days=2)), by_admin=False, now=FIXED_NOW, tz=MSK, notice_hours=24
    )
    assert (decision.eligible, decision.reason) == (True, "in_advance")


def test_notice_boundary_is_strict():
    booking = _paid(TODAY + timedelta(days=1))  # exactly 24h after FIXED_NOW
    late = decide_refund(booking, by_admin=False, now=FIXED_NOW, tz=MSK, notice_hours=24)
    early = decide_refund(
        booking, by_admin=False, now=FIXED_NOW - timedelta(minutes=1), tz=MSK, notice_hours=24
    )
    assert (late.eligible, late.reason) == (False, "too_late")
    assert early.eligible is True


def test_notice_is_measured_in_business_timezone():
    # 10:00 tomorrow is 22h away in Moscow; read as UTC it would be 25h away
    booking = _paid(TODAY + timedelta(days=1), start=time(10, 0))
    decision = decide_refund(booking, by_admin=False, now=FIXED_NOW, tz=MSK, notice_hours=24)
    assert decision.reason == "too_late"


def test_admin_always_refunds_paid_booking():
    booking = _paid(TODAY, start=time(13, 0))
    decision = decide_refund(booking, by_admin=True, now=FIXED_NOW, tz=MSK, notice_hours=24)
    assert (decision.eligible, decision.reason) == (True, "admin_cancel")


@pytest.mark.parametrize("status", [PaymentStatus.NONE, PaymentStatus.PENDING, PaymentStatus.REFUNDED])
def test_nothing_to_refund_unless_paid(status):
    booking = _paid(TODAY + timedelta(days=5), status=status)
    for by_admin in (False, True):
        decision = decide_refund(booking, by_admin=by_admin, now=FIXED_NOW, tz=MSK, notice_hours=24)
        assert (decision.eligible, decision.reason) == (False, "not_paid")


async def _confirmed_booking(ctx, make_service, make_slots, day, hours=(10, 11)):
    svc = await make_service(duration_min=60 * len(hours))
    await make_slots(day, list(hours))
    created = await create_booking(ctx, CLIENT, svc, day, f"{hours[0]:02d}:00", now=FIXED_NOW)
    booking_id = created.booking["id"]
    await handle_webhook(ctx, PaymentSucceeded(payment_id=f"pay-{booking_id}", status="succeeded", booking_id=booking_id))
    ctx.notifier.admin_messages.clear()
    return booking_id


async def _state(ctx, booking_id):
    async with ctx.session() as session:
        booking = await session.get(Booking, booking_id)
        slots = (await session.execute(select(Slot).where(Slot.date == booking.date))).scalars().all()
    return booking, slots


@pytest.mark.asyncio
async def test_client_cancel_in_advance_refunds_and_frees_slots(ctx, make_service, make_slots):
    booking_id = await _confirmed_booking(ctx, make_service, make_slots, TODAY + timedelta(days=7))

    result = await cancel_booking(ctx, booking_id, CLIENT, now=FIXED_NOW)

    assert result.as_dict() == {"message": "Запись отменена", "refund_info": "Предоплата 500 ₽ будет возвращена"}
    assert ctx.gateway.refunds == [{"payment_id": f"pay-{booking_id}", "amount": 500}]
    booking, slots = await _state(ctx, booking_id)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_status == PaymentStatus.REFUNDED
    assert booking.cancelled_at is not None
    assert all(not s.is_booked and s.booking_id is None for s in slots)
    assert len(ctx.notifier.admin_messages) == 1
    assert "клиентом" in ctx.notifier.admin_messages[0]
    assert ctx.notifier.user_messages == []


@pytest.mark.asyncio
async def test_client_cancel_too_late_keeps_prepayment(ctx, make_service, make_slots):
    booking_id = await _confirmed_booking(ctx, make_service, make_slots, TODAY + timedelta(days=1))

    result = await cancel_booking(ctx, booking_id, CLIENT, now=FIXED_NOW)

    assert "не возвращается" in result.refund_info
    assert ctx.gateway.refunds == []
    booking, slots = await _state(ctx, booking_id)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_status == PaymentStatus.PAID
    assert all(not s.is_booked for s in slots)


@pytest.mark.asyncio
async def test_admin_cancel_refunds_and_tells_client(ctx, make_service, make_slots):
    booking_id = await _confirmed_booking(ctx, make_service, make_slots, TODAY + timedelta(days=1))

    result = await cancel_booking(ctx, booking_id, ADMIN, as_admin=True, now=FIXED_NOW)

    assert result.refund_info == "Предоплата 500 ₽ будет возвращена"
    booking, _ = await _state(ctx, booking_id)
    assert booking.payment_status == PaymentStatus.REFUNDED
    assert [chat for chat, _ in ctx.notifier.user_messages] == [CLIENT_ID]
    assert "отменена мастером" in ctx.notifier.user_messages[0][1]
    assert "администратором" in ctx.notifier.admin_messages[0]


@pytest.mark.asyncio
async def test_refund_failure_still_cancels(ctx, make_service, make_slots):
    booking_id = await _confirmed_booking(ctx, make_service, make_slots, TODAY + timedelta(days=7))
    ctx.gateway.fail_refund = True

    result = await cancel_booking(ctx, booking_id, CLIENT, now=FIXED_NOW)

    assert "Не удалось вернуть" in result.refund_info
    booking, slots = await _state(ctx, booking_id)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_status == PaymentStatus.PAID
    assert all(not s.is_booked for s in slots)


@pytest.mark.asyncio
async def test_cancel_pending_booking_without_refund(ctx, make_service, make_slots):
    svc = await make_service(duration_min=60)
    await make_slots(TODAY + timedelta(days=7), [10])
    created = await create_booking(ctx, CLIENT, svc, TODAY + timedelta(days=7), "10:00", now=FIXED_NOW)

    result = await cancel_booking(ctx, created.booking["id"], CLIENT, now=FIXED_NOW)

    assert result.refund_info is None
    assert "refund_info" not in result.as_dict()
    assert ctx.gateway.refunds == []
    booking, slots = await _state(ctx, created.booking["id"])
    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_status == PaymentStatus.NONE
    assert not slots[0].is_booked


@pytest.mark.asyncio
async def test_foreign_or_repeated_cancel_is_not_found(ctx, make_service, make_slots):
    booking_id = await _confirmed_booking(ctx, make_service, make_slots, TODAY + timedelta(days=7))

    with pytest.raises(NotFound):
        await cancel_booking(ctx, booking_id, Principal(tg_id=3000), now=FIXED_NOW)
    # the admin flag only counts on the operator path
    with pytest.raises(NotFound):
        await cancel_booking(ctx, booking_id, ADMIN, now=FIXED_NOW)

    await cancel_booking(ctx, booking_id, CLIENT, now=FIXED_NOW)
    with pytest.raises(NotFound):
        await cancel_booking(ctx, booking_id, CLIENT, now=FIXED_NOW)
    with pytest.raises(NotFound):
        await cancel_booking(ctx, 999, CLIENT, now=FIXED_NOW)
    assert len(ctx.gateway.refunds) == 1
