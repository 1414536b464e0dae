from datetime import time, timedelta

import pytest
from sqlalchemy import select

from lashbook.app.domain.errors import NotFound, PaymentGatewayError, SlotConflict, ValidationFailed
from lashbook.app.domain.models import Booking, BookingStatus, PaymentStatus, ServiceKind, Slot
from lashbook.app.services import booking_services
from lashbook.app.services.booking_services import Principal, create_booking
from support import CLIENT_ID, FIXED_NOW, TODAY

CLIENT = Principal(tg_id=CLIENT_ID, username="anna", first_name="Анна")
DAY = TODAY + timedelta(days=7)


async def _slot_owners(ctx, day):
    async with ctx.session() as session:
        res = await session.execute(select(Slot).where(Slot.date == day).order_by(Slot.start_time))
        return {s.start_time.hour: (s.is_booked, s.booking_id) for s in res.scalars().all()}


async def _booking(ctx, booking_id):
    async with ctx.session() as session:
        return await session.get(Booking, booking_id)


@pytest.mark.asyncio
async def test_two_hour_booking_claims_two_slots(ctx, make_service, make_slots):
    svc = await make_service(duration_min=120, price=2000)
    await make_slots(DAY, [10, 11, 12])

    created = await create_booking(ctx, CLIENT, svc, DAY.isoformat(), "10:00", now=FIXED_NOW)

    booking = created.booking
    assert booking["status"] == "pending_payment"
    assert booking["payment_status"] == "pending"
    assert (booking["start_time"], booking["end_time"]) == ("10:00", "12:00")
    assert booking["service_name"] == "Классика"
    assert booking["client_username"] == "anna"
    assert created.payment_url == f"https://pay.example/checkout/{booking['id']}"

    owners = await _slot_owners(ctx, DAY)
    assert owners[10] == (True, booking["id"])
    assert owners[11] == (True, booking["id"])
    assert owners[12] == (False, None)

    stored = await _booking(ctx, booking["id"])
    assert stored.payment_id == f"pay-{booking['id']}"
    assert ctx.gateway.payments == [
        {
            "amount": 500,
            "booking_id": booking["id"],
            "return_url": ctx.settings.webapp_url,
            "idempotence_key": f"booking-{booking['id']}",
        }
    ]


@pytest.mark.asyncio
async def test_ninety_minute_service_rounds_up_to_two_slots(ctx, make_service, make_slots):
    svc = await make_service(duration_min=90)
    await make_slots(DAY, [10, 11])

    created = await create_booking(ctx, CLIENT, svc, DAY, time(10, 0), now=FIXED_NOW)

    assert created.booking["end_time"] == "11:30"
    owners = await _slot_owners(ctx, DAY)
    assert owners[10][0] and owners[11][0]


@pytest.mark.asyncio
async def test_prepayment_capped_by_total(ctx, make_service, make_slots):
    svc = await make_service(duration_min=60, price=300)
    await make_slots(DAY, [10])

    created = await create_booking(ctx, CLIENT, svc, DAY, "10:00", now=FIXED_NOW)

    assert created.booking["prepaid_amount"] == 300
    assert created.booking["total_price"] == 300


@pytest.mark.asyncio
async def test_addon_uses_catalogue_price(ctx, make_service, make_slots):
    svc = await make_service(duration_min=60, price=2000)
    await make_service(name="Нижние ресницы", price=700, duration_min=30, kind=ServiceKind.ADDON)
    await make_slots(DAY, [10])

    created = await create_booking(ctx, CLIENT, svc, DAY, "10:00", with_addon=True, now=FIXED_NOW)

    assert created.booking["total_price"] == 2700
    assert created.booking["with_addon"] is True


@pytest.mark.asyncio
async def test_addon_falls_back_to_default_price(ctx, make_service, make_slots):
    svc = await make_service(duration_min=60, price=2000)
    await make_slots(DAY, [10])

    created = await create_booking(ctx, CLIENT, svc, DAY, "10:00", with_addon=True, now=FIXED_NOW)

    assert created.booking["total_price"] == 2500


@pytest.mark.asyncio
@pytest.mark.parametrize("day, start", [("2026/03/17", "10:00"), ("2026-03-17", "10am"), ("", "10:00")])
async def test_malformed_date_or_time(ctx, make_service, day, start):
    svc = await make_service()
    with pytest.raises(ValidationFailed):
        await create_booking(ctx, CLIENT, svc, day, start, now=FIXED_NOW)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "day, start",
    [
        (TODAY - timedelta(days=1), "13:00"),
        (TODAY, "11:00"),
        # FIXED_NOW is exactly 12:00 business time
        (TODAY, "12:00"),
    ],
)
async def test_start_in_the_past_is_rejected(ctx, make_service, make_slots, day, start):
    svc = await make_service(duration_min=60)
    await make_slots(day, [11, 12, 13])

    with pytest.raises(ValidationFailed):
        await create_booking(ctx, CLIENT, svc, day, start, now=FIXED_NOW)
    assert ctx.gateway.payments == []
    assert all(not booked for booked, _ in (await _slot_owners(ctx, day)).values())


@pytest.mark.asyncio
async def test_later_today_is_bookable(ctx, make_service, make_slots):
    svc = await make_service(duration_min=60)
    await make_slots(TODAY, [13])

    created = await create_booking(ctx, CLIENT, svc, TODAY, "13:00", now=FIXED_NOW)
    assert created.booking["date"] == TODAY.isoformat()


@pytest.mark.asyncio
async def test_unknown_inactive_or_addon_service_is_not_found(ctx, make_service, make_slots):
    inactive = await make_service(name="Old", is_active=False, duration_min=60)
    addon = await make_service(name="Нижние", kind=ServiceKind.ADDON, duration_min=30)
    await make_slots(DAY, [10])

    for service_id in (inactive, addon, 777):
        with pytest.raises(NotFound):
            await create_booking(ctx, CLIENT, service_id, DAY, "10:00", now=FIXED_NOW)
    assert ctx.gateway.payments == []


@pytest.mark.asyncio
async def test_not_enough_slots(ctx, make_service, make_slots):
    svc = await make_service(duration_min=120)
    await make_slots(DAY, [10])

    with pytest.raises(NotFound):
        await create_booking(ctx, CLIENT, svc, DAY, "10:00", now=FIXED_NOW)


@pytest.mark.asyncio
async def test_hole_in_schedule_is_not_bookable(ctx, make_service, make_slots):
    svc = await make_service(duration_min=120)
    await make_slots(DAY, [10, 12])

    with pytest.raises(NotFound):
        await create_booking(ctx, CLIENT, svc, DAY, "10:00", now=FIXED_NOW)


@pytest.mark.asyncio
async def test_start_must_fall_on_a_slot_boundary(ctx, make_service, make_slots):
    svc = await make_service(duration_min=60)
    await make_slots(DAY, [10, 11, 12])

    with pytest.raises(NotFound):
        await create_booking(ctx, CLIENT, svc, DAY, "10:30", now=FIXED_NOW)


@pytest.mark.asyncio
async def test_overlapping_booking_conflicts(ctx, make_service, make_slots):
    svc = await make_service(duration_min=120)
    await make_slots(DAY, [10, 11, 12])
    first = await create_booking(ctx, CLIENT, svc, DAY, "10:00", now=FIXED_NOW)

    with pytest.raises(SlotConflict):
        await create_booking(ctx, Principal(tg_id=3000), svc, DAY, "11:00", now=FIXED_NOW)

    owners = await _slot_owners(ctx, DAY)
    assert owners[11] == (True, first.booking["id"])
    assert owners[12] == (False, None)
    async with ctx.session() as session:
        count = len((await session.execute(select(Booking))).scalars().all())
    # the conflict is detected before anything is inserted
    assert count == 1


@pytest.mark.asyncio
async def test_gateway_failure_rolls_back(ctx, make_service, make_slots):
    svc = await make_service(duration_min=120)
    await make_slots(DAY, [10, 11])
    ctx.gateway.fail_payment = True

    with pytest.raises(PaymentGatewayError):
        await create_booking(ctx, CLIENT, svc, DAY, "10:00", now=FIXED_NOW)

    owners = await _slot_owners(ctx, DAY)
    assert owners == {10: (False, None), 11: (False, None)}
    async with ctx.session() as session:
        booking = (await session.execute(select(Booking))).scalar_one()
    assert booking.status == BookingStatus.EXPIRED
    assert booking.payment_status == PaymentStatus.NONE

    # the released slots can be booked again
    ctx.gateway.fail_payment = False
    again = await create_booking(ctx, CLIENT, svc, DAY, "10:00", now=FIXED_NOW)
    assert again.booking["status"] == "pending_payment"


@pytest.mark.asyncio
async def test_lost_claim_releases_partial_reservation(ctx, make_service, make_slots, monkeypatch):
    svc = await make_service(duration_min=120)
    await make_slots(DAY, [10, 11])
    real_claim = booking_services.SlotRepo.claim
    calls = []

    async def flaky_claim(session, slot_id, booking_id):
        calls.append(slot_id)
        if len(calls) == 2:
            return False
        return await real_claim(session, slot_id, booking_id)

    monkeypatch.setattr(booking_services.SlotRepo, "claim", staticmethod(flaky_claim))

    with pytest.raises(SlotConflict):
        await create_booking(ctx, CLIENT, svc, DAY, "10:00", now=FIXED_NOW)

    assert await _slot_owners(ctx, DAY) == {10: (False, None), 11: (False, None)}
    assert ctx.gateway.payments == []
    async with ctx.session() as session:
        booking = (await session.execute(select(Booking))).scalar_one()
    assert booking.status == BookingStatus.EXPIRED


@pytest.mark.asyncio
async def test_booking_status_is_owner_scoped(ctx, make_service, make_slots):
    svc = await make_service(duration_min=60)
    await make_slots(DAY, [10])
    created = await create_booking(ctx, CLIENT, svc, DAY, "10:00", now=FIXED_NOW)
    booking_id = created.booking["id"]

    status = await booking_services.booking_status(ctx, booking_id, CLIENT)
    assert status == {"status": "pending_payment", "payment_status": "pending"}

    admin_view = await booking_services.booking_status(ctx, booking_id, Principal(tg_id=1, is_admin=True))
    assert admin_view["status"] == "pending_payment"

    with pytest.raises(NotFound):
        await booking_services.booking_status(ctx, booking_id, Principal(tg_id=3000))
    with pytest.raises(NotFound):
        await booking_services.booking_status(ctx, 999, CLIENT)


@pytest.mark.asyncio
async def test_my_bookings_lists_upcoming_active(ctx, make_service, make_slots):
    svc = await make_service(duration_min=60)
    later = DAY + timedelta(days=1)
    await make_slots(DAY, [10])
    await make_slots(later, [15])
    await create_booking(ctx, Principal(tg_id=3000), svc, DAY, "10:00", now=FIXED_NOW)
    mine = await create_booking(ctx, CLIENT, svc, later, "15:00", now=FIXED_NOW)

    rows = await booking_services.my_bookings(ctx, CLIENT, now=FIXED_NOW)

    assert [r["id"] for r in rows] == [mine.booking["id"]]
    assert rows[0]["service_name"] == "Классика"
    assert rows[0]["service_price"] == 2000
