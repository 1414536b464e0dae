from datetime import time, timedelta
from types import SimpleNamespace

import pytest

from lashbook.app.domain.errors import ValidationFailed
from lashbook.app.domain.models import ServiceKind
from lashbook.app.services import availability as av
from lashbook.app.services.booking_services import Principal, create_booking
from support import CLIENT_ID, FIXED_NOW, TODAY


def _slot(hour: int, booked: bool = False, length: int = 1):
    return SimpleNamespace(start_time=time(hour, 0), end_time=time(hour + length, 0), is_booked=booked)


def _hm(blocks):
    return [(b.start_time.hour, b.end_time.hour) for b in blocks]


@pytest.mark.parametrize(
    "duration, expected",
    [(60, 1), (61, 2), (90, 2), (120, 2), (180, 3), (0, 1), (30, 1)],
)
def test_slots_needed(duration, expected):
    assert av.slots_needed(duration) == expected


def test_has_consecutive_free_requires_abutting_slots():
    assert av.has_consecutive_free([_slot(10), _slot(11), _slot(13)], 2) is True
    # 10-11 and 12-13 are both free but there is a hole between them
    assert av.has_consecutive_free([_slot(10), _slot(12)], 2) is False
    assert av.has_consecutive_free([_slot(10), _slot(11, booked=True), _slot(12)], 2) is False
    assert av.has_consecutive_free([], 1) is False


def test_first_free_run_skips_booked_prefix():
    run = av.first_free_run([_slot(10, booked=True), _slot(11), _slot(12)], 2)
    assert (run.start_time, run.end_time) == (time(11), time(13))
    assert av.first_free_run([_slot(10, booked=True)], 1) is None


def test_find_bookable_blocks_one_per_start_slot():
    slots = [_slot(10), _slot(11), _slot(12)]
    assert _hm(av.find_bookable_blocks(slots, 2, tight=False)) == [(10, 12), (11, 13)]
    assert _hm(av.find_bookable_blocks(slots, 3, tight=False)) == [(10, 13)]
    assert av.find_bookable_blocks(slots, 4, tight=False) == []


def test_tight_mode_keeps_only_blocks_touching_a_booking():
    slots = [_slot(10), _slot(11, booked=True), _slot(12), _slot(13)]
    assert _hm(av.find_bookable_blocks(slots, 1, tight=True)) == [(10, 11), (12, 13)]
    assert _hm(av.find_bookable_blocks(slots, 1, tight=False)) == [(10, 11), (12, 13), (13, 14)]


def test_tight_mode_without_bookings_offers_everything():
    slots = [_slot(10), _slot(11), _slot(12)]
    assert _hm(av.find_bookable_blocks(slots, 1, tight=True)) == [(10, 11), (11, 12), (12, 13)]


def test_tight_mode_multi_slot_block_adjacency():
    slots = [_slot(10), _slot(11), _slot(12, booked=True), _slot(13), _slot(14), _slot(15)]
    # 10-12 ends where the booking starts, 13-15 starts where it ends; 14-16 floats
    assert _hm(av.find_bookable_blocks(slots, 2, tight=True)) == [(10, 12), (13, 15)]


def test_is_tight_date_threshold():
    assert av.is_tight_date(TODAY, TODAY, 3) is True
    assert av.is_tight_date(TODAY + timedelta(days=3), TODAY, 3) is True
    assert av.is_tight_date(TODAY + timedelta(days=4), TODAY, 3) is False


@pytest.mark.asyncio
async def test_available_times_tight_mode_near_date(ctx, make_service, make_slots):
    svc = await make_service(duration_min=60)
    day = TODAY + timedelta(days=2)
    await make_slots(day, [10, 11, 12, 13])
    await create_booking(ctx, Principal(tg_id=CLIENT_ID), svc, day, "11:00", now=FIXED_NOW)

    result = await av.get_available_times(ctx, day.isoformat(), svc, now=FIXED_NOW)

    assert result.mode == av.MODE_TIGHT
    assert result.as_dict()["times"] == [
        {"start_time": "10:00", "end_time": "11:00"},
        {"start_time": "12:00", "end_time": "13:00"},
    ]


@pytest.mark.asyncio
async def test_available_times_free_mode_far_date(ctx, make_service, make_slots):
    svc = await make_service(duration_min=120)
    day = TODAY + timedelta(days=10)
    await make_slots(day, [10, 11, 12, 14, 15])

    result = await av.get_available_times(ctx, day, svc, now=FIXED_NOW)

    assert result.mode == av.MODE_FREE
    assert _hm(result.times) == [(10, 12), (11, 13), (14, 16)]


@pytest.mark.asyncio
async def test_available_times_unknown_or_addon_service(ctx, make_service, make_slots):
    addon = await make_service(name="Нижние", price=500, duration_min=30, kind=ServiceKind.ADDON)
    day = TODAY + timedelta(days=10)
    await make_slots(day, [10, 11])

    for service_id in (addon, 9999):
        result = await av.get_available_times(ctx, day, service_id, now=FIXED_NOW)
        assert result.as_dict() == {"mode": "free", "times": []}


@pytest.mark.asyncio
async def test_available_times_rejects_bad_date(ctx, make_service):
    svc = await make_service()
    with pytest.raises(ValidationFailed):
        await av.get_available_times(ctx, "10.03.2026", svc, now=FIXED_NOW)


@pytest.mark.asyncio
async def test_available_dates_filters_by_run_length(ctx, make_service, make_slots):
    long_svc = await make_service(duration_min=120)
    inactive = await make_service(name="Old", is_active=False)
    good_day = TODAY + timedelta(days=5)
    gappy_day = TODAY + timedelta(days=6)
    await make_slots(good_day, [10, 11])
    await make_slots(gappy_day, [10, 12])
    await make_slots(TODAY - timedelta(days=1), [10, 11])

    assert await av.get_available_dates(ctx, long_svc, now=FIXED_NOW) == [good_day]
    assert await av.get_available_dates(ctx, None, now=FIXED_NOW) == [good_day, gappy_day]
    assert await av.get_available_dates(ctx, inactive, now=FIXED_NOW) == []
    assert await av.get_available_dates(ctx, 4242, now=FIXED_NOW) == []


@pytest.mark.asyncio
async def test_calendar_reports_future_days_of_month(ctx, make_service, make_slots):
    svc = await make_service(duration_min=120)
    day = TODAY + timedelta(days=1)
    await make_slots(day, [10, 12])
    await make_slots(TODAY + timedelta(days=2), [10, 11])

    days = await av.get_calendar(ctx, 2026, 3, svc, now=FIXED_NOW)

    assert days[0].date == TODAY
    assert days[-1].date.day == 31
    assert len(days) == 22
    by_date = {d.date: d for d in days}
    assert (by_date[day].total, by_date[day].free, by_date[day].bookable) == (2, 2, False)
    assert by_date[TODAY + timedelta(days=2)].bookable is True
    assert by_date[TODAY].total == 0 and by_date[TODAY].bookable is False

    without_service = await av.get_calendar(ctx, 2026, 3, now=FIXED_NOW)
    assert {d.date: d.bookable for d in without_service}[day] is True


@pytest.mark.asyncio
async def test_calendar_rejects_bad_month(ctx):
    with pytest.raises(ValidationFailed):
        await av.get_calendar(ctx, 2026, 13, now=FIXED_NOW)
