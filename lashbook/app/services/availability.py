"""Availability engine: contiguous free-slot blocks for a service duration.

All scanning helpers expect slots of a single date ordered by ``start_time``.
A block of ``needed`` slots qualifies when none of them is booked and every
adjacent pair abuts exactly (``prev.end_time == cur.start_time``); a hole in
the operator's schedule therefore breaks a block even if both sides are free.

Tight mode (date within ``tight_mode_days`` of today) only offers blocks that
touch an existing booking so near-term bookings fill gaps instead of
fragmenting the day.  A date without any booking has nothing to stick to and
falls back to the full list.
"""
from __future__ import annotations

import calendar
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from lashbook.app.core.context import AppContext
from lashbook.app.domain.errors import StoreError, ValidationFailed
from lashbook.app.domain.models import Service, ServiceKind, Slot
from lashbook.app.services.shared_services import (
    days_between,
    format_hm,
    local_today,
    parse_date,
)

logger = logging.getLogger(__name__)

MODE_TIGHT = "tight"
MODE_FREE = "free"

__all__ = [
    "TimeBlock",
    "AvailableTimes",
    "CalendarDay",
    "slots_needed",
    "has_consecutive_free",
    "first_free_run",
    "find_bookable_blocks",
    "is_adjacent_to_booked",
    "is_tight_date",
    "get_available_dates",
    "get_available_times",
    "get_calendar",
]


class SlotLike(Protocol):
    start_time: time
    end_time: time
    is_booked: bool


@dataclass(frozen=True)
class TimeBlock:
    start_time: time
    end_time: time

    def as_dict(self) -> dict[str, str]:
        return {"start_time": format_hm(self.start_time), "end_time": format_hm(self.end_time)}


@dataclass
class AvailableTimes:
    mode: str
    times: list[TimeBlock] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {"mode": self.mode, "times": [t.as_dict() for t in self.times]}


@dataclass
class CalendarDay:
    date: date
    total: int
    free: int
    bookable: bool


def slots_needed(duration_minutes: int) -> int:
    """Number of one-hour slots a service occupies (at least one)."""
    return max(1, math.ceil(int(duration_minutes) / 60))


def _run_at(slots: Sequence[SlotLike], i: int, needed: int) -> bool:
    if i + needed > len(slots):
        return False
    for j in range(needed):
        cur = slots[i + j]
        if cur.is_booked:
            return False
        if j > 0 and slots[i + j - 1].end_time != cur.start_time:
            return False
    return True


def _iter_runs(slots: Sequence[SlotLike], needed: int):
    for i in range(len(slots)):
        if slots[i].is_booked:
            continue
        if i + needed > len(slots):
            break
        if _run_at(slots, i, needed):
            yield TimeBlock(slots[i].start_time, slots[i + needed - 1].end_time)


def first_free_run(slots: Sequence[SlotLike], needed: int) -> TimeBlock | None:
    return next(_iter_runs(slots, max(1, needed)), None)


def has_consecutive_free(slots: Sequence[SlotLike], needed: int) -> bool:
    return first_free_run(slots, needed) is not None


def is_adjacent_to_booked(block: TimeBlock, slots: Sequence[SlotLike]) -> bool:
    for slot in slots:
        if not slot.is_booked:
            continue
        if block.start_time == slot.end_time or block.end_time == slot.start_time:
            return True
    return False


def find_bookable_blocks(slots: Sequence[SlotLike], needed: int, tight: bool) -> list[TimeBlock]:
    """Every qualifying block (one per start slot), filtered in tight mode."""
    blocks = list(_iter_runs(slots, max(1, needed)))
    if not tight or not any(s.is_booked for s in slots):
        return blocks
    return [b for b in blocks if is_adjacent_to_booked(b, slots)]


def is_tight_date(target: date, today: date, threshold_days: int) -> bool:
    return days_between(today, target) <= threshold_days


# ---------------------------------------------------------------------------
# Store-backed queries
# ---------------------------------------------------------------------------

async def _get_bookable_service(session, service_id: int) -> Service | None:
    svc = await session.get(Service, int(service_id))
    if svc is None or not svc.is_active or svc.kind != ServiceKind.MAIN:
        return None
    return svc


async def _slots_for_date(session, day: date) -> list[Slot]:
    res = await session.execute(
        select(Slot).where(Slot.date == day).order_by(Slot.start_time.asc())
    )
    return list(res.scalars().all())


async def _slots_by_date(session, start: date, end: date | None = None) -> dict[date, list[Slot]]:
    stmt = select(Slot).where(Slot.date >= start)
    if end is not None:
        stmt = stmt.where(Slot.date <= end)
    res = await session.execute(stmt.order_by(Slot.date.asc(), Slot.start_time.asc()))
    grouped: dict[date, list[Slot]] = {}
    for slot in res.scalars().all():
        grouped.setdefault(slot.date, []).append(slot)
    return grouped


async def get_available_dates(
    ctx: AppContext, service_id: int | None = None, *, now: datetime | None = None
) -> list[date]:
    """Future dates that have at least one block long enough for the service."""
    today = local_today(ctx.settings.tz, now)
    try:
        async with ctx.session() as session:
            needed = 1
            if service_id is not None:
                svc = await _get_bookable_service(session, service_id)
                if svc is None:
                    return []
                needed = slots_needed(svc.duration_min)
            grouped = await _slots_by_date(session, today)
    except SQLAlchemyError as e:
        logger.error("available dates query failed: service_id=%s error=%s", service_id, e)
        raise StoreError() from e
    return [d for d, slots in grouped.items() if has_consecutive_free(slots, needed)]


async def get_available_times(
    ctx: AppContext, day: str | date, service_id: int, *, now: datetime | None = None
) -> AvailableTimes:
    target = parse_date(day)
    today = local_today(ctx.settings.tz, now)
    tight = is_tight_date(target, today, ctx.settings.tight_mode_days)
    try:
        async with ctx.session() as session:
            svc = await _get_bookable_service(session, service_id)
            if svc is None:
                return AvailableTimes(mode=MODE_FREE)
            slots = await _slots_for_date(session, target)
    except SQLAlchemyError as e:
        logger.error("available times query failed: date=%s service_id=%s error=%s", target, service_id, e)
        raise StoreError() from e

    blocks = find_bookable_blocks(slots, slots_needed(svc.duration_min), tight)
    return AvailableTimes(mode=MODE_TIGHT if tight else MODE_FREE, times=blocks)


async def get_calendar(
    ctx: AppContext,
    year: int,
    month: int,
    service_id: int | None = None,
    *,
    now: datetime | None = None,
) -> list[CalendarDay]:
    """Per-day slot stats for a month, skipping past days."""
    if not 1 <= int(month) <= 12:
        raise ValidationFailed("Неверный месяц")
    today = local_today(ctx.settings.tz, now)
    first = date(int(year), int(month), 1)
    last = date(int(year), int(month), calendar.monthrange(int(year), int(month))[1])
    try:
        async with ctx.session() as session:
            needed = 1
            if service_id is not None:
                svc = await _get_bookable_service(session, service_id)
                needed = slots_needed(svc.duration_min) if svc is not None else 1
            grouped = await _slots_by_date(session, max(first, today), last)
    except SQLAlchemyError as e:
        logger.error("calendar query failed: %s-%s error=%s", year, month, e)
        raise StoreError() from e

    days: list[CalendarDay] = []
    for offset in range((last - first).days + 1):
        day = date.fromordinal(first.toordinal() + offset)
        if day < today:
            continue
        slots = grouped.get(day, [])
        free = sum(1 for s in slots if not s.is_booked)
        if not slots:
            bookable = False
        elif service_id is not None:
            bookable = has_consecutive_free(slots, needed)
        else:
            bookable = free > 0
        days.append(CalendarDay(date=day, total=len(slots), free=free, bookable=bookable))
    return days
