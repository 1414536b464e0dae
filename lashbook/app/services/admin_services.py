from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Iterable, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from lashbook.app.core.context import AppContext
from lashbook.app.domain.errors import NotFound, SlotConflict, StoreError, ValidationFailed
from lashbook.app.domain.models import Booking, BookingStatus, Service, ServiceKind, Slot
from lashbook.app.services.booking_services import (
    BookingRepo,
    CancelResult,
    Principal,
    cancel_booking,
    serialize_booking,
)
from lashbook.app.services.shared_services import (
    add_minutes,
    format_hm,
    local_today,
    parse_date,
    parse_hm,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ServiceRepo",
    "serialize_service",
    "serialize_slot",
    "list_public_services",
    "get_addon_info",
    "list_all_services",
    "create_service",
    "update_service",
    "list_slots",
    "create_slots",
    "delete_slot",
    "open_day",
    "list_bookings",
    "admin_cancel_booking",
]

_SERVICE_FIELDS = ("name", "description", "price", "duration_min", "is_active", "sort_order", "kind")
# slot ends are same-day times, so the latest hourly end is 23:00
LAST_SLOT_END = time(23, 0)


def serialize_service(svc: Service) -> dict[str, Any]:
    return {
        "id": svc.id,
        "name": svc.name,
        "description": svc.description or "",
        "price": svc.price,
        "duration_min": svc.duration_min,
        "is_active": bool(svc.is_active),
        "sort_order": svc.sort_order,
        "kind": ServiceKind(svc.kind).value,
    }


def serialize_slot(slot: Slot) -> dict[str, Any]:
    return {
        "id": slot.id,
        "date": slot.date.isoformat(),
        "start_time": format_hm(slot.start_time),
        "end_time": format_hm(slot.end_time),
        "is_booked": bool(slot.is_booked),
        "booking_id": slot.booking_id,
    }


def _validate_service_values(values: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in values.items():
        if key not in _SERVICE_FIELDS or value is None:
            continue
        if key == "name":
            value = str(value).strip()
            if not value:
                raise ValidationFailed("Название услуги не может быть пустым")
        elif key == "price":
            if int(value) < 0:
                raise ValidationFailed("Цена не может быть отрицательной")
            value = int(value)
        elif key == "duration_min":
            if int(value) <= 0:
                raise ValidationFailed("Длительность должна быть положительной")
            value = int(value)
        elif key == "kind":
            try:
                value = ServiceKind(str(value))
            except ValueError as exc:
                raise ValidationFailed("Неизвестный тип услуги") from exc
        out[key] = value
    return out


class ServiceRepo:
    """Service catalogue queries."""

    @staticmethod
    async def list_services(session, *, include_inactive: bool = False, kind: ServiceKind | None = None) -> list[Service]:
        stmt = select(Service)
        if not include_inactive:
            stmt = stmt.where(Service.is_active.is_(True))
        if kind is not None:
            stmt = stmt.where(Service.kind == kind)
        res = await session.execute(stmt.order_by(Service.sort_order.asc(), Service.id.asc()))
        return list(res.scalars().all())

    @staticmethod
    async def first_addon(session) -> Service | None:
        res = await session.execute(
            select(Service)
            .where(Service.kind == ServiceKind.ADDON, Service.is_active.is_(True))
            .order_by(Service.sort_order.asc(), Service.id.asc())
            .limit(1)
        )
        return res.scalar_one_or_none()


async def list_public_services(ctx: AppContext) -> list[dict[str, Any]]:
    """Active bookable services; addons are not offered on their own."""
    try:
        async with ctx.session() as session:
            services = await ServiceRepo.list_services(session, kind=ServiceKind.MAIN)
    except SQLAlchemyError as e:
        logger.error("list_public_services failed: %s", e)
        raise StoreError() from e
    return [serialize_service(s) for s in services]


async def get_addon_info(ctx: AppContext) -> dict[str, Any] | None:
    try:
        async with ctx.session() as session:
            addon = await ServiceRepo.first_addon(session)
    except SQLAlchemyError as e:
        logger.error("get_addon_info failed: %s", e)
        raise StoreError() from e
    if addon is None:
        return None
    return {"name": addon.name, "price": addon.price, "service_id": addon.id}


async def list_all_services(ctx: AppContext) -> list[dict[str, Any]]:
    try:
        async with ctx.session() as session:
            services = await ServiceRepo.list_services(session, include_inactive=True)
    except SQLAlchemyError as e:
        logger.error("list_all_services failed: %s", e)
        raise StoreError() from e
    return [serialize_service(s) for s in services]


async def create_service(ctx: AppContext, **values: Any) -> dict[str, Any]:
    fields = _validate_service_values(values)
    for required in ("name", "price", "duration_min"):
        if required not in fields:
            raise ValidationFailed(f"Не указано поле {required}")
    fields.setdefault("description", "")
    try:
        async with ctx.session() as session:
            svc = Service(**fields)
            session.add(svc)
            await session.commit()
            await session.refresh(svc)
    except SQLAlchemyError as e:
        logger.error("create_service failed: %s", e)
        raise StoreError() from e
    logger.info("Service created: id=%s name=%s", svc.id, svc.name)
    return serialize_service(svc)


async def update_service(ctx: AppContext, service_id: int, **values: Any) -> dict[str, Any]:
    fields = _validate_service_values(values)
    try:
        async with ctx.session() as session:
            svc = await session.get(Service, int(service_id))
            if svc is None:
                raise NotFound("Услуга не найдена")
            for key, value in fields.items():
                setattr(svc, key, value)
            await session.commit()
            await session.refresh(svc)
    except SQLAlchemyError as e:
        logger.error("update_service %s failed: %s", service_id, e)
        raise StoreError() from e
    logger.info("Service %s updated: %s", service_id, sorted(fields))
    return serialize_service(svc)


async def _day_slots(session, day: date) -> list[Slot]:
    res = await session.execute(select(Slot).where(Slot.date == day).order_by(Slot.start_time.asc()))
    return list(res.scalars().all())


async def list_slots(ctx: AppContext, day: str | date) -> list[dict[str, Any]]:
    target = parse_date(day)
    try:
        async with ctx.session() as session:
            slots = await _day_slots(session, target)
    except SQLAlchemyError as e:
        logger.error("list_slots %s failed: %s", target, e)
        raise StoreError() from e
    return [serialize_slot(s) for s in slots]


@dataclass(frozen=True)
class SlotSpec:
    start_time: time
    end_time: time


def _parse_slot_specs(raw: Iterable[Any]) -> list[SlotSpec]:
    specs: list[SlotSpec] = []
    for item in raw:
        if isinstance(item, SlotSpec):
            spec = item
        elif isinstance(item, dict):
            spec = SlotSpec(parse_hm(item.get("start_time")), parse_hm(item.get("end_time")))
        else:
            spec = SlotSpec(parse_hm(getattr(item, "start_time")), parse_hm(getattr(item, "end_time")))
        if spec.start_time >= LAST_SLOT_END:
            raise ValidationFailed("Слот должен заканчиваться до полуночи")
        if add_minutes(spec.start_time, 60) != spec.end_time:
            raise ValidationFailed("Слот должен длиться ровно один час")
        specs.append(spec)
    return specs


async def _insert_missing(session, day: date, specs: Sequence[SlotSpec]) -> int:
    existing = {s.start_time for s in await _day_slots(session, day)}
    created = 0
    for spec in specs:
        if spec.start_time in existing:
            continue
        session.add(Slot(date=day, start_time=spec.start_time, end_time=spec.end_time))
        existing.add(spec.start_time)
        created += 1
    await session.commit()
    return created


async def create_slots(ctx: AppContext, day: str | date, slots: Iterable[Any]) -> list[dict[str, Any]]:
    """Add one-hour slots to a date; starts that already exist are skipped."""
    target = parse_date(day)
    specs = _parse_slot_specs(slots)
    try:
        async with ctx.session() as session:
            created = await _insert_missing(session, target, specs)
            result = await _day_slots(session, target)
    except SQLAlchemyError as e:
        logger.error("create_slots %s failed: %s", target, e)
        raise StoreError() from e
    logger.info("Slots created for %s: %d new", target, created)
    return [serialize_slot(s) for s in result]


async def delete_slot(ctx: AppContext, slot_id: int) -> None:
    try:
        async with ctx.session() as session:
            slot = await session.get(Slot, int(slot_id))
            if slot is None:
                raise NotFound("Слот не найден")
            if slot.is_booked:
                raise SlotConflict("Нельзя удалить занятый слот. Сначала отмените запись.")
            # guarded so a slot claimed after the check is kept
            res = await session.execute(
                delete(Slot).where(Slot.id == int(slot_id), Slot.is_booked.is_(False))
            )
            await session.commit()
    except SQLAlchemyError as e:
        logger.error("delete_slot %s failed: %s", slot_id, e)
        raise StoreError() from e
    if (res.rowcount or 0) == 0:
        raise SlotConflict("Нельзя удалить занятый слот. Сначала отмените запись.")
    logger.info("Slot %s deleted", slot_id)


async def open_day(ctx: AppContext, day: str | date) -> list[dict[str, Any]]:
    """Create the standard working day of hourly slots; safe to repeat."""
    target = parse_date(day)
    settings = ctx.settings
    start_hour = max(0, int(settings.open_day_start_hour))
    end_hour = min(LAST_SLOT_END.hour, int(settings.open_day_end_hour))
    if end_hour != settings.open_day_end_hour:
        logger.warning("open_day: end hour %s clamped to %s", settings.open_day_end_hour, end_hour)
    specs = [SlotSpec(time(hour, 0), time(hour + 1, 0)) for hour in range(start_hour, end_hour)]
    try:
        async with ctx.session() as session:
            created = await _insert_missing(session, target, specs)
            result = await _day_slots(session, target)
    except SQLAlchemyError as e:
        logger.error("open_day %s failed: %s", target, e)
        raise StoreError() from e
    logger.info("Day %s opened: %d new slots", target, created)
    return [serialize_slot(s) for s in result]


async def list_bookings(
    ctx: AppContext,
    *,
    day: str | date | None = None,
    date_from: str | date | None = None,
    date_to: str | date | None = None,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Confirmed bookings for a date, a range, or everything upcoming."""
    stmt = select(Booking).where(Booking.status == BookingStatus.CONFIRMED)
    if day is not None:
        stmt = stmt.where(Booking.date == parse_date(day))
    elif date_from is not None and date_to is not None:
        start, end = parse_date(date_from), parse_date(date_to)
        if end < start:
            raise ValidationFailed("Неверный диапазон дат")
        stmt = stmt.where(Booking.date >= start, Booking.date <= end)
    else:
        stmt = stmt.where(Booking.date >= local_today(ctx.settings.tz, now))
    try:
        async with ctx.session() as session:
            res = await session.execute(stmt.order_by(Booking.date.asc(), Booking.start_time.asc()))
            bookings = list(res.scalars().all())
            services = await BookingRepo.services_by_id(session, {b.service_id for b in bookings})
    except SQLAlchemyError as e:
        logger.error("list_bookings failed: %s", e)
        raise StoreError() from e
    return [serialize_booking(b, services.get(b.service_id)) for b in bookings]


async def admin_cancel_booking(
    ctx: AppContext, booking_id: int, admin: Principal, *, now: datetime | None = None
) -> CancelResult:
    return await cancel_booking(ctx, booking_id, admin, as_admin=True, now=now)
