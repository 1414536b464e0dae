from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from lashbook.app.domain.errors import ValidationFailed

logger = logging.getLogger(__name__)

__all__ = [
    "utc_now",
    "local_today",
    "parse_date",
    "parse_hm",
    "format_hm",
    "add_minutes",
    "days_between",
    "combine_local",
    "to_utc",
    "minutes_until",
    "format_money",
]


def utc_now() -> datetime:
    """Return current time as an aware UTC datetime."""
    return datetime.now(UTC)


def local_today(tz: ZoneInfo, now: datetime | None = None) -> date:
    """Business-local calendar date for ``now`` (defaults to current time)."""
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(tz).date()


# ---------------- Time utilities (shared) ---------------- #
def parse_date(raw: str | date) -> date:
    """Parse strict ``YYYY-MM-DD``; raises ValidationFailed."""
    if isinstance(raw, date):
        return raw
    try:
        return datetime.strptime(str(raw).strip(), "%Y-%m-%d").date()
    except (TypeError, ValueError) as exc:
        raise ValidationFailed("Неверный формат даты") from exc


def parse_hm(raw: str | time) -> time:
    """Parse strict ``HH:MM``; raises ValidationFailed."""
    if isinstance(raw, time):
        return raw
    try:
        return datetime.strptime(str(raw).strip(), "%H:%M").time()
    except (TypeError, ValueError) as exc:
        raise ValidationFailed("Неверный формат времени") from exc


def format_hm(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def add_minutes(start: time, minutes: int) -> time:
    """``start + minutes`` within the same day; raises when it crosses midnight."""
    total = start.hour * 60 + start.minute + int(minutes)
    if total < 0 or total >= 24 * 60:
        raise ValidationFailed("Услуга выходит за пределы дня")
    return time(total // 60, total % 60)


def days_between(start: date, end: date) -> int:
    return (end - start).days


def combine_local(day: date, at: time, tz: ZoneInfo) -> datetime:
    """Aware datetime for a business-local date/time."""
    return datetime.combine(day, at, tzinfo=tz)


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def minutes_until(target: datetime, now: datetime) -> float:
    return (to_utc(target) - to_utc(now)) / timedelta(minutes=1)


def format_money(amount: int | None, currency: str = "RUB") -> str:
    if amount is None:
        return "—"
    symbol = {"RUB": "₽", "USD": "$", "EUR": "€"}.get(currency.upper(), currency.upper())
    return f"{int(amount)} {symbol}"
