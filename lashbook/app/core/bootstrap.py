"""
Runtime bootstrap helpers.

Provides an idempotent initial population of the service catalogue so a
fresh database has something to book.  Guarded by ``RUN_BOOTSTRAP``.
"""

from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lashbook.app.domain import models

__all__ = ["DEFAULT_SERVICES", "init_services"]

# name, description, price, duration_min, kind
DEFAULT_SERVICES: tuple[tuple[str, str, int, int, models.ServiceKind], ...] = (
    ("Классика", "Классическое наращивание", 2000, 120, models.ServiceKind.MAIN),
    ("2D", "Объём 2D", 2500, 120, models.ServiceKind.MAIN),
    ("Снятие", "Снятие ресниц", 500, 60, models.ServiceKind.MAIN),
    ("Нижние ресницы", "Дополнение к наращиванию", 500, 30, models.ServiceKind.ADDON),
)


async def _upsert_services(
    existing_names: set[str],
    session: AsyncSession,
    specs: Iterable[tuple[str, str, int, int, models.ServiceKind]],
) -> int:
    """Добавляет недостающие услуги."""
    added = 0
    for order, (name, description, price, duration, kind) in enumerate(specs):
        if name in existing_names:
            continue
        session.add(
            models.Service(
                name=name,
                description=description,
                price=price,
                duration_min=duration,
                kind=kind,
                sort_order=order,
            )
        )
        added += 1
    return added


async def init_services(session_factory: async_sessionmaker[AsyncSession]) -> int:
    """Insert baseline services if missing (idempotent)."""
    async with session_factory() as session:
        result = await session.execute(select(models.Service.name))
        existing = {row[0] for row in result.all()}
        added = await _upsert_services(existing, session, DEFAULT_SERVICES)
        await session.commit()
    return added
