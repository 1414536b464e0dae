"""Test configuration to ensure project package import resolution.

Adds the repository root to sys.path so `import lashbook` works in CI where
the checkout directory may not be on PYTHONPATH by default.  Also provides a
temp-file SQLite context with fake gateway and notifier collaborators.
"""

from __future__ import annotations

import sys
from datetime import date, time
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker

ROOT = Path(__file__).resolve().parents[3]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lashbook.app.core import db  # noqa: E402
from lashbook.app.core.context import AppContext  # noqa: E402
from lashbook.app.domain.models import Service, ServiceKind, Slot  # noqa: E402
from lashbook.app.services.rate_limiter import build_default_limiter  # noqa: E402
from support import FakeGateway, FakeNotifier, make_settings  # noqa: E402


@pytest_asyncio.fixture
async def ctx(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'lashbook-test.db'}"
    engine = db._make_engine(url)
    await db.init_db(engine)
    context = AppContext(
        settings=make_settings(url),
        session_factory=async_sessionmaker(engine, expire_on_commit=False),
        gateway=FakeGateway(),
        limiter=build_default_limiter(),
        notifier=FakeNotifier(),
    )
    yield context
    await engine.dispose()


@pytest.fixture
def make_service(ctx):
    async def _make(
        name: str = "Классика",
        price: int = 2000,
        duration_min: int = 120,
        kind: ServiceKind = ServiceKind.MAIN,
        is_active: bool = True,
    ) -> int:
        async with ctx.session() as session:
            svc = Service(
                name=name,
                description="",
                price=price,
                duration_min=duration_min,
                kind=kind,
                is_active=is_active,
            )
            session.add(svc)
            await session.commit()
            return svc.id

    return _make


@pytest.fixture
def make_slots(ctx):
    async def _make(day: date, hours) -> list[int]:
        ids = []
        async with ctx.session() as session:
            for hour in hours:
                slot = Slot(date=day, start_time=time(hour, 0), end_time=time(hour + 1, 0))
                session.add(slot)
                await session.flush()
                ids.append(slot.id)
            await session.commit()
        return ids

    return _make
