"""Async SQLAlchemy database helpers.

Single authoritative module providing:
    * get_engine / get_session_factory
    * init_db(engine, force=...)
    * ping(engine) for the health endpoint
    * _reset_engine_for_tests (used in test isolation)
"""

import logging
import os
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..domain.models import Base
from .constants import DATABASE_URL as DEFAULT_URL


# =====================================================
# 🔧 ENV + Static configuration
# =====================================================
logger = logging.getLogger(__name__)

DATABASE_URL_ENV = "DATABASE_URL"

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


# =====================================================
# ⚙️ Engine / Session factory
# =====================================================
def _make_engine(url: str) -> AsyncEngine:
    """Create an async engine."""
    kwargs: dict[str, Any] = {"echo": False}
    if url.startswith("sqlite"):
        # Concurrent writers wait on the file lock instead of failing fast
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs["pool_pre_ping"] = True
    return create_async_engine(url, **kwargs)


def get_engine(url: str | None = None) -> AsyncEngine:
    global _engine, _session_factory
    if _engine is None:
        url = url or os.getenv(DATABASE_URL_ENV, DEFAULT_URL)
        _engine = _make_engine(url)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_session_factory(url: str | None = None) -> async_sessionmaker[AsyncSession]:
    get_engine(url)
    assert _session_factory is not None
    return _session_factory


# =====================================================
# 🧩 DB Init / Reset helpers
# =====================================================
async def init_db(engine: AsyncEngine | None = None, force: bool = False) -> None:
    """Create database schema."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        if force:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def ping(session_factory: async_sessionmaker[AsyncSession] | None = None) -> bool:
    """Round-trip a trivial query; False when the store is unreachable."""
    session_factory = session_factory or get_session_factory()
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.warning("DB ping failed: %s", e)
        return False


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def _reset_engine_for_tests() -> None:
    """Reset engine references (fast, synchronous)."""
    global _engine, _session_factory
    _engine = None
    _session_factory = None


# =====================================================
# 📦 Export
# =====================================================
__all__ = [
    "get_engine",
    "get_session_factory",
    "init_db",
    "ping",
    "dispose_engine",
    "_reset_engine_for_tests",
]
