"""Application context passed explicitly into services and handlers."""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

if TYPE_CHECKING:
    from lashbook.app.core.notifications import Notifier
    from lashbook.app.services.payments import PaymentGateway
    from lashbook.app.services.rate_limiter import RateLimiter
    from lashbook.config import Settings

__all__ = ["AppContext", "build_context"]


@dataclass
class AppContext:
    settings: "Settings"
    session_factory: async_sessionmaker[AsyncSession]
    gateway: "PaymentGateway"
    limiter: "RateLimiter"
    notifier: "Notifier"

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a new AsyncSession."""
        session = self.session_factory()
        try:
            yield session
        finally:
            await session.close()


def build_context(settings: "Settings") -> AppContext:
    """Wire production collaborators from settings."""
    from lashbook.app.core.db import get_session_factory
    from lashbook.app.core.notifications import TelegramNotifier
    from lashbook.app.services.payments import YooKassaGateway
    from lashbook.app.services.rate_limiter import build_default_limiter

    return AppContext(
        settings=settings,
        session_factory=get_session_factory(settings.database_url),
        gateway=YooKassaGateway(
            settings.yookassa_shop_id,
            settings.yookassa_secret_key,
            settings.yookassa_api_url,
            settings.currency,
        ),
        limiter=build_default_limiter(),
        notifier=TelegramNotifier(settings.bot_token, settings.admin_ids),
    )
