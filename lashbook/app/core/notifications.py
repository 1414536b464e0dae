from __future__ import annotations

import logging
from typing import Any, Iterable, Protocol

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.exceptions import TelegramAPIError

logger = logging.getLogger(__name__)

__all__ = ["Notifier", "TelegramNotifier", "format_client_mention"]


class Notifier(Protocol):
    async def notify_admins(self, message: str) -> None: ...

    async def notify_user(self, chat_id: int, message: str) -> bool: ...


def format_client_mention(username: str | None, first_name: str | None) -> str:
    if username:
        return f"@{username.lstrip('@')}"
    return first_name or "Клиент"


class TelegramNotifier:
    """Operator/client messages through the Telegram Bot API.

    Delivery is best effort: a failed send is logged and never propagates
    into booking flows.  Without a bot token every send is skipped.
    """

    def __init__(self, bot_token: str, admin_ids: Iterable[int], bot: Bot | None = None) -> None:
        self.admin_ids = [int(x) for x in admin_ids]
        self._bot = bot
        if self._bot is None and bot_token:
            self._bot = Bot(token=bot_token, default=DefaultBotProperties(parse_mode="HTML"))

    async def _safe_send(self, chat_id: int, text: str, **kwargs: Any) -> bool:
        if self._bot is None:
            logger.debug("notifier: no bot configured; skipping message to %s", chat_id)
            return False
        try:
            await self._bot.send_message(chat_id=chat_id, text=text, **kwargs)
            return True
        except TelegramAPIError as e:
            logger.warning("notifier: TelegramAPIError for %s: %s", chat_id, e)
            return False
        except Exception as e:
            logger.error("notifier: failed to send to %s: %s", chat_id, e)
            return False

    async def notify_admins(self, message: str) -> None:
        if not self.admin_ids:
            logger.debug("notify_admins: no ADMIN_IDS configured; skipping")
            return
        for admin_id in self.admin_ids:
            await self._safe_send(admin_id, message)

    async def notify_user(self, chat_id: int, message: str) -> bool:
        return await self._safe_send(int(chat_id), message)

    async def close(self) -> None:
        if self._bot is not None:
            await self._bot.session.close()
