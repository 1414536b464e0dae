from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

# .env must be loaded before constants read the environment
load_dotenv()

from lashbook.app.core import constants as c  # noqa: E402

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    """Runtime settings snapshot; built once at startup and passed via AppContext."""

    database_url: str = c.DATABASE_URL
    bot_token: str = c.BOT_TOKEN
    admin_ids: frozenset[int] = field(default_factory=lambda: frozenset(c.ADMIN_IDS_LIST))
    timezone: str = c.DEFAULT_BUSINESS_TIMEZONE
    currency: str = c.DEFAULT_CURRENCY
    tight_mode_days: int = c.TIGHT_MODE_DAYS
    open_day_start_hour: int = c.OPEN_DAY_START_HOUR
    open_day_end_hour: int = c.OPEN_DAY_END_HOUR
    prepayment_amount: int = c.PREPAYMENT_AMOUNT
    default_addon_price: int = c.DEFAULT_ADDON_PRICE
    refund_notice_hours: int = c.REFUND_NOTICE_HOURS
    payment_timeout_minutes: int = c.PAYMENT_TIMEOUT_MINUTES
    payment_expiry_check_seconds: int = c.PAYMENT_EXPIRY_CHECK_SECONDS
    rate_limit_cleanup_seconds: int = c.RATE_LIMIT_CLEANUP_SECONDS
    reminder_hours_before: int = c.REMINDER_HOURS_BEFORE
    reminders_check_seconds: int = c.REMINDERS_CHECK_SECONDS
    yookassa_shop_id: str = c.YOOKASSA_SHOP_ID
    yookassa_secret_key: str = c.YOOKASSA_SECRET_KEY
    yookassa_api_url: str = c.YOOKASSA_API_URL
    webapp_url: str = c.WEBAPP_URL
    init_data_max_age_seconds: int = c.INIT_DATA_MAX_AGE_SECONDS
    jwt_secret: str = ""
    jwt_ttl_seconds: int = c.JWT_TTL_SECONDS
    workers_enabled: bool = c.WORKERS_ENABLED

    @property
    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except Exception:
            logger.warning("Unknown timezone %r, falling back to UTC", self.timezone)
            return ZoneInfo("UTC")

    @property
    def effective_jwt_secret(self) -> str:
        return self.jwt_secret or self.bot_token

    def is_admin(self, telegram_id: int) -> bool:
        return int(telegram_id) in self.admin_ids


def load_settings() -> Settings:
    settings = Settings(jwt_secret=os.getenv("TWA_JWT_SECRET", ""))
    if not settings.bot_token:
        logger.warning("BOT_TOKEN not set; Telegram auth and notifications are disabled")
    if not settings.yookassa_shop_id:
        logger.warning("YOOKASSA_SHOP_ID not set; payments will fail")
    if not settings.admin_ids:
        logger.warning("ADMIN_IDS not set; operator endpoints are unreachable")
    return settings


__all__ = ["Settings", "load_settings"]
