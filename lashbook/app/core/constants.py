from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_int_or_none(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except Exception:
        return None


def _env_int_list(name: str) -> list[int]:
    raw = os.getenv(name, "")
    vals: list[int] = []
    for token in raw.replace(";", ",").split(","):
        tok = token.strip()
        if not tok:
            continue
        try:
            vals.append(int(tok))
        except Exception:
            continue
    return vals


def _normalize_currency(code: str | None) -> str | None:
    if not code:
        return None
    cleaned = str(code).strip().upper()
    if len(cleaned) == 3 and cleaned.isalpha():
        return cleaned
    return None


# Store
DATABASE_URL: str = os.getenv(
    "DATABASE_URL", "postgresql+asyncpg://lash_user:change_me@db:5432/lashbook"
)

# Timezone for "today", refund window and reminders
DEFAULT_BUSINESS_TIMEZONE: str = os.getenv("BUSINESS_TIMEZONE", "Europe/Moscow")

# Availability
TIGHT_MODE_DAYS: int = _env_int("TIGHT_MODE_DAYS", 3)
OPEN_DAY_START_HOUR: int = _env_int("OPEN_DAY_START_HOUR", 12)
OPEN_DAY_END_HOUR: int = _env_int("OPEN_DAY_END_HOUR", 20)

# Pricing / payments
DEFAULT_CURRENCY: str = _normalize_currency(os.getenv("CURRENCY")) or "RUB"
PREPAYMENT_AMOUNT: int = _env_int("PREPAYMENT_AMOUNT", 500)
DEFAULT_ADDON_PRICE: int = _env_int("DEFAULT_ADDON_PRICE", 500)
REFUND_NOTICE_HOURS: int = _env_int("REFUND_NOTICE_HOURS", 24)
YOOKASSA_SHOP_ID: str = os.getenv("YOOKASSA_SHOP_ID", "")
YOOKASSA_SECRET_KEY: str = os.getenv("YOOKASSA_SECRET_KEY", "")
YOOKASSA_API_URL: str = os.getenv("YOOKASSA_API_URL", "https://api.yookassa.ru/v3")
WEBAPP_URL: str = os.getenv("WEBAPP_URL", "https://example.com")

# Workers
PAYMENT_TIMEOUT_MINUTES: int = _env_int("PAYMENT_TIMEOUT_MINUTES", 15)
PAYMENT_EXPIRY_CHECK_SECONDS: int = _env_int("PAYMENT_EXPIRY_CHECK_SECONDS", 300)
RATE_LIMIT_CLEANUP_SECONDS: int = _env_int("RATE_LIMIT_CLEANUP_SECONDS", 60)
REMINDER_HOURS_BEFORE: int = _env_int("REMINDER_HOURS_BEFORE", 24)
REMINDERS_CHECK_SECONDS: int = _env_int("REMINDERS_CHECK_SECONDS", 600)

# Identity
BOT_TOKEN: str = os.getenv("BOT_TOKEN", "")
ADMIN_IDS_LIST: list[int] = _env_int_list("ADMIN_IDS") or [
    x for x in [_env_int_or_none("ADMIN_TG_ID")] if x is not None
]
INIT_DATA_MAX_AGE_SECONDS: int = _env_int("INIT_DATA_MAX_AGE_SECONDS", 86400)
JWT_TTL_SECONDS: int = _env_int("TWA_JWT_TTL_SECONDS", 3600)

# Feature flags / logging
LOG_LEVEL_NAME: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()
LOG_FILE: str = os.getenv("LOG_FILE", "lashbook.log")
RUN_BOOTSTRAP_ENABLED: bool = _env_bool("RUN_BOOTSTRAP", False)
WORKERS_ENABLED: bool = _env_bool("WORKERS_ENABLED", True)

# HTTP
APP_VERSION: str = "0.1.0"
API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = _env_int("API_PORT", 8080)
TWA_ORIGIN: str | None = os.getenv("TWA_ORIGIN") or None
ALLOW_ALL_ORIGINS: bool = _env_bool("TWA_ALLOW_ALL_ORIGINS", False)

__all__ = [
    "DATABASE_URL",
    "DEFAULT_BUSINESS_TIMEZONE",
    "TIGHT_MODE_DAYS",
    "OPEN_DAY_START_HOUR",
    "OPEN_DAY_END_HOUR",
    "DEFAULT_CURRENCY",
    "PREPAYMENT_AMOUNT",
    "DEFAULT_ADDON_PRICE",
    "REFUND_NOTICE_HOURS",
    "YOOKASSA_SHOP_ID",
    "YOOKASSA_SECRET_KEY",
    "YOOKASSA_API_URL",
    "WEBAPP_URL",
    "PAYMENT_TIMEOUT_MINUTES",
    "PAYMENT_EXPIRY_CHECK_SECONDS",
    "RATE_LIMIT_CLEANUP_SECONDS",
    "REMINDER_HOURS_BEFORE",
    "REMINDERS_CHECK_SECONDS",
    "BOT_TOKEN",
    "ADMIN_IDS_LIST",
    "INIT_DATA_MAX_AGE_SECONDS",
    "JWT_TTL_SECONDS",
    "LOG_LEVEL_NAME",
    "LOG_FILE",
    "RUN_BOOTSTRAP_ENABLED",
    "WORKERS_ENABLED",
    "APP_VERSION",
    "API_HOST",
    "API_PORT",
    "TWA_ORIGIN",
    "ALLOW_ALL_ORIGINS",
]
