"""Shared fakes and constants for the test suite."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

from lashbook.app.domain.errors import PaymentGatewayError
from lashbook.app.services.payments import PaymentIntent
from lashbook.config import Settings

BOT_TOKEN = "123456:TEST-TOKEN"
ADMIN_ID = 1000
CLIENT_ID = 2000
# 12:00 in Europe/Moscow
FIXED_NOW = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)
TODAY = date(2026, 3, 10)


class FakeGateway:
    def __init__(self) -> None:
        self.payments: list[dict] = []
        self.refunds: list[dict] = []
        self.fail_payment = False
        self.fail_refund = False

    async def create_payment(self, *, amount, description, booking_id, return_url, idempotence_key):
        if self.fail_payment:
            raise PaymentGatewayError()
        self.payments.append(
            {
                "amount": amount,
                "booking_id": booking_id,
                "return_url": return_url,
                "idempotence_key": idempotence_key,
            }
        )
        return PaymentIntent(
            payment_id=f"pay-{booking_id}",
            confirmation_url=f"https://pay.example/checkout/{booking_id}",
        )

    async def create_refund(self, *, payment_id, amount):
        if self.fail_refund:
            raise PaymentGatewayError()
        self.refunds.append({"payment_id": payment_id, "amount": amount})
        return f"refund-{payment_id}"

    async def close(self) -> None:
        return None


class FakeNotifier:
    def __init__(self) -> None:
        self.admin_messages: list[str] = []
        self.user_messages: list[tuple[int, str]] = []
        self.deliver = True

    async def notify_admins(self, message: str) -> None:
        self.admin_messages.append(message)

    async def notify_user(self, chat_id: int, message: str) -> bool:
        if not self.deliver:
            return False
        self.user_messages.append((int(chat_id), message))
        return True

    async def close(self) -> None:
        return None


def make_settings(url: str, **overrides) -> Settings:
    values = dict(
        database_url=url,
        bot_token=BOT_TOKEN,
        admin_ids=frozenset({ADMIN_ID}),
        timezone="Europe/Moscow",
        currency="RUB",
        tight_mode_days=3,
        open_day_start_hour=12,
        open_day_end_hour=20,
        prepayment_amount=500,
        default_addon_price=500,
        refund_notice_hours=24,
        payment_timeout_minutes=15,
        reminder_hours_before=24,
        webapp_url="https://app.example/bookings",
        init_data_max_age_seconds=86400,
        jwt_secret="test-secret-that-is-long-enough-for-hs256",
        jwt_ttl_seconds=3600,
        workers_enabled=False,
    )
    values.update(overrides)
    return Settings(**values)


def future_day(days: int = 7) -> date:
    """A date safely in the future relative to the real clock."""
    return datetime.now(UTC).date() + timedelta(days=days)
