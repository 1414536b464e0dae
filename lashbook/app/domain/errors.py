"""Booking engine exceptions.

Each error carries the HTTP status it maps to so the API layer can render the
uniform ``{ok, error}`` envelope without re-classifying.  ``public`` errors
are shown to the caller verbatim; the rest are logged and replaced by a
generic message.
"""
from __future__ import annotations

__all__ = [
    "BookingError",
    "ValidationFailed",
    "Unauthorized",
    "Forbidden",
    "NotFound",
    "SlotConflict",
    "RateLimited",
    "PaymentGatewayError",
    "StoreError",
]


class BookingError(Exception):
    status_code: int = 500
    public: bool = True
    default_message: str = "Внутренняя ошибка"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(BookingError):
    status_code = 400
    default_message = "Некорректный запрос"


class Unauthorized(BookingError):
    status_code = 401
    default_message = "Требуется авторизация"


class Forbidden(BookingError):
    status_code = 403
    default_message = "Доступ запрещён"


class NotFound(BookingError):
    status_code = 404
    default_message = "Не найдено"


class SlotConflict(BookingError):
    status_code = 409
    default_message = "Одно из выбранных времён уже занято"


class RateLimited(BookingError):
    status_code = 429
    default_message = "Слишком много запросов, попробуйте позже"

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        self.retry_after = int(retry_after)
        super().__init__(message)


class PaymentGatewayError(BookingError):
    status_code = 500
    public = False
    default_message = "Не удалось создать платёж"


class StoreError(BookingError):
    status_code = 500
    public = False
    default_message = "DB error"
