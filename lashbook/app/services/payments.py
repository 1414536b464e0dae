"""YooKassa payment gateway client.

Only the two calls the booking flow needs: create a redirect payment and
refund a captured one.  Amounts are whole rubles; YooKassa wants a decimal
string with two places.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from lashbook.app.domain.errors import PaymentGatewayError

logger = logging.getLogger(__name__)

__all__ = ["PaymentIntent", "PaymentGateway", "YooKassaGateway", "format_amount"]


@dataclass(frozen=True)
class PaymentIntent:
    payment_id: str
    confirmation_url: str


class PaymentGateway(Protocol):
    async def create_payment(
        self,
        *,
        amount: int,
        description: str,
        booking_id: int,
        return_url: str,
        idempotence_key: str,
    ) -> PaymentIntent: ...

    async def create_refund(self, *, payment_id: str, amount: int) -> str: ...


def format_amount(amount: int) -> str:
    return f"{int(amount)}.00"


class YooKassaGateway:
    def __init__(
        self,
        shop_id: str,
        secret_key: str,
        api_url: str = "https://api.yookassa.ru/v3",
        currency: str = "RUB",
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.shop_id = shop_id
        self.currency = currency
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            auth=(shop_id, secret_key),
            timeout=timeout,
            transport=transport,
        )

    async def _post(self, path: str, body: dict[str, Any], idempotence_key: str) -> dict[str, Any]:
        try:
            response = await self._client.post(
                path,
                json=body,
                headers={"Idempotence-Key": idempotence_key},
            )
        except httpx.HTTPError as e:
            logger.error("YooKassa %s request failed: %s", path, e)
            raise PaymentGatewayError() from e

        if response.status_code >= 400:
            logger.error("YooKassa %s returned %s: %s", path, response.status_code, response.text)
            raise PaymentGatewayError()
        try:
            return response.json()
        except ValueError as e:
            logger.error("YooKassa %s returned non-JSON body: %s", path, response.text)
            raise PaymentGatewayError() from e

    async def create_payment(
        self,
        *,
        amount: int,
        description: str,
        booking_id: int,
        return_url: str,
        idempotence_key: str,
    ) -> PaymentIntent:
        body = {
            "amount": {"value": format_amount(amount), "currency": self.currency},
            "capture": True,
            "confirmation": {"type": "redirect", "return_url": return_url},
            "description": description,
            "metadata": {"booking_id": str(booking_id)},
        }
        data = await self._post("/payments", body, idempotence_key)
        payment_id = data.get("id")
        confirmation = data.get("confirmation") or {}
        url = confirmation.get("confirmation_url")
        if not payment_id or not url:
            logger.error("YooKassa payment response missing id/confirmation_url: %s", data)
            raise PaymentGatewayError()
        logger.info("YooKassa payment created: booking=%s payment=%s", booking_id, payment_id)
        return PaymentIntent(payment_id=str(payment_id), confirmation_url=str(url))

    async def create_refund(self, *, payment_id: str, amount: int) -> str:
        body = {
            "payment_id": payment_id,
            "amount": {"value": format_amount(amount), "currency": self.currency},
        }
        data = await self._post("/refunds", body, f"refund-{payment_id}")
        refund_id = str(data.get("id") or "")
        logger.info("YooKassa refund created: payment=%s refund=%s status=%s", payment_id, refund_id, data.get("status"))
        return refund_id

    async def close(self) -> None:
        await self._client.aclose()
