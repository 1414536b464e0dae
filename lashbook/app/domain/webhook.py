"""Payment gateway webhook events.

The gateway posts ``{"event": ..., "object": {"id", "status", "metadata"}}``.
``parse_webhook`` decodes that once into one of the dataclasses below so the
reconciliation code never touches the raw mapping.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Union

__all__ = [
    "PaymentSucceeded",
    "PaymentCanceled",
    "UnknownEvent",
    "WebhookEvent",
    "parse_webhook",
]

EVENT_SUCCEEDED = "payment.succeeded"
EVENT_CANCELED = "payment.canceled"


@dataclass(frozen=True)
class _PaymentEvent:
    payment_id: str
    status: str
    booking_id: int | None


@dataclass(frozen=True)
class PaymentSucceeded(_PaymentEvent):
    pass


@dataclass(frozen=True)
class PaymentCanceled(_PaymentEvent):
    pass


@dataclass(frozen=True)
class UnknownEvent(_PaymentEvent):
    event: str = ""


WebhookEvent = Union[PaymentSucceeded, PaymentCanceled, UnknownEvent]


def _booking_id_from_metadata(metadata: Any) -> int | None:
    if not isinstance(metadata, Mapping):
        return None
    raw = metadata.get("booking_id")
    if raw is None:
        raw = metadata.get("bookingId")
    if isinstance(raw, bool):
        return None
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return None


def parse_webhook(payload: Mapping[str, Any]) -> WebhookEvent:
    """Decode a raw webhook body. Never raises on unexpected shapes."""
    event = str(payload.get("event") or "")
    obj = payload.get("object")
    if not isinstance(obj, Mapping):
        obj = {}
    payment_id = str(obj.get("id") or "")
    status = str(obj.get("status") or "")
    booking_id = _booking_id_from_metadata(obj.get("metadata"))

    if event == EVENT_SUCCEEDED:
        return PaymentSucceeded(payment_id=payment_id, status=status, booking_id=booking_id)
    if event == EVENT_CANCELED:
        return PaymentCanceled(payment_id=payment_id, status=status, booking_id=booking_id)
    return UnknownEvent(payment_id=payment_id, status=status, booking_id=booking_id, event=event)
