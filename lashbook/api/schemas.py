"""Request/response models for the HTTP API."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class TelegramUser(BaseModel):
    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None


class SessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    init_data: str = Field(..., alias="initData")


class SessionResponse(BaseModel):
    token: str
    user: TelegramUser
    is_admin: bool = False
    currency: Optional[str] = None


class CreateBookingRequest(BaseModel):
    service_id: int
    date: str
    start_time: str
    with_addon: bool = False


class OpenDayRequest(BaseModel):
    date: str


class SlotTime(BaseModel):
    start_time: str
    end_time: str


class CreateSlotsRequest(BaseModel):
    date: str
    slots: list[SlotTime] = Field(..., min_length=1)


class CreateServiceRequest(BaseModel):
    name: str
    description: Optional[str] = None
    price: int
    duration_min: int
    sort_order: Optional[int] = None
    kind: Optional[str] = None


class UpdateServiceRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[int] = None
    duration_min: Optional[int] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None
    kind: Optional[str] = None


class Envelope(BaseModel):
    """Uniform response body: ``data`` on success, ``error`` otherwise."""

    ok: bool
    data: Any = None
    error: Optional[str] = None


def ok(data: Any = None) -> dict[str, Any]:
    return {"ok": True, "data": data, "error": None}


def fail(message: str) -> dict[str, Any]:
    return {"ok": False, "data": None, "error": message}


__all__ = [
    "TelegramUser",
    "SessionRequest",
    "SessionResponse",
    "CreateBookingRequest",
    "OpenDayRequest",
    "SlotTime",
    "CreateSlotsRequest",
    "CreateServiceRequest",
    "UpdateServiceRequest",
    "Envelope",
    "ok",
    "fail",
]
