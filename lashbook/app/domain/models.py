from datetime import UTC, date as _date, datetime, time as _time
from enum import Enum as _Enum

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    BigInteger,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class (explicit for mypy)."""

    pass


class ServiceKind(str, _Enum):
    MAIN = "main"
    ADDON = "addon"


class BookingStatus(str, _Enum):  # Values match DB labels
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentStatus(str, _Enum):
    NONE = "none"
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


TERMINAL_STATUSES = frozenset(
    {
        BookingStatus.CANCELLED,
        BookingStatus.EXPIRED,
    }
)

ACTIVE_STATUSES = frozenset(
    {
        BookingStatus.PENDING_PAYMENT,
        BookingStatus.CONFIRMED,
    }
)


def _enum_column(enum_cls: type[_Enum], name: str) -> Enum:
    # Persist lowercase values, not member names
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda e: [m.value for m in e],
        native_enum=False,
        length=32,
    )


class Service(Base):
    __tablename__ = "services"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    # Whole currency units (rubles)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_min: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    kind: Mapped[ServiceKind] = mapped_column(
        _enum_column(ServiceKind, "service_kind"), default=ServiceKind.MAIN, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )


class Slot(Base):
    __tablename__ = "available_slots"
    __table_args__ = (UniqueConstraint("date", "start_time", name="uq_slots_date_start"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[_date] = mapped_column(Date, index=True, nullable=False)
    start_time: Mapped[_time] = mapped_column(Time, nullable=False)
    end_time: Mapped[_time] = mapped_column(Time, nullable=False)
    # is_booked <=> booking_id IS NOT NULL; both are written together
    is_booked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    booking_id: Mapped[int | None] = mapped_column(
        ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )


class Booking(Base):
    __tablename__ = "bookings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), nullable=False)
    date: Mapped[_date] = mapped_column(Date, index=True, nullable=False)
    start_time: Mapped[_time] = mapped_column(Time, nullable=False)
    end_time: Mapped[_time] = mapped_column(Time, nullable=False)
    client_tg_id: Mapped[int] = mapped_column(BigInteger, index=True, nullable=False)
    client_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    client_first_name: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        _enum_column(BookingStatus, "booking_status"),
        default=BookingStatus.PENDING_PAYMENT,
        index=True,
        nullable=False,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus, "payment_status"),
        default=PaymentStatus.NONE,
        index=True,
        nullable=False,
    )
    # External gateway reference (YooKassa payment id)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    prepaid_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_price: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    with_addon: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reminder_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), index=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


__all__ = [
    "Base",
    "ServiceKind",
    "BookingStatus",
    "PaymentStatus",
    "Service",
    "Slot",
    "Booking",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
]
