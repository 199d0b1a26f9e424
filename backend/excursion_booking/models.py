from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Optional

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql.sqltypes import BigInteger, Date, DateTime, Integer, String, Text


class Base(DeclarativeBase):
    pass


# SQLite only autoincrements INTEGER primary keys.
_ID_TYPE = BigInteger().with_variant(Integer, "sqlite")


class TourSession(StrEnum):
    MORNING = "09:00"
    MIDDAY = "12:00"
    AFTERNOON = "14:30"

    @property
    def start_time(self) -> dt.time:
        hours, minutes = self.value.split(":")
        return dt.time(int(hours), int(minutes))

    @property
    def label(self) -> str:
        return _SESSION_LABELS[self]


_SESSION_LABELS = {
    TourSession.MORNING: "Morning (9:00 AM)",
    TourSession.MIDDAY: "Midday (12:00 PM)",
    TourSession.AFTERNOON: "Afternoon (2:30 PM)",
}


class BookingStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class PickupLocation(StrEnum):
    MONTEGO_BAY = "montego_bay"
    NEGRIL = "negril"
    OCHO_RIOS = "ocho_rios"
    FALMOUTH = "falmouth"
    RUNAWAY_BAY = "runaway_bay"
    OTHER = "other"


def _str_enum(enum_cls: type[StrEnum]) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda cls: [e.value for e in cls],
        native_enum=False,
    )


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (UniqueConstraint("email", name="uq_customers_email"),)

    id: Mapped[int] = mapped_column(_ID_TYPE, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    bookings: Mapped[list["Booking"]] = relationship(back_populates="customer")


class Departure(Base):
    """One row per (date, session); locked to serialize bookings for that departure."""

    __tablename__ = "departures"
    __table_args__ = (UniqueConstraint("date", "session", name="uq_departures_date_session"),)

    id: Mapped[int] = mapped_column(_ID_TYPE, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    session: Mapped[TourSession] = mapped_column(_str_enum(TourSession), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("adults >= 1", name="chk_bookings_adults"),
        CheckConstraint("children >= 0", name="chk_bookings_children"),
        UniqueConstraint("booking_code", name="uq_bookings_code"),
        UniqueConstraint("idempotency_key", name="uq_bookings_idempotency_key"),
        Index("idx_bookings_departure", "date", "session", "status"),
        Index("idx_bookings_customer", "customer_id"),
        UniqueConstraint("payment_reference", name="uq_bookings_payment_reference"),
    )

    id: Mapped[int] = mapped_column(_ID_TYPE, primary_key=True, autoincrement=True)
    booking_code: Mapped[str] = mapped_column(String(32), nullable=False)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    session: Mapped[TourSession] = mapped_column(_str_enum(TourSession), nullable=False)
    adults: Mapped[int] = mapped_column(Integer, nullable=False)
    children: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    pickup_location: Mapped[PickupLocation] = mapped_column(_str_enum(PickupLocation), nullable=False)
    hotel_address: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    special_requests: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[BookingStatus] = mapped_column(
        _str_enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _str_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    payment_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    customer: Mapped["Customer"] = relationship(back_populates="bookings")

    @property
    def participants(self) -> int:
        return self.adults + self.children
