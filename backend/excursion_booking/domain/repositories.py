from __future__ import annotations

from datetime import date
from typing import Protocol

from ..models import Booking, BookingStatus, Customer, Departure, PaymentStatus, PickupLocation, TourSession


class DepartureRepository(Protocol):
    async def get_for_update(self, day: date, session: TourSession) -> Departure: ...


class CustomerRepository(Protocol):
    async def get_by_email(self, email: str) -> Customer | None: ...

    async def get_by_email_for_update(self, email: str) -> Customer | None: ...

    async def insert(self, *, email: str, full_name: str, phone: str | None) -> Customer: ...


class BookingRepository(Protocol):
    async def sum_reserved(self, day: date, session: TourSession) -> int: ...

    async def reserved_by_session(self, day: date) -> dict[TourSession, int]: ...

    async def code_exists(self, booking_code: str) -> bool: ...

    async def get_by_idempotency_key(self, idempotency_key: str) -> Booking | None: ...

    async def payment_reference_exists(self, payment_reference: str) -> bool: ...

    async def create(
        self,
        *,
        booking_code: str,
        idempotency_key: str | None,
        customer_id: int,
        day: date,
        session: TourSession,
        adults: int,
        children: int,
        total_amount: int,
        currency: str,
        pickup_location: PickupLocation,
        hotel_address: str,
        special_requests: str | None,
        status: BookingStatus,
        payment_status: PaymentStatus,
        payment_reference: str | None,
    ) -> Booking: ...

    async def get_by_reference(self, reference: str) -> Booking | None: ...

    async def get_by_reference_for_update(self, reference: str) -> Booking | None: ...

    async def get_by_payment_reference_for_update(self, payment_reference: str) -> Booking | None: ...

    async def search(
        self,
        *,
        status: BookingStatus | None,
        day: date | None,
        customer_id: int | None,
        offset: int,
        limit: int,
    ) -> tuple[list[Booking], int]: ...

    async def save(self, booking: Booking) -> Booking: ...
