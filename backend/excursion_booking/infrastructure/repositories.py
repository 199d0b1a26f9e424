from __future__ import annotations

from datetime import date
from typing import Any, List, Tuple

from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from ..domain.booking_codes import normalize_booking_code
from ..domain.errors import (
    CustomerConflictError,
    DuplicateIdempotencyKeyError,
    IdentifierCollisionError,
    PaymentDeclinedError,
)
from ..domain.repositories import BookingRepository, CustomerRepository, DepartureRepository
from ..models import Booking, BookingStatus, Customer, Departure, PaymentStatus, PickupLocation, TourSession
from ..utils.time import utc_now_naive


class SqlAlchemyDepartureRepository(DepartureRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_for_update(self, day: date, session: TourSession) -> Departure:
        stmt = select(Departure).where(Departure.date == day, Departure.session == session).with_for_update()
        departure = await self.session.scalar(stmt)
        if isinstance(departure, Departure):
            return departure

        # First booking for this departure: create the lock row, tolerating a concurrent insert.
        try:
            async with self.session.begin_nested():
                self.session.add(Departure(date=day, session=session, created_at=utc_now_naive()))
        except IntegrityError:
            pass
        departure = await self.session.scalar(stmt)
        if not isinstance(departure, Departure):
            raise RuntimeError(f"departure row missing for {day} {session.value}")
        return departure


class SqlAlchemyCustomerRepository(CustomerRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_email(self, email: str) -> Customer | None:
        result = await self.session.scalar(select(Customer).where(Customer.email == email))
        return result if isinstance(result, Customer) else None

    async def get_by_email_for_update(self, email: str) -> Customer | None:
        # Locking read so a row committed by a concurrent insert is visible.
        result = await self.session.scalar(select(Customer).where(Customer.email == email).with_for_update())
        return result if isinstance(result, Customer) else None

    async def insert(self, *, email: str, full_name: str, phone: str | None) -> Customer:
        now = utc_now_naive()
        customer = Customer(email=email, full_name=full_name, phone=phone, created_at=now, updated_at=now)
        try:
            async with self.session.begin_nested():
                self.session.add(customer)
        except IntegrityError as exc:
            raise CustomerConflictError(f"customer {email} already exists") from exc
        return customer


class SqlAlchemyBookingRepository(BookingRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def sum_reserved(self, day: date, session: TourSession) -> int:
        stmt = select(func.coalesce(func.sum(Booking.adults + Booking.children), 0)).where(
            Booking.date == day,
            Booking.session == session,
            Booking.status != BookingStatus.CANCELLED,
        )
        return int(await self.session.scalar(stmt) or 0)

    async def reserved_by_session(self, day: date) -> dict[TourSession, int]:
        stmt = (
            select(Booking.session, func.coalesce(func.sum(Booking.adults + Booking.children), 0))
            .where(Booking.date == day, Booking.status != BookingStatus.CANCELLED)
            .group_by(Booking.session)
        )
        rows = await self.session.execute(stmt)
        return {TourSession(session): int(reserved) for session, reserved in rows.all()}

    async def code_exists(self, booking_code: str) -> bool:
        stmt = select(Booking.id).where(Booking.booking_code == booking_code)
        return await self.session.scalar(stmt) is not None

    async def get_by_idempotency_key(self, idempotency_key: str) -> Booking | None:
        result = await self.session.scalar(select(Booking).where(Booking.idempotency_key == idempotency_key))
        return result if isinstance(result, Booking) else None

    async def payment_reference_exists(self, payment_reference: str) -> bool:
        stmt = select(Booking.id).where(Booking.payment_reference == payment_reference)
        return await self.session.scalar(stmt) is not None

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
    ) -> Booking:
        now = utc_now_naive()
        booking = Booking(
            booking_code=booking_code,
            idempotency_key=idempotency_key,
            customer_id=customer_id,
            date=day,
            session=session,
            adults=adults,
            children=children,
            total_amount=total_amount,
            currency=currency,
            pickup_location=pickup_location,
            hotel_address=hotel_address,
            special_requests=special_requests,
            status=status,
            payment_status=payment_status,
            payment_reference=payment_reference,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(booking)
        except IntegrityError as exc:
            if await self.code_exists(booking_code):
                raise IdentifierCollisionError(f"booking code {booking_code} already taken") from exc
            if idempotency_key is not None and await self.get_by_idempotency_key(idempotency_key) is not None:
                raise DuplicateIdempotencyKeyError(idempotency_key) from exc
            if payment_reference is not None and await self.payment_reference_exists(payment_reference):
                raise PaymentDeclinedError(f"payment {payment_reference} already covers another booking") from exc
            raise
        return booking

    def _by_reference(self, reference: str) -> Select[Tuple[Booking]]:
        stmt = select(Booking).options(joinedload(Booking.customer, innerjoin=True))
        if reference.isdigit():
            return stmt.where(Booking.id == int(reference))
        return stmt.where(Booking.booking_code == normalize_booking_code(reference))

    async def get_by_reference(self, reference: str) -> Booking | None:
        result = await self.session.scalar(self._by_reference(reference))
        return result if isinstance(result, Booking) else None

    async def get_by_reference_for_update(self, reference: str) -> Booking | None:
        result = await self.session.scalar(self._by_reference(reference).with_for_update(of=Booking))
        return result if isinstance(result, Booking) else None

    async def get_by_payment_reference_for_update(self, payment_reference: str) -> Booking | None:
        stmt = (
            select(Booking)
            .options(joinedload(Booking.customer, innerjoin=True))
            .where(Booking.payment_reference == payment_reference)
            .with_for_update(of=Booking)
        )
        result = await self.session.scalar(stmt)
        return result if isinstance(result, Booking) else None

    async def search(
        self,
        *,
        status: BookingStatus | None,
        day: date | None,
        customer_id: int | None,
        offset: int,
        limit: int,
    ) -> tuple[List[Booking], int]:
        conditions: list[Any] = []
        if status is not None:
            conditions.append(Booking.status == status)
        if day is not None:
            conditions.append(Booking.date == day)
        if customer_id is not None:
            conditions.append(Booking.customer_id == customer_id)

        total = await self.session.scalar(select(func.count(Booking.id)).where(*conditions))
        stmt: Select[Tuple[Booking]] = (
            select(Booking)
            .options(joinedload(Booking.customer))
            .where(*conditions)
            .order_by(Booking.created_at.desc(), Booking.id.desc())
            .offset(offset)
            .limit(limit)
        )
        rows = await self.session.scalars(stmt)
        return list(rows.all()), int(total or 0)

    async def save(self, booking: Booking) -> Booking:
        booking.updated_at = utc_now_naive()
        self.session.add(booking)
        await self.session.flush()
        return booking


