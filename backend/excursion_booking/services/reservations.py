from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from zoneinfo import ZoneInfo

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..client.availability_cache import AvailabilityCache
from ..config import Settings
from ..database import is_transient_store_error
from ..domain.booking_codes import generate_booking_code
from ..domain.errors import (
    DuplicateIdempotencyKeyError,
    IdentifierCollisionError,
    PaymentDeclinedError,
    StoreUnavailableError,
)
from ..domain.pricing import calculate_total_amount, to_minor_units
from ..domain.services import ReservationRequest, normalize_email, validate_reservation_request
from ..infrastructure.repositories import (
    SqlAlchemyBookingRepository,
    SqlAlchemyCustomerRepository,
    SqlAlchemyDepartureRepository,
)
from ..integrations.notifications import BookingNotification, NotificationDispatcher
from ..integrations.payments import PaymentAuthority, PaymentAuthorityError
from ..models import Booking, BookingStatus, PaymentStatus
from ..usecases import bookings as booking_usecase
from ..usecases.bookings import CodeGenerator
from ..utils.time import venue_today

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationOutcome:
    booking: Booking
    replayed: bool = False


@dataclass(frozen=True)
class PaymentDecision:
    status: BookingStatus
    payment_status: PaymentStatus


UNPAID = PaymentDecision(status=BookingStatus.PENDING, payment_status=PaymentStatus.PENDING)
PAID = PaymentDecision(status=BookingStatus.CONFIRMED, payment_status=PaymentStatus.PAID)


def _intent_terms(request: ReservationRequest) -> dict[str, str]:
    """The booking terms as they are written into PaymentIntent metadata."""
    return {
        "date": request.date.isoformat(),
        "session": request.session.value,
        "adults": str(request.adults),
        "children": str(request.children),
    }


class ReservationTransaction:
    """The only path that durably commits a booking.

    Each attempt locks the (date, session) departure row, re-reads committed
    participants and inserts inside one transaction, under a store timeout.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        *,
        notifications: NotificationDispatcher,
        payment_authority: PaymentAuthority | None = None,
        availability_cache: AvailabilityCache | None = None,
        code_generator: CodeGenerator = generate_booking_code,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.notifications = notifications
        self.payment_authority = payment_authority
        self.availability_cache = availability_cache
        self.code_generator = code_generator
        self.tz = ZoneInfo(settings.venue_timezone)

    async def reserve(self, request: ReservationRequest) -> ReservationOutcome:
        validate_reservation_request(
            request,
            today=venue_today(tz=self.tz),
            capacity=self.settings.session_capacity,
        )
        if request.idempotency_key:
            existing = await self._find_by_idempotency_key(request.idempotency_key)
            if existing is not None:
                logger.info("replaying booking %s for idempotency key", existing.booking_code)
                return ReservationOutcome(booking=existing, replayed=True)

        total_amount = calculate_total_amount(
            request.adults,
            request.children,
            price_per_person=self.settings.price_per_person,
        )
        decision = await self.verify_payment(request, total_amount)
        outcome = await self._commit(request, total_amount, decision)
        if outcome.replayed:
            return outcome

        booking = outcome.booking
        if self.availability_cache is not None:
            self.availability_cache.invalidate(booking.date)
        self.notifications.confirmation(
            BookingNotification.from_booking(
                booking,
                customer_name=request.customer.full_name,
                customer_email=normalize_email(request.customer.email),
            )
        )
        return outcome

    async def verify_payment(self, request: ReservationRequest, total_amount: int) -> PaymentDecision:
        reference = request.payment_reference
        if not reference:
            return UNPAID
        if self.payment_authority is None:
            logger.warning("payment %s stored unverified: no payment provider configured", reference)
            return UNPAID

        try:
            verification = await asyncio.wait_for(
                self.payment_authority.retrieve(reference),
                timeout=self.settings.store_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("payment provider timed out verifying %s", reference)
            raise StoreUnavailableError("payment provider timed out") from exc
        except PaymentAuthorityError as exc:
            raise StoreUnavailableError("payment provider unavailable") from exc

        if not (verification.succeeded or verification.in_flight):
            raise PaymentDeclinedError(f"payment {reference} is {verification.status}")
        expected = to_minor_units(total_amount)
        if verification.amount_minor != expected or verification.currency.lower() != self.settings.currency.lower():
            raise PaymentDeclinedError(
                f"payment {reference} covers {verification.amount_minor} {verification.currency}, "
                f"expected {expected} {self.settings.currency}"
            )
        mismatched = sorted(
            key
            for key, value in _intent_terms(request).items()
            if key in verification.metadata and verification.metadata[key] != value
        )
        if mismatched:
            raise PaymentDeclinedError(f"payment {reference} was created for a different {', '.join(mismatched)}")
        return PAID if verification.succeeded else UNPAID

    async def _commit(
        self,
        request: ReservationRequest,
        total_amount: int,
        decision: PaymentDecision,
    ) -> ReservationOutcome:
        max_attempts = self.settings.reservation_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                booking = await asyncio.wait_for(
                    self._attempt(request, total_amount, decision),
                    timeout=self.settings.store_timeout_seconds,
                )
                return ReservationOutcome(booking=booking)
            except asyncio.TimeoutError as exc:
                logger.warning("reservation for %s %s timed out", request.date, request.session.value)
                raise StoreUnavailableError("reservation store timed out") from exc
            except DuplicateIdempotencyKeyError:
                # A concurrent first submission with the same key won the insert.
                existing = None
                if request.idempotency_key:
                    existing = await self._find_by_idempotency_key(request.idempotency_key)
                if existing is None:
                    raise StoreUnavailableError("idempotent booking not readable yet")
                return ReservationOutcome(booking=existing, replayed=True)
            except IdentifierCollisionError:
                if attempt == max_attempts:
                    raise
                logger.info("booking code collision, retrying (attempt %d/%d)", attempt, max_attempts)
            except DBAPIError as exc:
                if not is_transient_store_error(exc) or attempt == max_attempts:
                    logger.exception("reservation for %s %s failed", request.date, request.session.value)
                    raise StoreUnavailableError("reservation store unavailable") from exc
                logger.warning("transient store error, retrying (attempt %d/%d)", attempt, max_attempts)
            await asyncio.sleep(self.settings.retry_backoff_seconds * 2 ** (attempt - 1))
        raise StoreUnavailableError("reservation attempts exhausted")

    async def _attempt(
        self,
        request: ReservationRequest,
        total_amount: int,
        decision: PaymentDecision,
    ) -> Booking:
        async with self.session_factory() as db:
            async with db.begin():
                return await booking_usecase.create_booking(
                    SqlAlchemyDepartureRepository(db),
                    SqlAlchemyBookingRepository(db),
                    SqlAlchemyCustomerRepository(db),
                    request=request,
                    capacity=self.settings.session_capacity,
                    total_amount=total_amount,
                    currency=self.settings.currency,
                    status=decision.status,
                    payment_status=decision.payment_status,
                    code_prefix=self.settings.booking_code_prefix,
                    code_generator=self.code_generator,
                )

    async def _find_by_idempotency_key(self, idempotency_key: str) -> Booking | None:
        try:
            async with self.session_factory() as db:
                return await asyncio.wait_for(
                    SqlAlchemyBookingRepository(db).get_by_idempotency_key(idempotency_key),
                    timeout=self.settings.store_timeout_seconds,
                )
        except asyncio.TimeoutError as exc:
            raise StoreUnavailableError("reservation store timed out") from exc
        except DBAPIError as exc:
            raise StoreUnavailableError("reservation store unavailable") from exc

    async def drain(self) -> None:
        await self.notifications.drain()
