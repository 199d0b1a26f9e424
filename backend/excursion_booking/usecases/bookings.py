import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable
from zoneinfo import ZoneInfo

from ..domain.booking_codes import is_valid_booking_code, normalize_booking_code
from ..domain.errors import (
    BookingNotFoundError,
    CancelNotAllowedError,
    DuplicateIdempotencyKeyError,
    IdentifierCollisionError,
    InvalidTransitionError,
    ModificationNotAllowedError,
    PaymentDeclinedError,
)
from ..domain.pricing import calculate_total_amount
from ..domain.repositories import BookingRepository, CustomerRepository, DepartureRepository
from ..domain.services import (
    BookingChanges,
    ReservationRequest,
    SessionSnapshot,
    ensure_payment_transition,
    ensure_status_transition,
    is_refund_eligible,
    normalize_email,
    validate_booking_change,
    validate_reservation,
)
from ..models import Booking, BookingStatus, PaymentStatus
from ..utils.time import VENUE_TZ, session_start_utc_naive
from .customers import find_or_create_customer

MAX_CODE_ATTEMPTS = 10

CodeGenerator = Callable[[str], str]


@dataclass(frozen=True)
class BookingPage:
    items: list[Booking]
    page: int
    page_size: int
    total_items: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_items / self.page_size) if self.total_items else 0

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


@dataclass(frozen=True)
class CancellationResult:
    booking: Booking
    previous_status: BookingStatus
    refund_eligible: bool

    @property
    def changed(self) -> bool:
        return self.previous_status != BookingStatus.CANCELLED


@dataclass(frozen=True)
class PaymentUpdate:
    booking: Booking
    previous_status: BookingStatus
    changed: bool

    @property
    def cancelled(self) -> bool:
        return (
            self.changed
            and self.previous_status != BookingStatus.CANCELLED
            and self.booking.status == BookingStatus.CANCELLED
        )


@dataclass(frozen=True)
class ModificationResult:
    booking: Booking
    previous_date: date
    changed: bool


async def create_booking(
    departure_repo: DepartureRepository,
    booking_repo: BookingRepository,
    customer_repo: CustomerRepository,
    *,
    request: ReservationRequest,
    capacity: int,
    total_amount: int,
    currency: str,
    status: BookingStatus,
    payment_status: PaymentStatus,
    code_prefix: str,
    code_generator: CodeGenerator,
) -> Booking:
    """Capacity check and insert. Must run inside the caller's transaction."""
    await departure_repo.get_for_update(request.date, request.session)
    if request.idempotency_key and await booking_repo.get_by_idempotency_key(request.idempotency_key) is not None:
        raise DuplicateIdempotencyKeyError(request.idempotency_key)
    if request.payment_reference and await booking_repo.payment_reference_exists(request.payment_reference):
        raise PaymentDeclinedError(f"payment {request.payment_reference} already covers another booking")
    reserved = await booking_repo.sum_reserved(request.date, request.session)
    validate_reservation(SessionSnapshot(capacity=capacity, reserved=reserved), party_size=request.participants)

    customer_id = await find_or_create_customer(
        customer_repo,
        email=request.customer.email,
        name=request.customer.full_name,
        phone=request.customer.phone,
    )
    booking_code = await _unused_booking_code(booking_repo, prefix=code_prefix, code_generator=code_generator)

    return await booking_repo.create(
        booking_code=booking_code,
        idempotency_key=request.idempotency_key,
        customer_id=customer_id,
        day=request.date,
        session=request.session,
        adults=request.adults,
        children=request.children,
        total_amount=total_amount,
        currency=currency,
        pickup_location=request.pickup_location,
        hotel_address=request.hotel_address.strip(),
        special_requests=(request.special_requests or "").strip() or None,
        status=status,
        payment_status=payment_status,
        payment_reference=request.payment_reference,
    )


async def _unused_booking_code(
    booking_repo: BookingRepository,
    *,
    prefix: str,
    code_generator: CodeGenerator,
    attempts: int = MAX_CODE_ATTEMPTS,
) -> str:
    for _ in range(attempts):
        candidate = code_generator(prefix)
        if not await booking_repo.code_exists(candidate):
            return candidate
    raise IdentifierCollisionError(f"no unused booking code after {attempts} attempts")


async def list_bookings(
    booking_repo: BookingRepository,
    customer_repo: CustomerRepository,
    *,
    status: BookingStatus | None,
    day: date | None,
    email: str | None,
    page: int,
    page_size: int,
) -> BookingPage:
    customer_id: int | None = None
    if email:
        customer = await customer_repo.get_by_email(normalize_email(email))
        if customer is None:
            return BookingPage(items=[], page=page, page_size=page_size, total_items=0)
        customer_id = customer.id

    items, total = await booking_repo.search(
        status=status,
        day=day,
        customer_id=customer_id,
        offset=(page - 1) * page_size,
        limit=page_size,
    )
    return BookingPage(items=items, page=page, page_size=page_size, total_items=total)


def resolve_reference(reference: str, *, is_admin: bool) -> str:
    """Numeric ids are for admins. Everyone else looks bookings up by booking code."""
    reference = reference.strip()
    if reference.isdigit():
        if is_admin:
            return reference
    elif is_valid_booking_code(reference):
        return normalize_booking_code(reference)
    raise BookingNotFoundError(f"booking {reference} not found")


def _is_owner(booking: Booking, requester_email: str | None) -> bool:
    return requester_email is not None and normalize_email(requester_email) == normalize_email(booking.customer.email)


async def get_booking(booking_repo: BookingRepository, *, reference: str, is_admin: bool = False) -> Booking:
    booking = await booking_repo.get_by_reference(resolve_reference(reference, is_admin=is_admin))
    if booking is None:
        raise BookingNotFoundError(f"booking {reference} not found")
    return booking


async def cancel_booking(
    booking_repo: BookingRepository,
    *,
    reference: str,
    requester_email: str | None,
    is_admin: bool,
    now: datetime,
    cutoff_hours: int,
    tz: ZoneInfo = VENUE_TZ,
) -> CancellationResult:
    booking = await booking_repo.get_by_reference_for_update(resolve_reference(reference, is_admin=is_admin))
    if booking is None:
        raise BookingNotFoundError(f"booking {reference} not found")
    if not is_admin and not _is_owner(booking, requester_email):
        raise CancelNotAllowedError("only the booking's customer can cancel it")

    refund_eligible = is_refund_eligible(
        session_start_utc_naive(booking.date, booking.session, tz),
        now=now,
        cutoff_hours=cutoff_hours,
    )
    previous = booking.status
    # Idempotent: already cancelled returns as-is
    if previous == BookingStatus.CANCELLED:
        return CancellationResult(booking=booking, previous_status=previous, refund_eligible=refund_eligible)

    ensure_status_transition(previous, BookingStatus.CANCELLED)
    booking.status = BookingStatus.CANCELLED
    updated = await booking_repo.save(booking)
    return CancellationResult(booking=updated, previous_status=previous, refund_eligible=refund_eligible)


def _editable_fields(booking: Booking) -> tuple[object, ...]:
    return (
        booking.date,
        booking.session,
        booking.adults,
        booking.children,
        booking.total_amount,
        booking.pickup_location,
        booking.hotel_address,
        booking.special_requests,
    )


async def update_booking(
    departure_repo: DepartureRepository,
    booking_repo: BookingRepository,
    *,
    reference: str,
    changes: BookingChanges,
    requester_email: str | None,
    is_admin: bool,
    capacity: int,
    price_per_person: int,
    today: date,
) -> ModificationResult:
    """Move a booking to another departure, resize its party or edit pickup details.

    Must run inside the caller's transaction. Capacity is re-checked against the
    target departure with this booking's own seats left out, and the total is
    repriced whenever the party changes.
    """
    booking = await booking_repo.get_by_reference_for_update(resolve_reference(reference, is_admin=is_admin))
    if booking is None:
        raise BookingNotFoundError(f"booking {reference} not found")
    if not is_admin and not _is_owner(booking, requester_email):
        raise ModificationNotAllowedError("only the booking's customer can change it")
    if booking.status == BookingStatus.CANCELLED:
        raise InvalidTransitionError("a cancelled booking cannot be modified")

    before = _editable_fields(booking)
    previous_date = booking.date

    if changes.moves_seats:
        target = (changes.day or booking.date, changes.session or booking.session)
        adults = booking.adults if changes.adults is None else changes.adults
        children = booking.children if changes.children is None else changes.children
        validate_booking_change(target[0], adults, children, today=today, capacity=capacity)
        total_amount = calculate_total_amount(adults, children, price_per_person=price_per_person)
        has_payment = booking.payment_reference is not None or booking.payment_status != PaymentStatus.PENDING
        if has_payment and total_amount != booking.total_amount:
            raise InvalidTransitionError("the party size of a booking with a payment cannot change")

        current = (booking.date, booking.session)
        # Departure locks are always taken in (date, session) order.
        for day, session in sorted({current, target}):
            await departure_repo.get_for_update(day, session)
        reserved = await booking_repo.sum_reserved(*target)
        if target == current:
            reserved -= booking.participants
        validate_reservation(SessionSnapshot(capacity=capacity, reserved=reserved), party_size=adults + children)

        booking.date, booking.session = target
        booking.adults = adults
        booking.children = children
        booking.total_amount = total_amount

    if changes.pickup_location is not None:
        booking.pickup_location = changes.pickup_location
    if changes.hotel_address is not None:
        booking.hotel_address = changes.hotel_address.strip()
    if changes.special_requests is not None:
        booking.special_requests = changes.special_requests.strip() or None

    if _editable_fields(booking) == before:
        return ModificationResult(booking=booking, previous_date=previous_date, changed=False)
    updated = await booking_repo.save(booking)
    return ModificationResult(booking=updated, previous_date=previous_date, changed=True)


async def confirm_payment(booking_repo: BookingRepository, *, payment_reference: str) -> PaymentUpdate:
    """Mark the booking holding `payment_reference` as confirmed and paid.

    Webhook redeliveries come back with `changed=False`.
    """
    booking = await booking_repo.get_by_payment_reference_for_update(payment_reference)
    if booking is None:
        raise BookingNotFoundError(f"no booking for payment {payment_reference}")
    previous = booking.status
    if previous == BookingStatus.CONFIRMED and booking.payment_status == PaymentStatus.PAID:
        return PaymentUpdate(booking=booking, previous_status=previous, changed=False)

    ensure_status_transition(previous, BookingStatus.CONFIRMED)
    ensure_payment_transition(booking.payment_status, PaymentStatus.PAID)
    booking.status = BookingStatus.CONFIRMED
    booking.payment_status = PaymentStatus.PAID
    updated = await booking_repo.save(booking)
    return PaymentUpdate(booking=updated, previous_status=previous, changed=True)


async def record_refund(
    booking_repo: BookingRepository,
    *,
    payment_reference: str,
    fully_refunded: bool,
) -> PaymentUpdate:
    booking = await booking_repo.get_by_payment_reference_for_update(payment_reference)
    if booking is None:
        raise BookingNotFoundError(f"no booking for payment {payment_reference}")
    previous = booking.status
    if booking.payment_status == PaymentStatus.REFUNDED:
        return PaymentUpdate(booking=booking, previous_status=previous, changed=False)

    ensure_payment_transition(booking.payment_status, PaymentStatus.REFUNDED)
    booking.payment_status = PaymentStatus.REFUNDED
    if fully_refunded and previous != BookingStatus.CANCELLED:
        ensure_status_transition(previous, BookingStatus.CANCELLED)
        booking.status = BookingStatus.CANCELLED
    updated = await booking_repo.save(booking)
    return PaymentUpdate(booking=updated, previous_status=previous, changed=True)
