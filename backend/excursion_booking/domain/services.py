import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from ..models import BookingStatus, PaymentStatus, PickupLocation, TourSession
from .errors import FieldError, InvalidTransitionError, SessionFullError, ValidationError

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class CustomerInput:
    first_name: str
    last_name: str
    email: str
    phone: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name.strip()} {self.last_name.strip()}".strip()


@dataclass(frozen=True)
class ReservationRequest:
    date: date
    session: TourSession
    adults: int
    children: int
    customer: CustomerInput
    pickup_location: PickupLocation
    hotel_address: str = ""
    special_requests: str | None = None
    payment_reference: str | None = None
    idempotency_key: str | None = None

    @property
    def participants(self) -> int:
        return self.adults + self.children


@dataclass(frozen=True)
class BookingChanges:
    """Fields a customer may change on an existing booking. None keeps the current value."""

    day: date | None = None
    session: TourSession | None = None
    adults: int | None = None
    children: int | None = None
    pickup_location: PickupLocation | None = None
    hotel_address: str | None = None
    special_requests: str | None = None

    @property
    def moves_seats(self) -> bool:
        return any(value is not None for value in (self.day, self.session, self.adults, self.children))


@dataclass(frozen=True)
class SessionSnapshot:
    capacity: int
    reserved: int


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email.strip()))


def validate_reservation(snapshot: SessionSnapshot, *, party_size: int) -> int:
    """
    Pure capacity check against a snapshot read inside the reservation transaction.
    Returns remaining capacity after booking if OK. Raises SessionFullError otherwise.
    """
    if party_size <= 0:
        raise ValidationError({"adults": "at least one participant is required"})

    remaining = snapshot.capacity - snapshot.reserved
    if party_size > remaining:
        raise SessionFullError(remaining=remaining)
    return remaining - party_size


def _departure_errors(day: date, adults: int, children: int, *, today: date, capacity: int) -> list[FieldError]:
    errors: list[FieldError] = []
    if day < today:
        errors.append(FieldError("date", "date must not be in the past"))
    if adults < 1:
        errors.append(FieldError("adults", "at least 1 adult is required"))
    if children < 0:
        errors.append(FieldError("children", "children cannot be negative"))
    if adults >= 1 and children >= 0 and adults + children > capacity:
        errors.append(FieldError("adults", f"a session holds at most {capacity} participants"))
    return errors


def validate_reservation_request(request: ReservationRequest, *, today: date, capacity: int) -> None:
    errors = _departure_errors(
        request.date, request.adults, request.children, today=today, capacity=capacity
    )
    if not request.customer.first_name.strip():
        errors.append(FieldError("first_name", "first name is required"))
    if not request.customer.last_name.strip():
        errors.append(FieldError("last_name", "last name is required"))
    if not is_valid_email(request.customer.email):
        errors.append(FieldError("email", "invalid email address"))
    if errors:
        raise ValidationError(errors)


def validate_booking_change(day: date, adults: int, children: int, *, today: date, capacity: int) -> None:
    errors = _departure_errors(day, adults, children, today=today, capacity=capacity)
    if errors:
        raise ValidationError(errors)


_STATUS_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CANCELLED}),
    BookingStatus.CANCELLED: frozenset(),
}

_PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.REFUNDED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}


def ensure_status_transition(current: BookingStatus, target: BookingStatus) -> None:
    if target not in _STATUS_TRANSITIONS[current]:
        raise InvalidTransitionError(f"booking cannot move from {current.value} to {target.value}")


def ensure_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if target not in _PAYMENT_TRANSITIONS[current]:
        raise InvalidTransitionError(f"payment cannot move from {current.value} to {target.value}")


def is_refund_eligible(session_starts_at: datetime, *, now: datetime, cutoff_hours: int) -> bool:
    """Both datetimes are naive UTC. Free cancellation ends `cutoff_hours` before departure."""
    return session_starts_at - now >= timedelta(hours=cutoff_hours)
