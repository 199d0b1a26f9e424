import datetime as dt
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer

from .domain.availability import DayAvailability, SessionAvailability
from .domain.services import BookingChanges, CustomerInput, ReservationRequest
from .models import Booking, BookingStatus, PaymentStatus, PickupLocation, TourSession


def _utc_iso(value: dt.datetime) -> str:
    return value.replace(tzinfo=dt.timezone.utc).isoformat()


class BookingCreate(BaseModel):
    date: dt.date
    session: TourSession
    adults: int = Field(ge=1)
    children: int = Field(default=0, ge=0)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=50)
    pickup_location: PickupLocation
    hotel_address: str = Field(default="", max_length=500)
    special_requests: Optional[str] = Field(default=None, max_length=500)
    payment_reference: Optional[str] = Field(default=None, max_length=255)
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=64)

    def to_request(self, idempotency_key: Optional[str] = None) -> ReservationRequest:
        """The Idempotency-Key header wins over the body field."""
        return ReservationRequest(
            date=self.date,
            session=self.session,
            adults=self.adults,
            children=self.children,
            customer=CustomerInput(
                first_name=self.first_name,
                last_name=self.last_name,
                email=self.email,
                phone=self.phone,
            ),
            pickup_location=self.pickup_location,
            hotel_address=self.hotel_address,
            special_requests=self.special_requests,
            payment_reference=self.payment_reference or None,
            idempotency_key=idempotency_key or self.idempotency_key,
        )


class BookingCreated(BaseModel):
    booking_id: int
    booking_code: str
    date: dt.date
    session: TourSession
    adults: int
    children: int
    total_amount: int
    currency: str
    status: BookingStatus
    payment_status: PaymentStatus
    created_at: dt.datetime

    @field_serializer("created_at")
    def _ser_datetime(self, value: dt.datetime) -> str:
        return _utc_iso(value)

    @classmethod
    def from_db(cls, *, booking: Booking) -> "BookingCreated":
        return cls(
            booking_id=booking.id,
            booking_code=booking.booking_code,
            date=booking.date,
            session=booking.session,
            adults=booking.adults,
            children=booking.children,
            total_amount=booking.total_amount,
            currency=booking.currency,
            status=booking.status,
            payment_status=booking.payment_status,
            created_at=booking.created_at,
        )


class BookingRead(BaseModel):
    booking_id: int
    booking_code: str
    date: dt.date
    session: TourSession
    session_label: str
    adults: int
    children: int
    total_amount: int
    currency: str
    pickup_location: PickupLocation
    hotel_address: str
    special_requests: Optional[str]
    status: BookingStatus
    payment_status: PaymentStatus
    customer_name: str
    customer_email: Optional[str]
    created_at: dt.datetime
    updated_at: dt.datetime

    @field_serializer("created_at", "updated_at")
    def _ser_datetime(self, value: dt.datetime) -> str:
        return _utc_iso(value)

    @classmethod
    def from_db(cls, *, booking: Booking, include_contact: bool = True) -> "BookingRead":
        """Contact details are only shown to admins."""
        return cls(
            booking_id=booking.id,
            booking_code=booking.booking_code,
            date=booking.date,
            session=booking.session,
            session_label=booking.session.label,
            adults=booking.adults,
            children=booking.children,
            total_amount=booking.total_amount,
            currency=booking.currency,
            pickup_location=booking.pickup_location,
            hotel_address=booking.hotel_address,
            special_requests=booking.special_requests,
            status=booking.status,
            payment_status=booking.payment_status,
            customer_name=booking.customer.full_name,
            customer_email=booking.customer.email if include_contact else None,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class BookingUpdate(BaseModel):
    email: Optional[str] = Field(default=None, max_length=255)
    date: Optional[dt.date] = None
    session: Optional[TourSession] = None
    adults: Optional[int] = Field(default=None, ge=1)
    children: Optional[int] = Field(default=None, ge=0)
    pickup_location: Optional[PickupLocation] = None
    hotel_address: Optional[str] = Field(default=None, max_length=500)
    special_requests: Optional[str] = Field(default=None, max_length=500)

    def to_changes(self) -> BookingChanges:
        return BookingChanges(
            day=self.date,
            session=self.session,
            adults=self.adults,
            children=self.children,
            pickup_location=self.pickup_location,
            hotel_address=self.hotel_address,
            special_requests=self.special_requests,
        )


class BookingCancel(BaseModel):
    email: Optional[str] = Field(default=None, max_length=255)
    reason: Optional[str] = Field(default=None, max_length=500)


class BookingCancelled(BaseModel):
    booking_id: int
    booking_code: str
    status: BookingStatus
    payment_status: PaymentStatus
    refund_eligible: bool
    already_cancelled: bool


class Pagination(BaseModel):
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_previous: bool
    has_next: bool


class PaginatedBookings(BaseModel):
    items: List[BookingRead]
    pagination: Pagination


class SessionAvailabilityRead(BaseModel):
    session: TourSession
    label: str
    start_time: str
    capacity: int
    booked: int
    remaining: int
    available: bool

    @classmethod
    def from_domain(cls, entry: SessionAvailability, *, participants: int = 1) -> "SessionAvailabilityRead":
        return cls(
            session=entry.session,
            label=entry.session.label,
            start_time=entry.session.value,
            capacity=entry.capacity,
            booked=entry.booked,
            remaining=entry.remaining,
            available=entry.can_fit(participants),
        )


class DayAvailabilityRead(BaseModel):
    date: dt.date
    available: bool
    sessions: List[SessionAvailabilityRead]

    @classmethod
    def from_domain(cls, day: DayAvailability, *, participants: int = 1) -> "DayAvailabilityRead":
        return cls(
            date=day.day,
            available=day.is_available(participants),
            sessions=[SessionAvailabilityRead.from_domain(entry, participants=participants) for entry in day.sessions],
        )


class PaymentIntentCreate(BaseModel):
    adults: int = Field(ge=1)
    children: int = Field(default=0, ge=0)
    date: Optional[dt.date] = None
    session: Optional[TourSession] = None
    email: Optional[str] = Field(default=None, max_length=255)


class PriceBreakdown(BaseModel):
    adults: int
    children: int
    price_per_person: int
    total: int


class PaymentIntentRead(BaseModel):
    payment_reference: str
    client_secret: Optional[str]
    amount: int
    currency: str
    breakdown: PriceBreakdown
