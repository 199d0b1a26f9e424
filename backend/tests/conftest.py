import asyncio
import itertools
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any, Optional

import pytest
from excursion_booking.config import Settings
from excursion_booking.domain.errors import (
    CustomerConflictError,
    DuplicateIdempotencyKeyError,
    IdentifierCollisionError,
    PaymentDeclinedError,
)
from excursion_booking.integrations.notifications import BookingNotification
from excursion_booking.integrations.payments import PaymentEvent, PaymentIntent, PaymentVerification
from excursion_booking.models import (
    Booking,
    BookingStatus,
    Customer,
    Departure,
    PaymentStatus,
    PickupLocation,
    TourSession,
)
from excursion_booking.utils.time import utc_now_naive, venue_today


class FakeStore:
    """Committed state shared by every FakeSession, plus one lock per (date, session)."""

    def __init__(self, *, delay: float = 0.0) -> None:
        self.bookings: dict[int, Booking] = {}
        self.customers: dict[str, Customer] = {}
        self.slot_locks: defaultdict[tuple[date, TourSession], asyncio.Lock] = defaultdict(asyncio.Lock)
        self.customer_inserts = 0
        self.delay = delay
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    def add_customer(self, email: str, full_name: str = "Ada Lovelace", phone: Optional[str] = None) -> Customer:
        now = utc_now_naive()
        customer = Customer(
            id=self.next_id(),
            email=email,
            full_name=full_name,
            phone=phone,
            created_at=now,
            updated_at=now,
        )
        self.customers[email] = customer
        return customer

    def add_booking(
        self,
        *,
        customer: Customer,
        day: date,
        session: TourSession = TourSession.MORNING,
        adults: int = 2,
        children: int = 0,
        status: BookingStatus = BookingStatus.PENDING,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        payment_reference: Optional[str] = None,
        booking_code: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Booking:
        booking_id = self.next_id()
        now = created_at or utc_now_naive()
        booking = Booking(
            id=booking_id,
            booking_code=booking_code or f"RASTA-2030-{booking_id:05d}",
            idempotency_key=idempotency_key,
            customer_id=customer.id,
            date=day,
            session=session,
            adults=adults,
            children=children,
            total_amount=(adults + children) * 165,
            currency="usd",
            pickup_location=PickupLocation.NEGRIL,
            hotel_address="",
            special_requests=None,
            status=status,
            payment_status=payment_status,
            payment_reference=payment_reference,
            created_at=now,
            updated_at=now,
        )
        booking.customer = customer
        self.bookings[booking_id] = booking
        return booking

    def customer_by_id(self, customer_id: int) -> Optional[Customer]:
        for customer in self.customers.values():
            if customer.id == customer_id:
                return customer
        return None

    def active_participants(self, day: date, session: TourSession) -> int:
        return sum(
            b.adults + b.children
            for b in self.bookings.values()
            if b.date == day and b.session == session and b.status != BookingStatus.CANCELLED
        )


class FakeTransaction:
    def __init__(self, session: "FakeSession") -> None:
        self.session = session

    async def __aenter__(self) -> "FakeTransaction":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> bool:
        try:
            if exc_type is None:
                self.session.commit_pending()
            else:
                self.session.discard_pending()
        finally:
            self.session.release_locks()
        return False


class FakeSession:
    def __init__(self, store: FakeStore) -> None:
        self.store = store
        self.pending_bookings: list[Booking] = []
        self.pending_customers: list[Customer] = []
        self.held_locks: list[asyncio.Lock] = []
        self.saved: list[Booking] = []

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> bool:
        self.release_locks()
        return False

    def begin(self) -> FakeTransaction:
        return FakeTransaction(self)

    def commit_pending(self) -> None:
        for customer in self.pending_customers:
            self.store.customers[customer.email] = customer
            self.store.customer_inserts += 1
        for booking in self.pending_bookings:
            booking.customer = self.store.customer_by_id(booking.customer_id)
            self.store.bookings[booking.id] = booking
        self.discard_pending()

    def discard_pending(self) -> None:
        self.pending_bookings = []
        self.pending_customers = []

    def release_locks(self) -> None:
        while self.held_locks:
            self.held_locks.pop().release()


def session_factory_for(store: FakeStore):
    def factory() -> FakeSession:
        return FakeSession(store)

    return factory


class FakeDepartureRepo:
    def __init__(self, session: FakeSession) -> None:
        self.session = session

    async def get_for_update(self, day: date, session: TourSession) -> Departure:
        lock = self.session.store.slot_locks[(day, session)]
        await lock.acquire()
        self.session.held_locks.append(lock)
        return Departure(id=1, date=day, session=session, created_at=utc_now_naive())


class FakeCustomerRepo:
    def __init__(self, session: FakeSession) -> None:
        self.session = session

    def _visible(self, email: str) -> Optional[Customer]:
        for customer in self.session.pending_customers:
            if customer.email == email:
                return customer
        return self.session.store.customers.get(email)

    async def get_by_email(self, email: str) -> Optional[Customer]:
        await asyncio.sleep(0)
        return self._visible(email)

    async def get_by_email_for_update(self, email: str) -> Optional[Customer]:
        return self._visible(email)

    async def insert(self, *, email: str, full_name: str, phone: Optional[str]) -> Customer:
        await asyncio.sleep(0)
        if self._visible(email) is not None:
            raise CustomerConflictError(f"customer {email} already exists")
        now = utc_now_naive()
        customer = Customer(
            id=self.session.store.next_id(),
            email=email,
            full_name=full_name,
            phone=phone,
            created_at=now,
            updated_at=now,
        )
        self.session.pending_customers.append(customer)
        return customer


class FakeBookingRepo:
    def __init__(self, session: FakeSession) -> None:
        self.session = session
        self.store = session.store

    def _visible(self) -> list[Booking]:
        return [*self.store.bookings.values(), *self.session.pending_bookings]

    async def sum_reserved(self, day: date, session: TourSession) -> int:
        await asyncio.sleep(self.store.delay)
        return sum(
            b.adults + b.children
            for b in self._visible()
            if b.date == day and b.session == session and b.status != BookingStatus.CANCELLED
        )

    async def reserved_by_session(self, day: date) -> dict[TourSession, int]:
        totals: dict[TourSession, int] = {}
        for b in self._visible():
            if b.date == day and b.status != BookingStatus.CANCELLED:
                totals[b.session] = totals.get(b.session, 0) + b.adults + b.children
        return totals

    async def code_exists(self, booking_code: str) -> bool:
        await asyncio.sleep(0)
        return any(b.booking_code == booking_code for b in self._visible())

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Booking]:
        for booking in self.store.bookings.values():
            if booking.idempotency_key == idempotency_key:
                return booking
        return None

    async def payment_reference_exists(self, payment_reference: str) -> bool:
        return any(b.payment_reference == payment_reference for b in self.store.bookings.values())

    async def create(self, **fields: Any) -> Booking:
        await asyncio.sleep(0)
        if any(b.booking_code == fields["booking_code"] for b in self.store.bookings.values()):
            raise IdentifierCollisionError(f"booking code {fields['booking_code']} already taken")
        key = fields["idempotency_key"]
        if key is not None and await self.get_by_idempotency_key(key) is not None:
            raise DuplicateIdempotencyKeyError(key)
        reference = fields["payment_reference"]
        if reference is not None and await self.payment_reference_exists(reference):
            raise PaymentDeclinedError(f"payment {reference} already covers another booking")
        now = utc_now_naive()
        day = fields.pop("day")
        booking = Booking(id=self.store.next_id(), date=day, created_at=now, updated_at=now, **fields)
        self.session.pending_bookings.append(booking)
        return booking

    async def get_by_reference(self, reference: str) -> Optional[Booking]:
        for booking in self.store.bookings.values():
            if str(booking.id) == reference or booking.booking_code == reference.strip().upper():
                return booking
        return None

    async def get_by_reference_for_update(self, reference: str) -> Optional[Booking]:
        return await self.get_by_reference(reference)

    async def get_by_payment_reference_for_update(self, payment_reference: str) -> Optional[Booking]:
        for booking in self.store.bookings.values():
            if booking.payment_reference == payment_reference:
                return booking
        return None

    async def search(
        self,
        *,
        status: Optional[BookingStatus],
        day: Optional[date],
        customer_id: Optional[int],
        offset: int,
        limit: int,
    ) -> tuple[list[Booking], int]:
        rows = [
            b
            for b in self.store.bookings.values()
            if (status is None or b.status == status)
            and (day is None or b.date == day)
            and (customer_id is None or b.customer_id == customer_id)
        ]
        rows.sort(key=lambda b: (b.created_at, b.id), reverse=True)
        return rows[offset : offset + limit], len(rows)

    async def save(self, booking: Booking) -> Booking:
        booking.updated_at = utc_now_naive()
        self.session.saved.append(booking)
        return booking


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.confirmations: list[BookingNotification] = []
        self.cancellations: list[BookingNotification] = []

    async def send_booking_confirmation(self, notification: BookingNotification) -> None:
        if self.fail:
            raise ConnectionError("smtp down")
        self.confirmations.append(notification)

    async def send_booking_cancellation(self, notification: BookingNotification) -> None:
        if self.fail:
            raise ConnectionError("smtp down")
        self.cancellations.append(notification)


class FakePaymentAuthority:
    def __init__(
        self,
        *,
        verification: Optional[PaymentVerification] = None,
        event: Optional[PaymentEvent] = None,
        delay: float = 0.0,
    ) -> None:
        self.verification = verification
        self.event = event
        self.delay = delay
        self.charges: list[dict[str, Any]] = []

    async def create_charge(self, **kwargs: Any) -> PaymentIntent:
        self.charges.append(kwargs)
        return PaymentIntent(
            reference="pi_test_123",
            client_secret="pi_test_123_secret",
            amount_minor=kwargs["amount_minor"],
            currency=kwargs["currency"],
        )

    async def retrieve(self, reference: str) -> PaymentVerification:
        await asyncio.sleep(self.delay)
        assert self.verification is not None
        return self.verification

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        from excursion_booking.integrations.payments import WebhookSignatureError

        if signature != "valid":
            raise WebhookSignatureError("invalid webhook signature")
        assert self.event is not None
        return self.event


def future_day(days: int = 10) -> date:
    return venue_today() + timedelta(days=days)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        auth_secret="testsecret",
        session_capacity=24,
        store_timeout_seconds=1.0,
        reservation_max_attempts=3,
        retry_backoff_seconds=0.0,
    )


@pytest.fixture
def fake_repositories(monkeypatch: pytest.MonkeyPatch) -> None:
    """Swap SQLAlchemy repositories for the in-memory fakes wherever they are built."""
    from excursion_booking.routers import bookings as bookings_router
    from excursion_booking.routers import payments as payments_router
    from excursion_booking.services import availability as availability_service
    from excursion_booking.services import reservations as reservations_service

    monkeypatch.setattr(reservations_service, "SqlAlchemyDepartureRepository", FakeDepartureRepo)
    monkeypatch.setattr(reservations_service, "SqlAlchemyBookingRepository", FakeBookingRepo)
    monkeypatch.setattr(reservations_service, "SqlAlchemyCustomerRepository", FakeCustomerRepo)
    monkeypatch.setattr(availability_service, "SqlAlchemyBookingRepository", FakeBookingRepo)
    monkeypatch.setattr(bookings_router, "SqlAlchemyBookingRepository", FakeBookingRepo)
    monkeypatch.setattr(bookings_router, "SqlAlchemyCustomerRepository", FakeCustomerRepo)
    monkeypatch.setattr(bookings_router, "SqlAlchemyDepartureRepository", FakeDepartureRepo)
    monkeypatch.setattr(payments_router, "SqlAlchemyBookingRepository", FakeBookingRepo)


def build_test_app(
    store: FakeStore,
    settings: Settings,
    *,
    notifier: Optional[RecordingNotifier] = None,
    payment_authority: Optional[FakePaymentAuthority] = None,
) -> Any:
    from excursion_booking.main import create_app

    return create_app(
        settings,
        session_factory=session_factory_for(store),  # type: ignore[arg-type]
        notifier=notifier or RecordingNotifier(),
        payment_authority=payment_authority,
    )


def bearer(settings: Settings, *, role: Optional[str] = "admin") -> dict[str, str]:
    from excursion_booking.utils.auth import create_access_token

    token = create_access_token(subject="ops@example.com", secret=settings.auth_secret, role=role)
    return {"Authorization": f"Bearer {token}"}
