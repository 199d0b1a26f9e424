from datetime import date
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Body, Depends, Header, Path, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..client.availability_cache import AvailabilityCache
from ..config import Settings
from ..deps import (
    get_app_settings,
    get_availability_cache,
    get_notifications,
    get_optional_claims,
    get_reservations,
    get_session,
    require_admin,
)
from ..domain.errors import DomainError
from ..infrastructure.repositories import (
    SqlAlchemyBookingRepository,
    SqlAlchemyCustomerRepository,
    SqlAlchemyDepartureRepository,
)
from ..integrations.notifications import BookingNotification, NotificationDispatcher
from ..models import BookingStatus
from ..schemas import (
    BookingCancel,
    BookingCancelled,
    BookingCreate,
    BookingCreated,
    BookingRead,
    BookingUpdate,
    PaginatedBookings,
    Pagination,
)
from ..services.reservations import ReservationTransaction
from ..usecases import bookings as booking_usecase
from ..utils.audit_log import audit_booking
from ..utils.auth import TokenClaims
from ..utils.time import utc_now_naive, venue_today
from .errors import audit_failure, to_http_exception

router = APIRouter(prefix="", tags=["bookings"])

REPLAY_HEADER = "Idempotent-Replayed"


@router.post("/bookings", response_model=BookingCreated, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    response: Response,
    idempotency_key: Optional[str] = Header(default=None, max_length=64),
    reservations: ReservationTransaction = Depends(get_reservations),
) -> BookingCreated:
    try:
        outcome = await reservations.reserve(payload.to_request(idempotency_key))
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    booking = outcome.booking
    if outcome.replayed:
        response.headers[REPLAY_HEADER] = "true"
    else:
        try:
            audit_booking(booking, action="booking.created", initiator="customer", status_from=None)
        except RuntimeError:
            raise audit_failure()
    return BookingCreated.from_db(booking=booking)


@router.get("/bookings", response_model=PaginatedBookings)
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(default=None, alias="status"),
    day: Optional[date] = Query(default=None, alias="date"),
    email: Optional[str] = Query(default=None, max_length=255),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    _admin: TokenClaims = Depends(require_admin),
) -> PaginatedBookings:
    result = await booking_usecase.list_bookings(
        SqlAlchemyBookingRepository(session),
        SqlAlchemyCustomerRepository(session),
        status=status_filter,
        day=day,
        email=email,
        page=page,
        page_size=page_size,
    )
    return PaginatedBookings(
        items=[BookingRead.from_db(booking=booking) for booking in result.items],
        pagination=Pagination(
            page=result.page,
            page_size=result.page_size,
            total_items=result.total_items,
            total_pages=result.total_pages,
            has_previous=result.has_previous,
            has_next=result.has_next,
        ),
    )


@router.get("/bookings/{reference}", response_model=BookingRead)
async def get_booking(
    reference: str = Path(..., min_length=1, max_length=64),
    session: AsyncSession = Depends(get_session),
    claims: Optional[TokenClaims] = Depends(get_optional_claims),
) -> BookingRead:
    is_admin = claims is not None and claims.is_admin
    try:
        booking = await booking_usecase.get_booking(
            SqlAlchemyBookingRepository(session),
            reference=reference,
            is_admin=is_admin,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return BookingRead.from_db(booking=booking, include_contact=is_admin)


@router.put("/bookings/{reference}", response_model=BookingRead)
async def update_booking(
    payload: BookingUpdate,
    reference: str = Path(..., min_length=1, max_length=64),
    session: AsyncSession = Depends(get_session),
    claims: Optional[TokenClaims] = Depends(get_optional_claims),
    settings: Settings = Depends(get_app_settings),
    cache: AvailabilityCache = Depends(get_availability_cache),
) -> BookingRead:
    is_admin = claims is not None and claims.is_admin
    async with session.begin():
        try:
            result = await booking_usecase.update_booking(
                SqlAlchemyDepartureRepository(session),
                SqlAlchemyBookingRepository(session),
                reference=reference,
                changes=payload.to_changes(),
                requester_email=payload.email,
                is_admin=is_admin,
                capacity=settings.session_capacity,
                price_per_person=settings.price_per_person,
                today=venue_today(tz=ZoneInfo(settings.venue_timezone)),
            )
        except DomainError as exc:
            raise to_http_exception(exc) from exc

    booking = result.booking
    if result.changed:
        try:
            audit_booking(
                booking,
                action="booking.updated",
                initiator="admin" if is_admin else "customer",
                status_from=booking.status,
                message=f"previous date {result.previous_date.isoformat()}",
            )
        except RuntimeError:
            raise audit_failure()
        cache.invalidate(result.previous_date)
        cache.invalidate(booking.date)
    return BookingRead.from_db(booking=booking, include_contact=is_admin)


@router.post("/bookings/{reference}/cancel", response_model=BookingCancelled)
async def cancel_booking(
    reference: str = Path(..., min_length=1, max_length=64),
    payload: Optional[BookingCancel] = Body(default=None),
    session: AsyncSession = Depends(get_session),
    claims: Optional[TokenClaims] = Depends(get_optional_claims),
    settings: Settings = Depends(get_app_settings),
    cache: AvailabilityCache = Depends(get_availability_cache),
    notifications: NotificationDispatcher = Depends(get_notifications),
) -> BookingCancelled:
    payload = payload or BookingCancel()
    is_admin = claims is not None and claims.is_admin
    booking_repo = SqlAlchemyBookingRepository(session)
    async with session.begin():
        try:
            result = await booking_usecase.cancel_booking(
                booking_repo,
                reference=reference,
                requester_email=payload.email,
                is_admin=is_admin,
                now=utc_now_naive(),
                cutoff_hours=settings.cancellation_cutoff_hours,
                tz=ZoneInfo(settings.venue_timezone),
            )
        except DomainError as exc:
            raise to_http_exception(exc) from exc

    booking = result.booking
    if result.changed:
        try:
            audit_booking(
                booking,
                action="booking.cancelled",
                initiator="admin" if is_admin else "customer",
                status_from=result.previous_status,
                message=payload.reason,
            )
        except RuntimeError:
            raise audit_failure()
        cache.invalidate(booking.date)
        notifications.cancellation(
            BookingNotification.from_booking(
                booking,
                customer_name=booking.customer.full_name,
                customer_email=booking.customer.email,
            )
        )

    return BookingCancelled(
        booking_id=booking.id,
        booking_code=booking.booking_code,
        status=booking.status,
        payment_status=booking.payment_status,
        refund_eligible=result.refund_eligible,
        already_cancelled=not result.changed,
    )
