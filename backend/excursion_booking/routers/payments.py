import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..client.availability_cache import AvailabilityCache
from ..config import Settings
from ..deps import get_app_settings, get_availability_cache, get_notifications, get_payment_authority, get_session
from ..domain.errors import BookingNotFoundError, DomainError, InvalidTransitionError, ValidationError
from ..domain.pricing import calculate_total_amount, to_minor_units
from ..infrastructure.repositories import SqlAlchemyBookingRepository
from ..integrations.notifications import BookingNotification, NotificationDispatcher
from ..integrations.payments import PaymentAuthority, PaymentAuthorityError, WebhookSignatureError
from ..models import Booking
from ..schemas import PaymentIntentCreate, PaymentIntentRead, PriceBreakdown
from ..usecases import bookings as booking_usecase
from ..utils.audit_log import audit_booking
from .errors import audit_failure, error_detail, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
CHARGE_REFUNDED = "charge.refunded"
PAYMENT_ABANDONED = ("payment_intent.payment_failed", "payment_intent.canceled")


def _payments_unavailable(message: str = "payments are not configured") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=error_detail("PAYMENT_UNAVAILABLE", message),
    )


def _notification(booking: Booking) -> BookingNotification:
    return BookingNotification.from_booking(
        booking,
        customer_name=booking.customer.full_name,
        customer_email=booking.customer.email,
    )


@router.post("/intents", response_model=PaymentIntentRead, status_code=status.HTTP_201_CREATED)
async def create_payment_intent(
    payload: PaymentIntentCreate,
    settings: Settings = Depends(get_app_settings),
    authority: Optional[PaymentAuthority] = Depends(get_payment_authority),
) -> PaymentIntentRead:
    if authority is None:
        raise _payments_unavailable()
    try:
        if payload.adults + payload.children > settings.session_capacity:
            raise ValidationError({"adults": f"a session holds at most {settings.session_capacity} participants"})
        total = calculate_total_amount(payload.adults, payload.children, price_per_person=settings.price_per_person)
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    metadata = {"adults": str(payload.adults), "children": str(payload.children)}
    if payload.date is not None:
        metadata["date"] = payload.date.isoformat()
    if payload.session is not None:
        metadata["session"] = payload.session.value
    try:
        intent = await authority.create_charge(
            amount_minor=to_minor_units(total),
            currency=settings.currency,
            metadata=metadata,
            receipt_email=payload.email,
            description=f"Excursion for {payload.adults + payload.children} guest(s)",
        )
    except PaymentAuthorityError as exc:
        logger.exception("creating payment intent failed")
        raise _payments_unavailable("payment provider unavailable") from exc

    return PaymentIntentRead(
        payment_reference=intent.reference,
        client_secret=intent.client_secret,
        amount=total,
        currency=intent.currency,
        breakdown=PriceBreakdown(
            adults=payload.adults,
            children=payload.children,
            price_per_person=settings.price_per_person,
            total=total,
        ),
    )


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    session: AsyncSession = Depends(get_session),
    authority: Optional[PaymentAuthority] = Depends(get_payment_authority),
    cache: AvailabilityCache = Depends(get_availability_cache),
    notifications: NotificationDispatcher = Depends(get_notifications),
) -> dict[str, bool]:
    if authority is None:
        raise _payments_unavailable()
    body = await request.body()
    try:
        event = authority.parse_webhook(body, stripe_signature)
    except WebhookSignatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_detail("INVALID_SIGNATURE", str(exc)),
        ) from exc

    if event.reference is None:
        logger.info("ignoring %s without a payment reference", event.type)
    elif event.type == PAYMENT_SUCCEEDED:
        await _confirm(session, event.reference, notifications)
    elif event.type == CHARGE_REFUNDED:
        await _refund(session, event.reference, event.fully_refunded, cache, notifications)
    elif event.type in PAYMENT_ABANDONED:
        logger.info("payment %s reported %s; booking stays pending", event.reference, event.type)
    else:
        logger.debug("ignoring webhook event %s", event.type)
    return {"received": True}


async def _confirm(session: AsyncSession, reference: str, notifications: NotificationDispatcher) -> None:
    async with session.begin():
        try:
            update = await booking_usecase.confirm_payment(
                SqlAlchemyBookingRepository(session),
                payment_reference=reference,
            )
        except (BookingNotFoundError, InvalidTransitionError) as exc:
            logger.warning("cannot confirm payment %s: %s", reference, exc.message)
            return
    if not update.changed:
        return
    try:
        audit_booking(
            update.booking,
            action="booking.confirmed",
            initiator="payment_provider",
            status_from=update.previous_status,
        )
    except RuntimeError:
        raise audit_failure()
    notifications.confirmation(_notification(update.booking))


async def _refund(
    session: AsyncSession,
    reference: str,
    fully_refunded: bool,
    cache: AvailabilityCache,
    notifications: NotificationDispatcher,
) -> None:
    async with session.begin():
        try:
            update = await booking_usecase.record_refund(
                SqlAlchemyBookingRepository(session),
                payment_reference=reference,
                fully_refunded=fully_refunded,
            )
        except (BookingNotFoundError, InvalidTransitionError) as exc:
            logger.warning("cannot record refund for %s: %s", reference, exc.message)
            return
    if not update.changed:
        return
    try:
        audit_booking(
            update.booking,
            action="booking.refunded",
            initiator="payment_provider",
            status_from=update.previous_status,
        )
    except RuntimeError:
        raise audit_failure()
    if update.cancelled:
        cache.invalidate(update.booking.date)
        notifications.cancellation(_notification(update.booking))
