import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .client.availability_cache import AvailabilityCache
from .config import Settings, get_settings
from .database import build_engine, build_session_factory
from .integrations.notifications import LoggingNotifier, NotificationDispatcher, Notifier, SmtpNotifier
from .integrations.payments import PaymentAuthority, StripePaymentAuthority
from .routers import availability, bookings, payments
from .routers.errors import error_detail
from .services.availability import AvailabilityService
from .services.reservations import ReservationTransaction
from .utils.request_id import REQUEST_ID_HEADER, reset_request_id, resolve_request_id, set_request_id

logger = logging.getLogger(__name__)


async def request_id_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
    token = set_request_id(request_id)
    try:
        response = await call_next(request)
    finally:
        reset_request_id(token)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    field_errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ())]
        field = ".".join(loc[1:]) or (loc[0] if loc else "request")
        field_errors.append({"field": field, "message": error.get("msg", "invalid value")})
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": error_detail("VALIDATION_ERROR", "request validation failed", field_errors=field_errors)},
    )


def build_payment_authority(settings: Settings) -> Optional[PaymentAuthority]:
    if not settings.stripe_secret_key:
        return None
    return StripePaymentAuthority(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
    )


def build_notifier(settings: Settings) -> Notifier:
    return SmtpNotifier.from_settings(settings) or LoggingNotifier()


def configure_state(
    app: FastAPI,
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    payment_authority: Optional[PaymentAuthority] = None,
    notifier: Optional[Notifier] = None,
) -> None:
    availability_service = AvailabilityService(session_factory, capacity=settings.session_capacity)
    cache = AvailabilityCache(availability_service.day, ttl_seconds=settings.availability_cache_ttl_seconds)
    notifications = NotificationDispatcher(notifier or build_notifier(settings))

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.availability = availability_service
    app.state.availability_cache = cache
    app.state.notifications = notifications
    app.state.payment_authority = payment_authority
    app.state.reservations = ReservationTransaction(
        session_factory,
        settings,
        notifications=notifications,
        payment_authority=payment_authority,
        availability_cache=cache,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    payment_authority: Optional[PaymentAuthority] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging.basicConfig(level=settings.log_level)
        engine = None
        factory = session_factory
        if factory is None:
            engine = build_engine(settings)
            factory = build_session_factory(engine)
        configure_state(
            app,
            settings,
            factory,
            payment_authority=payment_authority or build_payment_authority(settings),
            notifier=notifier,
        )
        logger.info("excursion booking api started (capacity %d per session)", settings.session_capacity)
        try:
            yield
        finally:
            await app.state.notifications.drain()
            if engine is not None:
                await engine.dispose()

    app = FastAPI(title="Excursion Booking API", lifespan=lifespan)
    app.middleware("http")(request_id_middleware)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(availability.router)
    app.include_router(bookings.router)
    app.include_router(payments.router)
    return app


app = create_app()
