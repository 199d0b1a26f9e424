from typing import AsyncIterator, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from .client.availability_cache import AvailabilityCache
from .config import Settings, get_settings
from .integrations.notifications import NotificationDispatcher
from .integrations.payments import PaymentAuthority
from .services.reservations import ReservationTransaction
from .utils.auth import TokenClaims, decode_access_token


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.session_factory() as session:
        yield session


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_reservations(request: Request) -> ReservationTransaction:
    return request.app.state.reservations


def get_availability_cache(request: Request) -> AvailabilityCache:
    return request.app.state.availability_cache


def get_notifications(request: Request) -> NotificationDispatcher:
    return request.app.state.notifications


def get_payment_authority(request: Request) -> Optional[PaymentAuthority]:
    return getattr(request.app.state, "payment_authority", None)


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_optional_claims(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_app_settings),
) -> TokenClaims | None:
    if authorization is None:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized("bearer token required")
    try:
        return decode_access_token(token.strip(), secret=settings.auth_secret, algorithms=[settings.auth_algorithm])
    except ValueError as exc:
        raise _unauthorized("invalid or expired token") from exc


async def require_admin(claims: TokenClaims | None = Depends(get_optional_claims)) -> TokenClaims:
    if claims is None:
        raise _unauthorized("bearer token required")
    if not claims.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "message": "admin role required"},
        )
    return claims
