from typing import Any

from fastapi import HTTPException, status

from ..domain.errors import (
    BookingNotFoundError,
    CancelNotAllowedError,
    DomainError,
    IdentifierCollisionError,
    InvalidTransitionError,
    ModificationNotAllowedError,
    PaymentDeclinedError,
    SessionFullError,
    StoreUnavailableError,
    ValidationError,
)

_STATUS_BY_ERROR: dict[type[DomainError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    SessionFullError: status.HTTP_409_CONFLICT,
    PaymentDeclinedError: status.HTTP_402_PAYMENT_REQUIRED,
    StoreUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    BookingNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    CancelNotAllowedError: status.HTTP_403_FORBIDDEN,
    ModificationNotAllowedError: status.HTTP_403_FORBIDDEN,
    IdentifierCollisionError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def error_detail(code: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"code": code, "message": message, **extra}


def to_http_exception(exc: DomainError) -> HTTPException:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            status_code = mapped
            break

    extra: dict[str, Any] = {}
    if isinstance(exc, SessionFullError):
        extra["remaining"] = exc.remaining
    elif isinstance(exc, ValidationError):
        extra["field_errors"] = [{"field": e.field, "message": e.message} for e in exc.field_errors]
    code = exc.code if status_code != status.HTTP_500_INTERNAL_SERVER_ERROR else "INTERNAL_ERROR"
    return HTTPException(status_code=status_code, detail=error_detail(code, exc.message, **extra))


def audit_failure() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=error_detail("INTERNAL_ERROR", "failed to write audit log"),
    )
