from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


class DomainError(Exception):
    code = "DOMAIN_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(DomainError):
    """Malformed or missing input. Each entry points at the offending field."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        field_errors: Iterable[FieldError] | Mapping[str, str],
        message: str = "validation failed",
    ) -> None:
        if isinstance(field_errors, Mapping):
            field_errors = [FieldError(field=k, message=v) for k, v in field_errors.items()]
        self.field_errors: list[FieldError] = list(field_errors)
        super().__init__(message)

    def as_dict(self) -> dict[str, str]:
        return {err.field: err.message for err in self.field_errors}


class SessionFullError(DomainError):
    code = "SESSION_FULL"

    def __init__(self, remaining: int, message: str | None = None) -> None:
        self.remaining = max(remaining, 0)
        super().__init__(message or f"only {self.remaining} spot(s) left for this session")


class CustomerConflictError(DomainError):
    code = "CUSTOMER_CONFLICT"


class IdentifierCollisionError(DomainError):
    code = "INTERNAL_ERROR"


class DuplicateIdempotencyKeyError(DomainError):
    code = "DUPLICATE_IDEMPOTENCY_KEY"


class StoreUnavailableError(DomainError):
    code = "STORE_UNAVAILABLE"


class PaymentDeclinedError(DomainError):
    code = "PAYMENT_DECLINED"


class BookingNotFoundError(DomainError):
    code = "NOT_FOUND"


class InvalidTransitionError(DomainError):
    code = "INVALID_TRANSITION"


class CancelNotAllowedError(DomainError):
    code = "FORBIDDEN"


class ModificationNotAllowedError(DomainError):
    code = "FORBIDDEN"
