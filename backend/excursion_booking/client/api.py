from __future__ import annotations

import logging
from datetime import date
from typing import Any

import httpx

from ..domain.availability import DayAvailability, SessionAvailability
from ..domain.errors import (
    DomainError,
    FieldError,
    PaymentDeclinedError,
    SessionFullError,
    StoreUnavailableError,
    ValidationError,
)
from ..models import TourSession
from .draft import SubmittedBooking

logger = logging.getLogger(__name__)

REPLAY_HEADER = "Idempotent-Replayed"


class BookingApiError(DomainError):
    code = "API_ERROR"

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(message)


class BookingApiClient:
    """HTTP client for the booking API; serves as the draft's availability source and submitter."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def __aenter__(self) -> "BookingApiClient":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_day_availability(self, day: date) -> DayAvailability:
        response = await self._request("GET", "/availability", params={"date": day.isoformat()})
        days = response.json()
        if not days:
            raise BookingApiError(response.status_code, f"no availability returned for {day.isoformat()}")
        return parse_day_availability(days[0])

    async def create_booking(self, payload: dict[str, Any]) -> SubmittedBooking:
        headers = {}
        if payload.get("idempotency_key"):
            headers["Idempotency-Key"] = str(payload["idempotency_key"])
        response = await self._request("POST", "/bookings", json=payload, headers=headers)
        body = response.json()
        return SubmittedBooking(
            booking_id=int(body["booking_id"]),
            booking_code=body["booking_code"],
            status=body["status"],
            payment_status=body["payment_status"],
            total_amount=int(body["total_amount"]),
            replayed=response.headers.get(REPLAY_HEADER, "").lower() == "true",
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise StoreUnavailableError(f"{method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise StoreUnavailableError(f"{method} {url} failed: {exc}") from exc
        if response.is_error:
            raise_for_error(response)
        return response


def parse_day_availability(data: dict[str, Any]) -> DayAvailability:
    return DayAvailability(
        day=date.fromisoformat(data["date"]),
        sessions=tuple(
            SessionAvailability(
                session=TourSession(entry["session"]),
                capacity=int(entry["capacity"]),
                booked=int(entry["booked"]),
            )
            for entry in data["sessions"]
        ),
    )


def raise_for_error(response: httpx.Response) -> None:
    """Map the API error envelope back to domain errors."""
    try:
        body = response.json()
    except ValueError:
        body = None
    detail = body.get("detail") if isinstance(body, dict) else None
    if not isinstance(detail, dict):
        detail = {"message": str(detail or response.reason_phrase)}
    code = detail.get("code")
    message = str(detail.get("message") or response.reason_phrase)

    if response.status_code == 409 and code == SessionFullError.code:
        raise SessionFullError(remaining=int(detail.get("remaining") or 0), message=message)
    if response.status_code == 400 and code == ValidationError.code:
        field_errors = [FieldError(field=e["field"], message=e["message"]) for e in detail.get("field_errors", [])]
        raise ValidationError(field_errors, message=message)
    if response.status_code == 402:
        raise PaymentDeclinedError(message)
    if response.status_code >= 500:
        logger.warning("booking api returned %s: %s", response.status_code, message)
        raise StoreUnavailableError(message)
    raise BookingApiError(response.status_code, message)
