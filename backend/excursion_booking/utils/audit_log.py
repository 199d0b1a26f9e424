from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from .request_id import get_request_id

AuditAction = Literal[
    "booking.created",
    "booking.confirmed",
    "booking.cancelled",
    "booking.refunded",
    "booking.updated",
]
AuditInitiator = Literal["customer", "admin", "payment_provider", "system"]


def _build_audit_logger() -> logging.Logger:
    audit = logging.getLogger("excursion_booking.audit")
    audit.setLevel(logging.INFO)
    audit.propagate = False
    if not audit.handlers:
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter("%(message)s"))
        audit.addHandler(stream)
    return audit


_audit_logger = _build_audit_logger()


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def emit_audit_log(
    *,
    action: AuditAction,
    initiator: AuditInitiator,
    booking_id: int,
    booking_code: Optional[str],
    customer_id: Optional[int],
    date: Optional[str],
    session: Optional[str],
    participants: Optional[int],
    status_from: Optional[str],
    status_to: Optional[str],
    payment_status: Optional[str] = None,
    message: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """Write one JSON line per booking state change.

    Unset fields are omitted. Raises RuntimeError when the line cannot be written,
    so callers can fail the request instead of losing the trail.
    """
    fields: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "initiator": initiator,
        "request_id": get_request_id(),
        "booking_id": booking_id,
        "booking_code": booking_code,
        "customer_id": customer_id,
        "date": date,
        "session": session,
        "participants": participants,
        "status_from": status_from,
        "status_to": status_to,
        "payment_status": payment_status,
        "message": message,
        **(extra or {}),
    }
    line = json.dumps({key: _plain(value) for key, value in fields.items() if value is not None})
    try:
        _audit_logger.info(line)
    except Exception as exc:
        raise RuntimeError("failed to emit audit log") from exc


def audit_booking(
    booking: Any,
    *,
    action: AuditAction,
    initiator: AuditInitiator,
    status_from: Optional[str],
    message: Optional[str] = None,
) -> None:
    emit_audit_log(
        action=action,
        initiator=initiator,
        booking_id=booking.id,
        booking_code=booking.booking_code,
        customer_id=booking.customer_id,
        date=booking.date.isoformat(),
        session=booking.session,
        participants=booking.adults + booking.children,
        status_from=status_from,
        status_to=booking.status,
        payment_status=booking.payment_status,
        message=message,
    )
