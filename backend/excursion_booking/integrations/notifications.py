from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from datetime import date
from email.message import EmailMessage
from typing import Awaitable, Callable, Protocol

from ..config import Settings
from ..models import Booking, TourSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingNotification:
    booking_code: str
    customer_name: str
    customer_email: str
    date: date
    session: TourSession
    adults: int
    children: int
    total_amount: int
    currency: str
    pickup_location: str
    hotel_address: str = ""
    special_requests: str | None = None

    @classmethod
    def from_booking(cls, booking: Booking, *, customer_name: str, customer_email: str) -> "BookingNotification":
        return cls(
            booking_code=booking.booking_code,
            customer_name=customer_name,
            customer_email=customer_email,
            date=booking.date,
            session=booking.session,
            adults=booking.adults,
            children=booking.children,
            total_amount=booking.total_amount,
            currency=booking.currency,
            pickup_location=str(booking.pickup_location),
            hotel_address=booking.hotel_address,
            special_requests=booking.special_requests,
        )

    @property
    def participants(self) -> int:
        return self.adults + self.children


class Notifier(Protocol):
    async def send_booking_confirmation(self, notification: BookingNotification) -> None: ...

    async def send_booking_cancellation(self, notification: BookingNotification) -> None: ...


def _summary(n: BookingNotification) -> str:
    lines = [
        f"Booking code: {n.booking_code}",
        f"Date: {n.date.isoformat()}",
        f"Session: {n.session.label}",
        f"Guests: {n.adults} adult(s), {n.children} child(ren)",
        f"Total: {n.total_amount} {n.currency.upper()}",
        f"Pickup: {n.pickup_location}",
    ]
    if n.hotel_address:
        lines.append(f"Hotel: {n.hotel_address}")
    if n.special_requests:
        lines.append(f"Special requests: {n.special_requests}")
    return "\n".join(lines)


class SmtpNotifier:
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        from_email: str,
        use_tls: bool = True,
        admin_email: str | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email
        self.use_tls = use_tls
        self.admin_email = admin_email

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpNotifier | None":
        from_email = settings.smtp_from_email or settings.smtp_username
        if not settings.smtp_host or not from_email:
            return None
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            from_email=from_email,
            use_tls=settings.smtp_use_tls,
            admin_email=settings.admin_email,
        )

    def build_message(self, to_email: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(body)
        return msg

    def _send(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)

    async def send_booking_confirmation(self, notification: BookingNotification) -> None:
        body = f"Hi {notification.customer_name},\n\nYour excursion is booked.\n\n{_summary(notification)}\n"
        await asyncio.to_thread(
            self._send,
            self.build_message(notification.customer_email, f"Booking {notification.booking_code} confirmed", body),
        )
        if self.admin_email:
            admin_body = (
                f"New booking from {notification.customer_name} <{notification.customer_email}>.\n\n"
                f"{_summary(notification)}\n"
            )
            await asyncio.to_thread(
                self._send,
                self.build_message(self.admin_email, f"New booking {notification.booking_code}", admin_body),
            )

    async def send_booking_cancellation(self, notification: BookingNotification) -> None:
        body = f"Hi {notification.customer_name},\n\nYour booking has been cancelled.\n\n{_summary(notification)}\n"
        await asyncio.to_thread(
            self._send,
            self.build_message(notification.customer_email, f"Booking {notification.booking_code} cancelled", body),
        )


class LoggingNotifier:
    """Used when SMTP is not configured."""

    async def send_booking_confirmation(self, notification: BookingNotification) -> None:
        logger.info("confirmation for %s to %s", notification.booking_code, notification.customer_email)

    async def send_booking_cancellation(self, notification: BookingNotification) -> None:
        logger.info("cancellation for %s to %s", notification.booking_code, notification.customer_email)


class NotificationDispatcher:
    """Runs notifier calls as background tasks; a delivery failure is logged and dropped."""

    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def confirmation(self, notification: BookingNotification) -> asyncio.Task[None]:
        return self._schedule(self.notifier.send_booking_confirmation, notification)

    def cancellation(self, notification: BookingNotification) -> asyncio.Task[None]:
        return self._schedule(self.notifier.send_booking_cancellation, notification)

    def _schedule(
        self,
        send: Callable[[BookingNotification], Awaitable[None]],
        notification: BookingNotification,
    ) -> asyncio.Task[None]:
        task = asyncio.create_task(self._deliver(send, notification))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(
        self,
        send: Callable[[BookingNotification], Awaitable[None]],
        notification: BookingNotification,
    ) -> None:
        try:
            await send(notification)
        except Exception:
            logger.exception("notification for booking %s failed", notification.booking_code)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
