from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import StrEnum
from typing import Any, Callable, Iterable, Protocol

from ..domain.availability import DayAvailability
from ..domain.errors import FieldError, InvalidTransitionError, SessionFullError, ValidationError
from ..domain.pricing import PRICE_PER_PERSON, calculate_total_amount
from ..domain.services import is_valid_email
from ..models import PickupLocation, TourSession
from ..utils.time import venue_today
from .availability_cache import AvailabilityCache

DEFAULT_CAPACITY = 24


class DraftStep(StrEnum):
    SELECTING_DATE = "selecting_date"
    SELECTING_SESSION = "selecting_session"
    ENTERING_PARTICIPANTS = "entering_participants"
    SELECTING_PICKUP = "selecting_pickup"
    ACCEPTING_TERMS = "accepting_terms"
    SUBMITTING = "submitting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_RANK = {
    DraftStep.SELECTING_DATE: 0,
    DraftStep.SELECTING_SESSION: 1,
    DraftStep.ENTERING_PARTICIPANTS: 2,
    DraftStep.SELECTING_PICKUP: 3,
    DraftStep.ACCEPTING_TERMS: 4,
    DraftStep.SUBMITTING: 5,
    DraftStep.SUCCEEDED: 6,
    DraftStep.FAILED: 6,
}


def _new_key() -> str:
    return uuid.uuid4().hex


@dataclass
class Participant:
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    is_main_contact: bool = False
    is_child: bool = False
    id: str = field(default_factory=_new_key)

    @property
    def has_full_name(self) -> bool:
        return bool(self.first_name.strip()) and bool(self.last_name.strip())


@dataclass(frozen=True)
class SubmittedBooking:
    booking_id: int
    booking_code: str
    status: str
    payment_status: str
    total_amount: int
    replayed: bool = False


class BookingSubmitter(Protocol):
    async def create_booking(self, payload: dict[str, Any]) -> SubmittedBooking: ...


class BookingDraft:
    """Client-side booking wizard.

    `advance()` enforces the gate of the current step. Editing an earlier step moves the
    draft back to it; every edit rotates the idempotency key, so a plain resubmit reuses it.
    Availability shown here is a cached snapshot and never guarantees the commit.
    """

    def __init__(
        self,
        availability: AvailabilityCache,
        *,
        capacity: int = DEFAULT_CAPACITY,
        price_per_person: int = PRICE_PER_PERSON,
        today: Callable[[], date] = venue_today,
    ) -> None:
        self.availability = availability
        self.capacity = capacity
        self.price_per_person = price_per_person
        self._today = today

        self.step = DraftStep.SELECTING_DATE
        self.date: date | None = None
        self.session: TourSession | None = None
        self.snapshot: DayAvailability | None = None
        self.participants: list[Participant] = []
        self.pickup_location: PickupLocation | None = None
        self.hotel_address = ""
        self.special_requests: str | None = None
        self.terms_accepted = False
        self.payment_reference: str | None = None

        self.total_amount = 0
        self.idempotency_key = _new_key()
        self.result: SubmittedBooking | None = None
        self.error: Exception | None = None
        self.remaining: int | None = None

    # Edits

    def select_date(self, day: date) -> None:
        self._edit(DraftStep.SELECTING_DATE)
        self.date = day
        self.session = None
        self.snapshot = None

    def select_session(self, session: TourSession) -> None:
        self._edit(DraftStep.SELECTING_SESSION)
        self.session = session

    def set_participants(self, participants: Iterable[Participant]) -> None:
        self._edit(DraftStep.ENTERING_PARTICIPANTS)
        self.participants = list(participants)
        self._reprice()

    def add_participant(self, participant: Participant) -> None:
        self.set_participants([*self.participants, participant])

    def remove_participant(self, participant_id: str) -> None:
        self.set_participants(p for p in self.participants if p.id != participant_id)

    def select_pickup(
        self,
        location: PickupLocation,
        hotel_address: str = "",
        special_requests: str | None = None,
    ) -> None:
        self._edit(DraftStep.SELECTING_PICKUP)
        self.pickup_location = location
        self.hotel_address = hotel_address
        self.special_requests = special_requests

    def accept_terms(self, accepted: bool = True) -> None:
        self._edit(DraftStep.ACCEPTING_TERMS)
        self.terms_accepted = accepted

    def set_payment_reference(self, reference: str | None) -> None:
        self._edit(None)
        self.payment_reference = reference

    def _edit(self, step: DraftStep | None) -> None:
        if self.step in (DraftStep.SUBMITTING, DraftStep.SUCCEEDED):
            raise InvalidTransitionError(f"draft cannot be edited while {self.step.value}")
        if step is not None and _RANK[step] < _RANK[self.step]:
            self.step = step
        self.idempotency_key = _new_key()

    def _reprice(self) -> None:
        adults, children = self.party
        self.total_amount = calculate_total_amount(adults, children, price_per_person=self.price_per_person)

    # Derived state

    @property
    def party(self) -> tuple[int, int]:
        children = sum(1 for p in self.participants if p.is_child)
        return len(self.participants) - children, children

    @property
    def main_contact(self) -> Participant | None:
        for participant in self.participants:
            if participant.is_main_contact:
                return participant
        return self.participants[0] if self.participants else None

    @property
    def has_enough_spots(self) -> bool | None:
        """Advisory only: None until a snapshot for the chosen session exists."""
        if self.snapshot is None or self.session is None:
            return None
        entry = self.snapshot.for_session(self.session)
        return entry is not None and entry.can_fit(len(self.participants))

    # Gates

    def _check_date(self) -> date:
        if self.date is None:
            raise ValidationError({"date": "choose a date"})
        if self.date < self._today():
            raise ValidationError({"date": "date must not be in the past"})
        return self.date

    def _check_session(self) -> None:
        if self.session is None:
            raise ValidationError({"session": "choose a session"})
        entry = self.snapshot.for_session(self.session) if self.snapshot else None
        if entry is None or entry.remaining <= 0:
            raise ValidationError({"session": "this session is sold out"})

    def _check_participants(self) -> None:
        errors: list[FieldError] = []
        count = len(self.participants)
        if not 1 <= count <= self.capacity:
            errors.append(FieldError("participants", f"between 1 and {self.capacity} participants are required"))
        if not any(p.has_full_name for p in self.participants):
            errors.append(FieldError("name", "at least one participant needs a first and last name"))
        if self.participants and self.party[0] < 1:
            errors.append(FieldError("adults", "at least one adult is required"))
        contact = self.main_contact
        if contact is not None and not is_valid_email(contact.email):
            errors.append(FieldError("email", "the main contact needs a valid email"))
        if errors:
            raise ValidationError(errors)

    def _check_pickup(self) -> None:
        if self.pickup_location is None:
            raise ValidationError({"pickup_location": "choose a pickup location"})

    def _check_terms(self) -> None:
        if not self.terms_accepted:
            raise ValidationError({"terms": "terms must be accepted"})

    async def advance(self) -> DraftStep:
        if self.step == DraftStep.SELECTING_DATE:
            cached = await self.availability.get(self._check_date())
            self.snapshot = cached.availability
            self.step = DraftStep.SELECTING_SESSION
        elif self.step == DraftStep.SELECTING_SESSION:
            self._check_session()
            self.step = DraftStep.ENTERING_PARTICIPANTS
        elif self.step == DraftStep.ENTERING_PARTICIPANTS:
            self._check_participants()
            self.step = DraftStep.SELECTING_PICKUP
        elif self.step == DraftStep.SELECTING_PICKUP:
            self._check_pickup()
            self.step = DraftStep.ACCEPTING_TERMS
        else:
            raise InvalidTransitionError(f"cannot advance from {self.step.value}")
        return self.step

    # Submission

    def to_payload(self) -> dict[str, Any]:
        contact = self.main_contact
        if self.date is None or self.session is None or contact is None or self.pickup_location is None:
            raise ValidationError({"draft": "draft is incomplete"})
        adults, children = self.party
        return {
            "date": self.date.isoformat(),
            "session": self.session.value,
            "adults": adults,
            "children": children,
            "first_name": contact.first_name.strip(),
            "last_name": contact.last_name.strip(),
            "email": contact.email.strip(),
            "phone": contact.phone.strip() or None,
            "pickup_location": self.pickup_location.value,
            "hotel_address": self.hotel_address,
            "special_requests": self.special_requests,
            "payment_reference": self.payment_reference,
            "idempotency_key": self.idempotency_key,
        }

    async def submit(self, submitter: BookingSubmitter) -> SubmittedBooking:
        if self.step not in (DraftStep.ACCEPTING_TERMS, DraftStep.FAILED):
            raise InvalidTransitionError(f"cannot submit from {self.step.value}")
        day = self._check_date()
        self._check_participants()
        self._check_pickup()
        self._check_terms()
        payload = self.to_payload()

        self.step = DraftStep.SUBMITTING
        self.error = None
        try:
            result = await submitter.create_booking(payload)
        except SessionFullError as exc:
            self.step = DraftStep.FAILED
            self.error = exc
            self.remaining = exc.remaining
            self.availability.invalidate(day)
            raise
        except Exception as exc:
            self.step = DraftStep.FAILED
            self.error = exc
            raise

        self.step = DraftStep.SUCCEEDED
        self.result = result
        return result
