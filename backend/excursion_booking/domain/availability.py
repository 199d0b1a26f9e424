from dataclasses import dataclass
from datetime import date

from ..models import TourSession


@dataclass(frozen=True)
class SessionAvailability:
    session: TourSession
    capacity: int
    booked: int

    @property
    def remaining(self) -> int:
        return max(self.capacity - self.booked, 0)

    def can_fit(self, participants: int) -> bool:
        return participants <= self.remaining


@dataclass(frozen=True)
class DayAvailability:
    day: date
    sessions: tuple[SessionAvailability, ...]

    def for_session(self, session: TourSession) -> SessionAvailability | None:
        for entry in self.sessions:
            if entry.session == session:
                return entry
        return None

    def is_available(self, participants: int = 1) -> bool:
        return any(entry.can_fit(participants) for entry in self.sessions)
