from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..domain.availability import DayAvailability
from ..infrastructure.repositories import SqlAlchemyBookingRepository
from ..models import TourSession
from ..usecases import availability as availability_usecase


class AvailabilityService:
    """Read-only capacity queries. Results are for display, never for the commit decision."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, capacity: int) -> None:
        self.session_factory = session_factory
        self.capacity = capacity

    async def remaining(self, day: date, session: TourSession) -> int:
        async with self.session_factory() as db:
            return await availability_usecase.remaining(
                SqlAlchemyBookingRepository(db),
                day=day,
                session=session,
                capacity=self.capacity,
            )

    async def day(self, day: date) -> DayAvailability:
        async with self.session_factory() as db:
            return await availability_usecase.day_availability(
                SqlAlchemyBookingRepository(db),
                day=day,
                capacity=self.capacity,
            )
