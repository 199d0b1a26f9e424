from datetime import date

from ..domain.availability import DayAvailability, SessionAvailability
from ..domain.repositories import BookingRepository
from ..models import TourSession


async def remaining(
    booking_repo: BookingRepository,
    *,
    day: date,
    session: TourSession,
    capacity: int,
) -> int:
    reserved = await booking_repo.sum_reserved(day, session)
    return max(capacity - reserved, 0)


async def day_availability(
    booking_repo: BookingRepository,
    *,
    day: date,
    capacity: int,
) -> DayAvailability:
    reserved = await booking_repo.reserved_by_session(day)
    sessions = tuple(
        SessionAvailability(session=session, capacity=capacity, booked=reserved.get(session, 0))
        for session in TourSession
    )
    return DayAvailability(day=day, sessions=sessions)
