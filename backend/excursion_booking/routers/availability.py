from datetime import date, timedelta
from typing import List, Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, Query

from ..client.availability_cache import AvailabilityCache
from ..config import Settings
from ..deps import get_app_settings, get_availability_cache
from ..domain.errors import DomainError, FieldError, ValidationError
from ..schemas import DayAvailabilityRead
from ..utils.time import venue_today
from .errors import to_http_exception

router = APIRouter(prefix="", tags=["availability"])

MAX_RANGE_DAYS = 31
DEFAULT_WINDOW_DAYS = 7


def requested_days(
    *,
    day: Optional[date],
    start_date: Optional[date],
    end_date: Optional[date],
    today: date,
) -> list[date]:
    """Resolve the query into concrete days: one date, a range, or the next week."""
    if day is not None:
        if day < today:
            raise ValidationError({"date": "date must not be in the past"})
        return [day]

    if start_date is None and end_date is None:
        return [today + timedelta(days=offset) for offset in range(DEFAULT_WINDOW_DAYS)]
    if start_date is None or end_date is None:
        field = "end_date" if end_date is None else "start_date"
        raise ValidationError({field: "start_date and end_date must be given together"})

    errors: list[FieldError] = []
    if end_date < start_date:
        errors.append(FieldError("end_date", "end_date must not be before start_date"))
    elif (end_date - start_date).days + 1 > MAX_RANGE_DAYS:
        errors.append(FieldError("end_date", f"range covers at most {MAX_RANGE_DAYS} days"))
    if errors:
        raise ValidationError(errors)

    first = max(start_date, today)
    return [first + timedelta(days=offset) for offset in range((end_date - first).days + 1)]


@router.get("/availability", response_model=List[DayAvailabilityRead])
async def get_availability(
    day: Optional[date] = Query(default=None, alias="date"),
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    participants: int = Query(default=1, ge=1),
    settings: Settings = Depends(get_app_settings),
    cache: AvailabilityCache = Depends(get_availability_cache),
) -> list[DayAvailabilityRead]:
    try:
        if participants > settings.session_capacity:
            raise ValidationError({"participants": f"at most {settings.session_capacity} participants per session"})
        days = requested_days(
            day=day,
            start_date=start_date,
            end_date=end_date,
            today=venue_today(tz=ZoneInfo(settings.venue_timezone)),
        )
        results = []
        for entry_day in days:
            cached = await cache.get(entry_day)
            results.append(DayAvailabilityRead.from_domain(cached.availability, participants=participants))
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return results
