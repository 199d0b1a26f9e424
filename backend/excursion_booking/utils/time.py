from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from ..models import TourSession

VENUE_TZ = ZoneInfo("America/Jamaica")


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def venue_today(now: datetime | None = None, tz: ZoneInfo = VENUE_TZ) -> date:
    """Calendar day at the venue. `now` is naive UTC when given."""
    current = now.replace(tzinfo=timezone.utc) if now is not None else datetime.now(timezone.utc)
    return current.astimezone(tz).date()


def session_start_utc_naive(day: date, session: TourSession, tz: ZoneInfo = VENUE_TZ) -> datetime:
    local = datetime.combine(day, session.start_time, tzinfo=tz)
    return local.astimezone(timezone.utc).replace(tzinfo=None)
