from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable

from ..domain.availability import DayAvailability

AvailabilityFetcher = Callable[[date], Awaitable[DayAvailability]]

DEFAULT_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class CachedAvailability:
    availability: DayAvailability
    fetched_at: float


class AvailabilityCache:
    """Per-day availability snapshots for display.

    Entries are advisory; the reservation transaction re-checks capacity on commit.
    A fetch that overlaps an invalidation of its day is returned but not stored.
    """

    def __init__(
        self,
        fetch: AvailabilityFetcher,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[date, CachedAvailability] = {}
        self._generations: dict[date, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()

    def _generation(self, day: date) -> tuple[int, int]:
        return self._epoch, self._generations.get(day, 0)

    def lookup(self, day: date) -> CachedAvailability | None:
        with self._lock:
            entry = self._entries.get(day)
            if entry is None:
                return None
            if self._clock() - entry.fetched_at > self._ttl:
                del self._entries[day]
                return None
            return entry

    async def get(self, day: date, force_refresh: bool = False) -> CachedAvailability:
        if not force_refresh:
            cached = self.lookup(day)
            if cached is not None:
                return cached
        with self._lock:
            generation = self._generation(day)
        availability = await self._fetch(day)
        entry = CachedAvailability(availability=availability, fetched_at=self._clock())
        with self._lock:
            if self._generation(day) == generation:
                self._entries[day] = entry
        return entry

    def invalidate(self, day: date) -> None:
        with self._lock:
            self._entries.pop(day, None)
            self._generations[day] = self._generations.get(day, 0) + 1

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._epoch += 1
