"""
Core business logic for calculating bookable start times.

This is the heart of the read path - pure domain logic without any
external dependencies (no storage, no locking, no I/O).
"""

import logging
from typing import List, Optional

import pendulum
from pendulum import DateTime

from .availability import AvailabilityRuleSet
from .exceptions import InvalidRangeError
from .ledger import BookingLedger
from .models import Slot, TimeRange

logger = logging.getLogger(__name__)

# Step between candidate start times inside an open window.
SLOT_GRANULARITY_MINUTES = 30


def day_period(day: pendulum.Date, timezone: str) -> TimeRange:
    """The whole calendar day [00:00, next day 00:00) in the given timezone."""
    start = pendulum.datetime(day.year, day.month, day.day, tz=timezone)
    return TimeRange(start=start, end=start.add(days=1))


class SlotGenerator:
    """
    Calculates free start times for a service on a single date.

    Algorithm:
    1. Resolve the open windows for the date
    2. Walk each window from its start in steps of the granularity
    3. Drop candidates that run past the window end, start before now,
       or overlap a busy interval
    4. Return the survivors in chronological order, one per start time

    The result is a point-in-time projection; it may go stale before a
    booking is attempted.
    """

    def __init__(self, granularity_minutes: int = SLOT_GRANULARITY_MINUTES):
        if granularity_minutes <= 0:
            raise InvalidRangeError("granularity_minutes must be greater than zero")
        self.granularity_minutes = granularity_minutes

    def generate(
        self,
        day: pendulum.Date,
        rules: AvailabilityRuleSet,
        ledger: BookingLedger,
        duration_minutes: int,
        now: Optional[DateTime] = None,
    ) -> List[Slot]:
        """
        Find all bookable slots for one date.

        Args:
            day: Calendar date to compute slots for
            rules: Availability rules of the establishment
            ledger: Busy-set snapshot covering the day for the resource scope
            duration_minutes: Length of the service being booked
            now: Current time; candidates starting earlier are excluded

        Returns:
            Ordered, deduplicated list of Slot objects
        """
        if duration_minutes <= 0:
            raise InvalidRangeError(
                f"Service duration must be greater than zero, got {duration_minutes}"
            )

        windows = rules.windows_for(day)
        if not windows:
            return []

        busy = ledger.busy_ranges()
        slots_by_start = {}

        for window in windows:
            for candidate in self._candidates_in_window(window, duration_minutes):
                if now is not None and candidate.start < now:
                    continue
                if any(candidate.overlaps(interval) for interval in busy):
                    continue
                slots_by_start.setdefault(candidate.start, Slot(time_range=candidate))

        slots = [slots_by_start[start] for start in sorted(slots_by_start)]

        logger.debug(
            "Computed %d slot(s) for %s on %s (%d window(s), %d busy interval(s))",
            len(slots),
            ledger.scope,
            day,
            len(windows),
            len(busy),
        )
        return slots

    def _candidates_in_window(self, window: TimeRange, duration_minutes: int) -> List[TimeRange]:
        """
        Step through a window and yield every candidate that fits before closing.

        Example (60 min service, 30 min steps):
        Window: 09:00 - 12:00
        Result: [09:00-10:00, 09:30-10:30, 10:00-11:00, 10:30-11:30, 11:00-12:00]
        """
        candidates: List[TimeRange] = []
        current = window.start

        while current < window.end:
            end = current.add(minutes=duration_minutes)
            if end > window.end:
                break
            candidates.append(TimeRange(start=current, end=end))
            current = current.add(minutes=self.granularity_minutes)

        return candidates
