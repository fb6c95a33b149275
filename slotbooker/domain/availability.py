"""
Recurring weekly availability for a single establishment.
"""

from typing import Dict, Iterable, List

import pendulum

from .models import AvailabilityWindow, Establishment, TimeRange


class AvailabilityRuleSet:
    """
    Answers "which open windows apply to this establishment on date D".

    Window times are taken as already expressed in the establishment's
    timezone; no conversion happens here.
    """

    def __init__(self, establishment: Establishment, windows: Iterable[AvailabilityWindow]):
        self.establishment = establishment
        self._by_day: Dict[int, List[AvailabilityWindow]] = {day: [] for day in range(7)}

        for window in windows:
            if window.establishment_id != establishment.id:
                continue
            self._by_day[window.day_of_week].append(window)

        for day_windows in self._by_day.values():
            day_windows.sort(key=lambda w: (w.start_time, w.end_time))

    @property
    def timezone(self) -> str:
        return self.establishment.timezone

    def windows_for(self, day: pendulum.Date) -> List[TimeRange]:
        """
        Get the open windows for a calendar date as absolute time ranges.

        Returns an empty list when the establishment is closed that day.
        """
        return [
            window.anchor(day, self.timezone)
            for window in self._by_day[day.weekday()]
        ]

    def is_open_on(self, day: pendulum.Date) -> bool:
        return bool(self._by_day[day.weekday()])

    def weekly_schedule(self) -> Dict[int, List[AvailabilityWindow]]:
        """All windows grouped by weekday, each day ordered by start time."""
        return {day: list(windows) for day, windows in self._by_day.items()}
