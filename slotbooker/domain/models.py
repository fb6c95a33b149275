"""
Domain models for establishments, services, availability and appointments.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import time
from enum import Enum
from typing import List, Optional, Tuple

import pendulum
from pendulum import DateTime

from .exceptions import InvalidRangeError


WEEKDAY_NAMES = {
    0: "Monday",
    1: "Tuesday",
    2: "Wednesday",
    3: "Thursday",
    4: "Friday",
    5: "Saturday",
    6: "Sunday",
}


@dataclass(frozen=True)
class TimeRange:
    """
    Represents an immutable half-open time range [start, end).

    Invariant: start must be before end.
    """
    start: DateTime
    end: DateTime

    def __post_init__(self):
        if self.start >= self.end:
            raise InvalidRangeError(f"Start time {self.start} must be before end time {self.end}")

    def duration_minutes(self) -> int:
        """Return the duration in minutes."""
        return int((self.end - self.start).total_seconds() / 60)

    def overlaps(self, other: "TimeRange") -> bool:
        """Check if this range overlaps with another. Touching endpoints do not overlap."""
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeRange") -> bool:
        """Check if the other range lies fully inside this one."""
        return self.start <= other.start and other.end <= self.end

    def intersect(self, other: "TimeRange") -> "TimeRange | None":
        """
        Calculate the intersection of two time ranges.
        Returns None if there is no overlap.
        """
        if not self.overlaps(other):
            return None

        return TimeRange(start=max(self.start, other.start), end=min(self.end, other.end))

    def __str__(self) -> str:
        return f"{self.start.format('YYYY-MM-DD HH:mm')} - {self.end.format('HH:mm')}"


def overlaps(a: TimeRange, b: TimeRange) -> bool:
    return a.overlaps(b)


def contains(outer: TimeRange, inner: TimeRange) -> bool:
    return outer.contains(inner)


@dataclass(frozen=True)
class ResourceScope:
    """
    The unit at which double-booking is prevented.

    ``resource_id`` of None means the whole establishment; otherwise a
    specific staff member. Scopes are compared by exact pair.
    """
    establishment_id: int
    resource_id: Optional[int] = None

    def __str__(self) -> str:
        if self.resource_id is None:
            return f"establishment:{self.establishment_id}"
        return f"establishment:{self.establishment_id}/staff:{self.resource_id}"


@dataclass(frozen=True)
class Establishment:
    id: int
    name: str
    owner_id: str
    timezone: str = "Europe/Berlin"
    staff_ids: Tuple[int, ...] = ()

    def has_staff(self, resource_id: int) -> bool:
        return resource_id in self.staff_ids


@dataclass(frozen=True)
class Service:
    """A bookable service with a fixed duration."""
    id: int
    establishment_id: int
    name: str
    duration_minutes: int
    price_minor_units: int = 0
    description: Optional[str] = None

    def __post_init__(self):
        if self.duration_minutes <= 0:
            raise InvalidRangeError(
                f"Service duration must be greater than zero, got {self.duration_minutes}"
            )
        if self.price_minor_units < 0:
            raise InvalidRangeError(
                f"Service price must not be negative, got {self.price_minor_units}"
            )


@dataclass(frozen=True)
class AvailabilityWindow:
    """
    A recurring weekly opening window.

    ``day_of_week`` follows ``date.weekday()``: 0=Monday, 6=Sunday.
    Times of day are in the establishment's timezone.
    """
    id: int
    establishment_id: int
    day_of_week: int
    start_time: time
    end_time: time

    def __post_init__(self):
        if self.day_of_week not in range(7):
            raise InvalidRangeError(f"day_of_week must be between 0 and 6, got {self.day_of_week}")
        if self.start_time >= self.end_time:
            raise InvalidRangeError(
                f"Window start {self.start_time} must be before window end {self.end_time}"
            )

    def anchor(self, day: pendulum.Date, timezone: str) -> TimeRange:
        """Place this window's times of day onto a concrete calendar date."""
        start = pendulum.datetime(
            day.year, day.month, day.day,
            self.start_time.hour, self.start_time.minute,
            self.start_time.second, self.start_time.microsecond,
            tz=timezone,
        )
        end = pendulum.datetime(
            day.year, day.month, day.day,
            self.end_time.hour, self.end_time.minute,
            self.end_time.second, self.end_time.microsecond,
            tz=timezone,
        )
        return TimeRange(start=start, end=end)

    def format_display(self) -> str:
        return (
            f"{WEEKDAY_NAMES[self.day_of_week]} "
            f"{self.start_time.strftime('%H:%M')} - {self.end_time.strftime('%H:%M')}"
        )


class AppointmentStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self is not AppointmentStatus.CONFIRMED


@dataclass(frozen=True)
class Appointment:
    """
    A committed booking.

    Appointments are never deleted; status changes produce a new instance
    via ``dataclasses.replace``.
    """
    id: int
    establishment_id: int
    service_id: int
    client_id: str
    start_time: DateTime
    end_time: DateTime
    resource_id: Optional[int] = None
    status: AppointmentStatus = AppointmentStatus.CONFIRMED
    created_at: Optional[DateTime] = None
    cancelled_at: Optional[DateTime] = None
    cancelled_by: Optional[str] = None

    @property
    def scope(self) -> ResourceScope:
        return ResourceScope(self.establishment_id, self.resource_id)

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(start=self.start_time, end=self.end_time)

    @property
    def is_active(self) -> bool:
        """Whether the appointment occupies its interval (anything but cancelled)."""
        return self.status is not AppointmentStatus.CANCELLED


@dataclass(frozen=True)
class Slot:
    """
    A candidate booking interval. Not persisted; recomputed on every read.
    """
    time_range: TimeRange

    @property
    def start(self) -> DateTime:
        return self.time_range.start

    @property
    def end(self) -> DateTime:
        return self.time_range.end

    def format_display(self) -> str:
        """
        Format the slot for display.
        Format: Weekday, YYYY-MM-DD | HH:mm - HH:mm
        """
        start = self.time_range.start
        weekday = WEEKDAY_NAMES[start.weekday()]
        return (
            f"{weekday}, {start.format('YYYY-MM-DD')} | "
            f"{start.format('HH:mm')} - {self.time_range.end.format('HH:mm')}"
        )


@dataclass
class ClientAgenda:
    """A client's appointments split into upcoming and past entries."""
    upcoming: List[Appointment] = field(default_factory=list)
    history: List[Appointment] = field(default_factory=list)
