"""
Read-only view of committed appointments for one resource scope.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

from .models import Appointment, ResourceScope, TimeRange


@dataclass(frozen=True)
class BookingLedger:
    """
    Point-in-time snapshot of the busy set for a resource scope.

    Only non-cancelled appointments of exactly this scope that intersect
    ``period`` are kept; everything else handed to ``from_appointments``
    is dropped.
    """
    scope: ResourceScope
    period: TimeRange
    appointments: Tuple[Appointment, ...] = field(default_factory=tuple)

    @classmethod
    def from_appointments(
        cls,
        scope: ResourceScope,
        period: TimeRange,
        appointments: Iterable[Appointment],
    ) -> "BookingLedger":
        relevant = sorted(
            (
                appointment for appointment in appointments
                if appointment.is_active
                and appointment.scope == scope
                and appointment.time_range.overlaps(period)
            ),
            key=lambda a: a.start_time,
        )
        return cls(scope=scope, period=period, appointments=tuple(relevant))

    def busy_ranges(self) -> List[TimeRange]:
        return [appointment.time_range for appointment in self.appointments]

    def conflicts_with(self, candidate: TimeRange) -> List[Appointment]:
        """Appointments in the snapshot whose interval overlaps the candidate."""
        return [
            appointment for appointment in self.appointments
            if appointment.time_range.overlaps(candidate)
        ]

    def is_free(self, candidate: TimeRange) -> bool:
        return not self.conflicts_with(candidate)

    def __len__(self) -> int:
        return len(self.appointments)
