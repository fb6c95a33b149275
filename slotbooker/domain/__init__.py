"""
Domain layer - Pure business logic without storage or I/O.
"""

from .availability import AvailabilityRuleSet
from .ledger import BookingLedger
from .lifecycle import AppointmentLifecycle, CancellationPolicy
from .models import (
    Appointment,
    AppointmentStatus,
    AvailabilityWindow,
    ClientAgenda,
    Establishment,
    ResourceScope,
    Service,
    Slot,
    TimeRange,
)
from .slot_generator import SLOT_GRANULARITY_MINUTES, SlotGenerator

__all__ = [
    "Appointment",
    "AppointmentLifecycle",
    "AppointmentStatus",
    "AvailabilityRuleSet",
    "AvailabilityWindow",
    "BookingLedger",
    "CancellationPolicy",
    "ClientAgenda",
    "Establishment",
    "ResourceScope",
    "SLOT_GRANULARITY_MINUTES",
    "Service",
    "Slot",
    "SlotGenerator",
    "TimeRange",
]
