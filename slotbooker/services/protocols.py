"""
Protocols describing the storage collaborators the services depend on.
"""

from __future__ import annotations

from typing import AsyncContextManager, List, Optional, Protocol

from pendulum import DateTime

from ..domain.ledger import BookingLedger
from ..domain.models import (
    Appointment,
    AvailabilityWindow,
    Establishment,
    ResourceScope,
    Service,
    TimeRange,
)


class CatalogReader(Protocol):
    """Read access to establishments, services and availability windows."""

    async def get_establishment(self, establishment_id: int) -> Optional[Establishment]:
        """Return the establishment or None."""

    async def get_service(self, service_id: int) -> Optional[Service]:
        """Return the service or None."""

    async def list_services(self, establishment_id: int) -> List[Service]:
        """Return all services offered by an establishment."""

    async def list_windows(self, establishment_id: int) -> List[AvailabilityWindow]:
        """Return all recurring availability windows of an establishment."""


class AppointmentStore(Protocol):
    """
    Durable appointment records.

    Implementations raise ``TransientStorageError`` for failures unrelated to
    booking semantics. ``insert`` and ``save`` must be all-or-nothing.
    """

    def transaction(self) -> AsyncContextManager[None]:
        """
        Exclusive write section.

        Reads made inside it observe every write committed before it was
        entered, including writes by other store instances on the same data.
        """

    async def snapshot(self, scope: ResourceScope, period: TimeRange) -> BookingLedger:
        """Return the non-cancelled appointments of ``scope`` intersecting ``period``."""

    async def insert(
        self,
        *,
        scope: ResourceScope,
        service_id: int,
        client_id: str,
        time_range: TimeRange,
        created_at: DateTime,
    ) -> Appointment:
        """Persist a new confirmed appointment and return it with its id."""

    async def get(self, appointment_id: int) -> Optional[Appointment]:
        """Return the appointment or None."""

    async def save(self, appointment: Appointment) -> Appointment:
        """Replace the stored record of an existing appointment."""

    async def list_for_client(self, client_id: str) -> List[Appointment]:
        """Return every appointment booked by a client."""

    async def list_for_establishment(
        self,
        establishment_id: int,
        period: Optional[TimeRange] = None,
    ) -> List[Appointment]:
        """Return the establishment's appointments, optionally limited to a period."""
