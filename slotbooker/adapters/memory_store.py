"""
In-memory catalog and appointment store.
"""

import asyncio
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional

from pendulum import DateTime

from ..domain.exceptions import NotFoundError
from ..domain.ledger import BookingLedger
from ..domain.models import (
    Appointment,
    AppointmentStatus,
    AvailabilityWindow,
    Establishment,
    ResourceScope,
    Service,
    TimeRange,
)


class InMemoryStore:
    """
    Keeps establishments, services, windows and appointments in dictionaries.

    Implements both ``CatalogReader`` and ``AppointmentStore``. Catalog
    records are seeded through the ``add_*`` helpers; the engine itself only
    reads them.

    ``latency`` (seconds) makes every call yield to the event loop for that
    long, which simulates I/O between the check and the insert of a
    reservation.

    The store may be shared by several threads; appointment mutations are
    guarded by a lock.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._state_lock = threading.RLock()
        self._establishments: Dict[int, Establishment] = {}
        self._services: Dict[int, Service] = {}
        self._windows: Dict[int, AvailabilityWindow] = {}
        self._appointments: Dict[int, Appointment] = {}
        self._next_appointment_id = 1

    # Catalog seeding

    def add_establishment(self, establishment: Establishment) -> Establishment:
        self._establishments[establishment.id] = establishment
        return establishment

    def add_service(self, service: Service) -> Service:
        self._services[service.id] = service
        return service

    def add_window(self, window: AvailabilityWindow) -> AvailabilityWindow:
        self._windows[window.id] = window
        return window

    def remove_window(self, window_id: int) -> None:
        """Windows are immutable; an edit is a removal followed by a new window."""
        self._windows.pop(window_id, None)

    def load_catalog(
        self,
        establishments: Iterable[Establishment] = (),
        services: Iterable[Service] = (),
        windows: Iterable[AvailabilityWindow] = (),
    ) -> None:
        for establishment in establishments:
            self.add_establishment(establishment)
        for service in services:
            self.add_service(service)
        for window in windows:
            self.add_window(window)

    # CatalogReader

    async def get_establishment(self, establishment_id: int) -> Optional[Establishment]:
        await self._io()
        return self._establishments.get(establishment_id)

    async def get_service(self, service_id: int) -> Optional[Service]:
        await self._io()
        return self._services.get(service_id)

    async def list_services(self, establishment_id: int) -> List[Service]:
        await self._io()
        return [s for s in self._services.values() if s.establishment_id == establishment_id]

    async def list_windows(self, establishment_id: int) -> List[AvailabilityWindow]:
        await self._io()
        return [w for w in self._windows.values() if w.establishment_id == establishment_id]

    # AppointmentStore

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # Every read already sees every committed write.
        yield

    async def snapshot(self, scope: ResourceScope, period: TimeRange) -> BookingLedger:
        await self._io()
        return BookingLedger.from_appointments(scope, period, self._stored_appointments())

    async def insert(
        self,
        *,
        scope: ResourceScope,
        service_id: int,
        client_id: str,
        time_range: TimeRange,
        created_at: DateTime,
    ) -> Appointment:
        await self._io()
        with self._state_lock:
            appointment = Appointment(
                id=self._next_appointment_id,
                establishment_id=scope.establishment_id,
                resource_id=scope.resource_id,
                service_id=service_id,
                client_id=client_id,
                start_time=time_range.start,
                end_time=time_range.end,
                status=AppointmentStatus.CONFIRMED,
                created_at=created_at,
            )
            self._appointments[appointment.id] = appointment
            self._next_appointment_id += 1
        return appointment

    async def get(self, appointment_id: int) -> Optional[Appointment]:
        await self._io()
        return self._appointments.get(appointment_id)

    async def save(self, appointment: Appointment) -> Appointment:
        await self._io()
        with self._state_lock:
            if appointment.id not in self._appointments:
                raise NotFoundError(f"Appointment {appointment.id} not found")
            self._appointments[appointment.id] = appointment
        return appointment

    async def list_for_client(self, client_id: str) -> List[Appointment]:
        await self._io()
        return [a for a in self._stored_appointments() if a.client_id == client_id]

    async def list_for_establishment(
        self,
        establishment_id: int,
        period: Optional[TimeRange] = None,
    ) -> List[Appointment]:
        await self._io()
        return [
            a for a in self._stored_appointments()
            if a.establishment_id == establishment_id
            and (period is None or a.time_range.overlaps(period))
        ]

    def all_appointments(self) -> List[Appointment]:
        return sorted(self._stored_appointments(), key=lambda a: a.id)

    def _stored_appointments(self) -> List[Appointment]:
        with self._state_lock:
            return list(self._appointments.values())

    def _restore_appointments(self, appointments: Iterable[Appointment]) -> None:
        restored = {a.id: a for a in appointments}
        with self._state_lock:
            self._appointments = restored
            self._next_appointment_id = max(restored, default=0) + 1

    async def _io(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
