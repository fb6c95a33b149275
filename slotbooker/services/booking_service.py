"""
Application service exposing the booking engine to callers.

The service resolves catalog records, validates input, and delegates to the
domain-level ``SlotGenerator`` for the read path and to
``BookingTransaction`` for every write. Storage is reached only through the
protocols in ``protocols.py``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Callable, List, Optional, Tuple

import pendulum
from pendulum import DateTime

from ..domain.availability import AvailabilityRuleSet
from ..domain.exceptions import InvalidRangeError, NotFoundError, TransientStorageError
from ..domain.lifecycle import AppointmentLifecycle
from ..domain.models import (
    Appointment,
    AppointmentStatus,
    ClientAgenda,
    Establishment,
    ResourceScope,
    Service,
    Slot,
    TimeRange,
)
from ..domain.slot_generator import SlotGenerator, day_period
from .booking_transaction import BookingTransaction
from .protocols import AppointmentStore, CatalogReader

logger = logging.getLogger(__name__)


class BookingService:
    """
    Orchestrates availability lookups, reservations and cancellations.

    ``clock`` supplies the current time; tests pass a fixed clock.
    """

    def __init__(
        self,
        catalog: CatalogReader,
        store: AppointmentStore,
        *,
        slot_generator: Optional[SlotGenerator] = None,
        lifecycle: Optional[AppointmentLifecycle] = None,
        transaction: Optional[BookingTransaction] = None,
        clock: Callable[[], DateTime] = pendulum.now,
        past_grace_minutes: int = 5,
        max_attempts: int = 3,
        retry_delay_seconds: float = 0.1,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self._catalog = catalog
        self._store = store
        self._slot_generator = slot_generator or SlotGenerator()
        self._lifecycle = lifecycle or AppointmentLifecycle()
        self._clock = clock
        self._transaction = transaction or BookingTransaction(store, clock=clock)
        self._past_grace_minutes = past_grace_minutes
        self._max_attempts = max_attempts
        self._retry_delay_seconds = retry_delay_seconds

    async def get_available_slots(
        self,
        establishment_id: int,
        service_id: int,
        day: date,
        resource_id: Optional[int] = None,
    ) -> List[Slot]:
        """
        Compute bookable slots for a service on a date.

        Read-only and lock-free; the result may be stale by the time a
        reservation is attempted.
        """
        establishment, service = await self._resolve(establishment_id, service_id, resource_id)
        day = _as_date(day)
        rules = await self._rule_set(establishment)

        scope = ResourceScope(establishment.id, resource_id)
        ledger = await self._store.snapshot(scope, day_period(day, establishment.timezone))

        return self._slot_generator.generate(
            day=day,
            rules=rules,
            ledger=ledger,
            duration_minutes=service.duration_minutes,
            now=self._clock(),
        )

    async def reserve(
        self,
        establishment_id: int,
        service_id: int,
        client_id: str,
        start_time: datetime,
        resource_id: Optional[int] = None,
    ) -> Appointment:
        """
        Book a service at ``start_time``.

        Transient storage failures are retried up to ``max_attempts`` times;
        a retry either commits or reports the conflict, so it never changes
        the booking outcome.

        Raises:
            NotFoundError: Unknown establishment, service or staff member
            InvalidRangeError: Start in the past or outside opening hours
            ConflictError: The interval is no longer free
            TransientStorageError: Storage kept failing after all attempts
        """
        establishment, service = await self._resolve(establishment_id, service_id, resource_id)
        start = _as_datetime(start_time, establishment.timezone)

        now = self._clock()
        if start < now.subtract(minutes=self._past_grace_minutes):
            raise InvalidRangeError(f"Start time {start} is in the past")

        requested = TimeRange(start=start, end=start.add(minutes=service.duration_minutes))
        rules = await self._rule_set(establishment)
        local_day = start.in_timezone(establishment.timezone).date()
        if not any(window.contains(requested) for window in rules.windows_for(local_day)):
            raise InvalidRangeError(
                f"{requested} is outside the opening hours of establishment {establishment.id}"
            )

        scope = ResourceScope(establishment.id, resource_id)
        attempt = 1
        while True:
            try:
                return await self._transaction.reserve(scope, service, client_id, start)
            except TransientStorageError as exc:
                if attempt >= self._max_attempts:
                    logger.error(
                        "Reservation on %s failed after %d attempt(s): %s",
                        scope,
                        attempt,
                        exc,
                    )
                    raise
                logger.warning(
                    "Transient storage error on %s (attempt %d/%d): %s",
                    scope,
                    attempt,
                    self._max_attempts,
                    exc,
                )
                attempt += 1
                await asyncio.sleep(self._retry_delay_seconds)

    async def cancel(self, appointment_id: int, actor_id: str) -> Appointment:
        """
        Cancel an appointment on behalf of the client or the establishment.

        The freed interval is immediately available to slot lookups and
        reservations.
        """
        appointment = await self._get_appointment(appointment_id)
        establishment = await self._catalog.get_establishment(appointment.establishment_id)
        if establishment is None:
            raise NotFoundError(f"Establishment {appointment.establishment_id} not found")

        now = self._clock()
        return await self._transaction.update(
            appointment_id,
            lambda current: self._lifecycle.cancel(current, actor_id, establishment, now),
        )

    async def get_appointment(self, appointment_id: int) -> Appointment:
        """Return an appointment with its status as observed now."""
        appointment = await self._get_appointment(appointment_id)
        return self._lifecycle.with_effective_status(appointment, self._clock())

    async def client_appointments(self, client_id: str) -> ClientAgenda:
        """Split a client's appointments into upcoming ones and history."""
        now = self._clock()
        agenda = ClientAgenda()

        for appointment in await self._store.list_for_client(client_id):
            current = self._lifecycle.with_effective_status(appointment, now)
            if current.status is AppointmentStatus.CONFIRMED:
                agenda.upcoming.append(current)
            else:
                agenda.history.append(current)

        agenda.upcoming.sort(key=lambda a: a.start_time)
        agenda.history.sort(key=lambda a: a.start_time, reverse=True)
        return agenda

    async def establishment_agenda(self, establishment_id: int, day: date) -> List[Appointment]:
        """All appointments of an establishment on a date, across every scope."""
        establishment = await self._get_establishment(establishment_id)
        period = day_period(_as_date(day), establishment.timezone)
        now = self._clock()

        appointments = await self._store.list_for_establishment(establishment.id, period)
        return sorted(
            (self._lifecycle.with_effective_status(a, now) for a in appointments),
            key=lambda a: (a.start_time, a.id),
        )

    async def list_services(self, establishment_id: int) -> List[Service]:
        establishment = await self._get_establishment(establishment_id)
        services = await self._catalog.list_services(establishment.id)
        return sorted(services, key=lambda s: s.id)

    async def weekly_schedule(self, establishment_id: int) -> AvailabilityRuleSet:
        establishment = await self._get_establishment(establishment_id)
        return await self._rule_set(establishment)

    async def _resolve(
        self,
        establishment_id: int,
        service_id: int,
        resource_id: Optional[int],
    ) -> Tuple[Establishment, Service]:
        establishment = await self._get_establishment(establishment_id)

        service = await self._catalog.get_service(service_id)
        if service is None or service.establishment_id != establishment.id:
            raise NotFoundError(
                f"Service {service_id} not found for establishment {establishment_id}"
            )

        if resource_id is not None and not establishment.has_staff(resource_id):
            raise NotFoundError(
                f"Staff member {resource_id} not found for establishment {establishment_id}"
            )

        return establishment, service

    async def _get_establishment(self, establishment_id: int) -> Establishment:
        establishment = await self._catalog.get_establishment(establishment_id)
        if establishment is None:
            raise NotFoundError(f"Establishment {establishment_id} not found")
        return establishment

    async def _get_appointment(self, appointment_id: int) -> Appointment:
        appointment = await self._store.get(appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        return appointment

    async def _rule_set(self, establishment: Establishment) -> AvailabilityRuleSet:
        windows = await self._catalog.list_windows(establishment.id)
        return AvailabilityRuleSet(establishment, windows)


def _as_date(day: date) -> pendulum.Date:
    if isinstance(day, datetime):
        day = day.date()
    return pendulum.Date(day.year, day.month, day.day)


def _as_datetime(value: datetime, timezone: str) -> DateTime:
    """Naive datetimes are read as wall-clock time in the establishment timezone."""
    if value.tzinfo is None:
        return pendulum.instance(value, tz=timezone)
    return pendulum.instance(value)
