"""
Serialized write path for the busy set of a resource scope.

Every mutation of a scope's appointments (reserving and releasing) runs
under that scope's lock and inside the store's write transaction, so the
check-then-insert sequence of a reservation is atomic with respect to other
writers of the same scope, whichever thread or event loop they run on. The
store transaction extends this to other processes where the store supports
it. Different scopes never share a scope lock.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

import pendulum
from pendulum import DateTime

from ..domain.exceptions import ConflictError, NotFoundError
from ..domain.models import Appointment, ResourceScope, Service, TimeRange
from .protocols import AppointmentStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _ScopeLock:
    """Mutex for one scope, usable from any thread and any event loop."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()


class ScopeLocks:
    """
    Registry handing out one lock per resource scope.

    Locks are shared by every thread and event loop using the registry.
    Waiting never blocks the loop: a contended lock is polled with a short,
    growing sleep. Entries are held weakly, so the lock of an idle scope is
    dropped once nobody waits for or holds it.
    """

    def __init__(self, poll_interval: float = 0.001, max_poll_interval: float = 0.02) -> None:
        self._poll_interval = poll_interval
        self._max_poll_interval = max_poll_interval
        self._registry_lock = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[ResourceScope, _ScopeLock]" = (
            weakref.WeakValueDictionary()
        )

    def for_scope(self, scope: ResourceScope) -> _ScopeLock:
        with self._registry_lock:
            lock = self._locks.get(scope)
            if lock is None:
                lock = _ScopeLock()
                self._locks[scope] = lock
            return lock

    @asynccontextmanager
    async def hold(self, scope: ResourceScope) -> AsyncIterator[None]:
        """Hold the scope's lock for the body of the ``async with`` block."""
        lock = self.for_scope(scope)
        delay = self._poll_interval
        while not lock.acquire():
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._max_poll_interval)
        try:
            yield
        finally:
            lock.release()

    def __len__(self) -> int:
        return len(self._locks)


class BookingTransaction:
    """
    Atomic reserve-if-free and status updates for appointments.

    The critical section runs in its own task behind ``asyncio.shield``: if
    the calling task is cancelled (client disconnected), the commit still
    finishes while holding the lock, so the ledger ends up with either the
    complete appointment or nothing.
    """

    def __init__(
        self,
        store: AppointmentStore,
        locks: ScopeLocks | None = None,
        clock: Callable[[], DateTime] = pendulum.now,
    ) -> None:
        self._store = store
        self._locks = locks if locks is not None else ScopeLocks()
        self._clock = clock

    async def reserve(
        self,
        scope: ResourceScope,
        service: Service,
        client_id: str,
        start_time: DateTime,
    ) -> Appointment:
        """
        Commit a new confirmed appointment if its interval is still free.

        Raises:
            ConflictError: If a non-cancelled appointment of the scope overlaps
        """
        return await self._run_shielded(
            lambda: self._commit_reservation(scope, service, client_id, start_time)
        )

    async def update(
        self,
        appointment_id: int,
        transition: Callable[[Appointment], Appointment],
    ) -> Appointment:
        """
        Apply a status transition to the latest stored version of an appointment.

        The record is re-read under the scope lock so concurrent transitions
        of the same appointment are applied one after another.
        """
        current = await self._store.get(appointment_id)
        if current is None:
            raise NotFoundError(f"Appointment {appointment_id} not found")

        return await self._run_shielded(
            lambda: self._commit_update(current.scope, appointment_id, transition)
        )

    async def _commit_reservation(
        self,
        scope: ResourceScope,
        service: Service,
        client_id: str,
        start_time: DateTime,
    ) -> Appointment:
        requested = TimeRange(
            start=start_time,
            end=start_time.add(minutes=service.duration_minutes),
        )

        async with self._locks.hold(scope), self._store.transaction():
            # Fresh read; the caller's slot listing may be stale.
            ledger = await self._store.snapshot(scope, requested)
            conflicts = ledger.conflicts_with(requested)
            if conflicts:
                logger.info(
                    "Reservation conflict on %s for %s (overlaps appointment %s)",
                    scope,
                    requested,
                    conflicts[0].id,
                )
                raise ConflictError()

            appointment = await self._store.insert(
                scope=scope,
                service_id=service.id,
                client_id=client_id,
                time_range=requested,
                created_at=self._clock(),
            )

        logger.info(
            "Reserved appointment %s on %s for %s (client %s)",
            appointment.id,
            scope,
            requested,
            client_id,
        )
        return appointment

    async def _commit_update(
        self,
        scope: ResourceScope,
        appointment_id: int,
        transition: Callable[[Appointment], Appointment],
    ) -> Appointment:
        async with self._locks.hold(scope), self._store.transaction():
            current = await self._store.get(appointment_id)
            if current is None:
                raise NotFoundError(f"Appointment {appointment_id} not found")
            return await self._store.save(transition(current))

    @staticmethod
    async def _run_shielded(factory: Callable[[], Awaitable[T]]) -> T:
        task = asyncio.ensure_future(factory())
        task.add_done_callback(_log_orphaned_failure)
        return await asyncio.shield(task)


def _log_orphaned_failure(task: asyncio.Future) -> None:
    # Retrieve the outcome so an abandoned commit never reports an unretrieved exception.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, ConflictError):
        logger.debug("Background commit finished with %r", exc)
