"""
Tests for the BookingService orchestration layer.
"""

import asyncio
import threading
from datetime import datetime, time
from typing import List, Optional

import pendulum
import pytest

from slotbooker.adapters.memory_store import InMemoryStore
from slotbooker.domain.exceptions import (
    CancellationNotAllowedError,
    ConflictError,
    InvalidRangeError,
    InvalidTransitionError,
    NotFoundError,
    TransientStorageError,
)
from slotbooker.domain.models import (
    Appointment,
    AppointmentStatus,
    AvailabilityWindow,
    Establishment,
    Service,
    Slot,
)
from slotbooker.services.booking_service import BookingService

TZ = "Europe/Berlin"
MONDAY = pendulum.date(2024, 11, 25)
SUNDAY_NOON = pendulum.datetime(2024, 11, 24, 12, tz=TZ)


def _at(hour: int, minute: int = 0, day: int = 25) -> pendulum.DateTime:
    return pendulum.datetime(2024, 11, day, hour, minute, tz=TZ)


def _seed(store: InMemoryStore) -> InMemoryStore:
    store.load_catalog(
        establishments=[
            Establishment(id=1, name="Studio Centro", owner_id="owner-1", timezone=TZ, staff_ids=(7, 8)),
            Establishment(id=2, name="Spa Nord", owner_id="owner-2", timezone=TZ),
        ],
        services=[
            Service(id=10, establishment_id=1, name="Haircut", duration_minutes=60, price_minor_units=4500),
            Service(id=11, establishment_id=1, name="Beard trim", duration_minutes=30),
            Service(id=20, establishment_id=2, name="Massage", duration_minutes=60),
        ],
        windows=[
            AvailabilityWindow(id=100, establishment_id=1, day_of_week=0, start_time=time(9), end_time=time(12)),
            AvailabilityWindow(id=101, establishment_id=1, day_of_week=0, start_time=time(14), end_time=time(16)),
            AvailabilityWindow(id=200, establishment_id=2, day_of_week=0, start_time=time(9), end_time=time(12)),
        ],
    )
    return store


class Clock:
    """Settable clock handed to the service."""

    def __init__(self, now: pendulum.DateTime = SUNDAY_NOON):
        self.now = now

    def __call__(self) -> pendulum.DateTime:
        return self.now


def _build_service(store: Optional[InMemoryStore] = None, clock=None, **kwargs) -> BookingService:
    store = _seed(store or InMemoryStore())
    return BookingService(catalog=store, store=store, clock=clock or Clock(), **kwargs)


def _starts(slots: List[Slot]) -> List[str]:
    return [slot.start.format("HH:mm") for slot in slots]


class FlakyStore(InMemoryStore):
    """Fails the first ``failures`` inserts with a transient error."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.insert_calls = 0

    async def insert(self, **kwargs) -> Appointment:
        self.insert_calls += 1
        if self.insert_calls <= self.failures:
            raise TransientStorageError("database connection reset")
        return await super().insert(**kwargs)


class SlowInsertStore(InMemoryStore):
    """Signals when an insert has started, then takes a while to finish it."""

    def __init__(self, insert_delay: float):
        super().__init__()
        self.insert_delay = insert_delay
        self.insert_started: Optional[asyncio.Event] = None

    async def insert(self, **kwargs) -> Appointment:
        self.insert_started.set()
        await asyncio.sleep(self.insert_delay)
        return await super().insert(**kwargs)


class TestAvailableSlots:
    def test_open_day(self):
        service = _build_service()

        slots = asyncio.run(service.get_available_slots(1, 10, MONDAY))

        assert _starts(slots) == ["09:00", "09:30", "10:00", "10:30", "11:00", "14:00", "14:30", "15:00"]

    def test_booking_removes_slots(self):
        """After booking 09:30 for an hour, every overlapping start disappears."""
        service = _build_service()

        async def scenario():
            await service.reserve(1, 10, "client-a", _at(9, 30))
            return await service.get_available_slots(1, 10, MONDAY)

        slots = asyncio.run(scenario())

        assert _starts(slots) == ["10:30", "11:00", "14:00", "14:30", "15:00"]

    def test_closed_day(self):
        service = _build_service()

        assert asyncio.run(service.get_available_slots(1, 10, pendulum.date(2024, 11, 26))) == []

    def test_accepts_plain_date_and_datetime(self):
        service = _build_service()

        from_date = asyncio.run(service.get_available_slots(1, 11, datetime(2024, 11, 25).date()))
        from_datetime = asyncio.run(service.get_available_slots(1, 11, datetime(2024, 11, 25, 15, 0)))

        assert _starts(from_date) == _starts(from_datetime)

    def test_today_excludes_past_starts(self):
        service = _build_service(clock=Clock(_at(10, 10)))

        slots = asyncio.run(service.get_available_slots(1, 10, MONDAY))

        assert _starts(slots)[0] == "10:30"

    def test_unknown_establishment(self):
        service = _build_service()

        with pytest.raises(NotFoundError, match="Establishment 99"):
            asyncio.run(service.get_available_slots(99, 10, MONDAY))

    def test_service_of_other_establishment(self):
        service = _build_service()

        with pytest.raises(NotFoundError, match="Service 20"):
            asyncio.run(service.get_available_slots(1, 20, MONDAY))

    def test_unknown_staff_member(self):
        service = _build_service()

        with pytest.raises(NotFoundError, match="Staff member 9"):
            asyncio.run(service.get_available_slots(1, 10, MONDAY, resource_id=9))


class TestReserve:
    """Tests for BookingService.reserve."""

    def test_reserve_returns_confirmed_appointment(self):
        service = _build_service()

        appointment = asyncio.run(service.reserve(1, 10, "client-a", _at(9)))

        assert appointment.id == 1
        assert appointment.status is AppointmentStatus.CONFIRMED
        assert appointment.start_time == _at(9)
        assert appointment.end_time == _at(10)
        assert appointment.created_at == SUNDAY_NOON

    def test_overlapping_reservation_conflicts(self):
        service = _build_service()

        async def scenario():
            await service.reserve(1, 10, "client-a", _at(9, 30))
            await service.reserve(1, 11, "client-b", _at(10))

        with pytest.raises(ConflictError, match="Slot no longer available"):
            asyncio.run(scenario())

    def test_adjacent_reservations_both_succeed(self):
        service = _build_service()

        async def scenario():
            first = await service.reserve(1, 10, "client-a", _at(9))
            second = await service.reserve(1, 10, "client-b", _at(10))
            return first, second

        first, second = asyncio.run(scenario())

        assert first.end_time == second.start_time

    def test_scopes_are_independent(self):
        """Staff members and the establishment as a whole are separate scopes."""
        service = _build_service()

        async def scenario():
            booked = [
                await service.reserve(1, 10, "client-a", _at(9), resource_id=7),
                await service.reserve(1, 10, "client-b", _at(9), resource_id=8),
                await service.reserve(1, 10, "client-c", _at(9)),
            ]
            slots = await service.get_available_slots(1, 10, MONDAY, resource_id=7)
            return booked, slots

        booked, slots = asyncio.run(scenario())

        assert [a.resource_id for a in booked] == [7, 8, None]
        assert "09:00" not in _starts(slots)
        assert "10:00" in _starts(slots)

    def test_start_in_the_past(self):
        service = _build_service(clock=Clock(_at(11)))

        with pytest.raises(InvalidRangeError, match="in the past"):
            asyncio.run(service.reserve(1, 11, "client-a", _at(9)))

    def test_start_within_grace_period(self):
        service = _build_service(clock=Clock(_at(9, 3)))

        appointment = asyncio.run(service.reserve(1, 10, "client-a", _at(9)))

        assert appointment.start_time == _at(9)

    def test_outside_opening_hours(self):
        service = _build_service()

        with pytest.raises(InvalidRangeError, match="outside the opening hours"):
            asyncio.run(service.reserve(1, 10, "client-a", _at(11, 30)))

    def test_closed_day(self):
        service = _build_service()

        with pytest.raises(InvalidRangeError):
            asyncio.run(service.reserve(1, 10, "client-a", _at(10, day=26)))

    def test_off_grid_start_inside_window(self):
        service = _build_service()

        appointment = asyncio.run(service.reserve(1, 10, "client-a", _at(9, 15)))

        assert appointment.end_time == _at(10, 15)

    def test_naive_start_is_read_in_establishment_timezone(self):
        service = _build_service()

        appointment = asyncio.run(service.reserve(1, 10, "client-a", datetime(2024, 11, 25, 9, 0)))

        assert appointment.start_time == _at(9)

    def test_unknown_service(self):
        service = _build_service()

        with pytest.raises(NotFoundError):
            asyncio.run(service.reserve(1, 404, "client-a", _at(9)))

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            _build_service(max_attempts=0)


class TestConcurrentReservations:
    """Two clients racing for the same slot."""

    def test_same_slot_exactly_one_wins(self):
        store = InMemoryStore(latency=0.01)
        service = _build_service(store)

        async def scenario():
            return await asyncio.gather(
                service.reserve(1, 10, "client-a", _at(9, 30)),
                service.reserve(1, 10, "client-b", _at(9, 30)),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        winners = [r for r in results if isinstance(r, Appointment)]
        losers = [r for r in results if isinstance(r, ConflictError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert len(store.all_appointments()) == 1

    def test_overlapping_requests_exactly_one_wins(self):
        store = InMemoryStore(latency=0.005)
        service = _build_service(store)

        async def scenario():
            requests = [
                service.reserve(1, 10, f"client-{minute}", _at(9, minute))
                for minute in (0, 15, 30, 45)
            ]
            return await asyncio.gather(*requests, return_exceptions=True)

        results = asyncio.run(scenario())

        assert sum(isinstance(r, Appointment) for r in results) == 1
        assert sum(isinstance(r, ConflictError) for r in results) == 3

    def test_many_contenders(self):
        store = InMemoryStore(latency=0.002)
        service = _build_service(store)

        async def scenario():
            return await asyncio.gather(
                *(service.reserve(1, 11, f"client-{i}", _at(14)) for i in range(10)),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        assert sum(isinstance(r, Appointment) for r in results) == 1
        assert all(isinstance(r, (Appointment, ConflictError)) for r in results)

    def test_different_scopes_do_not_block_each_other(self):
        store = InMemoryStore(latency=0.01)
        service = _build_service(store)

        async def scenario():
            return await asyncio.gather(
                service.reserve(1, 10, "client-a", _at(9), resource_id=7),
                service.reserve(1, 10, "client-b", _at(9), resource_id=8),
                service.reserve(2, 20, "client-c", _at(9)),
            )

        results = asyncio.run(scenario())

        assert len({a.id for a in results}) == 3
        assert {str(a.scope) for a in results} == {
            "establishment:1/staff:7",
            "establishment:1/staff:8",
            "establishment:2",
        }

    def test_caller_cancellation_leaves_complete_appointment(self):
        """A client that disconnects mid-commit never leaves a half-written booking."""
        store = SlowInsertStore(insert_delay=0.02)
        service = _build_service(store)

        async def scenario():
            store.insert_started = asyncio.Event()
            task = asyncio.create_task(service.reserve(1, 10, "client-a", _at(9)))
            await store.insert_started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            await asyncio.sleep(0.05)
            committed = store.all_appointments()

            # The scope lock was released, so the next request gets a definite answer.
            with pytest.raises(ConflictError):
                await service.reserve(1, 10, "client-b", _at(9))
            return committed

        committed = asyncio.run(scenario())

        assert len(committed) == 1
        assert committed[0].client_id == "client-a"
        assert committed[0].status is AppointmentStatus.CONFIRMED


class TestThreadedWorkers:
    """One service shared by worker threads, each running its own event loop."""

    def _race(self, service, requests):
        results = []

        def worker(args):
            try:
                results.append(asyncio.run(service.reserve(*args)))
            except Exception as exc:
                results.append(exc)

        threads = [threading.Thread(target=worker, args=(args,)) for args in requests]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert not any(thread.is_alive() for thread in threads)
        return results

    def test_same_slot_exactly_one_wins(self):
        store = InMemoryStore(latency=0.01)
        service = _build_service(store)

        results = self._race(
            service,
            [(1, 10, "client-a", _at(9, 30)), (1, 10, "client-b", _at(9, 30))],
        )

        assert sum(isinstance(r, Appointment) for r in results) == 1
        assert sum(isinstance(r, ConflictError) for r in results) == 1
        assert len(store.all_appointments()) == 1

    def test_many_threads_one_winner(self):
        store = InMemoryStore(latency=0.002)
        service = _build_service(store)

        results = self._race(service, [(1, 11, f"client-{i}", _at(14)) for i in range(8)])

        assert sum(isinstance(r, Appointment) for r in results) == 1
        assert all(isinstance(r, (Appointment, ConflictError)) for r in results)

    def test_different_scopes_both_succeed(self):
        store = InMemoryStore(latency=0.01)
        service = _build_service(store)

        results = self._race(
            service,
            [(1, 10, "client-a", _at(9)), (2, 20, "client-b", _at(9))],
        )

        assert all(isinstance(r, Appointment) for r in results)
        assert sorted(a.id for a in store.all_appointments()) == [1, 2]


class TestTransientFailures:
    def test_retry_until_success(self):
        store = FlakyStore(failures=2)
        service = _build_service(store, max_attempts=3, retry_delay_seconds=0)

        appointment = asyncio.run(service.reserve(1, 10, "client-a", _at(9)))

        assert appointment.id == 1
        assert store.insert_calls == 3
        assert len(store.all_appointments()) == 1

    def test_gives_up_after_max_attempts(self):
        store = FlakyStore(failures=5)
        service = _build_service(store, max_attempts=2, retry_delay_seconds=0)

        with pytest.raises(TransientStorageError):
            asyncio.run(service.reserve(1, 10, "client-a", _at(9)))

        assert store.insert_calls == 2
        assert store.all_appointments() == []

    def test_conflict_is_not_retried(self):
        store = FlakyStore(failures=0)
        service = _build_service(store, max_attempts=3, retry_delay_seconds=0)

        async def scenario():
            await service.reserve(1, 10, "client-a", _at(9))
            await service.reserve(1, 10, "client-b", _at(9))

        with pytest.raises(ConflictError):
            asyncio.run(scenario())

        assert store.insert_calls == 1


class TestCancel:
    """Tests for BookingService.cancel."""

    def test_cancel_frees_the_interval(self):
        service = _build_service()

        async def scenario():
            booked = await service.reserve(1, 10, "client-a", _at(9, 30))
            cancelled = await service.cancel(booked.id, "client-a")
            slots = await service.get_available_slots(1, 10, MONDAY)
            rebooked = await service.reserve(1, 10, "client-b", _at(9, 30))
            return cancelled, slots, rebooked

        cancelled, slots, rebooked = asyncio.run(scenario())

        assert cancelled.status is AppointmentStatus.CANCELLED
        assert cancelled.cancelled_at == SUNDAY_NOON
        assert "09:30" in _starts(slots)
        assert rebooked.client_id == "client-b"

    def test_cancel_twice(self):
        service = _build_service()

        async def scenario():
            booked = await service.reserve(1, 10, "client-a", _at(9))
            await service.cancel(booked.id, "owner-1")
            await service.cancel(booked.id, "client-a")

        with pytest.raises(InvalidTransitionError):
            asyncio.run(scenario())

    def test_stranger_cannot_cancel(self):
        service = _build_service()

        async def scenario():
            booked = await service.reserve(1, 10, "client-a", _at(9))
            with pytest.raises(CancellationNotAllowedError):
                await service.cancel(booked.id, "client-b")
            return await service.get_appointment(booked.id)

        appointment = asyncio.run(scenario())

        assert appointment.status is AppointmentStatus.CONFIRMED

    def test_cancel_unknown_appointment(self):
        service = _build_service()

        with pytest.raises(NotFoundError, match="Appointment 42"):
            asyncio.run(service.cancel(42, "client-a"))

    def test_completed_appointment_cannot_be_cancelled(self):
        clock = Clock()
        service = _build_service(clock=clock)

        async def scenario():
            booked = await service.reserve(1, 10, "client-a", _at(9))
            clock.now = _at(10, 30)
            await service.cancel(booked.id, "client-a")

        with pytest.raises(InvalidTransitionError, match="completed"):
            asyncio.run(scenario())


class TestQueries:
    def test_get_appointment_reports_completion(self):
        clock = Clock()
        service = _build_service(clock=clock)

        async def scenario():
            booked = await service.reserve(1, 10, "client-a", _at(9))
            clock.now = _at(10)
            return await service.get_appointment(booked.id)

        assert asyncio.run(scenario()).status is AppointmentStatus.COMPLETED

    def test_client_appointments(self):
        clock = Clock()
        service = _build_service(clock=clock)

        async def scenario():
            early = await service.reserve(1, 11, "client-a", _at(9))
            late = await service.reserve(1, 10, "client-a", _at(14))
            dropped = await service.reserve(1, 10, "client-a", _at(10))
            await service.reserve(1, 10, "client-b", _at(15))
            await service.cancel(dropped.id, "client-a")
            clock.now = _at(12)
            return early, late, dropped, await service.client_appointments("client-a")

        early, late, dropped, agenda = asyncio.run(scenario())

        assert [a.id for a in agenda.upcoming] == [late.id]
        assert [a.id for a in agenda.history] == [dropped.id, early.id]
        assert agenda.history[0].status is AppointmentStatus.CANCELLED
        assert agenda.history[1].status is AppointmentStatus.COMPLETED

    def test_client_without_appointments(self):
        service = _build_service()

        agenda = asyncio.run(service.client_appointments("nobody"))

        assert agenda.upcoming == []
        assert agenda.history == []

    def test_establishment_agenda(self):
        service = _build_service()

        async def scenario():
            await service.reserve(1, 10, "client-a", _at(14))
            await service.reserve(1, 10, "client-b", _at(9), resource_id=7)
            await service.reserve(1, 11, "client-c", _at(9))
            await service.reserve(2, 20, "client-d", _at(9))
            return await service.establishment_agenda(1, MONDAY)

        agenda = asyncio.run(scenario())

        assert [(a.start_time.format("HH:mm"), a.client_id) for a in agenda] == [
            ("09:00", "client-b"),
            ("09:00", "client-c"),
            ("14:00", "client-a"),
        ]

    def test_list_services(self):
        service = _build_service()

        services = asyncio.run(service.list_services(1))

        assert [s.name for s in services] == ["Haircut", "Beard trim"]

    def test_weekly_schedule(self):
        service = _build_service()

        rules = asyncio.run(service.weekly_schedule(1))

        assert [w.id for w in rules.weekly_schedule()[0]] == [100, 101]
        assert rules.timezone == TZ
