"""
Durable store backed by a single JSON document.

File layout:
{
    "establishments": [{"id": 1, "name": "...", "owner_id": "...", "timezone": "...", "staff_ids": [7]}],
    "services": [{"id": 10, "establishment_id": 1, "name": "...", "duration_minutes": 60, "price_minor_units": 5000}],
    "availability": [{"id": 100, "establishment_id": 1, "day_of_week": 0, "start_time": "09:00", "end_time": "12:00"}],
    "appointments": [{"id": 1, "establishment_id": 1, "service_id": 10, "resource_id": null, "client_id": "...",
                      "start_time": "2024-11-25T09:30:00+01:00", "end_time": "...", "status": "confirmed", ...}]
}
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import time
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple

import pendulum
from filelock import FileLock, Timeout
from pendulum import DateTime
from pydantic import BaseModel, Field, ValidationError

from ..domain.exceptions import ConfigError, TransientStorageError
from ..domain.models import (
    Appointment,
    AppointmentStatus,
    AvailabilityWindow,
    Establishment,
    ResourceScope,
    Service,
    TimeRange,
)
from .memory_store import InMemoryStore

logger = logging.getLogger(__name__)

# Signature placeholder before the data file was first examined.
_UNREAD = object()


class EstablishmentRecord(BaseModel):
    id: int
    name: str
    owner_id: str
    timezone: Optional[str] = None
    staff_ids: List[int] = Field(default_factory=list)

    def to_domain(self, default_timezone: str) -> Establishment:
        return Establishment(
            id=self.id,
            name=self.name,
            owner_id=self.owner_id,
            timezone=self.timezone or default_timezone,
            staff_ids=tuple(self.staff_ids),
        )

    @classmethod
    def from_domain(cls, establishment: Establishment) -> "EstablishmentRecord":
        return cls(
            id=establishment.id,
            name=establishment.name,
            owner_id=establishment.owner_id,
            timezone=establishment.timezone,
            staff_ids=list(establishment.staff_ids),
        )


class ServiceRecord(BaseModel):
    id: int
    establishment_id: int
    name: str
    duration_minutes: int
    price_minor_units: int = 0
    description: Optional[str] = None

    def to_domain(self) -> Service:
        return Service(**self.model_dump())

    @classmethod
    def from_domain(cls, service: Service) -> "ServiceRecord":
        return cls(
            id=service.id,
            establishment_id=service.establishment_id,
            name=service.name,
            duration_minutes=service.duration_minutes,
            price_minor_units=service.price_minor_units,
            description=service.description,
        )


class WindowRecord(BaseModel):
    id: int
    establishment_id: int
    day_of_week: int
    start_time: time
    end_time: time

    def to_domain(self) -> AvailabilityWindow:
        return AvailabilityWindow(**self.model_dump())

    @classmethod
    def from_domain(cls, window: AvailabilityWindow) -> "WindowRecord":
        return cls(
            id=window.id,
            establishment_id=window.establishment_id,
            day_of_week=window.day_of_week,
            start_time=window.start_time,
            end_time=window.end_time,
        )


class AppointmentRecord(BaseModel):
    id: int
    establishment_id: int
    service_id: int
    resource_id: Optional[int] = None
    client_id: str
    start_time: str
    end_time: str
    status: AppointmentStatus = AppointmentStatus.CONFIRMED
    created_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancelled_by: Optional[str] = None

    def to_domain(self) -> Appointment:
        return Appointment(
            id=self.id,
            establishment_id=self.establishment_id,
            service_id=self.service_id,
            resource_id=self.resource_id,
            client_id=self.client_id,
            start_time=pendulum.parse(self.start_time),
            end_time=pendulum.parse(self.end_time),
            status=self.status,
            created_at=_parse_optional(self.created_at),
            cancelled_at=_parse_optional(self.cancelled_at),
            cancelled_by=self.cancelled_by,
        )

    @classmethod
    def from_domain(cls, appointment: Appointment) -> "AppointmentRecord":
        return cls(
            id=appointment.id,
            establishment_id=appointment.establishment_id,
            service_id=appointment.service_id,
            resource_id=appointment.resource_id,
            client_id=appointment.client_id,
            start_time=appointment.start_time.isoformat(),
            end_time=appointment.end_time.isoformat(),
            status=appointment.status,
            created_at=_format_optional(appointment.created_at),
            cancelled_at=_format_optional(appointment.cancelled_at),
            cancelled_by=appointment.cancelled_by,
        )


class StoreDocument(BaseModel):
    establishments: List[EstablishmentRecord] = Field(default_factory=list)
    services: List[ServiceRecord] = Field(default_factory=list)
    availability: List[WindowRecord] = Field(default_factory=list)
    appointments: List[AppointmentRecord] = Field(default_factory=list)


def _parse_optional(value: Optional[str]) -> Optional[DateTime]:
    return pendulum.parse(value) if value else None


def _format_optional(value: Optional[DateTime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class JsonFileStore(InMemoryStore):
    """
    ``InMemoryStore`` that persists every appointment mutation to a JSON file.

    Several store instances, in one process or in many, may share the same
    file. Writes run inside ``transaction()``, which holds an exclusive lock
    on ``<data file>.lock`` and re-reads the document before the caller
    checks for conflicts, so ids and conflict checks always see the latest
    committed state. Reads outside a transaction reload the document when
    the file changed since it was last read or written.

    The whole document is rewritten to a temporary file in the same
    directory and moved into place with ``os.replace``, so readers never see
    a partially written file. File I/O runs in a worker thread. When the
    write fails the in-memory change is rolled back and
    ``TransientStorageError`` is raised.
    """

    def __init__(
        self,
        path: Path,
        default_timezone: str = "Europe/Berlin",
        latency: float = 0.0,
        lock_timeout: float = 10.0,
    ):
        super().__init__(latency=latency)
        self.path = Path(path)
        self.default_timezone = default_timezone
        self.lock_timeout = lock_timeout
        self._lock_path = self.path.with_name(f"{self.path.name}.lock")
        self._signature: object = _UNREAD
        self._in_transaction: ContextVar[bool] = ContextVar(
            f"json_store_transaction_{id(self)}", default=False
        )
        self._refresh()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            yield
            return

        lock = FileLock(str(self._lock_path))
        await self._acquire(lock)
        token = self._in_transaction.set(True)
        try:
            await asyncio.to_thread(self._refresh, True)
            yield
        finally:
            self._in_transaction.reset(token)
            lock.release()

    async def insert(
        self,
        *,
        scope: ResourceScope,
        service_id: int,
        client_id: str,
        time_range: TimeRange,
        created_at: DateTime,
    ) -> Appointment:
        async with self.transaction():
            appointment = await super().insert(
                scope=scope,
                service_id=service_id,
                client_id=client_id,
                time_range=time_range,
                created_at=created_at,
            )
            try:
                await self._flush()
            except TransientStorageError:
                with self._state_lock:
                    self._appointments.pop(appointment.id, None)
                    self._next_appointment_id = appointment.id
                raise
        return appointment

    async def save(self, appointment: Appointment) -> Appointment:
        async with self.transaction():
            previous = await self.get(appointment.id)
            await super().save(appointment)
            try:
                await self._flush()
            except TransientStorageError:
                with self._state_lock:
                    self._appointments[appointment.id] = previous
                raise
        return appointment

    async def _io(self) -> None:
        await super()._io()
        if not self._in_transaction.get():
            await asyncio.to_thread(self._refresh)

    async def _acquire(self, lock: FileLock) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lock_timeout
        delay = 0.001
        while True:
            try:
                lock.acquire(timeout=0)
                return
            except Timeout:
                if loop.time() >= deadline:
                    logger.warning("Timed out after %.1fs waiting for %s", self.lock_timeout, self._lock_path)
                    raise TransientStorageError(f"Timed out waiting for lock on {self.path}")
            except OSError as exc:
                logger.warning("Could not lock data file %s: %s", self.path, exc)
                raise TransientStorageError(f"Could not lock data file {self.path}: {exc}") from exc
            await asyncio.sleep(delay)
            delay = min(delay * 2, 0.05)

    def _refresh(self, force: bool = False) -> None:
        """Reload the document when the file changed since it was last read or written, or always with ``force``."""
        with self._state_lock:
            signature = self._file_signature()
            if signature == self._signature and not (force and signature is not None):
                return
            if signature is None:
                logger.info("Data file %s does not exist yet; starting empty", self.path)
            else:
                self._apply(self._read_document())
                logger.debug(
                    "Loaded %d establishment(s), %d appointment(s) from %s",
                    len(self._establishments),
                    len(self._appointments),
                    self.path,
                )
            self._signature = signature

    def _file_signature(self) -> Optional[Tuple[int, int, int]]:
        try:
            stat = self.path.stat()
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as exc:
            raise ConfigError(f"Could not read data file {self.path}: {exc}") from exc
        return stat.st_ino, stat.st_mtime_ns, stat.st_size

    def _read_document(self) -> StoreDocument:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f) or {}
            return StoreDocument.model_validate(data)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Could not read data file {self.path}: {exc}") from exc
        except ValidationError as exc:
            raise ConfigError(f"Invalid data in {self.path}: {exc}") from exc

    def _apply(self, document: StoreDocument) -> None:
        try:
            establishments = [r.to_domain(self.default_timezone) for r in document.establishments]
            services = [r.to_domain() for r in document.services]
            windows = [r.to_domain() for r in document.availability]
            appointments = [r.to_domain() for r in document.appointments]
        except ValueError as exc:
            raise ConfigError(f"Invalid data in {self.path}: {exc}") from exc

        self._establishments = {e.id: e for e in establishments}
        self._services = {s.id: s for s in services}
        self._windows = {w.id: w for w in windows}
        self._restore_appointments(appointments)

    async def _flush(self) -> None:
        with self._state_lock:
            document = StoreDocument(
                establishments=[EstablishmentRecord.from_domain(e) for e in self._establishments.values()],
                services=[ServiceRecord.from_domain(s) for s in self._services.values()],
                availability=[WindowRecord.from_domain(w) for w in self._windows.values()],
                appointments=[AppointmentRecord.from_domain(a) for a in self.all_appointments()],
            )
        payload = json.dumps(document.model_dump(mode="json"), indent=2)
        await asyncio.to_thread(self._write, payload)

    def _write(self, payload: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            logger.warning("Could not write data file %s: %s", self.path, exc)
            raise TransientStorageError(f"Could not write data file {self.path}: {exc}") from exc

        signature = self._file_signature()
        with self._state_lock:
            self._signature = signature
