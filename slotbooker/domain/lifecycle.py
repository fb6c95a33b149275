"""
Status transitions of an appointment after it has been created.

    confirmed --cancel--> cancelled      (terminal)
    confirmed --end_time passes--> completed   (terminal, derived)
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Optional

from pendulum import DateTime

from .exceptions import CancellationNotAllowedError, InvalidTransitionError
from .models import Appointment, AppointmentStatus, Establishment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CancellationPolicy:
    """
    Who may cancel, and how late a client may still do so.

    ``client_cutoff_minutes`` of None means clients may cancel any time
    before the appointment is over.
    """
    allow_client: bool = True
    allow_establishment: bool = True
    client_cutoff_minutes: Optional[int] = None


class AppointmentLifecycle:
    """State machine governing appointment status."""

    def __init__(self, policy: Optional[CancellationPolicy] = None):
        self.policy = policy or CancellationPolicy()

    @staticmethod
    def effective_status(appointment: Appointment, now: DateTime) -> AppointmentStatus:
        """
        Status as observed at ``now``.

        A confirmed appointment whose end has passed reads as completed;
        nothing needs to be persisted for that.
        """
        if appointment.status is AppointmentStatus.CONFIRMED and appointment.end_time <= now:
            return AppointmentStatus.COMPLETED
        return appointment.status

    def with_effective_status(self, appointment: Appointment, now: DateTime) -> Appointment:
        status = self.effective_status(appointment, now)
        if status is appointment.status:
            return appointment
        return dataclasses.replace(appointment, status=status)

    def cancel(
        self,
        appointment: Appointment,
        actor_id: str,
        establishment: Establishment,
        now: DateTime,
    ) -> Appointment:
        """
        Cancel a confirmed appointment on behalf of ``actor_id``.

        Returns:
            A new Appointment in cancelled state

        Raises:
            InvalidTransitionError: If the appointment is cancelled or completed
            CancellationNotAllowedError: If the policy rejects the actor or timing
        """
        status = self.effective_status(appointment, now)
        if status is not AppointmentStatus.CONFIRMED:
            raise InvalidTransitionError(
                f"Appointment {appointment.id} is {status.value} and cannot be cancelled"
            )

        is_client = actor_id == appointment.client_id
        is_establishment = actor_id == establishment.owner_id

        if is_establishment and self.policy.allow_establishment:
            pass
        elif is_client and self.policy.allow_client:
            self._check_client_cutoff(appointment, now)
        else:
            raise CancellationNotAllowedError(
                f"Actor '{actor_id}' may not cancel appointment {appointment.id}"
            )

        logger.info(
            "Cancelling appointment %s (%s) by %s",
            appointment.id,
            appointment.scope,
            actor_id,
        )
        return dataclasses.replace(
            appointment,
            status=AppointmentStatus.CANCELLED,
            cancelled_at=now,
            cancelled_by=actor_id,
        )

    def _check_client_cutoff(self, appointment: Appointment, now: DateTime) -> None:
        cutoff = self.policy.client_cutoff_minutes
        if cutoff is None:
            return
        if now > appointment.start_time.subtract(minutes=cutoff):
            raise CancellationNotAllowedError(
                f"Clients must cancel at least {cutoff} minutes before the appointment starts"
            )
