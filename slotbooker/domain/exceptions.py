"""
Domain-specific exception hierarchy for the booking engine.
"""


class BookingError(Exception):
    """Base class for all application-level errors."""


class NotFoundError(BookingError):
    """Raised when a referenced establishment, service, staff member or appointment does not exist."""


class ConflictError(BookingError):
    """Raised when the requested interval is no longer free at commit time."""

    def __init__(self, message: str = "Slot no longer available"):
        super().__init__(message)


class InvalidRangeError(BookingError, ValueError):
    """Raised for malformed input that is rejected before any persistence attempt."""


class TransientStorageError(BookingError):
    """Raised when the storage layer fails for reasons unrelated to booking semantics."""


class LifecycleError(BookingError):
    """Base class for refused appointment status transitions."""


class InvalidTransitionError(LifecycleError):
    """Raised when the appointment is not in a state that allows the transition."""


class CancellationNotAllowedError(LifecycleError):
    """Raised when the cancellation policy rejects the actor or the timing."""


class ConfigError(BookingError):
    """Raised when configuration or data files cannot be read."""
