"""
Service layer helpers that orchestrate storage adapters and domain logic.
"""

from .booking_service import BookingService
from .booking_transaction import BookingTransaction, ScopeLocks
from .protocols import AppointmentStore, CatalogReader

__all__ = ["AppointmentStore", "BookingService", "BookingTransaction", "CatalogReader", "ScopeLocks"]
