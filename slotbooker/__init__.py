"""
slotbooker - scheduling and availability resolution for appointment booking.
"""

__version__ = "0.1.0"
