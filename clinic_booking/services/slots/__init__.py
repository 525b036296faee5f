# clinic_booking/services/slots/__init__.py
"""
Slots calculation module.

Slots are derived on every request from the cached scheduling config and
the cached (ledger-overlaid) appointment list; they are never stored.
"""

from .config import SchedulingConfigStore, build_config
from .calculator import calculate_day_slots, generate_slots
from .invalidator import invalidate_appointment_dates, invalidate_clinic_settings
from .availability import AvailabilityService

__all__ = [
    "SchedulingConfigStore",
    "build_config",
    "calculate_day_slots",
    "generate_slots",
    "invalidate_appointment_dates",
    "invalidate_clinic_settings",
    "AvailabilityService",
]
