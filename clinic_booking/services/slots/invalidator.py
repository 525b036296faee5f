# clinic_booking/services/slots/invalidator.py
"""
Cache invalidation for clinic scheduling data.

Triggers:
✓ Scheduling config changed → invalidate the clinic's settings entry
✓ Appointment inserted/updated/deleted → invalidate affected dates

Slots themselves are never cached: they are regenerated on every request
from the (invalidated) settings and appointment entries.
"""

from datetime import date, timedelta

from ..cache import AvailabilityCache, appointments_key, settings_key


def invalidate_clinic_settings(cache: AvailabilityCache, clinic_id: str) -> int:
    """
    Invalidate every settings-bearing entry of a clinic.

    Returns:
        Number of deleted cache entries
    """
    return cache.invalidate(settings_key(clinic_id))


def invalidate_appointment_dates(
    cache: AvailabilityCache,
    clinic_id: str,
    dates: list[date] | None = None,
) -> int:
    """
    Invalidate cached appointment lists of a clinic.

    Args:
        cache: Cache instance
        clinic_id: Clinic ID
        dates: Specific dates to invalidate,
               or None to invalidate all cached dates

    Returns:
        Number of deleted cache entries
    """
    if not dates:
        return cache.invalidate(appointments_key(clinic_id))
    return sum(cache.invalidate(appointments_key(clinic_id, dt)) for dt in dates)


def get_affected_dates(date_start: date, date_end: date) -> list[date]:
    """
    Get list of dates in range [date_start, date_end].

    Args:
        date_start: Start date (inclusive)
        date_end: End date (inclusive)
    """
    if date_start > date_end:
        date_start, date_end = date_end, date_start

    dates = []
    current = date_start
    while current <= date_end:
        dates.append(current)
        current += timedelta(days=1)

    return dates
