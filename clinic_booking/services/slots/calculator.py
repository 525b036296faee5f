# clinic_booking/services/slots/calculator.py
"""
Slot generation for one clinic day.

Produces TimeSlot objects for [start_time, end_time) in interval steps.

Contains:
✓ working hours (clinic-wide or per-weekday day schedule)
✓ break window (half-open overlap, dropped)
✓ weekly / custom holidays, kill-switch (empty day + closed_reason)
✓ past slots (kept, state=past)
✓ booked slots (kept, state=booked)
✓ individually disabled slots (kept, state=disabled)

Pure: `now` is always passed in, output depends on inputs only.
"""

from datetime import date, datetime, time, timedelta
from typing import Iterable, NamedTuple, Optional

from ...schemas.appointments import Appointment
from ...schemas.scheduling import SchedulingConfig
from ...schemas.slots import ClosedReason, DaySlots, SlotState, TimeSlot
from .config import minutes_to_time_str, time_str_to_minutes, weekday_index


class _DayHours(NamedTuple):
    start: int
    end: int
    break_window: Optional[tuple[int, int]]
    step: int


def generate_slots(
    target_date: date,
    config: SchedulingConfig,
    existing_appointments: Iterable[Appointment] = (),
    *,
    now: datetime,
) -> list[TimeSlot]:
    """Ordered slots for `target_date`. Empty when the day is closed."""
    return calculate_day_slots(target_date, config, existing_appointments, now=now).slots


def calculate_day_slots(
    target_date: date,
    config: SchedulingConfig,
    existing_appointments: Iterable[Appointment] = (),
    *,
    now: datetime,
) -> DaySlots:
    """
    Calculate slots for a clinic on a specific date.

    Returns:
        DaySlots; `closed_reason` is set when no slots exist because
        the day is closed (not because it is fully booked).
    """
    # Step 1: Closed day?
    reason = closed_reason(target_date, config, now)
    if reason is not None:
        return DaySlots(date=target_date, closed_reason=reason)

    # Step 2: Working hours for the weekday
    hours = _day_hours(config, target_date)

    # Step 3: Occupied start times
    booked = {
        _minute_precision(appt.time)
        for appt in existing_appointments
        if appt.date == target_date and appt.occupies_slot
    }

    # Step 4: Walk the day
    day_start = datetime.combine(target_date, time.min)
    slots: list[TimeSlot] = []

    t = hours.start
    while t + hours.step <= hours.end:
        slot_end = t + hours.step

        if hours.break_window is not None:
            break_start, break_end = hours.break_window
            if t < break_end and slot_end > break_start:
                t += hours.step
                continue

        start_dt = day_start + timedelta(minutes=t)
        slots.append(TimeSlot(
            start=start_dt,
            end=day_start + timedelta(minutes=slot_end),
            label=minutes_to_time_str(t),
            state=_slot_state(start_dt, booked, config, now),
        ))
        t += hours.step

    return DaySlots(date=target_date, slots=slots)


def closed_reason(
    target_date: date,
    config: SchedulingConfig,
    now: datetime,
) -> Optional[ClosedReason]:
    """Reason the whole day has no slots, or None if it is open."""
    if config.kill_switch_active(now):
        return ClosedReason.APPOINTMENTS_DISABLED

    weekday = weekday_index(target_date)
    if weekday in config.weekly_holidays:
        return ClosedReason.WEEKLY_HOLIDAY
    if target_date in config.custom_holidays:
        return ClosedReason.CUSTOM_HOLIDAY

    day = config.day_schedules.get(weekday)
    if day is not None and not day.enabled:
        return ClosedReason.DAY_DISABLED

    return None


# ── Helpers ──────────────────────────────────────────────────────────────


def _day_hours(config: SchedulingConfig, target_date: date) -> _DayHours:
    """Hours for target_date: the weekday's day schedule if any, else clinic-wide."""
    source = config.day_schedules.get(weekday_index(target_date)) or config

    start = time_str_to_minutes(source.start_time)
    end = time_str_to_minutes(source.end_time)
    return _DayHours(
        start=start,
        end=end,
        break_window=_break_window(start, end, source.break_start, source.break_end),
        step=source.slot_interval_minutes,
    )


def _break_window(
    start: int,
    end: int,
    break_start: Optional[time],
    break_end: Optional[time],
) -> Optional[tuple[int, int]]:
    """Break as minutes, or None if empty or not strictly inside the working hours."""
    if break_start is None or break_end is None:
        return None
    bs = time_str_to_minutes(break_start)
    be = time_str_to_minutes(break_end)
    if bs == be:
        return None
    if not (start < bs <= be < end):
        return None
    return bs, be


def _minute_precision(value: time) -> time:
    return value.replace(second=0, microsecond=0, tzinfo=None)


def _slot_state(
    start: datetime,
    booked: set[time],
    config: SchedulingConfig,
    now: datetime,
) -> SlotState:
    if start <= now:
        return SlotState.PAST
    if start in config.disabled_slots:
        return SlotState.DISABLED
    if start.time() in booked:
        return SlotState.BOOKED
    return SlotState.OPEN
