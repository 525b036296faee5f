# clinic_booking/schemas/scheduling.py
"""
Pydantic schemas for clinic scheduling configuration.
"""

import re
from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Stored format of individually disabled slots: "YYYY-MM-DD-HH-MM"
_DISABLED_SLOT_RE = re.compile(r"^\d{4}-\d{2}-\d{2}-\d{2}-\d{2}$")


class DaySchedule(BaseModel):
    """Working hours for one weekday, overriding the clinic-wide hours."""
    start_time: time
    end_time: time
    break_start: Optional[time] = None
    break_end: Optional[time] = None
    slot_interval_minutes: int = Field(default=30, ge=5)
    enabled: bool = True

    model_config = {"from_attributes": True}

    @model_validator(mode="after")
    def _check_hours(self):
        if self.start_time >= self.end_time:
            raise ValueError(
                f"start_time {self.start_time:%H:%M} must be before end_time {self.end_time:%H:%M}"
            )
        return self


class SchedulingConfig(BaseModel):
    """
    Scheduling configuration of one clinic.

    Weekday indices follow the stored clinic records: 0 = Sunday ... 6 = Saturday.
    """
    clinic_id: Optional[str] = None

    start_time: time = time(9, 0)
    end_time: time = time(18, 0)
    break_start: Optional[time] = time(13, 0)
    break_end: Optional[time] = time(14, 0)
    slot_interval_minutes: int = Field(default=30, ge=5)

    weekly_holidays: set[int] = Field(default_factory=set)
    custom_holidays: set[date] = Field(default_factory=set)

    appointments_disabled: bool = False
    disable_until: Optional[datetime] = None
    disabled_slots: set[datetime] = Field(default_factory=set)
    day_schedules: dict[int, DaySchedule] = Field(default_factory=dict)

    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "extra": "ignore"}

    @field_validator("weekly_holidays")
    @classmethod
    def _check_weekdays(cls, value: set[int]) -> set[int]:
        bad = sorted(d for d in value if not 0 <= d <= 6)
        if bad:
            raise ValueError(f"weekly_holidays must be weekday indices 0-6, got {bad}")
        return value

    @field_validator("day_schedules")
    @classmethod
    def _check_day_keys(cls, value: dict[int, DaySchedule]) -> dict[int, DaySchedule]:
        bad = sorted(d for d in value if not 0 <= d <= 6)
        if bad:
            raise ValueError(f"day_schedules keys must be weekday indices 0-6, got {bad}")
        return value

    @field_validator("disabled_slots", mode="before")
    @classmethod
    def _parse_disabled_slots(cls, value):
        if value is None:
            return set()
        parsed = set()
        for item in value:
            if isinstance(item, str) and _DISABLED_SLOT_RE.match(item):
                year, month, day, hour, minute = (int(p) for p in item.split("-"))
                item = datetime(year, month, day, hour, minute)
            parsed.add(item)
        return parsed

    @model_validator(mode="after")
    def _check_hours(self):
        if self.start_time >= self.end_time:
            raise ValueError(
                f"start_time {self.start_time:%H:%M} must be before end_time {self.end_time:%H:%M}"
            )
        return self

    def kill_switch_active(self, now: datetime) -> bool:
        """Appointments disabled at `now` (a disable_until in the past lifts the switch)."""
        if not self.appointments_disabled:
            return False
        if self.disable_until is None:
            return True
        return now < self.disable_until
