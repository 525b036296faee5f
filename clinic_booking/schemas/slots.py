# clinic_booking/schemas/slots.py
"""
Pydantic schemas for generated slots.

Slot datetimes are naive clinic-local times, like the schedule they come from.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SlotState(str, Enum):
    OPEN = "open"
    PAST = "past"
    BOOKED = "booked"
    DISABLED = "disabled"


class ClosedReason(str, Enum):
    """Why a day produced no slots at all."""
    APPOINTMENTS_DISABLED = "appointments_disabled"
    WEEKLY_HOLIDAY = "weekly_holiday"
    CUSTOM_HOLIDAY = "custom_holiday"
    DAY_DISABLED = "day_disabled"
    INVALID_CONFIG = "invalid_config"


class TimeSlot(BaseModel):
    """A candidate appointment window. Derived, never persisted."""
    start: datetime
    end: datetime
    label: str  # "HH:MM"
    state: SlotState = SlotState.OPEN

    model_config = {"from_attributes": True}

    @property
    def bookable(self) -> bool:
        return self.state is SlotState.OPEN


class DaySlots(BaseModel):
    """Slots of one day plus the diagnostic reason when the day is closed."""
    date: date
    slots: list[TimeSlot] = Field(default_factory=list)
    closed_reason: Optional[ClosedReason] = None

    model_config = {"from_attributes": True}


class TimeSlotRead(BaseModel):
    """Slot as returned by the HTTP surface."""
    time: str  # HH:MM
    end: str  # HH:MM
    bookable: bool
    state: SlotState


class DaySlotsResponse(BaseModel):
    clinic_id: str
    date: date
    closed_reason: Optional[ClosedReason] = None
    slots: list[TimeSlotRead]
