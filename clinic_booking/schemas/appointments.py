# clinic_booking/schemas/appointments.py

from datetime import date, datetime, time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_validator


class AppointmentStatus(str, Enum):
    CONFIRMED = "Confirmed"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"
    RESCHEDULED = "Rescheduled"


class Appointment(BaseModel):
    """Read-through copy of an appointment owned by the remote store."""
    id: str
    clinic_id: str
    date: date
    time: time
    status: AppointmentStatus = AppointmentStatus.CONFIRMED

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    contact_fingerprint: Optional[str] = None

    original_date: Optional[date] = None
    original_time: Optional[time] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "extra": "ignore"}

    @field_validator("id", "clinic_id", mode="before")
    @classmethod
    def _coerce_str(cls, value):
        return str(value) if value is not None else value

    @property
    def occupies_slot(self) -> bool:
        return self.status is not AppointmentStatus.CANCELLED


class AppointmentCreate(BaseModel):
    """Booking request before the store assigns an id."""
    clinic_id: str
    date: date
    time: time
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.CONFIRMED

    model_config = {"from_attributes": True}
